from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal
from threading import Lock

from domain.pricing import PriceProvider

from .price_sources import PriceSnapshotSource
from .price_store import PriceStore

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 4096

CacheKey = tuple[str, str, datetime]


class PriceService(PriceProvider):
    """Cache-through price lookup: in-memory LRU, then the quote store, then the source."""

    def __init__(
        self,
        source: PriceSnapshotSource,
        store: PriceStore,
        *,
        max_entries: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        if max_entries <= 0:
            msg = "max_entries must be > 0"
            raise ValueError(msg)
        self.source = source
        self.store = store
        self.max_entries = max_entries
        self._cache: OrderedDict[CacheKey, Decimal] = OrderedDict()
        self._lock = Lock()

    def get_price(self, asset_id: str, currency: str, timestamp: datetime | None = None) -> Decimal:
        ts = timestamp or datetime.now(timezone.utc)
        key = (asset_id.upper(), currency.upper(), ts)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        existing = self.store.read(asset_id=key[0], currency=key[1], timestamp=ts)
        if existing is not None:
            price = existing.price
        else:
            logger.debug("Fetching price asset=%s currency=%s at=%s", key[0], key[1], ts.isoformat())
            fetched = self.source.fetch_snapshot(asset_id=key[0], currency=key[1], timestamp=ts)
            self.store.write(fetched)
            price = fetched.price

        self._cache_put(key, price)
        return price

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def _cache_get(self, key: CacheKey) -> Decimal | None:
        with self._lock:
            price = self._cache.get(key)
            if price is not None:
                self._cache.move_to_end(key)
            return price

    def _cache_put(self, key: CacheKey, price: Decimal) -> None:
        with self._lock:
            self._cache[key] = price
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)


__all__ = ["DEFAULT_CACHE_SIZE", "PriceService"]
