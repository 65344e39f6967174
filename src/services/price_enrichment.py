from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from domain.assets import Amount, Asset, FiatValue
from domain.base_types import AssetKind
from domain.errors import NetworkError
from domain.pricing import PriceProvider
from domain.transaction import UnifiedTransaction

from .coindesk_source import PriceUnavailableError

logger = logging.getLogger(__name__)

PriceKey = tuple[str, datetime]


def price_id_for(asset: Asset) -> str | None:
    if asset.is_placeholder or asset.kind == AssetKind.NFT:
        return None
    return asset.price_id or asset.symbol


class PriceEnricher:
    """Attach fiat values at the transaction timestamp to every transfer and fee.

    Lookups are deduplicated across the whole batch before any request is made. A missing
    price leaves ``fiat_value`` unset and adds a ``price_unavailable`` warning; the tax
    engine later flags the transaction if it needs that value.
    """

    def __init__(self, prices: PriceProvider, *, currency: str, source_name: str = "price-service") -> None:
        self.prices = prices
        self.currency = currency.upper()
        self.source_name = source_name

    def enrich(self, transactions: Iterable[UnifiedTransaction]) -> int:
        txs = list(transactions)
        wanted: set[PriceKey] = set()
        for tx, amount in self._unpriced(txs):
            price_id = price_id_for(amount.asset)
            if price_id is not None and tx.timestamp is not None:
                wanted.add((price_id.upper(), tx.timestamp))

        resolved: dict[PriceKey, Decimal] = {}
        for price_id, timestamp in sorted(wanted):
            try:
                resolved[(price_id, timestamp)] = self.prices.get_price(price_id, self.currency, timestamp)
            except (NetworkError, PriceUnavailableError, ValueError) as exc:
                logger.warning("Price lookup failed for %s/%s at %s: %s", price_id, self.currency, timestamp, exc)

        priced = 0
        for tx, amount in self._unpriced(txs):
            price_id = price_id_for(amount.asset)
            if tx.timestamp is None:
                continue
            price = resolved.get((price_id.upper(), tx.timestamp)) if price_id else None
            if price is None:
                tx.add_warning(f"price_unavailable:{amount.asset.contract_address or amount.asset.symbol}")
                continue
            amount.fiat_value = FiatValue(
                currency=self.currency,
                amount=amount.quantity * price,
                price=price,
                price_timestamp=tx.timestamp,
                price_source=self.source_name,
            )
            priced += 1

        logger.info("Priced %d amounts across %d transactions (%d distinct lookups)", priced, len(txs), len(wanted))
        return priced

    def _unpriced(self, txs: list[UnifiedTransaction]) -> Iterable[tuple[UnifiedTransaction, Amount]]:
        for tx in txs:
            amounts = [transfer.amount for transfer in tx.transfers]
            amounts.append(tx.fee.amount)
            for amount in amounts:
                if amount.raw == 0:
                    continue
                if amount.fiat_value is not None and amount.fiat_value.currency == self.currency:
                    continue
                yield tx, amount


__all__ = ["PriceEnricher", "price_id_for"]
