from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Protocol

from .price_types import PriceQuote


class PriceStore(Protocol):
    def write(self, quote: PriceQuote) -> None: ...

    def read(self, asset_id: str, currency: str, timestamp: datetime) -> PriceQuote | None: ...


class JsonlPriceStore(PriceStore):
    """Append-only quote files, one per ``ASSET-CURRENCY`` pair."""

    def __init__(self, *, root_dir: Path) -> None:
        self.root_dir = root_dir
        self._lock = Lock()

    def write(self, quote: PriceQuote) -> None:
        path = self._file_path(quote.asset_id, quote.currency)
        record = {
            "timestamp": quote.timestamp.isoformat(),
            "asset_id": quote.asset_id,
            "currency": quote.currency,
            "price": str(quote.price),
            "source": quote.source,
            "valid_from": quote.valid_from.isoformat(),
            "valid_to": quote.valid_to.isoformat(),
        }
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record))
                handle.write("\n")

    def read(self, asset_id: str, currency: str, timestamp: datetime) -> PriceQuote | None:
        """Most recent stored quote whose validity window contains ``timestamp``."""
        path = self._file_path(asset_id, currency)
        if not path.exists():
            return None

        best: PriceQuote | None = None
        with self._lock, path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                quote = self._parse(json.loads(line))
                if not quote.covers(timestamp):
                    continue
                if best is None or quote.timestamp > best.timestamp:
                    best = quote
        return best

    @staticmethod
    def _parse(record: dict[str, str]) -> PriceQuote:
        timestamp = datetime.fromisoformat(record["timestamp"])
        valid_from = datetime.fromisoformat(record.get("valid_from", record["timestamp"]))
        valid_to_raw = record.get("valid_to")
        return PriceQuote(
            timestamp=timestamp,
            asset_id=record["asset_id"],
            currency=record["currency"],
            price=Decimal(record["price"]),
            source=record["source"],
            valid_from=valid_from,
            valid_to=datetime.fromisoformat(valid_to_raw) if valid_to_raw is not None else valid_from,
        )

    def _file_path(self, asset_id: str, currency: str) -> Path:
        return self.root_dir / "prices" / f"{asset_id.upper()}-{currency.upper()}.jsonl"


__all__ = ["JsonlPriceStore", "PriceStore"]
