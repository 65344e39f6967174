from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True)
class PriceQuote:
    """Price of one unit of ``asset_id`` in ``currency``, valid over ``[valid_from, valid_to]``."""

    timestamp: datetime
    asset_id: str
    currency: str
    price: Decimal
    source: str
    valid_from: datetime
    valid_to: datetime

    def covers(self, timestamp: datetime) -> bool:
        return self.valid_from <= timestamp <= self.valid_to


__all__ = ["PriceQuote"]
