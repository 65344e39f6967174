from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol


class PriceProvider(Protocol):
    """Fiat price of one whole unit of an asset at a point in time."""

    def get_price(self, asset_id: str, currency: str, timestamp: datetime) -> Decimal: ...
