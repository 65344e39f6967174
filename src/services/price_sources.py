from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Mapping, Protocol

from .price_types import PriceQuote

# Stablecoins valued at their peg instead of a market quote.
DEFAULT_PEGS: dict[str, tuple[str, Decimal]] = {
    "USDC": ("USD", Decimal(1)),
    "USDT": ("USD", Decimal(1)),
    "DAI": ("USD", Decimal(1)),
}


class PriceSnapshotSource(Protocol):
    def fetch_snapshot(self, asset_id: str, currency: str, timestamp: datetime) -> PriceQuote: ...


class PeggedPriceSource(PriceSnapshotSource):
    def __init__(self, pegs: Mapping[str, tuple[str, Decimal]] | None = None, *, source_name: str = "peg") -> None:
        self.pegs = {
            asset.upper(): (currency.upper(), price) for asset, (currency, price) in (pegs or DEFAULT_PEGS).items()
        }
        self.source_name = source_name

    def supports(self, asset_id: str, currency: str) -> bool:
        peg = self.pegs.get(asset_id.upper())
        return peg is not None and peg[0] == currency.upper()

    def fetch_snapshot(self, asset_id: str, currency: str, timestamp: datetime) -> PriceQuote:
        if not self.supports(asset_id, currency):
            msg = f"No peg for {asset_id}/{currency}"
            raise ValueError(msg)
        _, price = self.pegs[asset_id.upper()]
        day_start = timestamp.replace(hour=0, minute=0, second=0, microsecond=0)
        return PriceQuote(
            timestamp=day_start,
            asset_id=asset_id.upper(),
            currency=currency.upper(),
            price=price,
            source=self.source_name,
            valid_from=day_start,
            valid_to=day_start + timedelta(days=1),
        )


class HybridPriceSource(PriceSnapshotSource):
    """Pegged assets from the peg table, everything else from the market source."""

    def __init__(self, *, market_source: PriceSnapshotSource, pegged_source: PeggedPriceSource | None = None) -> None:
        self.market_source = market_source
        self.pegged_source = pegged_source or PeggedPriceSource()

    def fetch_snapshot(self, asset_id: str, currency: str, timestamp: datetime) -> PriceQuote:
        if self.pegged_source.supports(asset_id, currency):
            return self.pegged_source.fetch_snapshot(asset_id, currency, timestamp)
        return self.market_source.fetch_snapshot(asset_id, currency, timestamp)


__all__ = [
    "DEFAULT_PEGS",
    "HybridPriceSource",
    "PeggedPriceSource",
    "PriceSnapshotSource",
]
