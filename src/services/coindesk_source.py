from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from clients.coindesk import CoinDeskAPIError, CoinDeskClient, SpotCandle

from .price_sources import PriceSnapshotSource
from .price_types import PriceQuote

logger = logging.getLogger(__name__)


class PriceUnavailableError(LookupError):
    def __init__(self, asset_id: str, currency: str, timestamp: datetime) -> None:
        super().__init__(f"No price for {asset_id}/{currency} at {timestamp.isoformat()}")
        self.asset_id = asset_id
        self.currency = currency
        self.timestamp = timestamp


class CoinDeskSource(PriceSnapshotSource):
    """Close of the candle containing the requested timestamp."""

    def __init__(
        self,
        client: CoinDeskClient,
        *,
        market: str = "coinbase",
        aggregate_minutes: int = 60,
        source_name: str = "coindesk-spot-api",
    ) -> None:
        if aggregate_minutes <= 0:
            msg = "aggregate_minutes must be greater than 0"
            raise ValueError(msg)
        if 30 < aggregate_minutes < 60:
            msg = "CoinDesk minute candles support aggregate_minutes up to 30"
            raise ValueError(msg)
        if aggregate_minutes >= 60 and aggregate_minutes % 60 != 0:
            msg = "aggregate_minutes must be divisible by 60 when requesting hour candles"
            raise ValueError(msg)
        if not market:
            msg = "market must be provided"
            raise ValueError(msg)

        self.client = client
        self.market = market
        self.source_name = source_name
        self._bucket_duration = timedelta(minutes=aggregate_minutes)
        if aggregate_minutes < 60:
            self._unit, self._aggregate = "minutes", aggregate_minutes
        else:
            self._unit, self._aggregate = "hours", aggregate_minutes // 60

    def fetch_snapshot(self, asset_id: str, currency: str, timestamp: datetime) -> PriceQuote:
        instrument = f"{asset_id.upper()}-{currency.upper()}"
        candles = self._fetch_candles(instrument, timestamp)
        if not candles:
            raise PriceUnavailableError(asset_id, currency, timestamp)

        candle = max(candles, key=lambda entry: entry.timestamp)
        valid_from = min(candle.timestamp, timestamp)
        return PriceQuote(
            timestamp=candle.timestamp,
            asset_id=asset_id.upper(),
            currency=currency.upper(),
            price=candle.close,
            source=self.source_name,
            valid_from=valid_from,
            valid_to=candle.timestamp + self._bucket_duration,
        )

    def _fetch_candles(self, instrument: str, timestamp: datetime) -> list[SpotCandle]:
        to_ts = int(timestamp.timestamp())
        try:
            return self._candles(instrument, to_ts)
        except CoinDeskAPIError as exc:
            if exc.status_code != 404 or "FIRST_TRADE_SPOT_TIMESTAMP" not in str(exc):
                raise
            first_trade = self.client.get_first_trade_timestamp(market=self.market, instrument=instrument)
            if first_trade is None or first_trade <= to_ts:
                raise
            logger.warning(
                "CoinDesk instrument %s/%s unavailable at %s, using first trade at %s",
                self.market,
                instrument,
                timestamp.isoformat(),
                datetime.fromtimestamp(first_trade, tz=timezone.utc).isoformat(),
            )
            return self._candles(instrument, first_trade)

    def _candles(self, instrument: str, to_ts: int) -> list[SpotCandle]:
        return self.client.get_candles(
            unit=self._unit,
            market=self.market,
            instrument=instrument,
            to_ts=to_ts,
            limit=1,
            aggregate=self._aggregate,
        )


__all__ = ["CoinDeskSource", "PriceUnavailableError"]
