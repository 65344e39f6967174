from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import cast

import pytest

from clients.coindesk import CoinDeskAPIError, CoinDeskClient, SpotCandle
from services.coindesk_source import CoinDeskSource, PriceUnavailableError


def _candle(timestamp: datetime, close: str) -> SpotCandle:
    return SpotCandle(
        timestamp=timestamp,
        market="coinbase",
        instrument="BTC-USD",
        open=None,
        high=None,
        low=None,
        close=Decimal(close),
    )


class _StubCoinDeskClient:
    def __init__(
        self,
        candles: list[SpotCandle],
        *,
        error: CoinDeskAPIError | None = None,
        first_trade: int | None = None,
    ) -> None:
        self.candles = candles
        self.error = error
        self.first_trade = first_trade
        self.calls: list[dict[str, object]] = []

    def get_candles(self, **params: object) -> list[SpotCandle]:
        self.calls.append(params)
        if self.error is not None and len(self.calls) == 1:
            raise self.error
        return self.candles

    def get_first_trade_timestamp(self, *, market: str, instrument: str) -> int | None:
        return self.first_trade


def _source(client: _StubCoinDeskClient, *, aggregate_minutes: int = 60) -> CoinDeskSource:
    return CoinDeskSource(cast(CoinDeskClient, client), market="coinbase", aggregate_minutes=aggregate_minutes)


def test_hour_candle_becomes_quote() -> None:
    bucket_start = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    client = _StubCoinDeskClient([_candle(bucket_start, "42050.12")])

    quote = _source(client).fetch_snapshot("btc", "usd", timestamp=bucket_start + timedelta(minutes=20))

    assert quote.price == Decimal("42050.12")
    assert quote.asset_id == "BTC"
    assert quote.valid_from == bucket_start
    assert quote.valid_to == bucket_start + timedelta(minutes=60)
    assert client.calls[0]["unit"] == "hours"
    assert client.calls[0]["instrument"] == "BTC-USD"
    assert client.calls[0]["aggregate"] == 1


def test_minute_buckets() -> None:
    bucket_start = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    client = _StubCoinDeskClient([_candle(bucket_start, "1")])

    quote = _source(client, aggregate_minutes=15).fetch_snapshot("btc", "usd", timestamp=bucket_start)

    assert quote.valid_to == bucket_start + timedelta(minutes=15)
    assert client.calls[0]["unit"] == "minutes"
    assert client.calls[0]["aggregate"] == 15


@pytest.mark.parametrize("aggregate_minutes", [0, 45, 90])
def test_rejects_unsupported_bucket_lengths(aggregate_minutes: int) -> None:
    with pytest.raises(ValueError):
        _source(_StubCoinDeskClient([]), aggregate_minutes=aggregate_minutes)


def test_no_candles_is_unavailable() -> None:
    with pytest.raises(PriceUnavailableError):
        _source(_StubCoinDeskClient([])).fetch_snapshot("NEW", "USD", datetime(2025, 1, 1, tzinfo=timezone.utc))


def test_before_first_trade_falls_back_to_first_candle() -> None:
    requested = datetime(2020, 1, 1, tzinfo=timezone.utc)
    listed = datetime(2021, 6, 1, tzinfo=timezone.utc)
    error = CoinDeskAPIError("to_ts is before FIRST_TRADE_SPOT_TIMESTAMP", status_code=404)
    client = _StubCoinDeskClient([_candle(listed, "0.5")], error=error, first_trade=int(listed.timestamp()))

    quote = _source(client).fetch_snapshot("NEW", "USD", requested)

    assert quote.price == Decimal("0.5")
    assert quote.valid_from == requested
    assert [call["to_ts"] for call in client.calls] == [int(requested.timestamp()), int(listed.timestamp())]


def test_other_api_errors_propagate() -> None:
    client = _StubCoinDeskClient([], error=CoinDeskAPIError("server error", status_code=500))

    with pytest.raises(CoinDeskAPIError):
        _source(client).fetch_snapshot("BTC", "USD", datetime(2025, 1, 1, tzinfo=timezone.utc))
