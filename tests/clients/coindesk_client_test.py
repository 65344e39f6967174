from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from clients.coindesk import CoinDeskAPIError, CoinDeskClient
from tests.helpers.http_responses import mock_response, mock_session


def test_get_candles_parses_response() -> None:
    payload = {
        "Data": [
            {
                "TIMESTAMP": 1_700_000_000,
                "MARKET": "coinbase",
                "INSTRUMENT": "BTC-USD",
                "OPEN": 100,
                "HIGH": 110,
                "LOW": 90,
                "CLOSE": 105.5,
            }
        ],
        "Err": {},
    }
    session = mock_session(payload)

    client = CoinDeskClient(api_key="token", session=session)
    (candle,) = client.get_candles(unit="minutes", market="coinbase", instrument="BTC-USD", to_ts=1_700_000_010)

    assert candle.close == Decimal("105.5")
    assert candle.open == Decimal("100")
    assert candle.timestamp == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    args, kwargs = session.request.call_args
    assert args[0] == "GET"
    assert args[1].endswith("/spot/v1/historical/minutes")
    assert kwargs["params"]["instrument"] == "BTC-USD"
    assert kwargs["params"]["to_ts"] == 1_700_000_010
    assert kwargs["headers"] == {"Authorization": "Bearer token"}


def test_get_candles_without_key_sends_no_auth_header() -> None:
    session = mock_session({"Data": [{"TIMESTAMP": 1_700_000_000, "CLOSE": 1}]})

    CoinDeskClient(session=session).get_candles(unit="hours", market="coinbase", instrument="ETH-USD", to_ts=1)

    assert session.request.call_args.kwargs["headers"] == {}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"unit": "weeks", "market": "coinbase", "instrument": "BTC-USD"},
        {"unit": "days", "market": "", "instrument": "BTC-USD"},
        {"unit": "days", "market": "coinbase", "instrument": "BTC-USD", "limit": 0},
    ],
)
def test_get_candles_validates_arguments(kwargs: dict) -> None:
    client = CoinDeskClient(session=Mock())

    with pytest.raises(ValueError):
        client.get_candles(to_ts=1, **kwargs)


def test_api_error_in_body() -> None:
    session = mock_session({"Data": [], "Err": {"message": "Invalid market"}})

    client = CoinDeskClient(session=session)
    with pytest.raises(CoinDeskAPIError, match="Invalid market"):
        client.get_candles(unit="days", market="bad", instrument="BTC-USD", to_ts=123)


def test_candle_without_close_is_rejected() -> None:
    session = mock_session({"Data": [{"TIMESTAMP": 1}]})

    with pytest.raises(CoinDeskAPIError):
        CoinDeskClient(session=session).get_candles(unit="days", market="coinbase", instrument="BTC-USD", to_ts=1)


def test_http_error_is_wrapped_with_status() -> None:
    session = Mock()
    response = mock_response({"Err": {"message": "rate limited"}}, status_code=429)
    response.raise_for_status.side_effect = requests.HTTPError(response=response)
    session.request.return_value = response

    client = CoinDeskClient(session=session)

    with pytest.raises(CoinDeskAPIError, match="rate limited") as exc_info:
        client.get_candles(unit="minutes", market="coinbase", instrument="BTC-USD", to_ts=1)
    assert exc_info.value.status_code == 429
    assert exc_info.value.retryable


def test_first_trade_timestamp() -> None:
    payload = {
        "Data": {
            "COINBASE": {"instruments": {"BTC-USD": {"FIRST_TRADE_SPOT_TIMESTAMP": 1_420_000_000}}},
        }
    }
    session = mock_session(payload, {"Data": {}})
    client = CoinDeskClient(session=session)

    assert client.get_first_trade_timestamp(market="coinbase", instrument="btc-usd") == 1_420_000_000
    assert client.get_first_trade_timestamp(market="coinbase", instrument="btc-usd") is None
