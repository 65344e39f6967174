from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from requests import Response

from domain.errors import NetworkError

from .http import JsonApiClient


class CoinDeskAPIError(NetworkError):
    pass


@dataclass(frozen=True)
class SpotCandle:
    timestamp: datetime
    market: str
    instrument: str
    open: Decimal | None
    high: Decimal | None
    low: Decimal | None
    close: Decimal


class CoinDeskClient(JsonApiClient):
    """CoinDesk Data API spot candles and instrument metadata."""

    error_cls = CoinDeskAPIError
    service_name = "CoinDesk API"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str = "https://data-api.coindesk.com",
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, **kwargs)
        self.api_key = api_key

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def get_candles(
        self,
        *,
        unit: str,
        market: str,
        instrument: str,
        to_ts: int,
        limit: int = 1,
        aggregate: int = 1,
    ) -> list[SpotCandle]:
        if unit not in ("minutes", "hours", "days"):
            msg = f"Unsupported candle unit {unit}"
            raise ValueError(msg)
        if limit <= 0 or aggregate <= 0:
            msg = "limit and aggregate must be > 0"
            raise ValueError(msg)
        if not market or not instrument:
            msg = "market and instrument must be provided"
            raise ValueError(msg)

        payload = self._get(
            f"/spot/v1/historical/{unit}",
            params={
                "market": market,
                "instrument": instrument,
                "limit": limit,
                "aggregate": aggregate,
                "fill": "true",
                "response_format": "JSON",
                "to_ts": to_ts,
            },
        )
        return [self._parse_candle(entry) for entry in payload.get("Data") or []]

    def get_first_trade_timestamp(self, *, market: str, instrument: str) -> int | None:
        payload = self._get("/spot/v1/markets/instruments", params={"market": market, "instrument": instrument})
        data = payload.get("Data")
        if not isinstance(data, dict):
            return None
        market_data = next((value for key, value in data.items() if key.lower() == market.lower()), None)
        if not isinstance(market_data, dict):
            return None
        instruments = market_data.get("instruments")
        if not isinstance(instruments, dict):
            return None
        metadata = instruments.get(instrument.upper())
        if not isinstance(metadata, dict):
            return None
        first_trade = metadata.get("FIRST_TRADE_SPOT_TIMESTAMP")
        return first_trade if isinstance(first_trade, int) else None

    def _get(self, path: str, *, params: dict[str, Any]) -> dict[str, Any]:
        payload = self._request("GET", path, params=params)
        if not isinstance(payload, dict):
            raise CoinDeskAPIError("CoinDesk API returned unexpected payload type", payload=payload)
        err = payload.get("Err")
        if isinstance(err, dict) and err.get("message"):
            raise CoinDeskAPIError(err["message"], payload=payload)
        return payload

    def _extract_error(self, response: Response) -> tuple[str, Any]:
        message, payload = super()._extract_error(response)
        err = payload.get("Err") if isinstance(payload, dict) else None
        if isinstance(err, dict) and err.get("message"):
            message = err["message"]
        return message, payload

    @staticmethod
    def _parse_candle(entry: dict[str, Any]) -> SpotCandle:
        ts_raw = entry.get("TIMESTAMP")
        close_raw = entry.get("CLOSE")
        if ts_raw is None or close_raw is None:
            raise CoinDeskAPIError("CoinDesk candle missing TIMESTAMP or CLOSE field", payload=entry)
        return SpotCandle(
            timestamp=datetime.fromtimestamp(int(ts_raw), tz=timezone.utc),
            market=str(entry.get("MARKET", "")),
            instrument=str(entry.get("INSTRUMENT", "")),
            open=_to_decimal(entry.get("OPEN")),
            high=_to_decimal(entry.get("HIGH")),
            low=_to_decimal(entry.get("LOW")),
            close=Decimal(str(close_raw)),
        )


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


__all__ = ["CoinDeskAPIError", "CoinDeskClient", "SpotCandle"]
