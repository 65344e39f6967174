from __future__ import annotations

import logging
from typing import Any

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from domain.errors import NetworkError

logger = logging.getLogger(__name__)

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})


class JsonApiClient:
    """Shared transport for the chain and price APIs.

    Retries (429 and 5xx, exponential backoff) are handled by urllib3 on the mounted adapter.
    Every transport, HTTP or decoding failure surfaces as ``error_cls``.
    """

    error_cls: type[NetworkError] = NetworkError
    service_name = "API"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 5,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist=RETRY_STATUSES,
            # JSON-RPC reads are POSTs; they are safe to repeat.
            allowed_methods={"GET", "POST"},
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def _headers(self) -> dict[str, str]:
        return {}

    def _request(
        self,
        method: str,
        path: str = "",
        *,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                timeout=self.timeout,
                headers=self._headers(),
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            message, payload = self._extract_error(resp)
            raise self.error_cls(message, status_code=resp.status_code, payload=payload) from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise self.error_cls(f"{self.service_name} request failed", status_code=status_code) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise self.error_cls(f"{self.service_name} returned invalid JSON", payload=response.text) from exc

    def _extract_error(self, response: Response) -> tuple[str, Any]:
        message = f"{self.service_name} request failed with HTTP {response.status_code}"
        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        return message, payload


__all__ = ["JsonApiClient", "RETRY_STATUSES"]
