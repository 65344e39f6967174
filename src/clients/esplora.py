from __future__ import annotations

import logging
from typing import Any

from domain.errors import NetworkError, TransactionNotFoundError

from .http import JsonApiClient

logger = logging.getLogger(__name__)

# Esplora returns confirmed history in pages of 25 transactions.
CHAIN_PAGE_SIZE = 25


class EsploraAPIError(NetworkError):
    pass


class EsploraClient(JsonApiClient):
    """Bitcoin data from an Esplora REST server (blockstream.info, mempool.space)."""

    error_cls = EsploraAPIError
    service_name = "Esplora API"

    def __init__(self, base_url: str = "https://blockstream.info/api", **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    def get_transaction(self, txid: str) -> dict[str, Any]:
        try:
            payload = self._request("GET", f"/tx/{txid}")
        except EsploraAPIError as exc:
            if exc.status_code in (400, 404):
                raise TransactionNotFoundError(txid) from exc
            raise
        if not isinstance(payload, dict):
            raise EsploraAPIError("Esplora API returned unexpected transaction payload", payload=payload)
        return payload

    def get_tip_height(self) -> int:
        payload = self._request("GET", "/blocks/tip/height")
        if not isinstance(payload, int):
            raise EsploraAPIError("Esplora API returned non-numeric tip height", payload=payload)
        return payload

    def get_address_transactions(self, address: str, *, min_height: int | None = None) -> list[dict[str, Any]]:
        """Full history of ``address``: mempool first, then confirmed, newest first.

        Paging stops once a page reaches below ``min_height``.
        """
        first_page = self._request("GET", f"/address/{address}/txs")
        if not isinstance(first_page, list):
            raise EsploraAPIError("Esplora API returned unexpected history payload", payload=first_page)

        transactions: list[dict[str, Any]] = list(first_page)
        confirmed = [tx for tx in first_page if tx.get("status", {}).get("confirmed")]
        page_size = len(confirmed)

        while confirmed and page_size >= CHAIN_PAGE_SIZE:
            last_height = confirmed[-1].get("status", {}).get("block_height")
            if min_height is not None and last_height is not None and last_height < min_height:
                break
            last_seen = confirmed[-1]["txid"]
            page = self._request("GET", f"/address/{address}/txs/chain/{last_seen}")
            if not isinstance(page, list):
                raise EsploraAPIError("Esplora API returned unexpected history payload", payload=page)
            transactions.extend(page)
            confirmed = page
            page_size = len(page)
            logger.debug("Fetched history page size=%d total=%d address=%s", page_size, len(transactions), address)

        if min_height is None:
            return transactions
        return [
            tx
            for tx in transactions
            if not tx.get("status", {}).get("confirmed") or tx["status"].get("block_height", 0) >= min_height
        ]

    def get_address_stats(self, address: str) -> dict[str, Any]:
        payload = self._request("GET", f"/address/{address}")
        if not isinstance(payload, dict):
            raise EsploraAPIError("Esplora API returned unexpected address payload", payload=payload)
        return payload


__all__ = ["EsploraAPIError", "EsploraClient"]
