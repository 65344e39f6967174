from __future__ import annotations

import logging
from itertools import count
from typing import Any

from domain.errors import NetworkError, TransactionNotFoundError

from .http import JsonApiClient

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
SIGNATURE_PAGE_SIZE = 1000


class SolanaRPCError(NetworkError):
    pass


class SolanaRPCClient(JsonApiClient):
    error_cls = SolanaRPCError
    service_name = "Solana RPC"

    def __init__(
        self,
        base_url: str = "https://api.mainnet-beta.solana.com",
        *,
        commitment: str = "confirmed",
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, **kwargs)
        self.commitment = commitment
        self._ids = count(1)

    def get_transaction(self, signature: str) -> dict[str, Any]:
        result = self._rpc(
            "getTransaction",
            [signature, {"encoding": "json", "maxSupportedTransactionVersion": 0, "commitment": self.commitment}],
        )
        if result is None:
            raise TransactionNotFoundError(signature)
        return result

    def get_signatures_for_address(self, address: str, *, min_slot: int | None = None) -> list[dict[str, Any]]:
        """Signature history, newest first, paging backwards until ``min_slot``."""
        signatures: list[dict[str, Any]] = []
        before: str | None = None
        while True:
            options: dict[str, Any] = {"limit": SIGNATURE_PAGE_SIZE, "commitment": self.commitment}
            if before:
                options["before"] = before
            batch = self._rpc("getSignaturesForAddress", [address, options]) or []
            for entry in batch:
                if min_slot is not None and entry.get("slot", 0) < min_slot:
                    return signatures
                signatures.append(entry)
            if len(batch) < SIGNATURE_PAGE_SIZE:
                return signatures
            before = batch[-1]["signature"]

    def get_balance(self, address: str) -> int:
        result = self._rpc("getBalance", [address, {"commitment": self.commitment}])
        return int(result["value"])

    def get_token_accounts(self, owner: str) -> list[dict[str, Any]]:
        result = self._rpc(
            "getTokenAccountsByOwner",
            [owner, {"programId": TOKEN_PROGRAM_ID}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        return list(result.get("value") or [])

    def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = self._request(
            "POST",
            json_body={"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params},
        )
        if not isinstance(payload, dict):
            raise SolanaRPCError("Solana RPC returned unexpected payload type", payload=payload)
        error = payload.get("error")
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            # -32429 / 429-style codes are rate limits; surface them like HTTP 429.
            status_code = 429 if code in (429, -32429) else None
            raise SolanaRPCError(f"Solana RPC {method} failed: {message}", status_code=status_code, payload=payload)
        return payload.get("result")


__all__ = ["SolanaRPCClient", "SolanaRPCError", "TOKEN_PROGRAM_ID"]
