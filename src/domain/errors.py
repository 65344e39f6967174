from __future__ import annotations

from typing import Any


class ChainAdapterError(Exception):
    """Base class for failures while turning chain data into unified transactions."""

    retryable = False


class NetworkError(ChainAdapterError):
    """RPC/API failure. Retrying (with backoff) is up to the caller."""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ParseError(ChainAdapterError):
    def __init__(self, message: str, *, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class UnknownAssetError(ChainAdapterError):
    def __init__(self, message: str, *, address: str) -> None:
        super().__init__(message)
        self.address = address


class TransactionNotFoundError(ChainAdapterError):
    def __init__(self, tx_hash: str) -> None:
        super().__init__(f"Transaction not found: {tx_hash}")
        self.tx_hash = tx_hash
