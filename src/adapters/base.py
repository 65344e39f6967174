from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable

from domain.assets import Amount, Asset
from domain.base_types import (
    UNKNOWN_ADDRESS,
    Address,
    Chain,
    TransactionDirection,
    TransactionId,
    TransactionStatus,
)
from domain.errors import ParseError
from domain.transaction import Fee, GenericChainData, UnifiedTransaction

from .token_registry import TokenRegistry

logger = logging.getLogger(__name__)

# What the parsing helpers raise on malformed payloads: missing keys, bad numbers, wrong shapes.
MALFORMED_DATA_ERRORS = (ParseError, KeyError, ValueError, TypeError, AttributeError)


def transaction_id(chain: Chain, tx_hash: str) -> TransactionId:
    """Stable id, so re-syncing the same transaction maps onto the same record."""
    return TransactionId(f"{chain.value}:{tx_hash}")


class ChainAdapter(ABC):
    """Turns one chain family's raw data into unified transactions.

    ``transform_raw`` implementations are pure; the fetch methods only gather raw payloads
    through the family's API client.
    """

    def __init__(self, chain: Chain, *, token_registry: TokenRegistry | None = None) -> None:
        self.chain = chain
        self.tokens = token_registry or TokenRegistry()

    @abstractmethod
    def transform_transaction(self, tx_hash: str, user_addresses: Iterable[str]) -> UnifiedTransaction: ...

    @abstractmethod
    def get_transactions(
        self,
        address: str,
        from_block: int | None = None,
        *,
        user_addresses: Iterable[str] | None = None,
    ) -> list[UnifiedTransaction]:
        """History of ``address``; direction is computed against ``user_addresses`` (default: the address)."""

    @abstractmethod
    def get_balance(self, address: str) -> list[Amount]: ...

    @property
    def native_asset(self) -> Asset:
        return Asset.native(self.chain)

    def normalize_address(self, address: str) -> str:
        return address

    def _owned(self, address: str, user_addresses: Iterable[str] | None) -> set[str]:
        addresses = user_addresses if user_addresses is not None else (address,)
        return {self.normalize_address(a) for a in addresses}

    def failed_transaction(self, tx_hash: str, error: Exception, raw: Any = None) -> UnifiedTransaction:
        """Malformed chain data still yields a record: failed, no transfers, the parse problem as warning."""
        if not isinstance(error, ParseError):
            error = ParseError(f"malformed data: {error!r}", tx_hash=tx_hash)
        logger.warning("Could not parse %s transaction %s: %s", self.chain, tx_hash, error)
        raw_payload = raw if isinstance(raw, dict) else {"raw": raw}
        return UnifiedTransaction(
            id=transaction_id(self.chain, tx_hash),
            chain=self.chain,
            hash=tx_hash,
            status=TransactionStatus.FAILED,
            direction=TransactionDirection.CONTRACT,
            fee=Fee(amount=Amount.of(self.native_asset, 0), payer=Address(UNKNOWN_ADDRESS)),
            warnings=[f"parse_error:{error}"],
            chain_specific=GenericChainData(raw=raw_payload),
        )


__all__ = ["MALFORMED_DATA_ERRORS", "ChainAdapter", "transaction_id"]
