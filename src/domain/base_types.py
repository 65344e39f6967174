from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, NewType

from pydantic import BeforeValidator, PlainSerializer

TransactionId = NewType("TransactionId", str)
TransferId = NewType("TransferId", str)
WalletId = NewType("WalletId", str)
Address = NewType("Address", str)
LotId = NewType("LotId", str)

UNKNOWN_ADDRESS = Address("unknown")


class Chain(StrEnum):
    BITCOIN = "bitcoin"
    ETHEREUM = "ethereum"
    ARBITRUM = "arbitrum"
    OPTIMISM = "optimism"
    BASE = "base"
    POLYGON = "polygon"
    SOLANA = "solana"
    COSMOS = "cosmos"
    SUI = "sui"
    APTOS = "aptos"


class ChainFamily(StrEnum):
    UTXO = "utxo"
    EVM = "evm"
    SOLANA = "solana"
    GENERIC = "generic"


CHAIN_FAMILIES: dict[Chain, ChainFamily] = {
    Chain.BITCOIN: ChainFamily.UTXO,
    Chain.ETHEREUM: ChainFamily.EVM,
    Chain.ARBITRUM: ChainFamily.EVM,
    Chain.OPTIMISM: ChainFamily.EVM,
    Chain.BASE: ChainFamily.EVM,
    Chain.POLYGON: ChainFamily.EVM,
    Chain.SOLANA: ChainFamily.SOLANA,
}


def chain_family(chain: Chain) -> ChainFamily:
    return CHAIN_FAMILIES.get(chain, ChainFamily.GENERIC)


class AssetKind(StrEnum):
    NATIVE = "native"
    TOKEN = "token"
    NFT = "nft"
    LP = "lp"


class TransactionStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    DROPPED = "dropped"


class TransactionDirection(StrEnum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    SELF = "self"
    SWAP = "swap"
    CONTRACT = "contract"


class TransferType(StrEnum):
    NATIVE = "native"
    TOKEN = "token"
    NFT = "nft"
    INTERNAL = "internal"


class TaxCategory(StrEnum):
    SALE = "sale"
    SWAP = "swap"
    NFT_SALE = "nft_sale"
    PAYMENT_SENT = "payment_sent"

    AIRDROP = "airdrop"
    STAKING_REWARD = "staking_reward"
    MINING_REWARD = "mining_reward"
    DEFI_YIELD = "defi_yield"
    SALARY = "salary"

    PURCHASE = "purchase"
    GIFT_RECEIVED = "gift_received"

    TRANSFER = "transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BRIDGE = "bridge"
    GIFT_SENT = "gift_sent"
    FEE = "fee"

    UNKNOWN = "unknown"


DISPOSAL_CATEGORIES = frozenset(
    {TaxCategory.SALE, TaxCategory.SWAP, TaxCategory.NFT_SALE, TaxCategory.PAYMENT_SENT}
)
INCOME_CATEGORIES = frozenset(
    {
        TaxCategory.AIRDROP,
        TaxCategory.STAKING_REWARD,
        TaxCategory.MINING_REWARD,
        TaxCategory.DEFI_YIELD,
        TaxCategory.SALARY,
    }
)
ACQUISITION_CATEGORIES = frozenset({TaxCategory.PURCHASE, TaxCategory.GIFT_RECEIVED})
NON_TAXABLE_CATEGORIES = frozenset(
    {
        TaxCategory.TRANSFER,
        TaxCategory.DEPOSIT,
        TaxCategory.WITHDRAWAL,
        TaxCategory.BRIDGE,
        TaxCategory.GIFT_SENT,
        TaxCategory.FEE,
        TaxCategory.UNKNOWN,
    }
)


class CostBasisMethod(StrEnum):
    FIFO = "fifo"
    LIFO = "lifo"
    HIFO = "hifo"
    SPECIFIC = "specific"


class HoldingPeriod(StrEnum):
    SHORT = "short"
    LONG = "long"


def _parse_big_int(value: Any) -> Any:
    if isinstance(value, float):
        raise ValueError("integer chain units must not be floats")
    if isinstance(value, str):
        return int(value)
    return value


# Arbitrary precision integer that travels through JSON as a decimal string.
BigInt = Annotated[
    int,
    BeforeValidator(_parse_big_int),
    PlainSerializer(lambda value: str(value), return_type=str, when_used="json"),
]


class SuggestionSource(StrEnum):
    RULE = "rule"
    AI = "ai"
    USER = "user"
