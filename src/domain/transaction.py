from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator

from .assets import Amount, Asset
from .base_types import (
    Address,
    BigInt,
    Chain,
    CostBasisMethod,
    HoldingPeriod,
    LotId,
    SuggestionSource,
    TaxCategory,
    TransactionDirection,
    TransactionId,
    TransactionStatus,
    TransferId,
    TransferType,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def owned_by(address: str, addresses: set[str]) -> bool:
    """UTXO senders are comma-joined; such a party is owned only if every member is."""
    if address in addresses:
        return True
    parts = address.split(",")
    return len(parts) > 1 and all(part in addresses for part in parts)


def touches(address: str, addresses: set[str]) -> bool:
    return any(part in addresses for part in address.split(","))


class Transfer(BaseModel):
    """One atomic movement of an amount between two addresses within a transaction."""

    id: TransferId
    from_address: Address
    to_address: Address
    amount: Amount
    transfer_type: TransferType
    log_index: int | None = None
    # UTXO outputs returning to the sender; recorded but never disposed of.
    is_change: bool = False


class Fee(BaseModel):
    amount: Amount
    fee_rate: dict[str, str] = Field(default_factory=dict)
    payer: Address


class ContractInteraction(BaseModel):
    address: str
    name: str | None = None
    method: str | None = None
    type: str | None = None


class BitcoinInput(BaseModel):
    txid: str
    vout: int
    script_sig: str = ""
    witness: list[str] = Field(default_factory=list)
    sequence: int = 0
    address: str | None = None
    value: BigInt | None = None
    is_coinbase: bool = False


class BitcoinOutput(BaseModel):
    n: int
    value: BigInt
    script_pub_key: str = ""
    address: str | None = None
    output_type: str = ""


class BitcoinData(BaseModel):
    family: Literal["utxo"] = "utxo"
    inputs: list[BitcoinInput]
    outputs: list[BitcoinOutput]
    version: int
    lock_time: int
    vsize: int
    weight: int
    is_segwit: bool
    is_rbf: bool


class EthereumLog(BaseModel):
    log_index: int
    address: str
    topics: list[str]
    data: str


class EthereumInternalTransaction(BaseModel):
    trace_index: int
    type: str
    from_address: str
    to_address: str
    value: BigInt
    gas: BigInt = 0
    gas_used: BigInt = 0
    error: str | None = None


class EthereumData(BaseModel):
    family: Literal["evm"] = "evm"
    from_address: str
    to_address: str | None
    value: BigInt
    gas_limit: BigInt
    gas_used: BigInt
    gas_price: BigInt | None = None
    max_fee_per_gas: BigInt | None = None
    max_priority_fee_per_gas: BigInt | None = None
    base_fee_per_gas: BigInt | None = None
    effective_gas_price: BigInt
    tx_type: int
    nonce: int
    input: str
    contract_address: str | None = None
    logs: list[EthereumLog] = Field(default_factory=list)
    internal_transactions: list[EthereumInternalTransaction] = Field(default_factory=list)


class SolanaTokenBalance(BaseModel):
    account_index: int
    mint: str
    owner: str | None = None
    amount: BigInt
    decimals: int


class SolanaInstruction(BaseModel):
    program_id: str
    program_name: str | None = None
    index: int
    accounts: list[str] = Field(default_factory=list)
    data: str = ""
    decoded_type: str | None = None


class SolanaData(BaseModel):
    family: Literal["solana"] = "solana"
    signatures: list[str]
    recent_blockhash: str
    fee_payer: str
    account_keys: list[str]
    compute_units_consumed: int | None = None
    log_messages: list[str] = Field(default_factory=list)
    pre_balances: list[BigInt] = Field(default_factory=list)
    post_balances: list[BigInt] = Field(default_factory=list)
    pre_token_balances: list[SolanaTokenBalance] = Field(default_factory=list)
    post_token_balances: list[SolanaTokenBalance] = Field(default_factory=list)
    instructions: list[SolanaInstruction] = Field(default_factory=list)


class GenericChainData(BaseModel):
    family: Literal["generic"] = "generic"
    raw: dict[str, Any] = Field(default_factory=dict)


ChainSpecificData = Annotated[
    Union[BitcoinData, EthereumData, SolanaData, GenericChainData],
    Field(discriminator="family"),
]


class CostBasisInfo(BaseModel):
    """One disposal slice matched against one acquisition lot."""

    asset: Asset
    amount: BigInt
    cost_basis_fiat: Decimal
    acquired_at: datetime
    acquisition_tx_id: TransactionId
    lot_id: LotId
    disposed_at: datetime
    disposal_tx_id: TransactionId
    holding_period: HoldingPeriod
    proceeds_fiat: Decimal
    gain_loss: Decimal
    method: CostBasisMethod

    @model_validator(mode="after")
    def _validate(self) -> CostBasisInfo:
        if self.amount <= 0:
            raise ValueError("CostBasisInfo.amount must be > 0")
        if self.gain_loss != self.proceeds_fiat - self.cost_basis_fiat:
            raise ValueError("gain_loss must equal proceeds_fiat - cost_basis_fiat")
        return self


class CategorySuggestion(BaseModel):
    source: SuggestionSource
    category: TaxCategory
    confidence: float

    @model_validator(mode="after")
    def _validate_confidence(self) -> CategorySuggestion:
        if not 0 <= self.confidence <= 1:
            raise ValueError("confidence must be within [0, 1]")
        return self


class UnifiedTransaction(BaseModel):
    id: TransactionId
    chain: Chain
    hash: str
    block_number: int | None = None
    block_hash: str | None = None
    transaction_index: int | None = None
    timestamp: datetime | None = None
    confirmations: int = 0
    status: TransactionStatus
    direction: TransactionDirection
    fee: Fee
    transfers: list[Transfer] = Field(default_factory=list)
    contract_interactions: list[ContractInteraction] = Field(default_factory=list)

    tax_category: TaxCategory | None = None
    tax_category_confidence: float | None = None
    category_suggestions: list[CategorySuggestion] = Field(default_factory=list)
    cost_basis: list[CostBasisInfo] | None = None
    needs_review: bool = False
    warnings: list[str] = Field(default_factory=list)
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)

    chain_specific: ChainSpecificData
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @model_validator(mode="after")
    def _validate_fields(self) -> UnifiedTransaction:
        if not self.hash:
            raise ValueError("UnifiedTransaction.hash must be non-empty")
        if self.confirmations < 0:
            raise ValueError("confirmations must be >= 0")
        if self.tax_category_confidence is not None and not 0 <= self.tax_category_confidence <= 1:
            raise ValueError("tax_category_confidence must be within [0, 1]")
        return self

    @property
    def key(self) -> tuple[Chain, str]:
        return (self.chain, self.hash)

    def add_warning(self, warning: str) -> None:
        if warning not in self.warnings:
            self.warnings.append(warning)

    def flag_for_review(self, reason: str) -> None:
        self.needs_review = True
        self.add_warning(f"needs_review:{reason}")

    def touch(self) -> None:
        self.updated_at = _utc_now()

    def assign_category(self, category: TaxCategory) -> None:
        """User-assigned category; the categorizers never override it."""
        self.tax_category = category
        self.tax_category_confidence = 1.0
        self.category_suggestions = [s for s in self.category_suggestions if s.source != SuggestionSource.USER]
        self.category_suggestions.append(
            CategorySuggestion(source=SuggestionSource.USER, category=category, confidence=1.0)
        )

    @property
    def has_user_category(self) -> bool:
        return any(
            s.source == SuggestionSource.USER and s.category == self.tax_category for s in self.category_suggestions
        )

    def outgoing_transfers(self, addresses: set[str]) -> list[Transfer]:
        """Non-change, non-zero transfers leaving the owned addresses."""
        return [
            t
            for t in self.transfers
            if owned_by(t.from_address, addresses)
            and not owned_by(t.to_address, addresses)
            and not t.is_change
            and t.amount.raw > 0
        ]

    def incoming_transfers(self, addresses: set[str]) -> list[Transfer]:
        """Non-change, non-zero transfers arriving at the owned addresses from outside."""
        return [
            t
            for t in self.transfers
            if owned_by(t.to_address, addresses)
            and not owned_by(t.from_address, addresses)
            and not t.is_change
            and t.amount.raw > 0
        ]

    def involves(self, addresses: set[str]) -> bool:
        for transfer in self.transfers:
            if touches(transfer.from_address, addresses) or touches(transfer.to_address, addresses):
                return True
        return touches(self.fee.payer, addresses)


class TransactionFilter(BaseModel):
    chains: list[Chain] | None = None
    addresses: list[str] | None = None
    direction: TransactionDirection | None = None
    status: TransactionStatus | None = None
    tax_category: TaxCategory | None = None
    asset_symbol: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None
    limit: int | None = None
    offset: int = 0

    def matches(self, tx: UnifiedTransaction) -> bool:
        if self.chains and tx.chain not in self.chains:
            return False
        if self.addresses and not tx.involves(set(self.addresses)):
            return False
        if self.direction is not None and tx.direction != self.direction:
            return False
        if self.status is not None and tx.status != self.status:
            return False
        if self.tax_category is not None and tx.tax_category != self.tax_category:
            return False
        if self.asset_symbol is not None:
            symbol = self.asset_symbol.upper()
            if not any(t.amount.asset.symbol.upper() == symbol for t in tx.transfers):
                return False
        if self.date_from is not None and (tx.timestamp is None or tx.timestamp < self.date_from):
            return False
        if self.date_to is not None and (tx.timestamp is None or tx.timestamp >= self.date_to):
            return False
        if self.search:
            needle = self.search.lower()
            haystack = [tx.hash, tx.notes or "", tx.fee.payer]
            haystack += [t.from_address for t in tx.transfers] + [t.to_address for t in tx.transfers]
            if not any(needle in value.lower() for value in haystack):
                return False
        return True
