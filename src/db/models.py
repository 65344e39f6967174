from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class IntAsString(TypeDecorator):
    """Base-unit amounts exceed SQLite's 64-bit INTEGER (uint256 token balances)."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value: int | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> int | None:
        if value is None:
            return None
        return int(value)


class Base(DeclarativeBase):
    pass


class TransactionOrm(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    chain: Mapped[str] = mapped_column(String, nullable=False)
    hash: Mapped[str] = mapped_column(String, nullable=False)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False)
    direction: Mapped[str] = mapped_column(String, nullable=False)
    tax_category: Mapped[str | None] = mapped_column(String, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Full UnifiedTransaction JSON; the columns above are the queryable projection.
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("chain", "hash", name="uq_transactions_chain_hash"),
        Index("ix_transactions_order", "timestamp", "block_number"),
    )


class TransactionWalletOrm(Base):
    __tablename__ = "transaction_wallets"

    transaction_id: Mapped[str] = mapped_column(String, ForeignKey("transactions.id"), primary_key=True)
    wallet_id: Mapped[str] = mapped_column(String, primary_key=True)

    __table_args__ = (Index("ix_transaction_wallets_wallet", "wallet_id"),)


class TransactionAddressOrm(Base):
    __tablename__ = "transaction_addresses"

    transaction_id: Mapped[str] = mapped_column(String, ForeignKey("transactions.id"), primary_key=True)
    address: Mapped[str] = mapped_column(String, primary_key=True)

    __table_args__ = (Index("ix_transaction_addresses_address", "address"),)


class TaxLotOrm(Base):
    __tablename__ = "tax_lots"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    wallet_id: Mapped[str] = mapped_column(String, nullable=False)
    asset: Mapped[str] = mapped_column(Text, nullable=False)
    amount_acquired: Mapped[int] = mapped_column(IntAsString, nullable=False)
    remaining_amount: Mapped[int] = mapped_column(IntAsString, nullable=False)
    cost_basis_fiat: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    cost_basis_consumed: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    acquisition_tx_id: Mapped[str] = mapped_column(String, nullable=False)
    source_transfer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("wallet_id", "acquisition_tx_id", "source_transfer_id", name="uq_tax_lots_source"),
        Index("ix_tax_lots_wallet", "wallet_id", "acquired_at"),
    )
