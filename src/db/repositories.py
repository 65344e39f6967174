from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import ColumnElement, Select, delete, func, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from db import models
from domain.assets import Asset
from domain.base_types import UNKNOWN_ADDRESS, Chain, LotId, TransactionId, TransactionStatus, TransferId, WalletId
from domain.tax_lots import TaxLot
from domain.transaction import TransactionFilter, UnifiedTransaction

# Columns rewritten when a transaction is seen again; identity columns stay.
_TRANSACTION_UPDATE_COLUMNS = (
    "block_number",
    "timestamp",
    "confirmations",
    "status",
    "direction",
    "tax_category",
    "needs_review",
    "payload",
    "updated_at",
)
_TAX_LOT_UPDATE_COLUMNS = ("remaining_amount", "cost_basis_consumed", "is_closed")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _indexed_addresses(tx: UnifiedTransaction) -> set[str]:
    candidates = [tx.fee.payer]
    for transfer in tx.transfers:
        candidates += [transfer.from_address, transfer.to_address]
    addresses = {part for candidate in candidates for part in candidate.split(",") if part}
    addresses.discard(UNKNOWN_ADDRESS)
    return addresses


class TransactionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def upsert(self, tx: UnifiedTransaction, wallet_id: WalletId) -> None:
        self.upsert_many([tx], wallet_id)

    def upsert_many(self, transactions: Iterable[UnifiedTransaction], wallet_id: WalletId) -> None:
        """Insert or replace by (chain, hash); the wallet link is added once."""
        for tx in transactions:
            values = {
                "id": tx.id,
                "chain": tx.chain.value,
                "hash": tx.hash,
                "block_number": tx.block_number,
                "timestamp": _as_utc(tx.timestamp),
                "confirmations": tx.confirmations,
                "status": tx.status.value,
                "direction": tx.direction.value,
                "tax_category": tx.tax_category.value if tx.tax_category else None,
                "needs_review": tx.needs_review,
                "payload": tx.model_dump_json(),
                "updated_at": _as_utc(tx.updated_at),
            }
            stmt = insert(models.TransactionOrm).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["chain", "hash"],
                set_={column: getattr(stmt.excluded, column) for column in _TRANSACTION_UPDATE_COLUMNS},
            )
            self._session.execute(stmt)

            link = insert(models.TransactionWalletOrm).values({"transaction_id": tx.id, "wallet_id": wallet_id})
            self._session.execute(link.on_conflict_do_nothing())

            self._session.execute(
                delete(models.TransactionAddressOrm).where(models.TransactionAddressOrm.transaction_id == tx.id)
            )
            addresses = _indexed_addresses(tx)
            if addresses:
                self._session.execute(
                    insert(models.TransactionAddressOrm).values(
                        [{"transaction_id": tx.id, "address": address} for address in sorted(addresses)]
                    )
                )
        self._session.commit()

    def get_by_hash(self, chain: Chain, tx_hash: str) -> UnifiedTransaction | None:
        stmt = select(models.TransactionOrm).where(
            models.TransactionOrm.chain == chain.value, models.TransactionOrm.hash == tx_hash
        )
        row = self._session.scalars(stmt).first()
        return self._to_domain(row) if row is not None else None

    def get_in_range(self, wallet_id: WalletId, from_ts: datetime, to_ts: datetime) -> list[UnifiedTransaction]:
        """Wallet transactions with ``from_ts <= timestamp < to_ts``."""
        stmt = (
            self._wallet_query(wallet_id)
            .where(models.TransactionOrm.timestamp >= _as_utc(from_ts))
            .where(models.TransactionOrm.timestamp < _as_utc(to_ts))
        )
        return self._load(stmt)

    def get_for_address(
        self, address: str, transaction_filter: TransactionFilter | None = None
    ) -> list[UnifiedTransaction]:
        candidates = {address, address.lower()} if address.startswith("0x") else {address}
        stmt = (
            select(models.TransactionOrm)
            .join(
                models.TransactionAddressOrm,
                models.TransactionAddressOrm.transaction_id == models.TransactionOrm.id,
            )
            .where(models.TransactionAddressOrm.address.in_(candidates))
            .distinct()
            .order_by(*self._order())
        )
        transactions = self._load(stmt)
        if transaction_filter is None:
            return transactions

        matched = [tx for tx in transactions if transaction_filter.matches(tx)]
        end = transaction_filter.offset + transaction_filter.limit if transaction_filter.limit is not None else None
        return matched[transaction_filter.offset : end]

    def list_for_wallet(self, wallet_id: WalletId) -> list[UnifiedTransaction]:
        return self._load(self._wallet_query(wallet_id))

    def latest_block(self, wallet_id: WalletId, chain: Chain) -> int | None:
        """Highest confirmed block already stored, the resume point for incremental sync."""
        stmt = (
            select(func.max(models.TransactionOrm.block_number))
            .join(
                models.TransactionWalletOrm,
                models.TransactionWalletOrm.transaction_id == models.TransactionOrm.id,
            )
            .where(models.TransactionWalletOrm.wallet_id == wallet_id)
            .where(models.TransactionOrm.chain == chain.value)
            .where(models.TransactionOrm.status == TransactionStatus.CONFIRMED.value)
        )
        return self._session.scalar(stmt)

    def _wallet_query(self, wallet_id: WalletId) -> Select[tuple[models.TransactionOrm]]:
        return (
            select(models.TransactionOrm)
            .join(
                models.TransactionWalletOrm,
                models.TransactionWalletOrm.transaction_id == models.TransactionOrm.id,
            )
            .where(models.TransactionWalletOrm.wallet_id == wallet_id)
            .order_by(*self._order())
        )

    @staticmethod
    def _order() -> tuple[ColumnElement[Any], ...]:
        return (
            models.TransactionOrm.timestamp.is_(None),
            models.TransactionOrm.timestamp,
            models.TransactionOrm.block_number,
            models.TransactionOrm.hash,
        )

    def _load(self, stmt: Select[tuple[models.TransactionOrm]]) -> list[UnifiedTransaction]:
        return [self._to_domain(row) for row in self._session.scalars(stmt).all()]

    @staticmethod
    def _to_domain(row: models.TransactionOrm) -> UnifiedTransaction:
        return UnifiedTransaction.model_validate_json(row.payload)


class TaxLotRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def save_many(self, lots: Iterable[TaxLot]) -> None:
        rows = [
            {
                "id": lot.id,
                "wallet_id": lot.wallet_id,
                "asset": lot.asset.model_dump_json(),
                "amount_acquired": lot.amount_acquired,
                "remaining_amount": lot.remaining_amount,
                "cost_basis_fiat": lot.cost_basis_fiat,
                "cost_basis_consumed": lot.cost_basis_consumed,
                "acquired_at": _as_utc(lot.acquired_at),
                "acquisition_tx_id": lot.acquisition_tx_id,
                "source_transfer_id": lot.source_transfer_id,
                "is_closed": lot.is_closed,
            }
            for lot in lots
        ]
        if not rows:
            return

        stmt = insert(models.TaxLotOrm).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={column: getattr(stmt.excluded, column) for column in _TAX_LOT_UPDATE_COLUMNS},
        )
        self._session.execute(stmt)
        self._session.commit()

    def list(self, wallet_id: WalletId | None = None) -> list[TaxLot]:
        stmt = select(models.TaxLotOrm).order_by(models.TaxLotOrm.acquired_at, models.TaxLotOrm.id)
        if wallet_id is not None:
            stmt = stmt.where(models.TaxLotOrm.wallet_id == wallet_id)
        return [self._to_domain(row) for row in self._session.scalars(stmt).all()]

    @staticmethod
    def _to_domain(row: models.TaxLotOrm) -> TaxLot:
        acquired_at = row.acquired_at
        if acquired_at.tzinfo is None:
            acquired_at = acquired_at.replace(tzinfo=timezone.utc)
        return TaxLot(
            id=LotId(row.id),
            wallet_id=WalletId(row.wallet_id),
            asset=Asset.model_validate_json(row.asset),
            amount_acquired=row.amount_acquired,
            remaining_amount=row.remaining_amount,
            cost_basis_fiat=row.cost_basis_fiat,
            cost_basis_consumed=row.cost_basis_consumed,
            acquired_at=acquired_at,
            acquisition_tx_id=TransactionId(row.acquisition_tx_id),
            source_transfer_id=TransferId(row.source_transfer_id) if row.source_transfer_id else None,
            is_closed=row.is_closed,
        )


__all__ = ["TaxLotRepository", "TransactionRepository"]
