from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import Session

from db.db import init_db
from db.repositories import TaxLotRepository, TransactionRepository
from domain.base_types import Chain, TaxCategory, TransactionId, TransactionStatus, TransferId
from domain.tax_lots import TaxLot
from domain.transaction import TransactionFilter, UnifiedTransaction
from tests.constants import (
    ETH,
    EXCHANGE_ETH,
    MAIN_WALLET,
    ONE_ETH,
    ONE_USDC,
    ROUTER_ETH,
    SIDE_WALLET,
    USDC,
    USER_ETH,
    USER_ETH_2,
)
from tests.helpers.time_utils import make_transaction, make_transfer


@pytest.fixture()
def repo(test_session: Session) -> TransactionRepository:
    return TransactionRepository(test_session)


@pytest.fixture()
def lot_repo(test_session: Session) -> TaxLotRepository:
    return TaxLotRepository(test_session)


def _eth_receive(
    timestamp: datetime,
    *,
    tx_hash: str,
    block: int,
    status: TransactionStatus = TransactionStatus.CONFIRMED,
) -> UnifiedTransaction:
    return make_transaction(
        timestamp=timestamp,
        tx_hash=tx_hash,
        block_number=block,
        status=status,
        transfers=[make_transfer(ETH, ONE_ETH, from_address=EXCHANGE_ETH, to_address=USER_ETH)],
    )


def test_upsert_is_idempotent_and_updates_status(repo: TransactionRepository) -> None:
    pending = make_transaction(
        tx_hash="0xabc",
        status=TransactionStatus.PENDING,
        transfers=[make_transfer(ETH, ONE_ETH, from_address=EXCHANGE_ETH, to_address=USER_ETH)],
    )
    repo.upsert(pending, MAIN_WALLET)

    confirmed = pending.model_copy(deep=True, update={"status": TransactionStatus.CONFIRMED, "block_number": 42})
    confirmed.confirmations = 3
    confirmed.assign_category(TaxCategory.PURCHASE)
    repo.upsert(confirmed, MAIN_WALLET)

    stored = repo.get_by_hash(Chain.ETHEREUM, "0xabc")
    assert stored is not None
    assert stored.status == TransactionStatus.CONFIRMED
    assert stored.block_number == 42
    assert stored.tax_category == TaxCategory.PURCHASE
    assert stored.transfers == confirmed.transfers
    assert len(repo.list_for_wallet(MAIN_WALLET)) == 1


def test_shared_transaction_links_to_both_wallets(repo: TransactionRepository) -> None:
    internal = make_transaction(
        tx_hash="0xshared",
        transfers=[make_transfer(ETH, ONE_ETH, from_address=USER_ETH, to_address=USER_ETH_2)],
    )

    repo.upsert(internal, MAIN_WALLET)
    repo.upsert(internal, SIDE_WALLET)

    assert [tx.hash for tx in repo.list_for_wallet(MAIN_WALLET)] == ["0xshared"]
    assert [tx.hash for tx in repo.list_for_wallet(SIDE_WALLET)] == ["0xshared"]


def test_get_by_hash_returns_none_for_unknown(repo: TransactionRepository) -> None:
    assert repo.get_by_hash(Chain.BITCOIN, "missing") is None


def test_get_for_address_filters_and_paginates(repo: TransactionRepository) -> None:
    first = make_transaction(
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        tx_hash="0x01",
        transfers=[make_transfer(ETH, ONE_ETH, from_address=EXCHANGE_ETH, to_address=USER_ETH)],
    )
    second = make_transaction(
        timestamp=datetime(2024, 2, 1, tzinfo=timezone.utc),
        tx_hash="0x02",
        transfers=[make_transfer(USDC, 5 * ONE_USDC, from_address=USER_ETH, to_address=ROUTER_ETH)],
    )
    third = make_transaction(
        timestamp=datetime(2024, 3, 1, tzinfo=timezone.utc),
        tx_hash="0x03",
        transfers=[make_transfer(ETH, ONE_ETH, from_address=USER_ETH, to_address=ROUTER_ETH)],
    )
    unrelated = make_transaction(
        tx_hash="0x04",
        transfers=[make_transfer(ETH, ONE_ETH, from_address=EXCHANGE_ETH, to_address=ROUTER_ETH)],
    )
    repo.upsert_many([third, unrelated, first, second], MAIN_WALLET)

    assert [tx.hash for tx in repo.get_for_address(USER_ETH)] == ["0x01", "0x02", "0x03"]
    assert [tx.hash for tx in repo.get_for_address(USER_ETH, TransactionFilter(asset_symbol="ETH"))] == [
        "0x01",
        "0x03",
    ]
    assert [tx.hash for tx in repo.get_for_address(USER_ETH, TransactionFilter(limit=1, offset=1))] == ["0x02"]


def test_latest_block_ignores_pending_and_other_wallets(repo: TransactionRepository) -> None:
    repo.upsert(_eth_receive(datetime(2024, 1, 1, tzinfo=timezone.utc), tx_hash="0xa", block=10), MAIN_WALLET)
    repo.upsert(
        _eth_receive(
            datetime(2024, 1, 2, tzinfo=timezone.utc), tx_hash="0xb", block=20, status=TransactionStatus.PENDING
        ),
        MAIN_WALLET,
    )
    repo.upsert(_eth_receive(datetime(2024, 1, 3, tzinfo=timezone.utc), tx_hash="0xc", block=30), SIDE_WALLET)

    assert repo.latest_block(MAIN_WALLET, Chain.ETHEREUM) == 10
    assert repo.latest_block(SIDE_WALLET, Chain.ETHEREUM) == 30
    assert repo.latest_block(MAIN_WALLET, Chain.SOLANA) is None


def test_get_in_range_uses_half_open_interval(repo: TransactionRepository) -> None:
    new_year = datetime(2025, 1, 1, tzinfo=timezone.utc)
    repo.upsert_many(
        [
            _eth_receive(datetime(2024, 1, 1, tzinfo=timezone.utc), tx_hash="0xstart", block=1),
            _eth_receive(datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc), tx_hash="0xend", block=2),
            _eth_receive(new_year, tx_hash="0xnext", block=3),
        ],
        MAIN_WALLET,
    )

    in_range = repo.get_in_range(MAIN_WALLET, datetime(2024, 1, 1, tzinfo=timezone.utc), new_year)

    assert [tx.hash for tx in in_range] == ["0xstart", "0xend"]


def test_tax_lots_round_trip_and_update(lot_repo: TaxLotRepository) -> None:
    lot = TaxLot(
        wallet_id=MAIN_WALLET,
        asset=USDC,
        amount_acquired=2**70,
        remaining_amount=2**70,
        cost_basis_fiat=Decimal("1234.56789"),
        acquired_at=datetime(2024, 1, 4, 9, tzinfo=timezone.utc),
        acquisition_tx_id=TransactionId("ethereum:0xlot"),
        source_transfer_id=TransferId("log-3"),
    )
    lot_repo.save_many([lot])

    (stored,) = lot_repo.list(MAIN_WALLET)
    assert stored == lot

    consumed = lot.model_copy(update={"remaining_amount": 0, "cost_basis_consumed": Decimal("1234.56789")})
    consumed.is_closed = True
    lot_repo.save_many([consumed])

    (updated,) = lot_repo.list()
    assert updated.remaining_amount == 0
    assert updated.is_closed
    assert lot_repo.list(SIDE_WALLET) == []


def test_save_many_with_no_lots_is_a_no_op(lot_repo: TaxLotRepository) -> None:
    lot_repo.save_many([])

    assert lot_repo.list() == []


def test_init_db_creates_file_and_schema(tmp_path: Path) -> None:
    db_file = tmp_path / "nested" / "wallet.db"

    session = init_db(db_file=db_file)
    TransactionRepository(session).upsert(make_transaction(tx_hash="0xfile"), MAIN_WALLET)
    session.close()

    assert db_file.exists()
    reopened = init_db(db_file=db_file)
    assert TransactionRepository(reopened).get_by_hash(Chain.ETHEREUM, "0xfile") is not None
    reopened.close()

    fresh = init_db(db_file=db_file, reset=True)
    assert TransactionRepository(fresh).get_by_hash(Chain.ETHEREUM, "0xfile") is None
    fresh.close()
