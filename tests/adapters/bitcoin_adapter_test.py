from typing import Any
from unittest.mock import Mock

import pytest

from adapters.bitcoin import BitcoinAdapter
from clients.esplora import EsploraClient
from domain.base_types import UNKNOWN_ADDRESS, TransactionDirection, TransactionStatus
from domain.transaction import BitcoinData
from tests.constants import MERCHANT_BTC, ONE_BTC, USER_BTC, USER_BTC_CHANGE

TIP_HEIGHT = 840_010


def _vin(address: str | None, value: int | None, *, sequence: int = 0xFFFFFFFF, witness: bool = True) -> dict[str, Any]:
    return {
        "txid": "ab" * 32,
        "vout": 0,
        "prevout": {"scriptpubkey_address": address, "value": value},
        "witness": ["3044"] if witness else [],
        "sequence": sequence,
    }


def _vout(address: str | None, value: int | None) -> dict[str, Any]:
    return {"scriptpubkey_address": address, "value": value, "scriptpubkey_type": "v0_p2wpkh"}


def _raw_tx(vin: list[dict[str, Any]], vout: list[dict[str, Any]], *, confirmed: bool = True) -> dict[str, Any]:
    status: dict[str, Any] = {"confirmed": confirmed}
    if confirmed:
        status.update(block_height=840_001, block_hash="00" * 32, block_time=1_713_571_767)
    return {
        "txid": "cd" * 32,
        "version": 2,
        "locktime": 0,
        "weight": 800,
        "vin": vin,
        "vout": vout,
        "status": status,
    }


@pytest.fixture
def adapter() -> BitcoinAdapter:
    client = Mock(spec=EsploraClient)
    client.get_tip_height.return_value = TIP_HEIGHT
    return BitcoinAdapter(client)


def test_payment_with_change(adapter: BitcoinAdapter) -> None:
    raw = _raw_tx(
        [_vin(USER_BTC, ONE_BTC)],
        [_vout(MERCHANT_BTC, 60_000_000), _vout(USER_BTC_CHANGE, 39_900_000)],
    )

    tx = adapter.transform_raw(raw, {USER_BTC, USER_BTC_CHANGE}, tip_height=TIP_HEIGHT)

    assert tx.direction == TransactionDirection.OUTGOING
    assert tx.status == TransactionStatus.CONFIRMED
    assert tx.confirmations == TIP_HEIGHT - 840_001 + 1
    assert tx.fee.amount.raw == 100_000
    assert tx.fee.payer == USER_BTC
    assert tx.fee.fee_rate == {"sat_per_vbyte": "500"}
    assert [(t.to_address, t.amount.raw, t.is_change) for t in tx.transfers] == [
        (MERCHANT_BTC, 60_000_000, False),
        (USER_BTC_CHANGE, 39_900_000, True),
    ]
    # Inputs are conserved: outputs plus fee.
    assert sum(t.amount.raw for t in tx.transfers) + tx.fee.amount.raw == ONE_BTC
    assert isinstance(tx.chain_specific, BitcoinData)
    assert tx.chain_specific.is_segwit is True
    assert tx.chain_specific.is_rbf is False
    assert tx.chain_specific.vsize == 200


def test_incoming_from_multiple_senders(adapter: BitcoinAdapter) -> None:
    raw = _raw_tx(
        [_vin(MERCHANT_BTC, 30_000_000), _vin("bc1qother", 30_000_000, sequence=1)],
        [_vout(USER_BTC, 59_990_000)],
    )

    tx = adapter.transform_raw(raw, {USER_BTC}, tip_height=TIP_HEIGHT)

    assert tx.direction == TransactionDirection.INCOMING
    assert tx.transfers[0].from_address == f"{MERCHANT_BTC},bc1qother"
    assert tx.transfers[0].is_change is False
    assert tx.chain_specific.is_rbf is True  # type: ignore[union-attr]


def test_consolidation_is_self(adapter: BitcoinAdapter) -> None:
    raw = _raw_tx(
        [_vin(USER_BTC, ONE_BTC), _vin(USER_BTC_CHANGE, ONE_BTC)],
        [_vout(USER_BTC, 2 * ONE_BTC - 1_000)],
    )

    tx = adapter.transform_raw(raw, {USER_BTC, USER_BTC_CHANGE}, tip_height=TIP_HEIGHT)

    assert tx.direction == TransactionDirection.SELF
    assert tx.fee.amount.raw == 1_000


def test_coinbase_has_no_fee_and_unknown_sender(adapter: BitcoinAdapter) -> None:
    coinbase = {"is_coinbase": True, "sequence": 0xFFFFFFFF}
    raw = _raw_tx([coinbase], [_vout(USER_BTC, 312_500_000)])

    tx = adapter.transform_raw(raw, {USER_BTC}, tip_height=TIP_HEIGHT)

    assert tx.fee.amount.raw == 0
    assert tx.transfers[0].from_address == UNKNOWN_ADDRESS
    assert tx.direction == TransactionDirection.INCOMING


def test_unconfirmed_is_pending(adapter: BitcoinAdapter) -> None:
    raw = _raw_tx([_vin(MERCHANT_BTC, ONE_BTC)], [_vout(USER_BTC, ONE_BTC - 500)], confirmed=False)

    tx = adapter.transform_raw(raw, {USER_BTC}, tip_height=TIP_HEIGHT)

    assert tx.status == TransactionStatus.PENDING
    assert tx.confirmations == 0
    assert tx.block_number is None
    assert tx.timestamp is None


@pytest.mark.parametrize(
    "raw",
    [
        _raw_tx([_vin(USER_BTC, None)], [_vout(MERCHANT_BTC, 1_000)]),
        _raw_tx([_vin(USER_BTC, 1_000)], [_vout(MERCHANT_BTC, 2_000)]),
        _raw_tx([], [_vout(MERCHANT_BTC, 1_000)]),
    ],
)
def test_malformed_transaction_becomes_failed_record(adapter: BitcoinAdapter, raw: dict[str, Any]) -> None:
    adapter.client.get_transaction.return_value = raw  # type: ignore[attr-defined]

    tx = adapter.transform_transaction(raw["txid"], [USER_BTC])

    assert tx.status == TransactionStatus.FAILED
    assert tx.transfers == []
    assert tx.warnings[0].startswith("parse_error:")


def test_get_transactions_resumes_from_block(adapter: BitcoinAdapter) -> None:
    client: Mock = adapter.client  # type: ignore[assignment]
    client.get_address_transactions.return_value = [
        _raw_tx([_vin(MERCHANT_BTC, ONE_BTC)], [_vout(USER_BTC, ONE_BTC - 500)])
    ]

    txs = adapter.get_transactions(USER_BTC, 840_000)

    client.get_address_transactions.assert_called_once_with(USER_BTC, min_height=840_000)
    assert [tx.direction for tx in txs] == [TransactionDirection.INCOMING]


def test_get_balance(adapter: BitcoinAdapter) -> None:
    client: Mock = adapter.client  # type: ignore[assignment]
    client.get_address_stats.return_value = {"chain_stats": {"funded_txo_sum": 5_000, "spent_txo_sum": 1_500}}

    (balance,) = adapter.get_balance(USER_BTC)

    assert balance.raw == 3_500
    assert balance.asset.symbol == "BTC"


def test_history_keeps_going_past_unparseable_values(adapter: BitcoinAdapter) -> None:
    client: Mock = adapter.client  # type: ignore[assignment]
    broken = _raw_tx([_vin(MERCHANT_BTC, ONE_BTC)], [_vout(USER_BTC, ONE_BTC - 500)])
    broken["txid"] = "ef" * 32
    broken["vout"][0]["value"] = "lots"
    client.get_address_transactions.return_value = [
        broken,
        _raw_tx([_vin(MERCHANT_BTC, ONE_BTC)], [_vout(USER_BTC, ONE_BTC - 500)]),
    ]

    failed, ok = adapter.get_transactions(USER_BTC)

    assert failed.hash == "ef" * 32
    assert failed.status == TransactionStatus.FAILED
    assert failed.transfers == []
    assert failed.warnings[0].startswith("parse_error:malformed data: ValueError")
    assert ok.status == TransactionStatus.CONFIRMED
