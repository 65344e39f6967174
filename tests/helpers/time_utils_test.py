from datetime import datetime, timezone
from random import Random

from domain.base_types import Chain, TransactionStatus
from tests.constants import ETH, EXCHANGE_ETH, ONE_ETH, USER_ETH
from tests.helpers.time_utils import TimeGenerator, make_transaction, make_transfer


def test_time_generator_increases_with_seed() -> None:
    gen = TimeGenerator(_rng=Random(42))

    ts1, ts2, ts3 = gen(), gen(), gen()

    assert ts1 < ts2 < ts3
    gaps = [(ts2 - ts1).total_seconds(), (ts3 - ts2).total_seconds()]
    for gap in gaps:
        assert 5 <= gap <= 60

    # Deterministic given the same seed
    gen_again = TimeGenerator(_rng=Random(42))
    ts1_b, ts2_b, ts3_b = gen_again(), gen_again(), gen_again()
    assert gaps == [(ts2_b - ts1_b).total_seconds(), (ts3_b - ts2_b).total_seconds()]


def test_make_transaction_uses_generator_when_timestamp_missing() -> None:
    gen = TimeGenerator(_rng=Random(1))

    first = make_transaction(ts_gen=gen)
    second = make_transaction(ts_gen=gen)

    assert first.timestamp is not None and second.timestamp is not None
    assert first.timestamp < second.timestamp
    assert first.timestamp.tzinfo == timezone.utc
    assert first.id != second.id


def test_make_transaction_respects_provided_values() -> None:
    explicit_ts = datetime(2024, 2, 1, tzinfo=timezone.utc)
    transfer = make_transfer(ETH, ONE_ETH, from_address=EXCHANGE_ETH, to_address=USER_ETH, fiat="2000")

    tx = make_transaction(
        transfers=[transfer],
        timestamp=explicit_ts,
        tx_hash="0xabc",
        status=TransactionStatus.PENDING,
    )

    assert tx.timestamp == explicit_ts
    assert tx.id == f"{Chain.ETHEREUM.value}:0xabc"
    assert tx.confirmations == 0
    assert tx.transfers[0].amount.fiat_value is not None
    assert tx.transfers[0].amount.formatted == "1"
