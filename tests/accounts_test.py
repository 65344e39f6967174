import json
from pathlib import Path

import pytest

from accounts import WalletAccount, load_accounts, normalize_address, parse_chain, wallet_addresses
from domain.base_types import Chain, WalletId


def _write(tmp_path: Path, payload: object) -> Path:
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps(payload))
    return path


def test_parse_chain_accepts_aliases_and_values() -> None:
    assert parse_chain("ETH") == Chain.ETHEREUM
    assert parse_chain(" sol ") == Chain.SOLANA
    assert parse_chain("arbitrum") == Chain.ARBITRUM

    with pytest.raises(ValueError, match="Unsupported chain"):
        parse_chain("dogecoin")


def test_normalize_address_lowercases_evm_only() -> None:
    assert normalize_address("0xAbCDef") == "0xabcdef"
    assert normalize_address("0XABCDEF") == "0xabcdef"
    assert normalize_address("bc1QMixed") == "bc1QMixed"


def test_load_accounts_merges_duplicate_addresses(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        [
            {"name": "main", "address": "0xAAAA", "chains": ["eth"]},
            {"name": "main", "address": "0xaaaa", "chains": ["arb", "ethereum"]},
            {"name": "cold", "wallet_id": "main", "address": "bc1qcold", "chains": ["btc"], "skip_sync": True},
        ],
    )

    accounts = load_accounts(path)

    assert accounts == [
        WalletAccount(
            wallet_id=WalletId("main"), name="main", address="0xaaaa", chains=[Chain.ETHEREUM, Chain.ARBITRUM]
        ),
        WalletAccount(
            wallet_id=WalletId("main"), name="cold", address="bc1qcold", chains=[Chain.BITCOIN], skip_sync=True
        ),
    ]
    assert wallet_addresses(accounts) == {WalletId("main"): {"0xaaaa", "bc1qcold"}}


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "main"},
        ["not-an-object"],
        [{"name": "main", "address": "0x1"}],
        [{"name": "main", "address": "0x1", "chains": "eth"}],
    ],
)
def test_load_accounts_rejects_malformed_files(tmp_path: Path, payload: object) -> None:
    with pytest.raises(ValueError):
        load_accounts(_write(tmp_path, payload))
