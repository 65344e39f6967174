from __future__ import annotations

import pytest

from clients.etherscan import PAGE_SIZE, EtherscanAPIError, EtherscanClient
from domain.base_types import Chain
from domain.errors import TransactionNotFoundError
from tests.helpers.http_responses import mock_session


def test_unsupported_chain() -> None:
    with pytest.raises(ValueError):
        EtherscanClient(Chain.SOLANA)


def test_proxy_calls_carry_chain_id_and_key() -> None:
    session = mock_session({"jsonrpc": "2.0", "id": 1, "result": "0x10"})
    client = EtherscanClient(Chain.ARBITRUM, api_key="secret", session=session)

    assert client.get_block_number() == 16

    params = session.request.call_args.kwargs["params"]
    assert params["chainid"] == 42161
    assert params["module"] == "proxy"
    assert params["action"] == "eth_blockNumber"
    assert params["apikey"] == "secret"


def test_missing_transaction() -> None:
    session = mock_session({"jsonrpc": "2.0", "id": 1, "result": None})

    with pytest.raises(TransactionNotFoundError):
        EtherscanClient(Chain.ETHEREUM, session=session).get_transaction("0xabc")


def test_proxy_error() -> None:
    session = mock_session({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "bad"}})

    with pytest.raises(EtherscanAPIError, match="bad"):
        EtherscanClient(Chain.ETHEREUM, session=session).get_receipt("0xabc")


def test_account_history_pages() -> None:
    full = {"status": "1", "message": "OK", "result": [{"hash": f"0x{i}"} for i in range(PAGE_SIZE)]}
    last = {"status": "1", "message": "OK", "result": [{"hash": "0xlast"}]}
    session = mock_session(full, last)

    entries = EtherscanClient(Chain.ETHEREUM, session=session).get_normal_transactions("0xuser", start_block=100)

    assert len(entries) == PAGE_SIZE + 1
    pages = [call.kwargs["params"]["page"] for call in session.request.call_args_list]
    assert pages == [1, 2]
    assert session.request.call_args.kwargs["params"]["startblock"] == 100


def test_no_results_is_empty_list() -> None:
    session = mock_session({"status": "0", "message": "No transactions found", "result": []})

    assert EtherscanClient(Chain.ETHEREUM, session=session).get_token_transfers("0xuser") == []


def test_account_error() -> None:
    session = mock_session({"status": "0", "message": "NOTOK", "result": "Invalid API Key"})

    with pytest.raises(EtherscanAPIError, match="Invalid API Key"):
        EtherscanClient(Chain.ETHEREUM, session=session).get_balance("0xuser")
