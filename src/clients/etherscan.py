from __future__ import annotations

import logging
from typing import Any

from domain.base_types import Chain
from domain.errors import NetworkError, TransactionNotFoundError

from .http import JsonApiClient

logger = logging.getLogger(__name__)

CHAIN_IDS: dict[Chain, int] = {
    Chain.ETHEREUM: 1,
    Chain.OPTIMISM: 10,
    Chain.POLYGON: 137,
    Chain.BASE: 8453,
    Chain.ARBITRUM: 42161,
}

NO_RESULTS_MESSAGES = ("No transactions found", "No records found")
PAGE_SIZE = 1000


class EtherscanAPIError(NetworkError):
    pass


class EtherscanClient(JsonApiClient):
    """Etherscan V2 multichain API: account history plus JSON-RPC proxy calls."""

    error_cls = EtherscanAPIError
    service_name = "Etherscan API"

    def __init__(
        self,
        chain: Chain,
        *,
        api_key: str | None = None,
        base_url: str = "https://api.etherscan.io/v2/api",
        **kwargs: Any,
    ) -> None:
        if chain not in CHAIN_IDS:
            msg = f"Etherscan does not support chain {chain}"
            raise ValueError(msg)
        super().__init__(base_url, **kwargs)
        self.chain = chain
        self.chain_id = CHAIN_IDS[chain]
        self.api_key = api_key

    # proxy module (JSON-RPC shaped results)

    def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        result = self._proxy("eth_getTransactionByHash", txhash=tx_hash)
        if result is None:
            raise TransactionNotFoundError(tx_hash)
        return result

    def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return self._proxy("eth_getTransactionReceipt", txhash=tx_hash)

    def get_block(self, block_number: int) -> dict[str, Any] | None:
        return self._proxy("eth_getBlockByNumber", tag=hex(block_number), boolean="false")

    def get_block_number(self) -> int:
        result = self._proxy("eth_blockNumber")
        if not isinstance(result, str):
            raise EtherscanAPIError("Etherscan API returned non-hex block number", payload=result)
        return int(result, 16)

    # account module

    def get_internal_transactions(self, tx_hash: str) -> list[dict[str, Any]]:
        return self._account_list("txlistinternal", txhash=tx_hash)

    def get_normal_transactions(self, address: str, *, start_block: int = 0) -> list[dict[str, Any]]:
        return self._paged("txlist", address=address, start_block=start_block)

    def get_token_transfers(self, address: str, *, start_block: int = 0) -> list[dict[str, Any]]:
        return self._paged("tokentx", address=address, start_block=start_block)

    def get_nft_transfers(self, address: str, *, start_block: int = 0) -> list[dict[str, Any]]:
        return self._paged("tokennfttx", address=address, start_block=start_block)

    def get_balance(self, address: str) -> int:
        result = self._account("balance", address=address, tag="latest")
        return int(result)

    def get_token_balance(self, address: str, contract_address: str) -> int:
        result = self._account("tokenbalance", address=address, contractaddress=contract_address, tag="latest")
        return int(result)

    def _paged(self, action: str, *, address: str, start_block: int) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = self._account_list(
                action,
                address=address,
                startblock=start_block,
                endblock=99999999,
                page=page,
                offset=PAGE_SIZE,
                sort="asc",
            )
            entries.extend(batch)
            logger.debug(
                "Fetched %s page=%d size=%d chain=%s address=%s", action, page, len(batch), self.chain, address
            )
            if len(batch) < PAGE_SIZE:
                return entries
            page += 1

    def _account_list(self, action: str, **params: Any) -> list[dict[str, Any]]:
        result = self._account(action, **params)
        if not isinstance(result, list):
            raise EtherscanAPIError(f"Etherscan {action} returned unexpected payload", payload=result)
        return result

    def _account(self, action: str, **params: Any) -> Any:
        payload = self._call("account", action, **params)
        status = str(payload.get("status", ""))
        message = str(payload.get("message", ""))
        if status == "1":
            return payload.get("result")
        if any(message.startswith(marker) for marker in NO_RESULTS_MESSAGES):
            return []
        raise EtherscanAPIError(
            f"Etherscan {action} failed: {message} {payload.get('result', '')}".strip(),
            payload=payload,
        )

    def _proxy(self, action: str, **params: Any) -> Any:
        payload = self._call("proxy", action, **params)
        error = payload.get("error")
        if isinstance(error, dict):
            raise EtherscanAPIError(
                f"Etherscan {action} failed: {error.get('message', 'unknown error')}", payload=payload
            )
        if payload.get("status") == "0":
            raise EtherscanAPIError(f"Etherscan {action} failed: {payload.get('result', '')}", payload=payload)
        return payload.get("result")

    def _call(self, module: str, action: str, **params: Any) -> dict[str, Any]:
        query: dict[str, Any] = {"chainid": self.chain_id, "module": module, "action": action, **params}
        if self.api_key:
            query["apikey"] = self.api_key
        payload = self._request("GET", params=query)
        if not isinstance(payload, dict):
            raise EtherscanAPIError("Etherscan API returned unexpected payload type", payload=payload)
        return payload


__all__ = ["CHAIN_IDS", "EtherscanAPIError", "EtherscanClient"]
