from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from clients.etherscan import EtherscanClient
from domain.assets import Amount, Asset
from domain.base_types import (
    UNKNOWN_ADDRESS,
    Address,
    AssetKind,
    TransactionDirection,
    TransactionStatus,
    TransferId,
    TransferType,
)
from domain.errors import ParseError, TransactionNotFoundError
from domain.transaction import (
    ContractInteraction,
    EthereumData,
    EthereumInternalTransaction,
    EthereumLog,
    Fee,
    Transfer,
    UnifiedTransaction,
)

from .base import MALFORMED_DATA_ERRORS, ChainAdapter, transaction_id
from .normalizer import check_integrity, is_swap, ownership_direction, sort_transfers
from .token_registry import TokenRegistry

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)"), shared by ERC-20 and ERC-721.
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
EMPTY_INPUT = ("", "0x")


def parse_quantity(value: Any) -> int | None:
    """JSON-RPC hex quantities and Etherscan decimal strings alike."""
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    text = str(value)
    try:
        if text.startswith(("0x", "0X")):
            return int(text, 16) if len(text) > 2 else 0
        return int(text)
    except ValueError as exc:
        raise ParseError(f"invalid quantity {text!r}") from exc


def topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


class EthereumAdapter(ChainAdapter):
    """EVM adapter over JSON-RPC shaped transactions and receipts (via the Etherscan proxy)."""

    def __init__(self, client: EtherscanClient, *, token_registry: TokenRegistry | None = None) -> None:
        super().__init__(client.chain, token_registry=token_registry)
        self.client = client

    def normalize_address(self, address: str) -> str:
        return address.lower()

    def transform_transaction(self, tx_hash: str, user_addresses: Iterable[str]) -> UnifiedTransaction:
        owned = {self.normalize_address(address) for address in user_addresses}
        return self._fetch_and_transform(tx_hash, owned, latest_block=self.client.get_block_number(), blocks={})

    def get_transactions(
        self,
        address: str,
        from_block: int | None = None,
        *,
        user_addresses: Iterable[str] | None = None,
    ) -> list[UnifiedTransaction]:
        owned = self._owned(address, user_addresses)
        start = from_block or 0
        normal = self.client.get_normal_transactions(address, start_block=start)
        tokens = self.client.get_token_transfers(address, start_block=start)
        nfts = self.client.get_nft_transfers(address, start_block=start)
        self._register_token_metadata(tokens, kind=AssetKind.TOKEN)
        self._register_token_metadata(nfts, kind=AssetKind.NFT)

        ordered: dict[str, tuple[int, int]] = {}
        for entry in (*normal, *tokens, *nfts):
            if not entry.get("hash"):
                raise ParseError(f"history entry without hash for address={address}")
            ordered.setdefault(
                str(entry["hash"]).lower(),
                (parse_quantity(entry.get("blockNumber")) or 0, parse_quantity(entry.get("transactionIndex")) or 0),
            )
        hashes = sorted(ordered, key=lambda tx_hash: ordered[tx_hash])
        logger.info("Found %d %s transactions for address=%s from_block=%d", len(hashes), self.chain, address, start)

        latest_block = self.client.get_block_number()
        blocks: dict[int, dict[str, Any] | None] = {}
        transactions: list[UnifiedTransaction] = []
        for tx_hash in hashes:
            try:
                transactions.append(self._fetch_and_transform(tx_hash, owned, latest_block=latest_block, blocks=blocks))
            except TransactionNotFoundError:
                logger.warning(
                    "Skipping %s transaction %s listed for address=%s: not found", self.chain, tx_hash, address
                )
        return transactions

    def get_balance(self, address: str) -> list[Amount]:
        balances = [Amount.of(self.native_asset, self.client.get_balance(address))]
        for token in self.tokens.tokens_for(self.chain):
            if token.kind != AssetKind.TOKEN or token.contract_address is None:
                continue
            raw = self.client.get_token_balance(address, token.contract_address)
            if raw:
                balances.append(Amount.of(token, raw))
        return balances

    def _fetch_and_transform(
        self,
        tx_hash: str,
        owned: set[str],
        *,
        latest_block: int | None,
        blocks: dict[int, dict[str, Any] | None],
    ) -> UnifiedTransaction:
        tx = self.client.get_transaction(tx_hash)
        receipt = self.client.get_receipt(tx_hash)
        raw = {"transaction": tx, "receipt": receipt}
        try:
            block_number = parse_quantity(tx.get("blockNumber"))
        except ParseError as err:
            return self.failed_transaction(tx_hash, err, raw)
        block = None
        if block_number is not None:
            if block_number not in blocks:
                blocks[block_number] = self.client.get_block(block_number)
            block = blocks[block_number]
        internal = self.client.get_internal_transactions(tx_hash) if receipt is not None else []
        try:
            return self.transform_raw(
                tx, receipt, user_addresses=owned, block=block, internal=internal, latest_block=latest_block
            )
        except MALFORMED_DATA_ERRORS as err:
            return self.failed_transaction(tx_hash, err, raw)

    def _register_token_metadata(self, entries: Sequence[dict[str, Any]], *, kind: AssetKind) -> None:
        for entry in entries:
            contract = entry.get("contractAddress")
            if not contract:
                continue
            decimals = parse_quantity(entry.get("tokenDecimal")) or 0
            self.tokens.register(
                Asset.token(
                    self.chain,
                    str(contract),
                    symbol=str(entry.get("tokenSymbol") or "UNKNOWN"),
                    name=str(entry.get("tokenName") or contract),
                    decimals=decimals if kind == AssetKind.TOKEN else 0,
                    kind=kind,
                )
            )

    def transform_raw(
        self,
        tx: dict[str, Any],
        receipt: dict[str, Any] | None,
        *,
        user_addresses: set[str],
        block: dict[str, Any] | None = None,
        internal: Sequence[dict[str, Any]] = (),
        latest_block: int | None = None,
    ) -> UnifiedTransaction:
        tx_hash = str(tx.get("hash") or "").lower()
        if not tx_hash:
            raise ParseError("transaction without hash")
        sender = str(tx.get("from") or "").lower()
        if not sender:
            raise ParseError("transaction without sender", tx_hash=tx_hash)
        value = parse_quantity(tx.get("value"))
        if value is None:
            raise ParseError("transaction without value", tx_hash=tx_hash)

        status = self._status(receipt)
        warnings: list[str] = []
        contract_created = (receipt or {}).get("contractAddress")
        recipient = str(tx.get("to") or contract_created or UNKNOWN_ADDRESS).lower()

        transfers = [
            Transfer(
                id=TransferId(f"{tx_hash}:native"),
                from_address=Address(sender),
                to_address=Address(recipient),
                amount=Amount.of(self.native_asset, value),
                transfer_type=TransferType.NATIVE,
            )
        ]
        logs = [self._parse_log(entry) for entry in (receipt or {}).get("logs") or []]
        for log in sorted(logs, key=lambda entry: entry.log_index):
            transfer = self._log_transfer(tx_hash, log, warnings)
            if transfer is not None:
                transfers.append(transfer)

        internal_txs = [self._parse_internal(idx, entry) for idx, entry in enumerate(internal)]
        for call in internal_txs:
            if call.error or call.value == 0:
                continue
            transfers.append(
                Transfer(
                    id=TransferId(f"{tx_hash}:internal:{call.trace_index}"),
                    from_address=Address(call.from_address),
                    to_address=Address(call.to_address or UNKNOWN_ADDRESS),
                    amount=Amount.of(self.native_asset, call.value),
                    transfer_type=TransferType.INTERNAL,
                    log_index=call.trace_index,
                )
            )
        transfers = sort_transfers(transfers)

        base_fee = parse_quantity((block or {}).get("baseFeePerGas"))
        effective_gas_price = self._effective_gas_price(tx_hash, tx, receipt, base_fee)
        gas_used = parse_quantity((receipt or {}).get("gasUsed")) or 0
        input_data = str(tx.get("input") or "0x")

        interactions: list[ContractInteraction] = []
        if input_data not in EMPTY_INPUT and tx.get("to"):
            interactions.append(ContractInteraction(address=recipient, method=input_data[:10], type="call"))
        elif contract_created:
            interactions.append(ContractInteraction(address=str(contract_created).lower(), type="create"))

        block_number = parse_quantity(tx.get("blockNumber"))
        confirmations = 0
        if block_number is not None and latest_block is not None and status != TransactionStatus.PENDING:
            confirmations = max(latest_block - block_number + 1, 0)
        timestamp_raw = parse_quantity((block or {}).get("timestamp"))

        unified = UnifiedTransaction(
            id=transaction_id(self.chain, tx_hash),
            chain=self.chain,
            hash=tx_hash,
            block_number=block_number,
            block_hash=tx.get("blockHash"),
            transaction_index=parse_quantity(tx.get("transactionIndex")),
            timestamp=datetime.fromtimestamp(timestamp_raw, tz=timezone.utc) if timestamp_raw is not None else None,
            confirmations=confirmations,
            status=status,
            direction=self._direction(transfers, status, sender, user_addresses),
            fee=Fee(
                amount=Amount.of(self.native_asset, gas_used * effective_gas_price),
                fee_rate={"gas_used": str(gas_used), "effective_gas_price": str(effective_gas_price)},
                payer=Address(sender),
            ),
            transfers=transfers,
            contract_interactions=interactions,
            warnings=warnings,
            chain_specific=EthereumData(
                from_address=sender,
                to_address=str(tx["to"]).lower() if tx.get("to") else None,
                value=value,
                gas_limit=parse_quantity(tx.get("gas")) or 0,
                gas_used=gas_used,
                gas_price=parse_quantity(tx.get("gasPrice")),
                max_fee_per_gas=parse_quantity(tx.get("maxFeePerGas")),
                max_priority_fee_per_gas=parse_quantity(tx.get("maxPriorityFeePerGas")),
                base_fee_per_gas=base_fee,
                effective_gas_price=effective_gas_price,
                tx_type=parse_quantity(tx.get("type")) or 0,
                nonce=parse_quantity(tx.get("nonce")) or 0,
                input=input_data,
                contract_address=str(contract_created).lower() if contract_created else None,
                logs=logs,
                internal_transactions=internal_txs,
            ),
        )
        return check_integrity(unified)

    @staticmethod
    def _status(receipt: dict[str, Any] | None) -> TransactionStatus:
        if receipt is None or receipt.get("blockNumber") is None:
            return TransactionStatus.PENDING
        status = parse_quantity(receipt.get("status"))
        # Pre-Byzantium receipts carry a state root instead of a status.
        if status is None or status == 1:
            return TransactionStatus.CONFIRMED
        return TransactionStatus.FAILED

    @staticmethod
    def _effective_gas_price(
        tx_hash: str, tx: dict[str, Any], receipt: dict[str, Any] | None, base_fee: int | None
    ) -> int:
        from_receipt = parse_quantity((receipt or {}).get("effectiveGasPrice"))
        if from_receipt is not None:
            return from_receipt
        max_fee = parse_quantity(tx.get("maxFeePerGas"))
        max_priority = parse_quantity(tx.get("maxPriorityFeePerGas"))
        if max_fee is not None and max_priority is not None and base_fee is not None:
            return min(max_fee, base_fee + max_priority)
        gas_price = parse_quantity(tx.get("gasPrice"))
        if gas_price is not None:
            return gas_price
        raise ParseError("no gas price information", tx_hash=tx_hash)

    @staticmethod
    def _parse_log(entry: dict[str, Any]) -> EthereumLog:
        log_index = parse_quantity(entry.get("logIndex"))
        if log_index is None:
            raise ParseError(f"log without logIndex: {entry}")
        return EthereumLog(
            log_index=log_index,
            address=str(entry.get("address") or "").lower(),
            topics=[str(topic).lower() for topic in entry.get("topics") or []],
            data=str(entry.get("data") or "0x"),
        )

    @staticmethod
    def _parse_internal(idx: int, entry: dict[str, Any]) -> EthereumInternalTransaction:
        return EthereumInternalTransaction(
            trace_index=idx,
            type=str(entry.get("type") or "call"),
            from_address=str(entry.get("from") or "").lower(),
            to_address=str(entry.get("to") or entry.get("contractAddress") or "").lower(),
            value=parse_quantity(entry.get("value")) or 0,
            gas=parse_quantity(entry.get("gas")) or 0,
            gas_used=parse_quantity(entry.get("gasUsed")) or 0,
            error=None if str(entry.get("isError", "0")) == "0" else str(entry.get("errCode") or "reverted"),
        )

    def _log_transfer(self, tx_hash: str, log: EthereumLog, warnings: list[str]) -> Transfer | None:
        if not log.topics or log.topics[0] != TRANSFER_TOPIC:
            return None
        if len(log.topics) == 3:
            raw = parse_quantity(log.data) or 0
            asset, warning = self.tokens.resolve_or_placeholder(self.chain, log.address)
            transfer_type = TransferType.TOKEN
        elif len(log.topics) == 4:
            raw = 1
            asset = self.tokens.resolve_nft(self.chain, log.address, str(parse_quantity(log.topics[3])))
            warning = None
            transfer_type = TransferType.NFT
        else:
            return None
        if warning and warning not in warnings:
            warnings.append(warning)
        return Transfer(
            id=TransferId(f"{tx_hash}:log:{log.log_index}"),
            from_address=Address(topic_to_address(log.topics[1])),
            to_address=Address(topic_to_address(log.topics[2])),
            amount=Amount.of(asset, raw),
            transfer_type=transfer_type,
            log_index=log.log_index,
        )

    @staticmethod
    def _direction(
        transfers: list[Transfer], status: TransactionStatus, sender: str, owned: set[str]
    ) -> TransactionDirection:
        if status == TransactionStatus.FAILED:
            return TransactionDirection.OUTGOING if sender in owned else TransactionDirection.CONTRACT
        touching = [
            t for t in transfers if t.amount.raw > 0 and (t.from_address in owned or t.to_address in owned)
        ]
        token_legs = [t for t in touching if t.transfer_type in (TransferType.TOKEN, TransferType.NFT)]
        if len(token_legs) >= 2 and is_swap(touching, owned):
            return TransactionDirection.SWAP
        if not touching:
            return TransactionDirection.CONTRACT
        return ownership_direction(touching, owned)


__all__ = ["EthereumAdapter", "TRANSFER_TOPIC", "parse_quantity"]
