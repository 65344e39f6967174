from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from math import ceil
from typing import Any, Iterable

from clients.esplora import EsploraClient
from domain.assets import Amount
from domain.base_types import (
    UNKNOWN_ADDRESS,
    Address,
    Chain,
    TransactionDirection,
    TransactionStatus,
    TransferId,
    TransferType,
)
from domain.errors import ParseError
from domain.transaction import BitcoinData, BitcoinInput, BitcoinOutput, Fee, Transfer, UnifiedTransaction
from utils.formatting import format_decimal

from .base import MALFORMED_DATA_ERRORS, ChainAdapter, transaction_id
from .normalizer import check_integrity, sort_transfers
from .token_registry import TokenRegistry

logger = logging.getLogger(__name__)

# nSequence below this value signals opt-in replace-by-fee (BIP 125).
RBF_SEQUENCE_THRESHOLD = 0xFFFFFFFE
FEE_RATE_PRECISION = Decimal("0.001")


class BitcoinAdapter(ChainAdapter):
    """UTXO adapter over Esplora-shaped transactions."""

    def __init__(self, client: EsploraClient, *, token_registry: TokenRegistry | None = None) -> None:
        super().__init__(Chain.BITCOIN, token_registry=token_registry)
        self.client = client

    def transform_transaction(self, tx_hash: str, user_addresses: Iterable[str]) -> UnifiedTransaction:
        raw = self.client.get_transaction(tx_hash)
        tip_height = self.client.get_tip_height()
        return self._transform_or_fail(raw, set(user_addresses), tip_height=tip_height)

    def get_transactions(
        self,
        address: str,
        from_block: int | None = None,
        *,
        user_addresses: Iterable[str] | None = None,
    ) -> list[UnifiedTransaction]:
        owned = self._owned(address, user_addresses)
        tip_height = self.client.get_tip_height()
        raw_txs = self.client.get_address_transactions(address, min_height=from_block)
        logger.info("Fetched %d bitcoin transactions for address=%s", len(raw_txs), address)
        return [self._transform_or_fail(raw, owned, tip_height=tip_height) for raw in raw_txs]

    def get_balance(self, address: str) -> list[Amount]:
        stats = self.client.get_address_stats(address)
        chain_stats = stats.get("chain_stats") or {}
        balance = int(chain_stats.get("funded_txo_sum", 0)) - int(chain_stats.get("spent_txo_sum", 0))
        return [Amount.of(self.native_asset, balance)]

    def _transform_or_fail(self, raw: dict[str, Any], owned: set[str], *, tip_height: int) -> UnifiedTransaction:
        try:
            return self.transform_raw(raw, owned, tip_height=tip_height)
        except MALFORMED_DATA_ERRORS as err:
            return self.failed_transaction(str(raw.get("txid", "")) or "unknown", err, raw)

    def transform_raw(self, raw: dict[str, Any], user_addresses: set[str], *, tip_height: int) -> UnifiedTransaction:
        txid = raw.get("txid")
        if not txid:
            raise ParseError("transaction without txid")

        inputs = [self._parse_input(txid, vin) for vin in raw.get("vin") or []]
        outputs = [self._parse_output(txid, n, vout) for n, vout in enumerate(raw.get("vout") or [])]
        if not inputs or not outputs:
            raise ParseError("transaction without inputs or outputs", tx_hash=txid)

        is_coinbase = any(vin.is_coinbase for vin in inputs)
        fee_sats = 0 if is_coinbase else self._fee(txid, inputs, outputs)

        input_addresses = list(dict.fromkeys(vin.address for vin in inputs if vin.address))
        all_resolved = not is_coinbase and all(vin.address for vin in inputs)
        sender = Address(",".join(input_addresses)) if all_resolved else UNKNOWN_ADDRESS

        owned_inputs = any(address in user_addresses for address in input_addresses)
        owned_outputs = [out.address is not None and out.address in user_addresses for out in outputs]
        direction = self._direction(
            owned_inputs, owned_outputs, all_inputs_owned=self._all_owned(inputs, user_addresses)
        )

        transfers = [
            Transfer(
                id=TransferId(f"{txid}:{out.n}"),
                from_address=sender,
                to_address=Address(out.address or UNKNOWN_ADDRESS),
                amount=Amount.of(self.native_asset, out.value),
                transfer_type=TransferType.NATIVE,
                log_index=out.n,
                is_change=direction == TransactionDirection.OUTGOING and owned,
            )
            for out, owned in zip(outputs, owned_outputs)
        ]

        status_raw = raw.get("status") or {}
        confirmed = bool(status_raw.get("confirmed"))
        block_height = status_raw.get("block_height")
        confirmations = tip_height - block_height + 1 if confirmed and block_height is not None else 0
        block_time = status_raw.get("block_time")

        weight = int(raw.get("weight") or 0)
        vsize = ceil(weight / 4) if weight else int(raw.get("size") or 0)
        fee_rate: dict[str, str] = {}
        if vsize:
            fee_rate["sat_per_vbyte"] = format_decimal((Decimal(fee_sats) / vsize).quantize(FEE_RATE_PRECISION))

        tx = UnifiedTransaction(
            id=transaction_id(self.chain, txid),
            chain=self.chain,
            hash=txid,
            block_number=block_height if confirmed else None,
            block_hash=status_raw.get("block_hash"),
            timestamp=datetime.fromtimestamp(int(block_time), tz=timezone.utc) if block_time else None,
            confirmations=max(confirmations, 0),
            status=TransactionStatus.CONFIRMED if confirmations > 0 else TransactionStatus.PENDING,
            direction=direction,
            fee=Fee(amount=Amount.of(self.native_asset, fee_sats), fee_rate=fee_rate, payer=sender),
            transfers=sort_transfers(transfers),
            chain_specific=BitcoinData(
                inputs=inputs,
                outputs=outputs,
                version=int(raw.get("version") or 0),
                lock_time=int(raw.get("locktime") or 0),
                vsize=vsize,
                weight=weight,
                is_segwit=any(vin.witness for vin in inputs),
                is_rbf=any(vin.sequence < RBF_SEQUENCE_THRESHOLD for vin in inputs),
            ),
        )
        return check_integrity(tx)

    @staticmethod
    def _parse_input(txid: str, vin: dict[str, Any]) -> BitcoinInput:
        prevout = vin.get("prevout") or {}
        is_coinbase = bool(vin.get("is_coinbase"))
        value = prevout.get("value")
        if value is None and not is_coinbase:
            raise ParseError(f"input {vin.get('txid')}:{vin.get('vout')} has no value", tx_hash=txid)
        return BitcoinInput(
            txid=str(vin.get("txid") or ""),
            vout=int(vin.get("vout") or 0),
            script_sig=str(vin.get("scriptsig") or ""),
            witness=list(vin.get("witness") or []),
            sequence=int(vin.get("sequence") or 0),
            address=prevout.get("scriptpubkey_address"),
            value=int(value) if value is not None else None,
            is_coinbase=is_coinbase,
        )

    @staticmethod
    def _parse_output(txid: str, n: int, vout: dict[str, Any]) -> BitcoinOutput:
        value = vout.get("value")
        if value is None:
            raise ParseError(f"output {n} has no value", tx_hash=txid)
        return BitcoinOutput(
            n=n,
            value=int(value),
            script_pub_key=str(vout.get("scriptpubkey") or ""),
            address=vout.get("scriptpubkey_address"),
            output_type=str(vout.get("scriptpubkey_type") or ""),
        )

    @staticmethod
    def _fee(txid: str, inputs: list[BitcoinInput], outputs: list[BitcoinOutput]) -> int:
        total_in = sum(vin.value or 0 for vin in inputs)
        total_out = sum(out.value for out in outputs)
        fee = total_in - total_out
        if fee < 0:
            raise ParseError(f"outputs exceed inputs by {-fee} sats", tx_hash=txid)
        return fee

    @staticmethod
    def _all_owned(inputs: list[BitcoinInput], user_addresses: set[str]) -> bool:
        return all(vin.address is not None and vin.address in user_addresses for vin in inputs)

    @staticmethod
    def _direction(owned_inputs: bool, owned_outputs: list[bool], *, all_inputs_owned: bool) -> TransactionDirection:
        if owned_inputs and not all(owned_outputs):
            return TransactionDirection.OUTGOING
        if owned_inputs and all_inputs_owned:
            return TransactionDirection.SELF
        if not owned_inputs and any(owned_outputs):
            return TransactionDirection.INCOMING
        return TransactionDirection.CONTRACT


__all__ = ["BitcoinAdapter"]
