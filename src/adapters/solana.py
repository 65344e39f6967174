from __future__ import annotations

import logging
from datetime import datetime, timezone
from itertools import count
from typing import Any, Iterable, NamedTuple

from clients.solana_rpc import TOKEN_PROGRAM_ID, SolanaRPCClient
from domain.assets import Amount, Asset
from domain.base_types import (
    UNKNOWN_ADDRESS,
    Address,
    Chain,
    TransactionDirection,
    TransactionStatus,
    TransferId,
    TransferType,
)
from domain.errors import ParseError, TransactionNotFoundError
from domain.transaction import (
    ContractInteraction,
    Fee,
    SolanaData,
    SolanaInstruction,
    SolanaTokenBalance,
    Transfer,
    UnifiedTransaction,
)

from .base import MALFORMED_DATA_ERRORS, ChainAdapter, transaction_id
from .normalizer import check_integrity, is_swap, ownership_direction, sort_transfers
from .token_registry import TokenRegistry

logger = logging.getLogger(__name__)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
PROGRAM_NAMES = {
    SYSTEM_PROGRAM_ID: "system",
    TOKEN_PROGRAM_ID: "spl-token",
}


class BalanceDelta(NamedTuple):
    account_index: int
    owner: str
    delta: int


class PairedMovement(NamedTuple):
    source: BalanceDelta | None
    destination: BalanceDelta | None
    amount: int


def pair_deltas(deltas: Iterable[BalanceDelta]) -> list[PairedMovement]:
    """Match each decrease with the first unmatched increase of equal magnitude, in account order.

    Whatever stays unmatched is reported against an unknown counterparty.
    """
    ordered = sorted(deltas, key=lambda d: d.account_index)
    decreases = [d for d in ordered if d.delta < 0]
    increases = [d for d in ordered if d.delta > 0]
    matched: set[int] = set()
    movements: list[PairedMovement] = []

    for decrease in decreases:
        magnitude = -decrease.delta
        partner = next(
            (inc for inc in increases if inc.account_index not in matched and inc.delta == magnitude),
            None,
        )
        if partner is not None:
            matched.add(partner.account_index)
        movements.append(PairedMovement(source=decrease, destination=partner, amount=magnitude))

    for increase in increases:
        if increase.account_index not in matched:
            movements.append(PairedMovement(source=None, destination=increase, amount=increase.delta))
    return movements


class SolanaAdapter(ChainAdapter):
    def __init__(self, client: SolanaRPCClient, *, token_registry: TokenRegistry | None = None) -> None:
        super().__init__(Chain.SOLANA, token_registry=token_registry)
        self.client = client

    def transform_transaction(self, tx_hash: str, user_addresses: Iterable[str]) -> UnifiedTransaction:
        raw = self.client.get_transaction(tx_hash)
        return self._transform_or_fail(tx_hash, raw, set(user_addresses))

    def get_transactions(
        self,
        address: str,
        from_block: int | None = None,
        *,
        user_addresses: Iterable[str] | None = None,
    ) -> list[UnifiedTransaction]:
        owned = self._owned(address, user_addresses)
        signatures = self.client.get_signatures_for_address(address, min_slot=from_block)
        logger.info("Found %d solana signatures for address=%s", len(signatures), address)
        transactions: list[UnifiedTransaction] = []
        for entry in reversed(signatures):
            signature = entry["signature"]
            try:
                raw = self.client.get_transaction(signature)
            except TransactionNotFoundError:
                logger.warning("Skipping solana signature %s listed for address=%s: not found", signature, address)
                continue
            transactions.append(self._transform_or_fail(signature, raw, owned))
        return transactions

    def get_balance(self, address: str) -> list[Amount]:
        balances = [Amount.of(self.native_asset, self.client.get_balance(address))]
        for account in self.client.get_token_accounts(address):
            info = account.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
            token_amount = info.get("tokenAmount") or {}
            raw = int(token_amount.get("amount") or 0)
            if not raw or not info.get("mint"):
                continue
            asset, _ = self.tokens.resolve_or_placeholder(
                self.chain, info["mint"], decimals=int(token_amount.get("decimals") or 0)
            )
            balances.append(Amount.of(asset, raw))
        return balances

    def _transform_or_fail(self, signature: str, raw: dict[str, Any], owned: set[str]) -> UnifiedTransaction:
        try:
            return self.transform_raw(raw, owned)
        except MALFORMED_DATA_ERRORS as err:
            return self.failed_transaction(signature, err, raw)

    def transform_raw(self, raw: dict[str, Any], user_addresses: set[str]) -> UnifiedTransaction:
        transaction = raw.get("transaction") or {}
        message = transaction.get("message") or {}
        meta = raw.get("meta")
        signatures = list(transaction.get("signatures") or [])
        if not signatures:
            raise ParseError("transaction without signatures")
        signature = signatures[0]
        if meta is None:
            raise ParseError("transaction without meta", tx_hash=signature)

        loaded = meta.get("loadedAddresses") or {}
        account_keys = [*message.get("accountKeys", []), *loaded.get("writable", []), *loaded.get("readonly", [])]
        if not account_keys:
            raise ParseError("transaction without account keys", tx_hash=signature)
        fee_payer = account_keys[0]
        fee = int(meta.get("fee") or 0)

        pre_balances = [int(value) for value in meta.get("preBalances") or []]
        post_balances = [int(value) for value in meta.get("postBalances") or []]
        if len(pre_balances) != len(post_balances):
            raise ParseError("pre/post balance lists differ in length", tx_hash=signature)
        pre_tokens = [self._token_balance(entry, account_keys) for entry in meta.get("preTokenBalances") or []]
        post_tokens = [self._token_balance(entry, account_keys) for entry in meta.get("postTokenBalances") or []]

        failed = meta.get("err") is not None
        transfers: list[Transfer] = []
        warnings: list[str] = []
        ids = count()
        if not failed:
            token_accounts = {entry.account_index for entry in (*pre_tokens, *post_tokens)}
            native_deltas = [
                BalanceDelta(idx, account_keys[idx], post - pre + (fee if idx == 0 else 0))
                for idx, (pre, post) in enumerate(zip(pre_balances, post_balances))
                if idx < len(account_keys) and idx not in token_accounts
            ]
            for movement in pair_deltas(native_deltas):
                transfers.append(
                    self._movement_transfer(signature, next(ids), movement, self.native_asset, TransferType.NATIVE)
                )
            for mint, deltas, decimals in self._token_deltas(pre_tokens, post_tokens):
                asset, warning = self.tokens.resolve_or_placeholder(self.chain, mint, decimals=decimals)
                if warning and warning not in warnings:
                    warnings.append(warning)
                for movement in pair_deltas(deltas):
                    transfers.append(self._movement_transfer(signature, next(ids), movement, asset, TransferType.TOKEN))

        instructions = [
            self._instruction(idx, entry, account_keys) for idx, entry in enumerate(message.get("instructions") or [])
        ]
        interactions = [
            ContractInteraction(address=ix.program_id, name=ix.program_name, type="instruction")
            for ix in instructions
            if ix.program_id not in PROGRAM_NAMES
        ]

        block_time = raw.get("blockTime")
        slot = raw.get("slot")
        if failed:
            status = TransactionStatus.FAILED
        elif block_time is not None or slot is not None:
            status = TransactionStatus.CONFIRMED
        else:
            status = TransactionStatus.PENDING

        transfers = sort_transfers(transfers)
        tx = UnifiedTransaction(
            id=transaction_id(self.chain, signature),
            chain=self.chain,
            hash=signature,
            block_number=slot,
            block_hash=message.get("recentBlockhash"),
            timestamp=datetime.fromtimestamp(int(block_time), tz=timezone.utc) if block_time is not None else None,
            confirmations=1 if status != TransactionStatus.PENDING else 0,
            status=status,
            direction=self._direction(transfers, status, fee_payer, user_addresses),
            fee=Fee(
                amount=Amount.of(self.native_asset, fee),
                fee_rate={"lamports_per_signature": str(fee // len(signatures))},
                payer=Address(fee_payer),
            ),
            transfers=transfers,
            contract_interactions=interactions,
            warnings=warnings,
            chain_specific=SolanaData(
                signatures=signatures,
                recent_blockhash=str(message.get("recentBlockhash") or ""),
                fee_payer=fee_payer,
                account_keys=account_keys,
                compute_units_consumed=meta.get("computeUnitsConsumed"),
                log_messages=list(meta.get("logMessages") or []),
                pre_balances=pre_balances,
                post_balances=post_balances,
                pre_token_balances=pre_tokens,
                post_token_balances=post_tokens,
                instructions=instructions,
            ),
        )
        return check_integrity(tx)

    @staticmethod
    def _token_balance(entry: dict[str, Any], account_keys: list[str]) -> SolanaTokenBalance:
        account_index = int(entry["accountIndex"])
        ui_amount = entry.get("uiTokenAmount") or {}
        owner = entry.get("owner")
        if not owner and account_index < len(account_keys):
            owner = account_keys[account_index]
        return SolanaTokenBalance(
            account_index=account_index,
            mint=str(entry["mint"]),
            owner=owner,
            amount=int(ui_amount.get("amount") or 0),
            decimals=int(ui_amount.get("decimals") or 0),
        )

    @staticmethod
    def _token_deltas(
        pre: list[SolanaTokenBalance], post: list[SolanaTokenBalance]
    ) -> list[tuple[str, list[BalanceDelta], int]]:
        balances: dict[tuple[int, str, str], list[int]] = {}
        decimals: dict[str, int] = {}
        for position, entries in enumerate((pre, post)):
            for entry in entries:
                key = (entry.account_index, entry.mint, entry.owner or UNKNOWN_ADDRESS)
                balances.setdefault(key, [0, 0])[position] = entry.amount
                decimals[entry.mint] = entry.decimals

        by_mint: dict[str, list[BalanceDelta]] = {}
        for (account_index, mint, owner), (before, after) in balances.items():
            if after != before:
                by_mint.setdefault(mint, []).append(BalanceDelta(account_index, owner, after - before))
        return [(mint, deltas, decimals[mint]) for mint, deltas in sorted(by_mint.items())]

    @staticmethod
    def _movement_transfer(
        signature: str, seq: int, movement: PairedMovement, asset: Asset, transfer_type: TransferType
    ) -> Transfer:
        source, destination = movement.source, movement.destination
        anchor = destination or source
        assert anchor is not None
        return Transfer(
            id=TransferId(f"{signature}:{seq}"),
            from_address=Address(source.owner if source else UNKNOWN_ADDRESS),
            to_address=Address(destination.owner if destination else UNKNOWN_ADDRESS),
            amount=Amount.of(asset, movement.amount),
            transfer_type=transfer_type,
            log_index=anchor.account_index,
        )

    @staticmethod
    def _instruction(idx: int, entry: dict[str, Any], account_keys: list[str]) -> SolanaInstruction:
        program_index = int(entry.get("programIdIndex", -1))
        if not 0 <= program_index < len(account_keys):
            raise ParseError(f"instruction {idx} references unknown program index {program_index}")
        program_id = account_keys[program_index]
        return SolanaInstruction(
            program_id=program_id,
            program_name=PROGRAM_NAMES.get(program_id),
            index=idx,
            accounts=[account_keys[i] for i in entry.get("accounts") or [] if i < len(account_keys)],
            data=str(entry.get("data") or ""),
        )

    @staticmethod
    def _direction(
        transfers: list[Transfer], status: TransactionStatus, fee_payer: str, owned: set[str]
    ) -> TransactionDirection:
        if status == TransactionStatus.FAILED:
            return TransactionDirection.OUTGOING if fee_payer in owned else TransactionDirection.CONTRACT
        touching = [t for t in transfers if t.from_address in owned or t.to_address in owned]
        if not touching:
            return TransactionDirection.CONTRACT
        if is_swap(touching, owned):
            return TransactionDirection.SWAP
        return ownership_direction(touching, owned)


__all__ = ["SolanaAdapter", "pair_deltas"]
