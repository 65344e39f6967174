from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable

from domain.assets import Asset
from domain.base_types import TransactionDirection, TransactionStatus, TransferType
from domain.transaction import Transfer, UnifiedTransaction, owned_by

logger = logging.getLogger(__name__)

NO_TRANSFERS_WARNING = "integrity:no_transfers"

_TYPE_ORDER = {
    TransferType.NATIVE: 0,
    TransferType.TOKEN: 1,
    TransferType.NFT: 1,
    TransferType.INTERNAL: 2,
}


def sort_transfers(transfers: Iterable[Transfer]) -> list[Transfer]:
    """Stable order: native value, then log-indexed token movements, then internal calls."""
    return sorted(
        transfers,
        key=lambda t: (_TYPE_ORDER[t.transfer_type], t.log_index if t.log_index is not None else -1),
    )


def ownership_direction(transfers: Iterable[Transfer], user_addresses: set[str]) -> TransactionDirection:
    sends = receives = internal = False
    for transfer in transfers:
        if transfer.amount.raw == 0:
            continue
        from_owned = owned_by(transfer.from_address, user_addresses)
        to_owned = owned_by(transfer.to_address, user_addresses)
        if from_owned and to_owned:
            internal = True
        elif from_owned:
            sends = True
        elif to_owned:
            receives = True

    if sends:
        return TransactionDirection.OUTGOING
    if receives:
        return TransactionDirection.INCOMING
    if internal:
        return TransactionDirection.SELF
    return TransactionDirection.CONTRACT


def net_flows(transfers: Iterable[Transfer], user_addresses: set[str]) -> dict[Asset, int]:
    flows: dict[Asset, int] = defaultdict(int)
    for transfer in transfers:
        if transfer.amount.raw == 0:
            continue
        from_owned = owned_by(transfer.from_address, user_addresses)
        to_owned = owned_by(transfer.to_address, user_addresses)
        if from_owned and not to_owned:
            flows[transfer.amount.asset] -= transfer.amount.raw
        elif to_owned and not from_owned:
            flows[transfer.amount.asset] += transfer.amount.raw
    return flows


def is_swap(transfers: Iterable[Transfer], user_addresses: set[str]) -> bool:
    """The user is a net sender of one asset and a net receiver of a different one."""
    flows = net_flows(transfers, user_addresses)
    sent = {asset for asset, flow in flows.items() if flow < 0}
    received = {asset for asset, flow in flows.items() if flow > 0}
    return bool(sent) and bool(received - sent)


def check_integrity(tx: UnifiedTransaction) -> UnifiedTransaction:
    if tx.status == TransactionStatus.CONFIRMED and not tx.transfers:
        logger.warning("Confirmed transaction without transfers chain=%s hash=%s", tx.chain, tx.hash)
        tx.add_warning(NO_TRANSFERS_WARNING)
    return tx


def normalize(
    tx: UnifiedTransaction,
    user_addresses: set[str],
    *,
    direction: TransactionDirection | None = None,
) -> UnifiedTransaction:
    """Order transfers, resolve the direction and record integrity problems; never drops a transaction."""
    tx.transfers = sort_transfers(tx.transfers)
    tx.direction = direction or ownership_direction(tx.transfers, user_addresses)
    return check_integrity(tx)


__all__ = [
    "NO_TRANSFERS_WARNING",
    "check_integrity",
    "is_swap",
    "net_flows",
    "normalize",
    "ownership_direction",
    "sort_transfers",
]
