from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import ExitStack
from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Iterable, NamedTuple, Sequence
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from .assets import Asset
from .base_types import BigInt, CostBasisMethod, LotId, TransactionId, TransferId, WalletId

logger = logging.getLogger(__name__)

LotKey = tuple[WalletId, Asset]


class InsufficientLotsError(Exception):
    """Open lots cannot cover a disposal.

    Signals a missed acquisition or an ingestion gap; never resolved by assuming a zero basis.
    """

    def __init__(
        self,
        message: str,
        *,
        wallet_id: WalletId,
        asset: Asset,
        requested: int,
        available: int,
    ) -> None:
        super().__init__(message)
        self.wallet_id = wallet_id
        self.asset = asset
        self.requested = requested
        self.available = available


def _new_lot_id() -> LotId:
    return LotId(str(uuid4()))


class TaxLot(BaseModel):
    id: LotId = Field(default_factory=_new_lot_id)
    wallet_id: WalletId
    asset: Asset
    amount_acquired: BigInt
    remaining_amount: BigInt
    cost_basis_fiat: Decimal
    # Basis already attributed to disposals, so the closing slice takes the exact remainder.
    cost_basis_consumed: Decimal = Decimal(0)
    acquired_at: datetime
    acquisition_tx_id: TransactionId
    source_transfer_id: TransferId | None = None
    is_closed: bool = False

    @model_validator(mode="after")
    def _validate_fields(self) -> TaxLot:
        if self.amount_acquired <= 0:
            raise ValueError("amount_acquired must be > 0")
        if not 0 <= self.remaining_amount <= self.amount_acquired:
            raise ValueError("remaining_amount must be within [0, amount_acquired]")
        if self.cost_basis_fiat < 0:
            raise ValueError("cost_basis_fiat must be >= 0")
        self.is_closed = self.remaining_amount == 0
        return self

    @property
    def unit_cost(self) -> Decimal:
        return self.cost_basis_fiat / self.amount_acquired


class LotMatch(NamedTuple):
    """A slice of one lot consumed by a disposal.

    ``range_start`` is the offset (in raw units) of the slice within the lot, so slices taken
    by different disposals never overlap.
    """

    lot: TaxLot
    consumed: int
    range_start: int
    cost_basis_fiat: Decimal


class DisposalRequest(NamedTuple):
    asset: Asset
    amount: int
    disposal_id: str | None = None
    lot_ids: Sequence[LotId] | None = None


class TaxLotLedger:
    """Acquisition lots per (wallet, asset) with FIFO/LIFO/HIFO/specific-id matching.

    Matching and lot mutation for one (wallet, asset) key are serialized by a per-key lock;
    unrelated assets never contend.
    """

    def __init__(self, lots: Iterable[TaxLot] = ()) -> None:
        self._lots: dict[LotKey, list[TaxLot]] = defaultdict(list)
        self._by_source: dict[tuple[WalletId, TransactionId, TransferId | None], TaxLot] = {}
        self._disposals: dict[str, list[LotMatch]] = {}
        self._locks: dict[LotKey, Lock] = {}
        self._locks_guard = Lock()
        for lot in lots:
            self._lots[(lot.wallet_id, lot.asset)].append(lot)
            self._by_source[(lot.wallet_id, lot.acquisition_tx_id, lot.source_transfer_id)] = lot

    def record_acquisition(
        self,
        wallet_id: WalletId,
        asset: Asset,
        amount: int,
        cost_basis_fiat: Decimal,
        acquired_at: datetime,
        tx_id: TransactionId,
        *,
        transfer_id: TransferId | None = None,
    ) -> TaxLot:
        """Append a new lot. Never merges with existing lots, even at identical prices.

        Idempotent per (wallet, tx_id, transfer_id): a re-synced transaction returns its lot.
        """
        key = (wallet_id, asset)
        with self._lock_for(key):
            source = (wallet_id, tx_id, transfer_id)
            existing = self._by_source.get(source)
            if existing is not None:
                logger.debug("Lot for tx=%s transfer=%s already recorded", tx_id, transfer_id)
                return existing

            lot = TaxLot(
                wallet_id=wallet_id,
                asset=asset,
                amount_acquired=amount,
                remaining_amount=amount,
                cost_basis_fiat=cost_basis_fiat,
                acquired_at=acquired_at,
                acquisition_tx_id=tx_id,
                source_transfer_id=transfer_id,
            )
            self._lots[key].append(lot)
            self._by_source[source] = lot
            return lot

    def match_disposal(
        self,
        wallet_id: WalletId,
        asset: Asset,
        amount: int,
        method: CostBasisMethod,
        *,
        lot_ids: Sequence[LotId] | None = None,
        disposal_id: str | None = None,
    ) -> list[LotMatch]:
        request = DisposalRequest(asset=asset, amount=amount, disposal_id=disposal_id, lot_ids=lot_ids)
        return self.match_disposals(wallet_id, [request], method)[0]

    def match_disposals(
        self,
        wallet_id: WalletId,
        requests: Sequence[DisposalRequest],
        method: CostBasisMethod,
    ) -> list[list[LotMatch]]:
        """Match several disposals of one transaction all-or-nothing.

        Nothing is consumed unless every request can be covered.
        """
        for request in requests:
            if request.amount <= 0:
                raise ValueError("disposal amount must be > 0")
            if method == CostBasisMethod.SPECIFIC and not request.lot_ids:
                raise ValueError("specific identification requires lot_ids")

        keys = sorted({(wallet_id, request.asset) for request in requests}, key=lambda k: k[1].key)
        with ExitStack() as stack:
            for key in keys:
                stack.enter_context(self._lock_for(key))

            pending: dict[LotId, int] = defaultdict(int)
            plans: list[list[tuple[TaxLot, int]] | None] = []
            for request in requests:
                if request.disposal_id is not None and request.disposal_id in self._disposals:
                    plans.append(None)
                    continue
                plans.append(self._plan(wallet_id, request, method, pending))

            results: list[list[LotMatch]] = []
            for request, plan in zip(requests, plans):
                if plan is None:
                    assert request.disposal_id is not None
                    logger.debug("Disposal %s already matched", request.disposal_id)
                    results.append(self._disposals[request.disposal_id])
                    continue
                matches = [self._consume(lot, take) for lot, take in plan]
                if request.disposal_id is not None:
                    self._disposals[request.disposal_id] = matches
                results.append(matches)
            return results

    def has_lot_for(self, wallet_id: WalletId, tx_id: TransactionId, transfer_id: TransferId | None = None) -> bool:
        return (wallet_id, tx_id, transfer_id) in self._by_source

    def has_disposal(self, disposal_id: str) -> bool:
        return disposal_id in self._disposals

    def available(self, wallet_id: WalletId, asset: Asset) -> int:
        return sum(lot.remaining_amount for lot in self._lots.get((wallet_id, asset), []))

    def open_lots(self, wallet_id: WalletId, asset: Asset | None = None) -> list[TaxLot]:
        lots = [
            lot.model_copy()
            for (lot_wallet, lot_asset), states in self._lots.items()
            if lot_wallet == wallet_id and (asset is None or lot_asset == asset)
            for lot in states
            if not lot.is_closed
        ]
        lots.sort(key=lambda lot: (lot.asset.symbol, lot.acquired_at))
        return lots

    def lots(self) -> list[TaxLot]:
        return [lot.model_copy() for states in self._lots.values() for lot in states]

    def _lock_for(self, key: LotKey) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def _plan(
        self,
        wallet_id: WalletId,
        request: DisposalRequest,
        method: CostBasisMethod,
        pending: dict[LotId, int],
    ) -> list[tuple[TaxLot, int]]:
        candidates = self._candidates(wallet_id, request, method)
        available = sum(lot.remaining_amount - pending[lot.id] for lot in candidates)
        if available < request.amount:
            raise InsufficientLotsError(
                f"Insufficient lots for asset={request.asset} wallet={wallet_id} "
                f"requested={request.amount} available={available} method={method}",
                wallet_id=wallet_id,
                asset=request.asset,
                requested=request.amount,
                available=available,
            )

        plan: list[tuple[TaxLot, int]] = []
        remaining = request.amount
        for lot in candidates:
            if remaining == 0:
                break
            free = lot.remaining_amount - pending[lot.id]
            if free <= 0:
                continue
            take = min(remaining, free)
            pending[lot.id] += take
            plan.append((lot, take))
            remaining -= take
        return plan

    def _candidates(self, wallet_id: WalletId, request: DisposalRequest, method: CostBasisMethod) -> list[TaxLot]:
        states = self._lots.get((wallet_id, request.asset), [])
        ordered = list(enumerate(states))

        if method == CostBasisMethod.SPECIFIC:
            by_id = {lot.id: lot for lot in states}
            missing = [lot_id for lot_id in request.lot_ids or () if lot_id not in by_id]
            if missing:
                raise ValueError(f"Unknown lots for asset={request.asset} wallet={wallet_id}: {missing}")
            return [by_id[lot_id] for lot_id in request.lot_ids or () if not by_id[lot_id].is_closed]

        if method == CostBasisMethod.FIFO:
            ordered.sort(key=lambda item: (item[1].acquired_at, item[0]))
        elif method == CostBasisMethod.LIFO:
            ordered.sort(key=lambda item: (item[1].acquired_at, item[0]), reverse=True)
        elif method == CostBasisMethod.HIFO:
            ordered.sort(key=lambda item: (-item[1].unit_cost, item[1].acquired_at, item[0]))
        else:
            raise ValueError(f"Unsupported cost basis method: {method}")

        return [lot for _, lot in ordered if not lot.is_closed]

    @staticmethod
    def _consume(lot: TaxLot, take: int) -> LotMatch:
        range_start = lot.amount_acquired - lot.remaining_amount
        if take == lot.remaining_amount:
            cost = lot.cost_basis_fiat - lot.cost_basis_consumed
        else:
            cost = lot.cost_basis_fiat * take / lot.amount_acquired
        lot.remaining_amount -= take
        lot.cost_basis_consumed += cost
        lot.is_closed = lot.remaining_amount == 0
        return LotMatch(lot=lot.model_copy(), consumed=take, range_start=range_start, cost_basis_fiat=cost)
