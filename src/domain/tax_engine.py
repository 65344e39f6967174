from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Mapping, Sequence

from .base_types import (
    ACQUISITION_CATEGORIES,
    DISPOSAL_CATEGORIES,
    INCOME_CATEGORIES,
    CostBasisMethod,
    HoldingPeriod,
    LotId,
    TaxCategory,
    TransactionId,
    TransactionStatus,
    TransferId,
    WalletId,
)
from .categorization import TransactionCategorizer
from .jurisdiction import TaxSettings
from .tax_lots import DisposalRequest, InsufficientLotsError, LotMatch, TaxLotLedger
from .tax_report import IncomeEntry
from .transaction import CostBasisInfo, Transfer, UnifiedTransaction

logger = logging.getLogger(__name__)

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)
_UNCATEGORIZED = frozenset({None, TaxCategory.UNKNOWN})


class MissingFiatValueError(ValueError):
    def __init__(self, tx: UnifiedTransaction, transfer: Transfer) -> None:
        super().__init__(f"No fiat value for transfer={transfer.id} tx={tx.hash} asset={transfer.amount.asset}")
        self.tx = tx
        self.transfer = transfer


@dataclass
class TransactionIssue:
    transaction_id: TransactionId
    reason: str


@dataclass
class TaxEngineResult:
    transactions: list[UnifiedTransaction]
    income_entries: list[IncomeEntry] = field(default_factory=list)
    issues: list[TransactionIssue] = field(default_factory=list)


def disposal_id_for(tx: UnifiedTransaction, transfer: Transfer) -> str:
    return f"{tx.id}:{transfer.id}"


def _chronological_key(tx: UnifiedTransaction) -> tuple[datetime, str, str]:
    return (tx.timestamp or _FAR_FUTURE, tx.chain.value, tx.hash)


class TaxEngine:
    """Turn categorized unified transactions into lots, cost-basis slices and income entries."""

    def __init__(
        self,
        *,
        ledger: TaxLotLedger,
        settings: TaxSettings | None = None,
        categorizer: TransactionCategorizer | None = None,
    ) -> None:
        self.ledger = ledger
        self.settings = settings or TaxSettings()
        self.categorizer = categorizer or TransactionCategorizer()

    def process(
        self,
        transactions: Iterable[UnifiedTransaction],
        *,
        wallet_id: WalletId,
        user_addresses: Iterable[str],
        method: CostBasisMethod | None = None,
        specific_lots: Mapping[str, Sequence[LotId]] | None = None,
    ) -> TaxEngineResult:
        """Process a batch in chronological order.

        Failures are per transaction: the transaction is flagged for review and the batch continues.
        ``specific_lots`` maps a disposal id (``"<tx id>:<transfer id>"``) to the lots to consume
        under specific identification.
        """
        chosen = self.settings.validate_method(method or self.settings.rules.default_method)
        addresses = set(user_addresses)
        result = TaxEngineResult(transactions=sorted(transactions, key=_chronological_key))

        for tx in result.transactions:
            try:
                income, issues = self.process_transaction(
                    tx,
                    wallet_id=wallet_id,
                    user_addresses=addresses,
                    method=chosen,
                    specific_lots=specific_lots,
                )
            except ValueError as err:
                logger.warning("Tax processing failed for tx=%s chain=%s: %s", tx.hash, tx.chain, err)
                tx.flag_for_review(type(err).__name__)
                result.issues.append(TransactionIssue(transaction_id=tx.id, reason=str(err)))
                continue
            result.income_entries.extend(income)
            result.issues.extend(TransactionIssue(transaction_id=tx.id, reason=issue) for issue in issues)

        return result

    def process_transaction(
        self,
        tx: UnifiedTransaction,
        *,
        wallet_id: WalletId,
        user_addresses: set[str],
        method: CostBasisMethod,
        specific_lots: Mapping[str, Sequence[LotId]] | None = None,
    ) -> tuple[list[IncomeEntry], list[str]]:
        if tx.status != TransactionStatus.CONFIRMED:
            return [], []
        if tx.timestamp is None:
            tx.flag_for_review("missing_timestamp")
            return [], ["missing timestamp"]

        self.categorizer.categorize(tx, user_addresses)
        category = tx.tax_category
        incoming = tx.incoming_transfers(user_addresses)

        if category in INCOME_CATEGORIES:
            return self._record_income(tx, incoming, wallet_id=wallet_id, category=category), []

        issues: list[str] = []
        if category in DISPOSAL_CATEGORIES:
            outgoing = tx.outgoing_transfers(user_addresses)
            bases = self._acquisition_bases(tx, incoming, counter_legs=outgoing)
            proceeds = self._disposal_proceeds(tx, outgoing, counter_legs=incoming)
            try:
                self._record_disposals(
                    tx, outgoing, proceeds, wallet_id=wallet_id, method=method, specific_lots=specific_lots
                )
            except InsufficientLotsError as err:
                logger.warning("Insufficient lots for tx=%s: %s", tx.hash, err)
                tx.cost_basis = None
                tx.flag_for_review("insufficient_lots")
                issues.append(str(err))
            self._record_acquisitions(tx, incoming, bases, wallet_id=wallet_id)
        elif category in ACQUISITION_CATEGORIES or category in _UNCATEGORIZED:
            # Uncategorized receives are acquisitions.
            bases = self._acquisition_bases(tx, incoming, counter_legs=[])
            self._record_acquisitions(tx, incoming, bases, wallet_id=wallet_id)

        return [], issues

    def holding_period(self, acquired_at: datetime, disposed_at: datetime) -> HoldingPeriod:
        """Long iff held at least ``long_term_days``; exactly on the boundary counts as long.

        Jurisdictions without a long-term rate (``long_term_days == 0``) report everything as short.
        """
        long_term_days = self.settings.long_term_days
        if long_term_days > 0 and disposed_at - acquired_at >= timedelta(days=long_term_days):
            return HoldingPeriod.LONG
        return HoldingPeriod.SHORT

    def _record_disposals(
        self,
        tx: UnifiedTransaction,
        outgoing: list[Transfer],
        proceeds: list[Decimal],
        *,
        wallet_id: WalletId,
        method: CostBasisMethod,
        specific_lots: Mapping[str, Sequence[LotId]] | None,
    ) -> None:
        if not outgoing:
            return
        if tx.cost_basis is not None:
            logger.debug("Cost basis already attached to tx=%s", tx.hash)
            return

        requests = [
            DisposalRequest(
                asset=transfer.amount.asset,
                amount=transfer.amount.raw,
                disposal_id=disposal_id_for(tx, transfer),
                lot_ids=(specific_lots or {}).get(disposal_id_for(tx, transfer)),
            )
            for transfer in outgoing
        ]
        matched = self.ledger.match_disposals(wallet_id, requests, method)

        infos: list[CostBasisInfo] = []
        for transfer, total_proceeds, matches in zip(outgoing, proceeds, matched):
            infos.extend(self._cost_basis_slices(tx, transfer, total_proceeds, matches, method))
        tx.cost_basis = infos

    def _cost_basis_slices(
        self,
        tx: UnifiedTransaction,
        transfer: Transfer,
        total_proceeds: Decimal,
        matches: list[LotMatch],
        method: CostBasisMethod,
    ) -> list[CostBasisInfo]:
        assert tx.timestamp is not None
        slices: list[CostBasisInfo] = []
        remaining_proceeds = total_proceeds
        for idx, match in enumerate(matches):
            if idx == len(matches) - 1:
                slice_proceeds = remaining_proceeds
            else:
                slice_proceeds = total_proceeds * match.consumed / transfer.amount.raw
                remaining_proceeds -= slice_proceeds

            slices.append(
                CostBasisInfo(
                    asset=transfer.amount.asset,
                    amount=match.consumed,
                    cost_basis_fiat=match.cost_basis_fiat,
                    acquired_at=match.lot.acquired_at,
                    acquisition_tx_id=match.lot.acquisition_tx_id,
                    lot_id=match.lot.id,
                    disposed_at=tx.timestamp,
                    disposal_tx_id=tx.id,
                    holding_period=self.holding_period(match.lot.acquired_at, tx.timestamp),
                    proceeds_fiat=slice_proceeds,
                    gain_loss=slice_proceeds - match.cost_basis_fiat,
                    method=method,
                )
            )
        return slices

    def _record_acquisitions(
        self,
        tx: UnifiedTransaction,
        incoming: list[Transfer],
        bases: list[Decimal],
        *,
        wallet_id: WalletId,
    ) -> None:
        assert tx.timestamp is not None
        for transfer, basis in zip(incoming, bases):
            self.ledger.record_acquisition(
                wallet_id,
                transfer.amount.asset,
                transfer.amount.raw,
                basis,
                tx.timestamp,
                tx.id,
                transfer_id=TransferId(transfer.id),
            )

    def _record_income(
        self,
        tx: UnifiedTransaction,
        incoming: list[Transfer],
        *,
        wallet_id: WalletId,
        category: TaxCategory,
    ) -> list[IncomeEntry]:
        assert tx.timestamp is not None
        values = [self._fiat_amount(tx, transfer) for transfer in incoming]
        entries: list[IncomeEntry] = []
        for transfer, fair_market_value in zip(incoming, values):
            self.ledger.record_acquisition(
                wallet_id,
                transfer.amount.asset,
                transfer.amount.raw,
                fair_market_value,
                tx.timestamp,
                tx.id,
                transfer_id=TransferId(transfer.id),
            )
            entries.append(
                IncomeEntry(
                    transaction_id=tx.id,
                    wallet_id=wallet_id,
                    asset=transfer.amount.asset,
                    amount=transfer.amount.raw,
                    formatted_amount=transfer.amount.formatted,
                    fair_market_value=fair_market_value,
                    category=category,
                    received_at=tx.timestamp,
                )
            )
        return entries

    def _acquisition_bases(
        self, tx: UnifiedTransaction, incoming: list[Transfer], *, counter_legs: list[Transfer]
    ) -> list[Decimal]:
        return [self._leg_value(tx, transfer, incoming, counter_legs) for transfer in incoming]

    def _disposal_proceeds(
        self, tx: UnifiedTransaction, outgoing: list[Transfer], *, counter_legs: list[Transfer]
    ) -> list[Decimal]:
        return [self._leg_value(tx, transfer, outgoing, counter_legs) for transfer in outgoing]

    def _leg_value(
        self,
        tx: UnifiedTransaction,
        transfer: Transfer,
        side: list[Transfer],
        counter_legs: list[Transfer],
    ) -> Decimal:
        """Fiat value of one leg.

        A leg without a price takes the combined value of the opposite side of the exchange,
        but only when it is the sole leg on its side and every opposite leg is priced.
        """
        if transfer.amount.fiat_value is not None:
            return transfer.amount.fiat_value.amount
        if len(side) == 1 and counter_legs and all(leg.amount.fiat_value is not None for leg in counter_legs):
            return sum((self._fiat_amount(tx, leg) for leg in counter_legs), start=Decimal(0))
        raise MissingFiatValueError(tx, transfer)

    @staticmethod
    def _fiat_amount(tx: UnifiedTransaction, transfer: Transfer) -> Decimal:
        if transfer.amount.fiat_value is None:
            raise MissingFiatValueError(tx, transfer)
        return transfer.amount.fiat_value.amount
