from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Mapping, Protocol, Sequence

from domain.assets import format_units
from domain.base_types import CostBasisMethod, HoldingPeriod, LotId, TaxCategory, WalletId
from domain.categorization import TransactionCategorizer
from domain.jurisdiction import TaxSettings
from domain.tax_engine import TaxEngine
from domain.tax_lots import TaxLotLedger
from domain.tax_report import (
    CapitalGainsEntry,
    CapitalGainsSection,
    IncomeEntry,
    IncomeSection,
    ReportSummary,
    TaxReport,
    TaxReportConfig,
)
from domain.transaction import UnifiedTransaction

from .formatting import format_currency

logger = logging.getLogger(__name__)

REVIEW_WARNING_PREFIX = "needs_review:"


def year_bounds(year: int) -> tuple[datetime, datetime]:
    return datetime(year, 1, 1, tzinfo=timezone.utc), datetime(year + 1, 1, 1, tzinfo=timezone.utc)


def is_uncategorized(tx: UnifiedTransaction) -> bool:
    return tx.tax_category in (None, TaxCategory.UNKNOWN) or tx.needs_review


def build_tax_report(
    transactions: Iterable[UnifiedTransaction],
    income_entries: Iterable[IncomeEntry],
    *,
    wallet_id: WalletId,
    year: int,
    method: CostBasisMethod,
    settings: TaxSettings,
    generated_at: datetime | None = None,
) -> TaxReport:
    """Aggregate cost-basis slices and income of one calendar year (UTC) into a report."""
    start, end = year_bounds(year)
    txs = list(transactions)

    gains: list[CapitalGainsEntry] = []
    short_total = Decimal(0)
    long_total = Decimal(0)
    slices = sorted(
        (
            (tx, info)
            for tx in txs
            for info in tx.cost_basis or ()
            if start <= info.disposed_at < end
        ),
        key=lambda pair: (pair[1].disposed_at, pair[0].hash),
    )
    for tx, info in slices:
        if info.holding_period == HoldingPeriod.LONG:
            long_total += info.gain_loss
            running_total = long_total
        else:
            short_total += info.gain_loss
            running_total = short_total
        gains.append(
            CapitalGainsEntry(
                transaction_id=tx.id,
                asset=info.asset,
                amount=info.amount,
                formatted_amount=format_units(info.amount, info.asset.decimals),
                date_acquired=info.acquired_at,
                date_sold=info.disposed_at,
                proceeds=info.proceeds_fiat,
                cost_basis=info.cost_basis_fiat,
                gain_loss=info.gain_loss,
                holding_period=info.holding_period,
                method=info.method,
                acquisition_tx_id=info.acquisition_tx_id,
                running_total=running_total,
            )
        )

    capital_gains = CapitalGainsSection(
        short_term=[entry for entry in gains if entry.holding_period == HoldingPeriod.SHORT],
        long_term=[entry for entry in gains if entry.holding_period == HoldingPeriod.LONG],
        total_short_term_gain=short_total,
        total_long_term_gain=long_total,
        total_gain=short_total + long_total,
        total_proceeds=sum((entry.proceeds for entry in gains), start=Decimal(0)),
        total_cost_basis=sum((entry.cost_basis for entry in gains), start=Decimal(0)),
    )

    income_in_year = sorted(
        (entry for entry in income_entries if start <= entry.received_at < end),
        key=lambda entry: entry.received_at,
    )
    by_category: dict[TaxCategory, Decimal] = defaultdict(Decimal)
    for entry in income_in_year:
        by_category[entry.category] += entry.fair_market_value
    income = IncomeSection(
        entries=income_in_year,
        total_income=sum(by_category.values(), start=Decimal(0)),
        by_category=dict(by_category),
    )

    in_year = [tx for tx in txs if tx.timestamp is not None and start <= tx.timestamp < end]
    summary = ReportSummary(
        total_taxable_events=len(gains) + len(income_in_year),
        total_transactions=len(in_year),
        uncategorized_transactions=sum(1 for tx in in_year if is_uncategorized(tx)),
        needs_review_transactions=sum(1 for tx in in_year if tx.needs_review),
    )

    return TaxReport(
        config=TaxReportConfig(
            wallet_id=wallet_id,
            year=year,
            method=method,
            jurisdiction=settings.jurisdiction,
            currency=settings.currency,
            long_term_days=settings.long_term_days,
        ),
        generated_at=generated_at or datetime.now(timezone.utc),
        capital_gains=capital_gains,
        income=income,
        summary=summary,
    )


class WalletHistory(Protocol):
    def list_for_wallet(self, wallet_id: WalletId) -> list[UnifiedTransaction]: ...


def _reset_tax_state(tx: UnifiedTransaction) -> UnifiedTransaction:
    """Copy of ``tx`` without engine-derived state; user-assigned categories survive."""
    copy = tx.model_copy(deep=True)
    copy.cost_basis = None
    copy.needs_review = False
    copy.warnings = [w for w in copy.warnings if not w.startswith(REVIEW_WARNING_PREFIX)]
    if not copy.has_user_category:
        copy.tax_category = None
        copy.tax_category_confidence = None
    return copy


class TaxReportGenerator:
    """Rebuild a year's report by replaying the wallet's history on a fresh ledger.

    Replaying keeps reports reproducible for any cost basis method, independent of the lots
    persisted by the last sync.
    """

    def __init__(
        self,
        repository: WalletHistory,
        wallet_addresses: Mapping[WalletId, Iterable[str]],
        settings: TaxSettings,
        categorizer: TransactionCategorizer | None = None,
    ) -> None:
        self.repository = repository
        self.wallet_addresses = {wallet_id: set(addresses) for wallet_id, addresses in wallet_addresses.items()}
        self.settings = settings
        self.categorizer = categorizer

    def generate_report(
        self,
        wallet_id: WalletId,
        year: int,
        method: CostBasisMethod | None = None,
        *,
        specific_lots: Mapping[str, Sequence[LotId]] | None = None,
    ) -> TaxReport:
        addresses = self.wallet_addresses.get(wallet_id)
        if not addresses:
            msg = f"Unknown wallet {wallet_id}"
            raise ValueError(msg)

        chosen = self.settings.validate_method(method or self.settings.rules.default_method)
        _, end = year_bounds(year)
        history = [
            _reset_tax_state(tx)
            for tx in self.repository.list_for_wallet(wallet_id)
            if tx.timestamp is not None and tx.timestamp < end
        ]
        logger.info("Replaying %d transactions for wallet=%s year=%d method=%s", len(history), wallet_id, year, chosen)

        engine = TaxEngine(ledger=TaxLotLedger(), settings=self.settings, categorizer=self.categorizer)
        result = engine.process(
            history,
            wallet_id=wallet_id,
            user_addresses=addresses,
            method=chosen,
            specific_lots=specific_lots,
        )
        for issue in result.issues:
            logger.warning("Review tx=%s: %s", issue.transaction_id, issue.reason)

        return build_tax_report(
            result.transactions,
            result.income_entries,
            wallet_id=wallet_id,
            year=year,
            method=chosen,
            settings=self.settings,
        )


def render_tax_report(report: TaxReport) -> None:
    currency = report.config.currency
    config = report.config
    print(
        f"Tax report {config.year} for wallet {config.wallet_id} "
        f"({config.jurisdiction.value.upper()}, {config.method.value.upper()}, {currency}):"
    )

    for title, entries in (
        ("Short-term capital gains", report.capital_gains.short_term),
        ("Long-term capital gains", report.capital_gains.long_term),
    ):
        print(f"\n{title}:")
        _render_gains(entries)

    gains = report.capital_gains
    print(
        f"\nTotal gain: {format_currency(gains.total_gain, currency)} "
        f"(short {format_currency(gains.total_short_term_gain, currency)}, "
        f"long {format_currency(gains.total_long_term_gain, currency)})"
    )

    print("\nIncome:")
    if not report.income.by_category:
        print("  (no income)")
    else:
        width = max(len(category.value) for category in report.income.by_category)
        for category, total in sorted(report.income.by_category.items()):
            print(f"  {category.value:<{width}} {format_currency(total, currency)}")
        print(f"  {'total':<{width}} {format_currency(report.income.total_income, currency)}")

    summary = report.summary
    print(
        f"\nTransactions: {summary.total_transactions}, taxable events: {summary.total_taxable_events}, "
        f"uncategorized: {summary.uncategorized_transactions}, needs review: {summary.needs_review_transactions}"
    )


def _render_gains(entries: Sequence[CapitalGainsEntry]) -> None:
    if not entries:
        print("  (no disposals)")
        return

    rows = [
        (
            entry.date_sold.date().isoformat(),
            entry.asset.symbol,
            entry.formatted_amount,
            format_currency(entry.proceeds),
            format_currency(entry.cost_basis),
            format_currency(entry.gain_loss),
            format_currency(entry.running_total),
        )
        for entry in entries
    ]
    headers = ("Sold", "Asset", "Amount", "Proceeds", "Cost basis", "Gain", "Running")
    widths = [max(len(headers[idx]), max(len(row[idx]) for row in rows)) for idx in range(len(headers))]

    header = f"{headers[0]:<{widths[0]}} {headers[1]:<{widths[1]}} " + " ".join(
        f"{headers[idx]:>{widths[idx]}}" for idx in range(2, len(headers))
    )
    lines = [header, "-" * len(header)]
    for row in rows:
        lines.append(
            f"{row[0]:<{widths[0]}} {row[1]:<{widths[1]}} "
            + " ".join(f"{row[idx]:>{widths[idx]}}" for idx in range(2, len(row)))
        )
    print("\n".join(lines))


__all__ = [
    "TaxReportGenerator",
    "build_tax_report",
    "is_uncategorized",
    "render_tax_report",
    "year_bounds",
]
