"""Report structures exposed to exporters (CSV, Form 8949, TurboTax, aggregator formats).

Everything an exporter needs is contained in :class:`TaxReport`, so exports never go back to
raw chain data.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from .assets import Asset
from .base_types import BigInt, CostBasisMethod, HoldingPeriod, TaxCategory, TransactionId, WalletId
from .jurisdiction import TaxJurisdiction


class IncomeEntry(BaseModel):
    transaction_id: TransactionId
    wallet_id: WalletId
    asset: Asset
    amount: BigInt
    formatted_amount: str
    fair_market_value: Decimal
    category: TaxCategory
    received_at: datetime
    description: str | None = None


class CapitalGainsEntry(BaseModel):
    transaction_id: TransactionId
    asset: Asset
    amount: BigInt
    formatted_amount: str
    date_acquired: datetime
    date_sold: datetime
    proceeds: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    holding_period: HoldingPeriod
    method: CostBasisMethod
    acquisition_tx_id: TransactionId
    # Cumulative gain of the bucket up to and including this entry.
    running_total: Decimal


class TaxReportConfig(BaseModel):
    wallet_id: WalletId
    year: int
    method: CostBasisMethod
    jurisdiction: TaxJurisdiction
    currency: str
    long_term_days: int


class CapitalGainsSection(BaseModel):
    short_term: list[CapitalGainsEntry] = Field(default_factory=list)
    long_term: list[CapitalGainsEntry] = Field(default_factory=list)
    total_short_term_gain: Decimal = Decimal(0)
    total_long_term_gain: Decimal = Decimal(0)
    total_gain: Decimal = Decimal(0)
    total_proceeds: Decimal = Decimal(0)
    total_cost_basis: Decimal = Decimal(0)


class IncomeSection(BaseModel):
    entries: list[IncomeEntry] = Field(default_factory=list)
    total_income: Decimal = Decimal(0)
    by_category: dict[TaxCategory, Decimal] = Field(default_factory=dict)


class ReportSummary(BaseModel):
    total_taxable_events: int = 0
    total_transactions: int = 0
    uncategorized_transactions: int = 0
    needs_review_transactions: int = 0


class TaxReport(BaseModel):
    config: TaxReportConfig
    generated_at: datetime
    capital_gains: CapitalGainsSection
    income: IncomeSection
    summary: ReportSummary
