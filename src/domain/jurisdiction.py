from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from .base_types import CostBasisMethod


class TaxJurisdiction(StrEnum):
    US = "us"
    UK = "uk"
    GERMANY = "de"
    FRANCE = "fr"
    INDIA = "in"


@dataclass(frozen=True)
class JurisdictionRules:
    jurisdiction: TaxJurisdiction
    name: str
    currency: str
    supported_methods: tuple[CostBasisMethod, ...]
    default_method: CostBasisMethod
    # Holdings of at least this many days are long-term; 0 means no short/long distinction.
    long_term_days: int
    special_rules: tuple[str, ...] = ()


JURISDICTION_RULES: dict[TaxJurisdiction, JurisdictionRules] = {
    TaxJurisdiction.US: JurisdictionRules(
        jurisdiction=TaxJurisdiction.US,
        name="United States",
        currency="USD",
        supported_methods=(CostBasisMethod.FIFO, CostBasisMethod.LIFO, CostBasisMethod.HIFO, CostBasisMethod.SPECIFIC),
        default_method=CostBasisMethod.FIFO,
        long_term_days=365,
    ),
    TaxJurisdiction.UK: JurisdictionRules(
        jurisdiction=TaxJurisdiction.UK,
        name="United Kingdom",
        currency="GBP",
        supported_methods=(CostBasisMethod.FIFO,),
        default_method=CostBasisMethod.FIFO,
        long_term_days=0,
        special_rules=("section_104_pool",),
    ),
    TaxJurisdiction.GERMANY: JurisdictionRules(
        jurisdiction=TaxJurisdiction.GERMANY,
        name="Germany",
        currency="EUR",
        supported_methods=(CostBasisMethod.FIFO,),
        default_method=CostBasisMethod.FIFO,
        long_term_days=365,
        special_rules=("one_year_tax_free",),
    ),
    TaxJurisdiction.FRANCE: JurisdictionRules(
        jurisdiction=TaxJurisdiction.FRANCE,
        name="France",
        currency="EUR",
        supported_methods=(CostBasisMethod.FIFO,),
        default_method=CostBasisMethod.FIFO,
        long_term_days=0,
        special_rules=("average_cost", "flat_tax_30"),
    ),
    TaxJurisdiction.INDIA: JurisdictionRules(
        jurisdiction=TaxJurisdiction.INDIA,
        name="India",
        currency="INR",
        supported_methods=(CostBasisMethod.FIFO,),
        default_method=CostBasisMethod.FIFO,
        long_term_days=0,
        special_rules=("flat_tax_30", "no_loss_offset"),
    ),
}


@dataclass(frozen=True)
class TaxSettings:
    jurisdiction: TaxJurisdiction = TaxJurisdiction.US
    fiat_currency: str | None = None
    long_term_days_override: int | None = None

    @property
    def rules(self) -> JurisdictionRules:
        return JURISDICTION_RULES[self.jurisdiction]

    @property
    def currency(self) -> str:
        return (self.fiat_currency or self.rules.currency).upper()

    @property
    def long_term_days(self) -> int:
        if self.long_term_days_override is not None:
            return self.long_term_days_override
        return self.rules.long_term_days

    def validate_method(self, method: CostBasisMethod) -> CostBasisMethod:
        if method not in self.rules.supported_methods:
            msg = f"Cost basis method {method} is not supported in {self.rules.name}"
            raise ValueError(msg)
        return method
