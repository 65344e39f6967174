import pytest

from config import AppSettings
from domain.base_types import CostBasisMethod, TaxCategory
from domain.jurisdiction import TaxJurisdiction


def test_defaults_without_environment() -> None:
    settings = AppSettings(_env_file=None)

    assert settings.jurisdiction == TaxJurisdiction.US
    assert settings.default_method() == CostBasisMethod.FIFO
    tax = settings.tax_settings()
    assert tax.currency == "USD"
    assert tax.long_term_days == 365


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JURISDICTION", "uk")
    monkeypatch.setenv("FIAT_CURRENCY", "eur")
    monkeypatch.setenv("LONG_TERM_DAYS", "30")
    monkeypatch.setenv("SYNC_WORKERS", "2")
    monkeypatch.setenv("KNOWN_CONTRACTS", '{"0xRouter": "swap"}')

    settings = AppSettings(_env_file=None)

    assert settings.sync_workers == 2
    assert settings.known_contracts == {"0xRouter": TaxCategory.SWAP}
    tax = settings.tax_settings()
    assert tax.jurisdiction == TaxJurisdiction.UK
    assert tax.currency == "EUR"
    assert tax.long_term_days == 30
    assert settings.default_method() == CostBasisMethod.FIFO


def test_explicit_method_wins_over_jurisdiction_default() -> None:
    settings = AppSettings(_env_file=None, cost_basis_method=CostBasisMethod.HIFO)

    assert settings.default_method() == CostBasisMethod.HIFO
