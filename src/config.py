from __future__ import annotations

from functools import cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.base_types import CostBasisMethod, TaxCategory
from domain.jurisdiction import TaxJurisdiction, TaxSettings

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ARTIFACTS_DIR = PROJECT_ROOT / "artifacts"
DB_FILE = ARTIFACTS_DIR / "transactions.db"


class AppSettings(BaseSettings):
    etherscan_api_key: str | None = None
    coindesk_api_key: str | None = None

    esplora_url: str = "https://blockstream.info/api"
    etherscan_url: str = "https://api.etherscan.io/v2/api"
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    coindesk_url: str = "https://data-api.coindesk.com"
    coindesk_market: str = "coinbase"

    jurisdiction: TaxJurisdiction = TaxJurisdiction.US
    fiat_currency: str | None = None
    cost_basis_method: CostBasisMethod | None = None
    long_term_days: int | None = None
    # Contract address -> category, merged into the rule-based categorizer.
    known_contracts: dict[str, TaxCategory] = Field(default_factory=dict)

    db_file: Path = DB_FILE
    price_cache_dir: Path = ARTIFACTS_DIR
    accounts_path: Path = ARTIFACTS_DIR / "accounts.json"

    sync_workers: int = 4
    price_cache_size: int = 4096
    http_timeout: float = 10.0
    http_retry_attempts: int = 5

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    def tax_settings(self) -> TaxSettings:
        return TaxSettings(
            jurisdiction=self.jurisdiction,
            fiat_currency=self.fiat_currency,
            long_term_days_override=self.long_term_days,
        )

    def default_method(self) -> CostBasisMethod:
        return self.cost_basis_method or self.tax_settings().rules.default_method


@cache
def config() -> AppSettings:
    return AppSettings()
