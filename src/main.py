from __future__ import annotations

import argparse
import logging
import signal
from datetime import datetime, timezone
from threading import Event
from time import perf_counter
from typing import Sequence

from accounts import WalletAccount, load_accounts, parse_chain, wallet_addresses
from adapters.base import ChainAdapter
from adapters.factory import build_adapter
from adapters.token_registry import TokenRegistry
from clients.coindesk import CoinDeskClient
from config import AppSettings, config
from db.db import init_db
from db.repositories import TaxLotRepository, TransactionRepository
from domain.base_types import Chain, CostBasisMethod, WalletId
from domain.categorization import RuleBasedCategorizer, TransactionCategorizer
from domain.transaction import TransactionFilter
from services.coindesk_source import CoinDeskSource
from services.price_enrichment import PriceEnricher
from services.price_service import PriceService
from services.price_sources import HybridPriceSource
from services.price_store import JsonlPriceStore
from services.sync_service import SyncService
from utils.tax_summary import TaxReportGenerator, render_tax_report, year_bounds
from utils.transaction_summary import render_transaction_summary, summarize_transactions

logger = logging.getLogger(__name__)


def build_price_service(settings: AppSettings) -> PriceService:
    settings.price_cache_dir.mkdir(parents=True, exist_ok=True)
    store = JsonlPriceStore(root_dir=settings.price_cache_dir)
    client = CoinDeskClient(
        api_key=settings.coindesk_api_key,
        base_url=settings.coindesk_url,
        timeout=settings.http_timeout,
        retry_attempts=settings.http_retry_attempts,
    )
    source = HybridPriceSource(market_source=CoinDeskSource(client, market=settings.coindesk_market))
    return PriceService(source=source, store=store, max_entries=settings.price_cache_size)


def build_adapters(accounts: Sequence[WalletAccount], settings: AppSettings) -> dict[Chain, ChainAdapter]:
    registry = TokenRegistry()
    chains = dict.fromkeys(chain for account in accounts if not account.skip_sync for chain in account.chains)
    return {chain: build_adapter(chain, settings=settings, token_registry=registry) for chain in chains}


def build_categorizer(settings: AppSettings) -> TransactionCategorizer:
    return TransactionCategorizer(rules=RuleBasedCategorizer(known_contracts=settings.known_contracts))


def run_sync(settings: AppSettings, *, method: CostBasisMethod | None) -> None:
    accounts = load_accounts(settings.accounts_path)
    logger.info("Loaded %d accounts from %s", len(accounts), settings.accounts_path)
    session = init_db(db_file=settings.db_file)
    tax_settings = settings.tax_settings()

    service = SyncService(
        adapters=build_adapters(accounts, settings),
        repository=TransactionRepository(session),
        lot_repository=TaxLotRepository(session),
        enricher=PriceEnricher(build_price_service(settings), currency=tax_settings.currency),
        settings=tax_settings,
        categorizer=build_categorizer(settings),
        max_workers=settings.sync_workers,
    )

    cancel_event = Event()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel_event.set())
    started = perf_counter()
    try:
        results = service.sync(accounts, cancel_event=cancel_event, method=method or settings.default_method())
    finally:
        signal.signal(signal.SIGINT, previous_handler)
    logger.info("Sync finished in %.2fs", perf_counter() - started)

    for wallet_id, result in results.items():
        status = "cancelled" if result.cancelled else "ok"
        print(
            f"{wallet_id}: {status}, fetched {result.fetched}, stored {result.stored}, "
            f"priced {result.priced}, issues {len(result.issues)}"
        )
        for failed in result.failed_addresses:
            print(f"  failed: {failed}")


def run_report(
    settings: AppSettings,
    *,
    wallet_id: WalletId,
    year: int,
    method: CostBasisMethod | None,
    as_json: bool,
) -> None:
    accounts = load_accounts(settings.accounts_path)
    session = init_db(db_file=settings.db_file)
    generator = TaxReportGenerator(
        TransactionRepository(session),
        wallet_addresses(accounts),
        settings.tax_settings(),
        categorizer=build_categorizer(settings),
    )
    report = generator.generate_report(wallet_id, year, method or settings.default_method())
    if as_json:
        print(report.model_dump_json(indent=2))
    else:
        render_tax_report(report)


def run_summary(
    settings: AppSettings,
    *,
    address: str,
    chains: list[Chain] | None,
    year: int | None,
    search: str | None,
) -> None:
    session = init_db(db_file=settings.db_file)
    date_from, date_to = year_bounds(year) if year is not None else (None, None)
    transaction_filter = TransactionFilter(chains=chains, date_from=date_from, date_to=date_to, search=search)
    transactions = TransactionRepository(session).get_for_address(address, transaction_filter)
    render_transaction_summary(summarize_transactions(transactions))


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Sync wallet histories and compute cost-basis tax reports.")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Fetch, price and tax every tracked account.")
    sync_parser.add_argument("--method", type=CostBasisMethod, choices=list(CostBasisMethod))

    report_parser = subparsers.add_parser("report", help="Build the yearly tax report for a wallet.")
    report_parser.add_argument("--wallet", required=True)
    report_parser.add_argument("--year", type=int, default=datetime.now(timezone.utc).year - 1)
    report_parser.add_argument("--method", type=CostBasisMethod, choices=list(CostBasisMethod))
    report_parser.add_argument("--json", action="store_true", dest="as_json")

    summary_parser = subparsers.add_parser("summary", help="Summarize stored transactions for an address.")
    summary_parser.add_argument("--address", required=True)
    summary_parser.add_argument("--chain", action="append", type=parse_chain, dest="chains")
    summary_parser.add_argument("--year", type=int)
    summary_parser.add_argument("--search")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    settings = config()

    if args.command == "sync":
        run_sync(settings, method=args.method)
    elif args.command == "report":
        run_report(settings, wallet_id=WalletId(args.wallet), year=args.year, method=args.method, as_json=args.as_json)
    else:
        run_summary(settings, address=args.address, chains=args.chains, year=args.year, search=args.search)


if __name__ == "__main__":
    main()
