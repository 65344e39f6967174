from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from threading import Event
from time import perf_counter
from typing import Iterable, Mapping, Protocol

from accounts import WalletAccount, wallet_addresses
from adapters.base import ChainAdapter
from domain.base_types import Chain, CostBasisMethod, WalletId
from domain.categorization import TransactionCategorizer
from domain.errors import ChainAdapterError
from domain.jurisdiction import TaxSettings
from domain.tax_engine import TaxEngine, TransactionIssue
from domain.tax_lots import TaxLot, TaxLotLedger
from domain.transaction import UnifiedTransaction

from .price_enrichment import PriceEnricher

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


class TransactionStore(Protocol):
    def get_by_hash(self, chain: Chain, tx_hash: str) -> UnifiedTransaction | None: ...

    def upsert_many(self, transactions: Iterable[UnifiedTransaction], wallet_id: WalletId) -> None: ...

    def latest_block(self, wallet_id: WalletId, chain: Chain) -> int | None: ...


class LotStore(Protocol):
    def save_many(self, lots: Iterable[TaxLot]) -> None: ...

    def list(self, wallet_id: WalletId | None = None) -> list[TaxLot]: ...


@dataclass(frozen=True)
class FetchTask:
    wallet_id: WalletId
    chain: Chain
    address: str
    from_block: int | None


@dataclass
class SyncResult:
    wallet_id: WalletId
    fetched: int = 0
    stored: int = 0
    priced: int = 0
    issues: list[TransactionIssue] = field(default_factory=list)
    failed_addresses: list[str] = field(default_factory=list)
    cancelled: bool = False


def carry_over_tax_state(fresh: UnifiedTransaction, stored: UnifiedTransaction) -> UnifiedTransaction:
    """Keep what earlier runs decided: computed cost basis, user category, notes and tags."""
    if stored.cost_basis is not None:
        fresh.cost_basis = stored.cost_basis
        fresh.tax_category = stored.tax_category
        fresh.tax_category_confidence = stored.tax_category_confidence
        fresh.category_suggestions = list(stored.category_suggestions)
    elif stored.has_user_category and stored.tax_category is not None:
        fresh.assign_category(stored.tax_category)
    fresh.notes = stored.notes
    fresh.tags = list(stored.tags)
    fresh.created_at = stored.created_at
    return fresh


def dedupe_transactions(transactions: Iterable[UnifiedTransaction]) -> list[UnifiedTransaction]:
    """One record per (chain, hash) in first-seen order; the last fetched copy wins."""
    latest: dict[tuple[Chain, str], UnifiedTransaction] = {}
    for tx in transactions:
        latest[tx.key] = tx
    return list(latest.values())


class SyncService:
    """Fetch every tracked address concurrently, then price, tax and persist per wallet.

    Fetching is the only concurrent part. Lots are mutated after all I/O for a wallet is done,
    on a ledger seeded from the persisted lots, so re-running a sync is idempotent.
    """

    def __init__(
        self,
        *,
        adapters: Mapping[Chain, ChainAdapter],
        repository: TransactionStore,
        lot_repository: LotStore,
        enricher: PriceEnricher,
        settings: TaxSettings,
        categorizer: TransactionCategorizer | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        if max_workers <= 0:
            msg = "max_workers must be > 0"
            raise ValueError(msg)
        self.adapters = adapters
        self.repository = repository
        self.lot_repository = lot_repository
        self.enricher = enricher
        self.settings = settings
        self.categorizer = categorizer or TransactionCategorizer()
        self.max_workers = max_workers

    def sync(
        self,
        accounts: Iterable[WalletAccount],
        *,
        cancel_event: Event | None = None,
        method: CostBasisMethod | None = None,
    ) -> dict[WalletId, SyncResult]:
        accounts = list(accounts)
        cancel_event = cancel_event or Event()
        owned = wallet_addresses(accounts)
        results = {wallet_id: SyncResult(wallet_id=wallet_id) for wallet_id in owned}

        tasks = self._tasks(accounts)
        fetched = self._fetch_all(tasks, owned, results, cancel_event)

        for wallet_id, transactions in fetched.items():
            self._process_wallet(wallet_id, transactions, owned[wallet_id], results[wallet_id], method=method)
        return results

    def _tasks(self, accounts: list[WalletAccount]) -> list[FetchTask]:
        tasks: list[FetchTask] = []
        for account in accounts:
            if account.skip_sync:
                logger.info("Skipping sync for wallet=%s address=%s", account.wallet_id, account.address)
                continue
            for chain in account.chains:
                if chain not in self.adapters:
                    logger.warning("No adapter configured for chain=%s, skipping %s", chain, account.address)
                    continue
                from_block = self.repository.latest_block(account.wallet_id, chain)
                tasks.append(FetchTask(account.wallet_id, chain, account.address, from_block))
        return tasks

    def _fetch_all(
        self,
        tasks: list[FetchTask],
        owned: Mapping[WalletId, set[str]],
        results: dict[WalletId, SyncResult],
        cancel_event: Event,
    ) -> dict[WalletId, list[UnifiedTransaction]]:
        fetched: dict[WalletId, list[UnifiedTransaction]] = {}
        if not tasks:
            return fetched

        started = perf_counter()
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="sync") as executor:
            futures: dict[Future[list[UnifiedTransaction] | None], FetchTask] = {
                executor.submit(self._fetch, task, owned[task.wallet_id], cancel_event): task for task in tasks
            }
            for future in as_completed(futures):
                task = futures[future]
                result = results[task.wallet_id]
                if future.cancelled():
                    result.cancelled = True
                    continue
                try:
                    transactions = future.result()
                except ChainAdapterError as err:
                    logger.error("Fetching %s %s failed: %s", task.chain, task.address, err)
                    result.failed_addresses.append(f"{task.chain}:{task.address}")
                    continue
                if transactions is None:
                    result.cancelled = True
                    continue

                fetched.setdefault(task.wallet_id, []).extend(transactions)
                result.fetched += len(transactions)
                if cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()

        logger.info("Fetched %d address histories in %.2fs", len(tasks), perf_counter() - started)
        return fetched

    def _fetch(self, task: FetchTask, owned: set[str], cancel_event: Event) -> list[UnifiedTransaction] | None:
        if cancel_event.is_set():
            logger.info("Sync cancelled before fetching %s %s", task.chain, task.address)
            return None
        adapter = self.adapters[task.chain]
        logger.info("Fetching %s %s from block %s", task.chain, task.address, task.from_block)
        return adapter.get_transactions(task.address, task.from_block, user_addresses=owned)

    def _process_wallet(
        self,
        wallet_id: WalletId,
        transactions: list[UnifiedTransaction],
        owned: set[str],
        result: SyncResult,
        *,
        method: CostBasisMethod | None,
    ) -> None:
        unique = dedupe_transactions(transactions)
        for tx in unique:
            stored = self.repository.get_by_hash(tx.chain, tx.hash)
            if stored is not None:
                carry_over_tax_state(tx, stored)

        result.priced = self.enricher.enrich(unique)

        ledger = TaxLotLedger(self.lot_repository.list(wallet_id))
        engine = TaxEngine(ledger=ledger, settings=self.settings, categorizer=self.categorizer)
        processed = engine.process(unique, wallet_id=wallet_id, user_addresses=owned, method=method)
        for tx in processed.transactions:
            tx.touch()
        result.issues.extend(processed.issues)

        self.repository.upsert_many(processed.transactions, wallet_id)
        self.lot_repository.save_many(lot for lot in ledger.lots() if lot.wallet_id == wallet_id)
        result.stored = len(processed.transactions)
        logger.info(
            "Synced wallet=%s: %d transactions stored, %d amounts priced, %d issues",
            wallet_id,
            result.stored,
            result.priced,
            len(result.issues),
        )


__all__ = ["SyncResult", "SyncService", "carry_over_tax_state", "dedupe_transactions"]
