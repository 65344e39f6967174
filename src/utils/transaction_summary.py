from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from domain.assets import format_units
from domain.transaction import UnifiedTransaction

from .formatting import format_timestamp

UNCATEGORIZED = "uncategorized"


@dataclass
class TransactionSummary:
    total: int = 0
    by_chain: Counter[str] = field(default_factory=Counter)
    by_direction: Counter[str] = field(default_factory=Counter)
    by_status: Counter[str] = field(default_factory=Counter)
    by_category: Counter[str] = field(default_factory=Counter)
    # Raw fee totals keyed by asset symbol (per chain), formatted for display.
    fees: dict[str, str] = field(default_factory=dict)
    needs_review: int = 0
    first_timestamp: datetime | None = None
    last_timestamp: datetime | None = None


def summarize_transactions(transactions: Iterable[UnifiedTransaction]) -> TransactionSummary:
    summary = TransactionSummary()
    fee_totals: dict[tuple[str, str, int], int] = {}

    for tx in transactions:
        summary.total += 1
        summary.by_chain[tx.chain.value] += 1
        summary.by_direction[tx.direction.value] += 1
        summary.by_status[tx.status.value] += 1
        summary.by_category[tx.tax_category.value if tx.tax_category else UNCATEGORIZED] += 1
        if tx.needs_review:
            summary.needs_review += 1

        fee_asset = tx.fee.amount.asset
        fee_key = (tx.chain.value, fee_asset.symbol, fee_asset.decimals)
        fee_totals[fee_key] = fee_totals.get(fee_key, 0) + tx.fee.amount.raw

        if tx.timestamp is not None:
            if summary.first_timestamp is None or tx.timestamp < summary.first_timestamp:
                summary.first_timestamp = tx.timestamp
            if summary.last_timestamp is None or tx.timestamp > summary.last_timestamp:
                summary.last_timestamp = tx.timestamp

    summary.fees = {
        f"{symbol} ({chain})": format_units(raw, decimals)
        for (chain, symbol, decimals), raw in sorted(fee_totals.items())
    }
    return summary


def render_transaction_summary(summary: TransactionSummary) -> None:
    print(
        f"Transactions: {summary.total} "
        f"({format_timestamp(summary.first_timestamp)} .. {format_timestamp(summary.last_timestamp)})"
    )
    for title, counts in (
        ("By chain", summary.by_chain),
        ("By direction", summary.by_direction),
        ("By status", summary.by_status),
        ("By category", summary.by_category),
    ):
        print(f"\n{title}:")
        for key, value in counts.most_common():
            print(f"  {key:<16} {value:>6}")

    print("\nFees paid:")
    if not summary.fees:
        print("  (none)")
    for asset, total in summary.fees.items():
        print(f"  {asset:<24} {total:>20}")
    print(f"\nNeeds review: {summary.needs_review}")


__all__ = ["TransactionSummary", "render_transaction_summary", "summarize_transactions"]
