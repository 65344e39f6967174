from __future__ import annotations

import logging
from typing import Mapping, Protocol

from .base_types import SuggestionSource, TaxCategory, TransactionDirection, TransactionStatus, TransferType
from .transaction import CategorySuggestion, UnifiedTransaction, touches

logger = logging.getLogger(__name__)

KNOWN_CONTRACT_CONFIDENCE = 0.95
SELF_TRANSFER_CONFIDENCE = 0.9
FAILED_TX_CONFIDENCE = 0.9
SWAP_CONFIDENCE = 0.85
AIRDROP_CONFIDENCE = 0.6
PAYMENT_CONFIDENCE = 0.5


class Categorizer(Protocol):
    """Advisory categorization collaborator (e.g. an AI service)."""

    def suggest_category(
        self,
        tx: UnifiedTransaction,
        user_addresses: set[str],
        known_contracts: Mapping[str, TaxCategory],
    ) -> tuple[TaxCategory, float]: ...


class RuleBasedCategorizer:
    def __init__(self, known_contracts: Mapping[str, TaxCategory] | None = None) -> None:
        self.known_contracts: dict[str, TaxCategory] = {
            address.lower(): TaxCategory(category) for address, category in (known_contracts or {}).items()
        }

    def suggest_category(
        self,
        tx: UnifiedTransaction,
        user_addresses: set[str],
        known_contracts: Mapping[str, TaxCategory] | None = None,
    ) -> tuple[TaxCategory, float]:
        contracts = {**self.known_contracts, **{k.lower(): v for k, v in (known_contracts or {}).items()}}

        if tx.status == TransactionStatus.FAILED:
            return TaxCategory.FEE, FAILED_TX_CONFIDENCE

        for counterparty in self._counterparties(tx, user_addresses):
            category = contracts.get(counterparty.lower())
            if category is not None:
                return category, KNOWN_CONTRACT_CONFIDENCE

        outgoing = tx.outgoing_transfers(user_addresses)
        incoming = tx.incoming_transfers(user_addresses)

        if tx.direction == TransactionDirection.SWAP:
            if any(t.transfer_type == TransferType.NFT for t in outgoing):
                return TaxCategory.NFT_SALE, SWAP_CONFIDENCE
            return TaxCategory.SWAP, SWAP_CONFIDENCE
        if tx.direction == TransactionDirection.SELF:
            return TaxCategory.TRANSFER, SELF_TRANSFER_CONFIDENCE
        if tx.direction == TransactionDirection.OUTGOING and outgoing:
            return TaxCategory.PAYMENT_SENT, PAYMENT_CONFIDENCE
        if tx.direction == TransactionDirection.INCOMING and incoming:
            token_only = all(t.transfer_type in (TransferType.TOKEN, TransferType.NFT) for t in incoming)
            if token_only and not touches(tx.fee.payer, user_addresses):
                return TaxCategory.AIRDROP, AIRDROP_CONFIDENCE
        return TaxCategory.UNKNOWN, 0.0

    @staticmethod
    def _counterparties(tx: UnifiedTransaction, user_addresses: set[str]) -> list[str]:
        found = [interaction.address for interaction in tx.contract_interactions]
        for transfer in tx.transfers:
            for address in (transfer.from_address, transfer.to_address):
                if address not in user_addresses:
                    found.append(address)
            if transfer.amount.asset.contract_address:
                found.append(transfer.amount.asset.contract_address)
        return found


class TransactionCategorizer:
    """Rule-based categorization with an optional advisory override.

    The advisor may raise confidence when it agrees. A disagreement keeps the rule's
    category, records both suggestions and flags the transaction for review. Only an
    ``unknown`` rule result can be replaced by the advisor's category.
    """

    def __init__(self, rules: RuleBasedCategorizer | None = None, advisor: Categorizer | None = None) -> None:
        self.rules = rules or RuleBasedCategorizer()
        self.advisor = advisor

    def categorize(self, tx: UnifiedTransaction, user_addresses: set[str]) -> None:
        if tx.tax_category is not None:
            return

        tx.category_suggestions = [s for s in tx.category_suggestions if s.source == SuggestionSource.USER]
        category, confidence = self.rules.suggest_category(tx, user_addresses)
        tx.category_suggestions.append(
            CategorySuggestion(source=SuggestionSource.RULE, category=category, confidence=confidence)
        )

        if self.advisor is not None:
            try:
                ai_category, ai_confidence = self.advisor.suggest_category(
                    tx, user_addresses, self.rules.known_contracts
                )
            except Exception:
                logger.warning("Category advisor failed for tx=%s; keeping rule result", tx.hash, exc_info=True)
            else:
                tx.category_suggestions.append(
                    CategorySuggestion(source=SuggestionSource.AI, category=ai_category, confidence=ai_confidence)
                )
                if ai_category == category:
                    confidence = max(confidence, ai_confidence)
                elif category == TaxCategory.UNKNOWN:
                    category, confidence = ai_category, ai_confidence
                else:
                    logger.info(
                        "Advisor suggested %s for tx=%s but rules chose %s", ai_category, tx.hash, category
                    )
                    tx.flag_for_review("category_disagreement")

        tx.tax_category = category
        tx.tax_category_confidence = confidence
