from typing import Mapping

from domain.base_types import (
    SuggestionSource,
    TaxCategory,
    TransactionDirection,
    TransactionStatus,
    TransferType,
)
from domain.categorization import RuleBasedCategorizer, TransactionCategorizer
from domain.transaction import ContractInteraction, UnifiedTransaction
from tests.constants import ETH, EXCHANGE_ETH, ONE_ETH, ONE_USDC, ROUTER_ETH, USDC, USER_ETH, USER_ETH_2
from tests.helpers.time_utils import make_transaction, make_transfer

USER = {USER_ETH, USER_ETH_2}


def _categorize(tx: UnifiedTransaction, rules: RuleBasedCategorizer | None = None) -> tuple[TaxCategory, float]:
    return (rules or RuleBasedCategorizer()).suggest_category(tx, USER)


def test_failed_transaction_is_a_fee() -> None:
    tx = make_transaction(status=TransactionStatus.FAILED, fee_payer=USER_ETH, fee_raw=10**15)

    assert _categorize(tx)[0] == TaxCategory.FEE


def test_known_contract_wins_over_direction() -> None:
    tx = make_transaction(
        direction=TransactionDirection.OUTGOING,
        transfers=[make_transfer(ETH, ONE_ETH, from_address=USER_ETH, to_address=ROUTER_ETH)],
    )
    tx.contract_interactions.append(ContractInteraction(address=ROUTER_ETH))

    rules = RuleBasedCategorizer(known_contracts={ROUTER_ETH.upper(): TaxCategory.BRIDGE})

    category, confidence = _categorize(tx, rules)

    assert category == TaxCategory.BRIDGE
    assert confidence > 0.9


def test_direction_rules() -> None:
    self_transfer = make_transaction(
        direction=TransactionDirection.SELF,
        transfers=[make_transfer(ETH, ONE_ETH, from_address=USER_ETH, to_address=USER_ETH_2)],
    )
    payment = make_transaction(
        direction=TransactionDirection.OUTGOING,
        transfers=[make_transfer(ETH, ONE_ETH, from_address=USER_ETH, to_address=EXCHANGE_ETH)],
    )
    swap = make_transaction(
        direction=TransactionDirection.SWAP,
        transfers=[
            make_transfer(USDC, ONE_USDC, from_address=USER_ETH, to_address=ROUTER_ETH),
            make_transfer(ETH, ONE_ETH, from_address=ROUTER_ETH, to_address=USER_ETH),
        ],
    )

    assert _categorize(self_transfer)[0] == TaxCategory.TRANSFER
    assert _categorize(payment)[0] == TaxCategory.PAYMENT_SENT
    assert _categorize(swap)[0] == TaxCategory.SWAP


def test_airdrop_needs_unowned_fee_payer_and_tokens_only() -> None:
    def incoming(fee_payer: str, asset_transfer_type: TransferType) -> UnifiedTransaction:
        asset = USDC if asset_transfer_type == TransferType.TOKEN else ETH
        return make_transaction(
            direction=TransactionDirection.INCOMING,
            fee_payer=fee_payer,
            transfers=[make_transfer(asset, 10, from_address=EXCHANGE_ETH, to_address=USER_ETH)],
        )

    assert _categorize(incoming(EXCHANGE_ETH, TransferType.TOKEN))[0] == TaxCategory.AIRDROP
    assert _categorize(incoming(USER_ETH, TransferType.TOKEN))[0] == TaxCategory.UNKNOWN
    assert _categorize(incoming(EXCHANGE_ETH, TransferType.NATIVE)) == (TaxCategory.UNKNOWN, 0.0)


class _Advisor:
    def __init__(self, category: TaxCategory, confidence: float, *, fail: bool = False) -> None:
        self.category = category
        self.confidence = confidence
        self.fail = fail
        self.seen_contracts: Mapping[str, TaxCategory] | None = None

    def suggest_category(
        self, tx: UnifiedTransaction, user_addresses: set[str], known_contracts: Mapping[str, TaxCategory]
    ) -> tuple[TaxCategory, float]:
        if self.fail:
            raise RuntimeError("advisor offline")
        self.seen_contracts = known_contracts
        return self.category, self.confidence


def _payment() -> UnifiedTransaction:
    return make_transaction(
        direction=TransactionDirection.OUTGOING,
        transfers=[make_transfer(ETH, ONE_ETH, from_address=USER_ETH, to_address=EXCHANGE_ETH)],
    )


def test_agreeing_advisor_raises_confidence() -> None:
    tx = _payment()
    advisor = _Advisor(TaxCategory.PAYMENT_SENT, 0.97)
    categorizer = TransactionCategorizer(
        rules=RuleBasedCategorizer(known_contracts={ROUTER_ETH: TaxCategory.SWAP}), advisor=advisor
    )

    categorizer.categorize(tx, USER)

    assert tx.tax_category == TaxCategory.PAYMENT_SENT
    assert tx.tax_category_confidence == 0.97
    assert tx.needs_review is False
    assert advisor.seen_contracts == {ROUTER_ETH: TaxCategory.SWAP}


def test_failing_advisor_keeps_rule_result() -> None:
    tx = _payment()

    TransactionCategorizer(advisor=_Advisor(TaxCategory.SALE, 0.9, fail=True)).categorize(tx, USER)

    assert tx.tax_category == TaxCategory.PAYMENT_SENT
    assert [s.source for s in tx.category_suggestions] == [SuggestionSource.RULE]


def test_user_category_is_never_overridden() -> None:
    tx = _payment()
    tx.assign_category(TaxCategory.GIFT_SENT)

    TransactionCategorizer(advisor=_Advisor(TaxCategory.SALE, 0.99)).categorize(tx, USER)

    assert tx.tax_category == TaxCategory.GIFT_SENT
    assert tx.has_user_category


def test_recategorizing_replaces_previous_machine_suggestions() -> None:
    tx = _payment()
    categorizer = TransactionCategorizer()

    categorizer.categorize(tx, USER)
    tx.tax_category = None
    categorizer.categorize(tx, USER)

    assert [s.source for s in tx.category_suggestions] == [SuggestionSource.RULE]
