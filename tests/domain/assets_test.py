from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from domain.assets import Amount, Asset, format_units, units_to_decimal
from domain.base_types import AssetKind, Chain
from tests.constants import ETH, ONE_ETH, USDC


def test_units_to_decimal_is_exact_for_wei() -> None:
    raw = 123_456_789_012_345_678_901_234_567_890

    assert units_to_decimal(raw, 18) == Decimal("123456789012.345678901234567890")
    assert format_units(1, 18) == "0.000000000000000001"
    assert format_units(5 * ONE_ETH, 18) == "5"


def test_amount_serializes_raw_as_string_and_parses_back() -> None:
    amount = Amount.of(ETH, 2**200)

    payload = amount.model_dump(mode="json")
    restored = Amount.model_validate(payload)

    assert payload["raw"] == str(2**200)
    assert restored.raw == 2**200
    assert restored.asset == ETH


def test_amount_rejects_negative_and_float_values() -> None:
    with pytest.raises(ValidationError):
        Amount.of(ETH, -1)
    with pytest.raises(ValidationError):
        Amount(asset=ETH, raw=1.5)  # type: ignore[arg-type]


def test_asset_equality_ignores_display_fields() -> None:
    placeholder = Asset.placeholder(Chain.ETHEREUM, USDC.contract_address or "", decimals=6)

    assert placeholder == USDC
    assert hash(placeholder) == hash(USDC)
    assert placeholder.symbol != USDC.symbol


def test_evm_contract_addresses_are_lowercased() -> None:
    token = Asset.token(Chain.ETHEREUM, "0xABCDEF0000000000000000000000000000000001", symbol="T", name="T", decimals=0)

    assert token.contract_address == "0xabcdef0000000000000000000000000000000001"


def test_native_assets_are_distinct_per_chain() -> None:
    arbitrum_eth = Asset.native(Chain.ARBITRUM)

    assert arbitrum_eth.symbol == ETH.symbol
    assert arbitrum_eth != ETH


def test_token_requires_contract_address() -> None:
    with pytest.raises(ValidationError):
        Asset(chain=Chain.ETHEREUM, kind=AssetKind.TOKEN, symbol="X", name="X", decimals=18)
