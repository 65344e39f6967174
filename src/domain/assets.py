from __future__ import annotations

from datetime import datetime
from decimal import Decimal, localcontext
from typing import Any

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator, model_validator

from utils.formatting import format_decimal

from .base_types import AssetKind, Chain, ChainFamily, chain_family

PLACEHOLDER_SYMBOL = "UNKNOWN"


def units_to_decimal(raw: int, decimals: int) -> Decimal:
    """Exact conversion of smallest-unit integers (sats, wei, lamports) to whole units."""
    with localcontext() as ctx:
        ctx.prec = max(28, len(str(abs(raw))) + decimals + 2)
        return Decimal(raw).scaleb(-decimals)


def format_units(raw: int, decimals: int) -> str:
    with localcontext() as ctx:
        ctx.prec = max(28, len(str(abs(raw))) + decimals + 2)
        return format_decimal(Decimal(raw).scaleb(-decimals))


class Asset(BaseModel):
    """Identity of a fungible or non-fungible value unit.

    Two assets are equal iff ``(chain, contract_address or native, token_id)`` match.
    Display fields (symbol, name, decimals) do not take part in equality so a placeholder
    asset reconciles with the resolved one later.
    """

    model_config = ConfigDict(frozen=True)

    chain: Chain
    kind: AssetKind
    symbol: str
    name: str
    decimals: int
    contract_address: str | None = None
    token_id: str | None = None
    price_id: str | None = None
    is_placeholder: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalize_contract(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        contract = data.get("contract_address")
        chain = data.get("chain")
        if contract and chain is not None and chain_family(Chain(chain)) == ChainFamily.EVM:
            data = {**data, "contract_address": str(contract).lower()}
        return data

    @model_validator(mode="after")
    def _validate_fields(self) -> Asset:
        if self.decimals < 0:
            raise ValueError("decimals must be >= 0")
        if self.kind != AssetKind.NATIVE and not self.contract_address:
            raise ValueError(f"{self.kind} asset requires a contract_address")
        return self

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (self.chain.value, self.contract_address or "native", self.token_id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Asset):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        return f"{self.chain}:{self.symbol}"

    @classmethod
    def native(cls, chain: Chain) -> Asset:
        symbol, name, decimals = NATIVE_CURRENCIES.get(chain, (chain.value.upper(), chain.value.title(), 18))
        return cls(
            chain=chain,
            kind=AssetKind.NATIVE,
            symbol=symbol,
            name=name,
            decimals=decimals,
            price_id=symbol,
        )

    @classmethod
    def token(
        cls,
        chain: Chain,
        contract_address: str,
        *,
        symbol: str,
        name: str,
        decimals: int,
        kind: AssetKind = AssetKind.TOKEN,
        token_id: str | None = None,
        price_id: str | None = None,
    ) -> Asset:
        return cls(
            chain=chain,
            kind=kind,
            symbol=symbol,
            name=name,
            decimals=decimals,
            contract_address=contract_address,
            token_id=token_id,
            price_id=price_id,
        )

    @classmethod
    def placeholder(
        cls,
        chain: Chain,
        contract_address: str,
        *,
        decimals: int = 0,
        kind: AssetKind = AssetKind.TOKEN,
        token_id: str | None = None,
    ) -> Asset:
        return cls(
            chain=chain,
            kind=kind,
            symbol=PLACEHOLDER_SYMBOL,
            name=f"Unknown asset {contract_address}",
            decimals=decimals,
            contract_address=contract_address,
            token_id=token_id,
            is_placeholder=True,
        )


NATIVE_CURRENCIES: dict[Chain, tuple[str, str, int]] = {
    Chain.BITCOIN: ("BTC", "Bitcoin", 8),
    Chain.ETHEREUM: ("ETH", "Ethereum", 18),
    Chain.ARBITRUM: ("ETH", "Ethereum", 18),
    Chain.OPTIMISM: ("ETH", "Ethereum", 18),
    Chain.BASE: ("ETH", "Ethereum", 18),
    Chain.POLYGON: ("POL", "Polygon", 18),
    Chain.SOLANA: ("SOL", "Solana", 9),
}


class FiatValue(BaseModel):
    currency: str
    amount: Decimal
    price: Decimal
    price_timestamp: datetime
    price_source: str


class Amount(BaseModel):
    """Quantity of an asset in its smallest unit.

    ``raw`` is an exact integer and is serialized as a decimal string, since wei and
    lamport values routinely exceed the range of a double.
    """

    asset: Asset
    raw: int
    formatted: str = ""
    fiat_value: FiatValue | None = None

    @field_validator("raw", mode="before")
    @classmethod
    def _parse_raw(cls, value: Any) -> Any:
        if isinstance(value, str):
            return int(value)
        if isinstance(value, float):
            raise ValueError("raw amounts must not be floats")
        return value

    @model_validator(mode="after")
    def _validate_fields(self) -> Amount:
        if self.raw < 0:
            raise ValueError("Amount.raw must be >= 0")
        if not self.formatted:
            self.formatted = format_units(self.raw, self.asset.decimals)
        return self

    @field_serializer("raw")
    def _serialize_raw(self, value: int) -> str:
        return str(value)

    @property
    def quantity(self) -> Decimal:
        return units_to_decimal(self.raw, self.asset.decimals)

    @classmethod
    def of(cls, asset: Asset, raw: int) -> Amount:
        return cls(asset=asset, raw=raw)
