from __future__ import annotations

import logging
from threading import Lock
from typing import Iterable

from domain.assets import Asset
from domain.base_types import AssetKind, Chain, ChainFamily, chain_family
from domain.errors import UnknownAssetError

logger = logging.getLogger(__name__)

KNOWN_TOKENS: tuple[Asset, ...] = (
    Asset.token(
        Chain.ETHEREUM, "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", symbol="USDC", name="USD Coin", decimals=6
    ),
    Asset.token(
        Chain.ETHEREUM, "0xdac17f958d2ee523a2206206994597c13d831ec7", symbol="USDT", name="Tether USD", decimals=6
    ),
    Asset.token(
        Chain.ETHEREUM,
        "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
        symbol="WETH",
        name="Wrapped Ether",
        decimals=18,
        price_id="ETH",
    ),
    Asset.token(
        Chain.ETHEREUM, "0x6b175474e89094c44da98b954eedeac495271d0f", symbol="DAI", name="Dai Stablecoin", decimals=18
    ),
    Asset.token(
        Chain.ARBITRUM, "0xaf88d065e77c8cc2239327c5edb3a432268e5831", symbol="USDC", name="USD Coin", decimals=6
    ),
    Asset.token(
        Chain.OPTIMISM, "0x0b2c639c533813f4aa9d7837caf62653d097ff85", symbol="USDC", name="USD Coin", decimals=6
    ),
    Asset.token(Chain.BASE, "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913", symbol="USDC", name="USD Coin", decimals=6),
    Asset.token(
        Chain.POLYGON, "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359", symbol="USDC", name="USD Coin", decimals=6
    ),
    Asset.token(
        Chain.SOLANA, "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", symbol="USDC", name="USD Coin", decimals=6
    ),
    Asset.token(
        Chain.SOLANA, "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", symbol="USDT", name="Tether USD", decimals=6
    ),
)


def _key(chain: Chain, contract_address: str) -> tuple[Chain, str]:
    if chain_family(chain) == ChainFamily.EVM:
        return chain, contract_address.lower()
    return chain, contract_address


class TokenRegistry:
    """Token metadata by (chain, contract). Filled from well-known tokens and from API metadata."""

    def __init__(self, tokens: Iterable[Asset] = KNOWN_TOKENS) -> None:
        self._tokens: dict[tuple[Chain, str], Asset] = {}
        self._lock = Lock()
        for token in tokens:
            self.register(token)

    def register(self, asset: Asset) -> None:
        if asset.contract_address is None:
            msg = "Only contract assets can be registered"
            raise ValueError(msg)
        with self._lock:
            self._tokens.setdefault(_key(asset.chain, asset.contract_address), asset)

    def tokens_for(self, chain: Chain) -> list[Asset]:
        with self._lock:
            return [asset for (asset_chain, _), asset in self._tokens.items() if asset_chain == chain]

    def resolve(self, chain: Chain, contract_address: str) -> Asset:
        with self._lock:
            asset = self._tokens.get(_key(chain, contract_address))
        if asset is None:
            raise UnknownAssetError(f"No metadata for {chain} token {contract_address}", address=contract_address)
        return asset

    def resolve_or_placeholder(
        self,
        chain: Chain,
        contract_address: str,
        *,
        decimals: int | None = None,
    ) -> tuple[Asset, str | None]:
        """Resolved asset plus the warning to attach when only a placeholder could be built."""
        try:
            return self.resolve(chain, contract_address), None
        except UnknownAssetError as exc:
            logger.info("Using placeholder asset: %s", exc)
            placeholder = Asset.placeholder(chain, exc.address, decimals=decimals or 0)
            return placeholder, f"unknown_asset:{placeholder.contract_address}"

    def resolve_nft(self, chain: Chain, contract_address: str, token_id: str) -> Asset:
        with self._lock:
            collection = self._tokens.get(_key(chain, contract_address))
        return Asset.token(
            chain,
            contract_address,
            symbol=collection.symbol if collection else "NFT",
            name=collection.name if collection else f"NFT {contract_address}",
            decimals=0,
            kind=AssetKind.NFT,
            token_id=token_id,
        )


__all__ = ["KNOWN_TOKENS", "TokenRegistry"]
