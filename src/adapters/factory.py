from __future__ import annotations

from typing import Any, Callable

import requests

from clients.esplora import EsploraClient
from clients.etherscan import EtherscanClient
from clients.solana_rpc import SolanaRPCClient
from config import AppSettings, config
from domain.base_types import Chain, ChainFamily, chain_family

from .base import ChainAdapter
from .bitcoin import BitcoinAdapter
from .ethereum import EthereumAdapter
from .solana import SolanaAdapter
from .token_registry import TokenRegistry

AdapterBuilder = Callable[[Chain, AppSettings, dict[str, Any], TokenRegistry], ChainAdapter]


def _bitcoin(chain: Chain, settings: AppSettings, http: dict[str, Any], tokens: TokenRegistry) -> ChainAdapter:
    return BitcoinAdapter(EsploraClient(settings.esplora_url, **http), token_registry=tokens)


def _evm(chain: Chain, settings: AppSettings, http: dict[str, Any], tokens: TokenRegistry) -> ChainAdapter:
    client = EtherscanClient(chain, api_key=settings.etherscan_api_key, base_url=settings.etherscan_url, **http)
    return EthereumAdapter(client, token_registry=tokens)


def _solana(chain: Chain, settings: AppSettings, http: dict[str, Any], tokens: TokenRegistry) -> ChainAdapter:
    return SolanaAdapter(SolanaRPCClient(settings.solana_rpc_url, **http), token_registry=tokens)


ADAPTER_BUILDERS: dict[ChainFamily, AdapterBuilder] = {
    ChainFamily.UTXO: _bitcoin,
    ChainFamily.EVM: _evm,
    ChainFamily.SOLANA: _solana,
}


def build_adapter(
    chain: Chain,
    *,
    settings: AppSettings | None = None,
    session: requests.Session | None = None,
    token_registry: TokenRegistry | None = None,
) -> ChainAdapter:
    """Adapter for ``chain`` wired to its family's API client."""
    builder = ADAPTER_BUILDERS.get(chain_family(chain))
    if builder is None:
        msg = f"No adapter available for chain {chain}"
        raise ValueError(msg)
    settings = settings or config()
    http = {
        "timeout": settings.http_timeout,
        "retry_attempts": settings.http_retry_attempts,
        "session": session,
    }
    return builder(chain, settings, http, token_registry or TokenRegistry())


__all__ = ["ADAPTER_BUILDERS", "build_adapter"]
