from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from config import ARTIFACTS_DIR
from domain.base_types import Chain, WalletId

DEFAULT_ACCOUNTS_PATH = ARTIFACTS_DIR / "accounts.json"

CHAIN_ALIASES: dict[str, Chain] = {
    "btc": Chain.BITCOIN,
    "eth": Chain.ETHEREUM,
    "arb": Chain.ARBITRUM,
    "op": Chain.OPTIMISM,
    "matic": Chain.POLYGON,
    "sol": Chain.SOLANA,
}


@dataclass(frozen=True)
class WalletAccount:
    wallet_id: WalletId
    name: str
    address: str
    chains: list[Chain] = field(default_factory=list)
    skip_sync: bool = False


def normalize_address(address: str) -> str:
    # EVM addresses are case-insensitive hex; base58/bech32 ones are not.
    return address.lower() if address.lower().startswith("0x") else address


def parse_chain(value: object) -> Chain:
    text = str(value).strip().lower()
    if text in CHAIN_ALIASES:
        return CHAIN_ALIASES[text]
    try:
        return Chain(text)
    except ValueError as err:
        msg = f"Unsupported chain in accounts file: {value!r}"
        raise ValueError(msg) from err


def _dedupe_chains(chains: Iterable[Chain]) -> list[Chain]:
    return list(dict.fromkeys(chains))


def load_accounts(path: Path = DEFAULT_ACCOUNTS_PATH) -> list[WalletAccount]:
    payload = json.loads(path.read_text())
    if not isinstance(payload, list):
        msg = "Accounts file must contain a JSON list of objects."
        raise ValueError(msg)

    merged: dict[tuple[str, str], WalletAccount] = {}
    for entry in payload:
        if not isinstance(entry, dict):
            msg = "Each account entry must be an object with 'name', 'address' and 'chains'."
            raise ValueError(msg)
        name = entry.get("name")
        address = entry.get("address")
        chains_raw = entry.get("chains")
        if not isinstance(name, str) or not isinstance(address, str) or not isinstance(chains_raw, list):
            msg = "Each account entry must include 'name' (string), 'address' (string) and 'chains' (list)."
            raise ValueError(msg)

        wallet_id = WalletId(str(entry.get("wallet_id") or name))
        normalized = normalize_address(address)
        chains = [parse_chain(chain) for chain in chains_raw]
        key = (wallet_id, normalized)
        existing = merged.get(key)
        if existing is not None:
            chains = [*existing.chains, *chains]
        merged[key] = WalletAccount(
            wallet_id=wallet_id,
            name=name,
            address=normalized,
            chains=_dedupe_chains(chains),
            skip_sync=bool(entry.get("skip_sync", existing.skip_sync if existing else False)),
        )

    return list(merged.values())


def wallet_addresses(accounts: Iterable[WalletAccount]) -> Mapping[WalletId, set[str]]:
    """All addresses per wallet; a wallet owns every address listed under its id."""
    addresses: dict[WalletId, set[str]] = defaultdict(set)
    for account in accounts:
        addresses[account.wallet_id].add(account.address)
    return dict(addresses)


__all__ = [
    "CHAIN_ALIASES",
    "DEFAULT_ACCOUNTS_PATH",
    "WalletAccount",
    "load_accounts",
    "normalize_address",
    "parse_chain",
    "wallet_addresses",
]
