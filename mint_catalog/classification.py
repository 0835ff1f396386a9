"""Central policy for rejecting unwanted token categories.

Every check returns a :class:`Classification` so callers can log the reason
and tests can exercise the policy without any I/O.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

# Substrings matched against the upper-cased mint address.
MINT_DENY_SUBSTRINGS: tuple[str, ...] = (
    "JUPITER",
    "JUP",
    "SUGAR",
    "CANDY",
    "GUARD",
    "METAPLEX",
    "NFT",
    "COLLECTION",
    "MASTEREDITION",
    "METADATA",
    "DELEGATE",
    "RECORD",
    "LEND",
    "BORROW",
    "VAULT",
    "CPMM",
    "CREATOR",
    "POOL",
    "METEORA",
    "DBC",
    "DYNAMIC",
    "TOKENACCOUNT",
    "ATOKEN",
    "ATA",
)

# Terms matched against the lower-cased token name and symbol.
NAME_DENY_TERMS: tuple[str, ...] = (
    "jupiter vault",
    "jv",
    "jupiter",
    "sugar",
    ".sol",
    "orbit",
    "earth",
    "raydium cpmm",
    "cpmm",
    "creator pool",
    "creator",
    "pool",
    "meteora",
    "dbc",
    "dynamic bonding curve",
    "associated token",
    "token account",
    "ata",
    "atoken",
    "vault",
    "test",
    "demo",
    "lend",
    "borrow",
)

# Token Metadata is deliberately absent: fungible launches create metadata too.
CANDY_MACHINE_PROGRAMS: frozenset[str] = frozenset(
    {
        "cndy3Z4yapfJBmL3ShUp5exZKqR3z33thTzeNMm2gRZ",
        "CndyV3LdqHUfDLmE5naZjVN8rBZz4tqhdefbAnjHG3JR",
        "Guard1JwRhJkVH6XZhzoYxeBVQe872VH6QggF4BWmS9g",
        "p1exdMJcjVao65QdewkaZRUnU6VPSXhus9n2GzWfh98",
    }
)

_NFT_LOG_PHRASES: tuple[str, ...] = (
    "candy machine",
    "candy guard",
    "nft mint",
    "master edition",
    "collection delegate",
    "token record",
    "collection metadata",
    "nft metadata",
)

_NFT_ACCOUNT_HINTS: tuple[str, ...] = ("CNDY3", "GUARD1", "P1EXD")

# Short terms would match inside ordinary words, so they only match whole words.
_SHORT_TERM_LIMIT = 3


@dataclass(frozen=True, slots=True)
class Classification:
    accepted: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.accepted


ACCEPT = Classification(True)


def _reject(reason: str) -> Classification:
    return Classification(False, reason)


def classify_mint(mint: str | None) -> Classification:
    """Reject mints whose address carries a known noise-category marker."""

    text = (mint or "").strip()
    if not text:
        return _reject("empty mint")
    upper = text.upper()
    for marker in MINT_DENY_SUBSTRINGS:
        if marker in upper:
            return _reject(f"mint contains {marker}")
    return ACCEPT


def _term_matches(term: str, text: str) -> bool:
    if len(term) <= _SHORT_TERM_LIMIT and term.isalnum():
        return re.search(rf"(?<![a-z0-9]){re.escape(term)}(?![a-z0-9])", text) is not None
    return term in text


def classify_metadata(name: str | None, symbol: str | None) -> Classification:
    """Reject tokens whose name or symbol places them in an unwanted category."""

    for label, value in (("name", name), ("symbol", symbol)):
        text = (value or "").strip().lower()
        if not text:
            continue
        for term in NAME_DENY_TERMS:
            if _term_matches(term, text):
                return _reject(f"{label} matches {term!r}")
    return ACCEPT


def _account_keys(tx: Mapping[str, Any]) -> Iterable[str]:
    message = ((tx.get("transaction") or {}).get("message")) or {}
    for entry in message.get("accountKeys") or []:
        if isinstance(entry, str):
            yield entry
        elif isinstance(entry, Mapping) and isinstance(entry.get("pubkey"), str):
            yield entry["pubkey"]


def is_nft_mint_transaction(tx: Mapping[str, Any] | None) -> Classification:
    """Reject transactions that mint NFTs through Candy Machine style programs.

    ``tx`` is the ``result`` object of a ``getTransaction`` call.
    """

    if not isinstance(tx, Mapping):
        return ACCEPT
    meta = tx.get("meta") or {}
    for line in meta.get("logMessages") or []:
        lowered = str(line).lower()
        for phrase in _NFT_LOG_PHRASES:
            if phrase in lowered:
                return _reject(f"log mentions {phrase!r}")
    for key in _account_keys(tx):
        if key in CANDY_MACHINE_PROGRAMS:
            return _reject(f"uses program {key}")
        upper = key.upper()
        for hint in _NFT_ACCOUNT_HINTS:
            if hint in upper:
                return _reject(f"account key contains {hint.lower()}")
    message = ((tx.get("transaction") or {}).get("message")) or {}
    for ix in message.get("instructions") or []:
        if isinstance(ix, Mapping) and ix.get("programId") in CANDY_MACHINE_PROGRAMS:
            return _reject(f"instruction for program {ix['programId']}")
    return ACCEPT


__all__ = [
    "Classification",
    "classify_mint",
    "classify_metadata",
    "is_nft_mint_transaction",
    "MINT_DENY_SUBSTRINGS",
    "NAME_DENY_TERMS",
]
