"""Token Metadata account lookup and decoding."""

from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Tuple

from solders.pubkey import Pubkey

from ..errors import MetadataParseError

if TYPE_CHECKING:  # pragma: no cover
    from ..ledger import LedgerClient

logger = logging.getLogger(__name__)

METADATA_PROGRAM_ID = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")
PUMP_FUN_PROGRAM_ID = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")

MAX_URI_LENGTH = 1024

# key (u8) + update authority + mint
_HEADER_LEN = 1 + 32 + 32

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_URI_SCHEMES = re.compile(r"^(https?://|ipfs://|ar://)", re.IGNORECASE)
BARE_CID_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{46,}$")


@dataclass(slots=True)
class OnchainMetadata:
    name: str | None = None
    symbol: str | None = None
    uri: str | None = None


def metadata_pda(mint: str | Pubkey) -> Pubkey:
    mint_key = mint if isinstance(mint, Pubkey) else Pubkey.from_string(mint)
    pda, _ = Pubkey.find_program_address(
        [b"metadata", bytes(METADATA_PROGRAM_ID), bytes(mint_key)],
        METADATA_PROGRAM_ID,
    )
    return pda


def bonding_curve_pda(mint: str | Pubkey) -> Pubkey:
    """Return the pump.fun bonding curve account for ``mint``."""
    mint_key = mint if isinstance(mint, Pubkey) else Pubkey.from_string(mint)
    pda, _ = Pubkey.find_program_address([b"bonding-curve", bytes(mint_key)], PUMP_FUN_PROGRAM_ID)
    return pda


def _read_string(data: bytes, offset: int) -> Tuple[str, int]:
    if offset + 4 > len(data):
        raise MetadataParseError(f"string length out of bounds at offset {offset}")
    (length,) = struct.unpack_from("<I", data, offset)
    offset += 4
    if offset + length > len(data):
        raise MetadataParseError(f"string of {length} bytes out of bounds at offset {offset}")
    raw = data[offset : offset + length]
    return raw.decode("utf-8", errors="replace"), offset + length


def parse_metadata_account(data: bytes) -> OnchainMetadata:
    """Decode name, symbol and uri from a Token Metadata account.

    Raises :class:`MetadataParseError` on truncated or malformed data.
    """
    if len(data) < _HEADER_LEN + 4:
        raise MetadataParseError(f"metadata account too short ({len(data)} bytes)")
    name, offset = _read_string(data, _HEADER_LEN)
    symbol, offset = _read_string(data, offset)
    uri, _ = _read_string(data, offset)
    return OnchainMetadata(
        name=sanitize_string(name),
        symbol=sanitize_string(symbol),
        uri=sanitize_uri(uri),
    )


def sanitize_string(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = _CONTROL_CHARS.sub("", value.replace("\x00", "")).strip()
    return cleaned or None


def sanitize_uri(value: str | None) -> str | None:
    """Return an acceptable metadata URI or ``None``.

    Only http(s), ipfs and ar schemes pass; a bare CID becomes ``ipfs://<cid>``.
    """
    if not value:
        return None
    cleaned = value.replace("\x00", "").strip()
    if not cleaned or len(cleaned) > MAX_URI_LENGTH:
        return None
    if _URI_SCHEMES.match(cleaned):
        return cleaned
    if BARE_CID_RE.match(cleaned):
        return f"ipfs://{cleaned}"
    return None


async def fetch_onchain_metadata(ledger: "LedgerClient", mint: str) -> Optional[OnchainMetadata]:
    """Read and decode the metadata account for ``mint``.

    Returns ``None`` when the account is missing or unparsable. Transport
    errors propagate so callers can apply their retry policy.
    """
    try:
        pda = metadata_pda(mint)
    except ValueError as exc:
        logger.debug("Cannot derive metadata PDA for %s: %s", mint, exc)
        return None
    data = await ledger.get_account_bytes(pda)
    if not data:
        return None
    try:
        parsed = parse_metadata_account(data)
    except MetadataParseError as exc:
        logger.warning("Unparsable metadata account for %s: %s", mint, exc)
        return None
    if not any((parsed.name, parsed.symbol, parsed.uri)):
        return None
    return parsed


__all__ = [
    "OnchainMetadata",
    "METADATA_PROGRAM_ID",
    "PUMP_FUN_PROGRAM_ID",
    "metadata_pda",
    "bonding_curve_pda",
    "parse_metadata_account",
    "sanitize_string",
    "sanitize_uri",
    "fetch_onchain_metadata",
]
