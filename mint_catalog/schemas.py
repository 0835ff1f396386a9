"""Typed event payload schemas used with the event bus."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


# ─────────────────────────────
# Event payload dataclasses
# ─────────────────────────────

@dataclass
class NewTokenEvent:
    """Payload emitted when the watcher persists a freshly created mint."""
    mint: str
    decimals: int
    supply: float
    blocktime: float
    signature: Optional[str] = None
    status: str = "fresh"
    source: str = "helius"


@dataclass
class PriceAlert:
    """Payload emitted when a price moves more than the alert threshold."""
    mint: str
    previous_price: float
    current_price: float
    change_percent: float
    marketcap: float
    volume_24h: float
    timestamp: float


@dataclass
class TokenUpdated:
    """Payload emitted after a new market snapshot is written."""
    mint: str
    price_usd: float
    marketcap: float
    source: str
    status: Optional[str] = None


__all__ = ["NewTokenEvent", "PriceAlert", "TokenUpdated"]
