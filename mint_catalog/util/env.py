"""Helpers for reading numeric and boolean settings from the environment."""

from __future__ import annotations

import os
from typing import Iterable
from urllib.parse import parse_qsl, urlsplit

_TRUE_VALUES = {"1", "true", "yes", "y", "on", "enable", "enabled", "t"}
_PLACEHOLDER_MARKERS = ("YOUR_KEY", "YOUR_HELIUS_KEY", "CHANGE_ME", "EXAMPLE", "REDACTED")


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    try:
        value = float(raw) if raw not in {None, ""} else float(default)
    except (TypeError, ValueError):
        value = float(default)
    if minimum is not None:
        value = max(minimum, value)
    return value


def env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw not in {None, ""} else int(default)
    except (TypeError, ValueError):
        value = int(default)
    if minimum is not None:
        value = max(minimum, value)
    return value


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _is_placeholder(value: str) -> bool:
    lowered = value.lower()
    return any(marker.lower() in lowered for marker in _PLACEHOLDER_MARKERS)


def resolve_env(names: Iterable[str]) -> str:
    """Return the first non-empty, non-placeholder value among ``names``."""

    for name in names:
        candidate = (os.environ.get(name) or "").strip()
        if not candidate or _is_placeholder(candidate):
            continue
        return candidate
    return ""


def api_key_from_url(url: str | None) -> str:
    """Extract an ``api-key`` query parameter from *url* when present."""

    if not url:
        return ""
    try:
        query = dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))
    except ValueError:
        return ""
    key = query.get("api-key") or query.get("api_key") or ""
    return key.strip()


__all__ = [
    "env_float",
    "env_int",
    "env_flag",
    "resolve_env",
    "api_key_from_url",
]
