"""Minimal JSON utilities backed by orjson."""

from __future__ import annotations

from typing import Any, Callable

import orjson

__all__ = ["loads", "dumps", "dumps_bytes", "JSONDecodeError"]

JSONDecodeError = orjson.JSONDecodeError


def loads(data: str | bytes | bytearray | memoryview) -> Any:
    """Parse JSON from ``data`` into Python objects."""
    return orjson.loads(data)


def dumps_bytes(
    obj: Any,
    *,
    sort_keys: bool = False,
    indent: int | None = None,
    default: Callable[[Any], Any] | None = None,
) -> bytes:
    """Serialize ``obj`` to a JSON byte string."""
    opts = orjson.OPT_NON_STR_KEYS
    if indent:
        opts |= orjson.OPT_INDENT_2
    if sort_keys:
        opts |= orjson.OPT_SORT_KEYS
    return orjson.dumps(obj, option=opts, default=default or str)


def dumps(
    obj: Any,
    *,
    sort_keys: bool = False,
    indent: int | None = None,
    default: Callable[[Any], Any] | None = None,
) -> str:
    """Serialize ``obj`` to a JSON string."""
    return dumps_bytes(obj, sort_keys=sort_keys, indent=indent, default=default).decode("utf-8")
