"""Small asyncio helpers shared by the sweeps."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, TypeVar

T = TypeVar("T")


async def settle_in_chunks(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[Any]],
    size: int,
) -> List[Any]:
    """Run ``worker`` over ``items`` with at most ``size`` in flight per chunk.

    Results keep input order; failures are returned as exception objects.
    """
    values = list(items)
    size = max(1, int(size))
    results: List[Any] = []
    for start in range(0, len(values), size):
        chunk = values[start : start + size]
        results.extend(await asyncio.gather(*(worker(v) for v in chunk), return_exceptions=True))
    return results


__all__ = ["settle_in_chunks"]
