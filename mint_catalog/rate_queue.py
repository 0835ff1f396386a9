"""Shared FIFO scheduler that spaces outbound provider calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Set, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

WorkItem = Callable[[], Awaitable[Any]]


def _consume_result(fut: "asyncio.Future[Any]") -> None:
    # Mark fire-and-forget failures as retrieved; they were already logged.
    if not fut.cancelled():
        fut.exception()


class RequestQueue:
    """Throttle zero-argument coroutine factories to one start per interval.

    Items start strictly in FIFO order and never closer together than
    ``min_interval`` seconds. A single drain task exists at any time; calls
    to :meth:`enqueue` made while it runs simply extend the backlog. Each
    item runs as its own task once its slot arrives, so a slow provider only
    delays the caller awaiting it. Failures are logged and reported to the
    submitting caller without stopping the queue.
    """

    def __init__(self, min_interval: float, *, name: str = "providers") -> None:
        self.min_interval = max(0.0, float(min_interval))
        self.name = name
        self._items: Deque[Tuple[WorkItem, "asyncio.Future[Any]"]] = deque()
        self._drainer: asyncio.Task | None = None
        self._inflight: Set[asyncio.Task] = set()
        self._last_start: float | None = None
        self._closed = False
        self.started = 0
        self.failed = 0

    @classmethod
    def from_millis(cls, interval_ms: float, *, name: str = "providers") -> "RequestQueue":
        return cls(max(0.0, float(interval_ms)) / 1000.0, name=name)

    def __len__(self) -> int:
        return len(self._items)

    @property
    def draining(self) -> bool:
        return self._drainer is not None and not self._drainer.done()

    def enqueue(self, fn: WorkItem) -> "asyncio.Future[Any]":
        """Schedule ``fn`` and return a future for its result."""
        if self._closed:
            raise RuntimeError(f"request queue {self.name!r} is closed")
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[Any] = loop.create_future()
        fut.add_done_callback(_consume_result)
        self._items.append((fn, fut))
        if not self.draining:
            self._drainer = loop.create_task(self._drain(), name=f"rate-queue:{self.name}")
        return fut

    async def submit(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Schedule ``fn`` and wait for its outcome."""
        return await self.enqueue(fn)

    async def _wait_turn(self) -> None:
        if self._last_start is None:
            return
        delay = self._last_start + self.min_interval - time.monotonic()
        if delay > 0:
            await asyncio.sleep(delay)

    async def _drain(self) -> None:
        while self._items:
            fn, fut = self._items.popleft()
            if fut.done():
                continue
            try:
                await self._wait_turn()
            except asyncio.CancelledError:
                fut.cancel()
                raise
            self._last_start = time.monotonic()
            self.started += 1
            task = asyncio.create_task(self._run_item(fn, fut))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _run_item(self, fn: WorkItem, fut: "asyncio.Future[Any]") -> None:
        try:
            result = await fn()
        except asyncio.CancelledError:
            if not fut.done():
                fut.cancel()
            raise
        except Exception as exc:
            self.failed += 1
            logger.warning(
                "Queued request failed on %s: %s: %s",
                self.name,
                type(exc).__name__,
                exc,
            )
            if not fut.done():
                fut.set_exception(exc)
        else:
            if not fut.done():
                fut.set_result(result)

    async def join(self) -> None:
        """Wait until every queued and in-flight item has finished."""
        while self.draining or self._inflight:
            if self._drainer is not None and not self._drainer.done():
                await asyncio.wait({self._drainer})
            if self._inflight:
                await asyncio.wait(set(self._inflight))

    async def close(self) -> None:
        """Stop accepting work and cancel anything not yet finished."""
        self._closed = True
        while self._items:
            _, fut = self._items.popleft()
            fut.cancel()
        pending = [t for t in (self._drainer, *self._inflight) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["RequestQueue", "WorkItem"]
