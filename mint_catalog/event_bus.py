"""In-process publish/subscribe used as the outbound notification sink."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from typing import Any, Awaitable, Callable, DefaultDict, Generator, List, Set

logger = logging.getLogger(__name__)

TOKEN_DISCOVERED = "token_discovered"
TOKEN_UPDATED = "token_updated"
PRICE_ALERT = "price_alert"

Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """Fan events out to local handlers without blocking the publisher.

    Coroutine handlers are scheduled as tasks on the running loop; plain
    callables run inline. Handler failures are logged and never reach the
    publisher.
    """

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()
        self.published = 0

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``topic`` events.

        Returns a callable that will remove the handler when invoked.
        """
        self._subscribers[topic].append(handler)

        def _unsub() -> None:
            self.unsubscribe(topic, handler)

        return _unsub

    @contextmanager
    def subscription(self, topic: str, handler: Handler) -> Generator[Handler, None, None]:
        """Context manager that registers ``handler`` for ``topic`` and automatically unsubscribes."""
        unsub = self.subscribe(topic, handler)
        try:
            yield handler
        finally:
            unsub()

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._subscribers.get(topic)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._subscribers.pop(topic, None)

    def publish(self, topic: str, payload: Any) -> None:
        """Publish ``payload`` to all subscribers of ``topic``."""
        if is_dataclass(payload) and not isinstance(payload, type):
            payload = asdict(payload)
        self.published += 1
        handlers = list(self._subscribers.get(topic, []))
        if not handlers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for handler in handlers:
            if inspect.iscoroutinefunction(handler):
                if loop is None:
                    logger.debug("No running loop; dropping %s event for %r", topic, handler)
                    continue
                task = loop.create_task(self._guard(topic, handler, payload))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                continue
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler for %s failed", topic)

    async def _guard(self, topic: str, handler: Handler, payload: Any) -> None:
        try:
            await handler(payload)  # type: ignore[misc]
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Event handler for %s failed", topic)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for scheduled handler tasks, cancelling stragglers after ``timeout``."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def reset(self) -> None:
        self._subscribers.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


BUS = EventBus()


def subscribe(topic: str, handler: Handler) -> Callable[[], None]:
    return BUS.subscribe(topic, handler)


def unsubscribe(topic: str, handler: Handler) -> None:
    BUS.unsubscribe(topic, handler)


def publish(topic: str, payload: Any) -> None:
    BUS.publish(topic, payload)


def reset() -> None:
    BUS.reset()


__all__ = [
    "EventBus",
    "BUS",
    "TOKEN_DISCOVERED",
    "TOKEN_UPDATED",
    "PRICE_ALERT",
    "subscribe",
    "unsubscribe",
    "publish",
    "reset",
]
