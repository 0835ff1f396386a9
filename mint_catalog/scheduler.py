"""Fixed-interval background sweeps."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``fn`` every ``interval`` seconds.

    A tick that fires while the previous run is still in flight is skipped.
    Exceptions from a run are logged and never stop the schedule.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Awaitable[Any]],
        *,
        run_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval for {name} must be positive")
        self.name = name
        self.interval = float(interval)
        self.fn = fn
        self.run_immediately = run_immediately
        self._ticker: asyncio.Task | None = None
        self._current: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self.runs = 0
        self.skipped = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._ticker = asyncio.create_task(self._tick_loop(), name=f"periodic:{self.name}")
        logger.info("Started %s every %.1fs", self.name, self.interval)

    async def _run_once(self) -> None:
        self.runs += 1
        try:
            await self.fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("Periodic task %s failed", self.name)

    def _tick(self) -> None:
        if self.busy:
            self.skipped += 1
            logger.debug("Skipping %s tick; previous run still in flight", self.name)
            return
        self._current = asyncio.create_task(self._run_once(), name=f"periodic-run:{self.name}")

    async def _tick_loop(self) -> None:
        if self.run_immediately:
            self._tick()
        while not self._stop.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            if self._stop.is_set():
                break
            self._tick()

    async def stop(self, grace: float = 10.0) -> None:
        """Stop ticking and give an in-flight run ``grace`` seconds to finish."""
        self._stop.set()
        if self._ticker is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._ticker
            self._ticker = None
        current = self._current
        if current is not None and not current.done():
            done, _ = await asyncio.wait({current}, timeout=max(0.0, grace))
            if not done:
                logger.warning("Cancelling %s after %.1fs shutdown grace", self.name, grace)
                current.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await current
        self._current = None


__all__ = ["PeriodicTask"]
