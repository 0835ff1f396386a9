"""Process runtime that wires the ingestion pipeline together."""

from __future__ import annotations

import asyncio
import datetime
import logging
import signal
from typing import List, Optional

from .catalog import TokenCatalog
from .clients.helius_das import HeliusDasClient
from .config import Config
from .enricher import MetadataEnricher
from .event_bus import EventBus
from .holders import HolderIndexer
from .http import close_session
from .ledger import LedgerClient
from .lifecycle import LifecycleCoordinator
from .market_data import MarketDataAggregator, MarketQuote
from .metadata.offchain import OffchainResolver
from .rate_queue import RequestQueue
from .scheduler import PeriodicTask
from .watcher import MintWatcher

log = logging.getLogger(__name__)


class CatalogRuntime:
    """Own every long-lived component and their start/stop order."""

    def __init__(self, config: Config, *, bus: EventBus | None = None) -> None:
        self.config = config
        self.bus = bus or EventBus()
        self.catalog = TokenCatalog(config.database_url)
        self.queue = RequestQueue.from_millis(config.rate_limit_ms)
        self.ledger = LedgerClient(config.rpc_url)
        self.das = HeliusDasClient(config.helius_api_key, base_url=config.das_url, queue=self.queue)
        self.resolver = OffchainResolver(gateways=config.ipfs_gateways, queue=self.queue)
        self.watcher = MintWatcher(config.ws_url, self.catalog, self.ledger, self.bus)
        self.enricher = MetadataEnricher(
            self.catalog,
            self.ledger,
            self.das,
            self.resolver,
            self.bus,
            batch_limit=config.enrich_batch_limit,
            social_limit=config.social_batch_limit,
            concurrency=config.enrich_concurrency,
            social_concurrency=config.social_concurrency,
        )
        self.market = MarketDataAggregator.from_config(config, self.catalog, self.bus, self.queue)
        self.lifecycle = LifecycleCoordinator(self.catalog)
        self.holders = HolderIndexer(self.catalog, self.ledger, batch_limit=config.holder_batch_limit)
        self.tasks: List[PeriodicTask] = [
            PeriodicTask("metadata-enrichment", config.enrich_interval, self.enricher.run_metadata_pass),
            PeriodicTask("social-enrichment", config.social_interval, self.enricher.run_social_pass),
            PeriodicTask("market-sweep", config.market_interval, self.market.run_sweep),
            PeriodicTask("lifecycle", config.lifecycle_interval, self.lifecycle.run_once),
            PeriodicTask("holders", config.holder_interval, self.holders.run_once),
            PeriodicTask("snapshot-retention", config.prune_interval, self._prune_snapshots),
        ]
        self.stop_event = asyncio.Event()
        self._started = False

    async def _prune_snapshots(self) -> int:
        retention = datetime.timedelta(days=self.config.snapshot_retention_days)
        return await self.catalog.prune_snapshots(retention)

    async def start(self) -> None:
        await self.catalog.init()
        counts = await self.catalog.status_counts()
        log.info("Catalog ready at %s: %s", self.config.database_url, dict(counts) or "empty")
        self.watcher.start()
        for task in self.tasks:
            task.start()
        self._started = True
        log.info("Mint catalog runtime started")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.stop_event.set()
        grace = self.config.shutdown_grace
        log.info("Stopping mint catalog runtime (grace %.1fs)", grace)
        await self.watcher.stop(grace)
        await asyncio.gather(*(task.stop(grace) for task in self.tasks))
        self.enricher.close()
        await self.bus.drain(timeout=grace)
        await self.queue.close()
        await self.ledger.close()
        await close_session()
        await self.catalog.close()
        log.info("Mint catalog runtime stopped")

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop_event.set)
            except NotImplementedError:  # pragma: no cover - non-posix
                pass
        try:
            await self.start()
            await self.stop_event.wait()
        finally:
            await self.stop()

    def run_forever(self) -> None:
        try:
            asyncio.run(self.run())
        except KeyboardInterrupt:
            log.info("Mint catalog runtime interrupted")


async def purge_denied(config: Config) -> int:
    catalog = TokenCatalog(config.database_url)
    try:
        await catalog.init()
        return await catalog.purge_denied()
    finally:
        await catalog.close()


async def reset_status(config: Config, mint: str, status: str) -> bool:
    catalog = TokenCatalog(config.database_url)
    try:
        await catalog.init()
        return await catalog.reset_status(mint, status)
    finally:
        await catalog.close()


async def refresh_market_data(config: Config, mint: str) -> Optional[MarketQuote]:
    """One-shot on-demand market refresh for ``mint``."""
    catalog = TokenCatalog(config.database_url)
    queue = RequestQueue.from_millis(config.rate_limit_ms)
    bus = EventBus()
    try:
        await catalog.init()
        market = MarketDataAggregator.from_config(config, catalog, bus, queue)
        return await market.refresh_now(mint)
    finally:
        await queue.close()
        await close_session()
        await catalog.close()


__all__ = ["CatalogRuntime", "purge_denied", "reset_status", "refresh_market_data"]
