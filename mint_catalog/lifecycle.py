"""Reconciles token status from enrichment and market data."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .catalog import STATUS_ACTIVE, STATUS_CURVE, TokenCatalog

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LifecycleReport:
    to_curve: int = 0
    to_active: int = 0


class LifecycleCoordinator:
    """Move tokens fresh -> curve -> active.

    A fresh token flagged on-curve by enrichment becomes ``curve``. A curve
    token that has market data has migrated off its bonding curve and becomes
    ``active``. The catalog refuses any backwards move.
    """

    def __init__(self, catalog: TokenCatalog, *, batch_limit: int = 500) -> None:
        self.catalog = catalog
        self.batch_limit = batch_limit

    async def run_once(self) -> LifecycleReport:
        report = LifecycleReport()
        fresh_on_curve, migrated = await self.catalog.find_lifecycle_candidates(self.batch_limit)
        for mint in fresh_on_curve:
            if await self.catalog.advance_status(mint, STATUS_CURVE):
                report.to_curve += 1
        for mint in migrated:
            if await self.catalog.advance_status(mint, STATUS_ACTIVE, clear_curve=True):
                report.to_active += 1
        if report.to_curve or report.to_active:
            logger.info(
                "Lifecycle: %d token(s) on curve, %d migrated to active",
                report.to_curve,
                report.to_active,
            )
        return report


__all__ = ["LifecycleCoordinator", "LifecycleReport"]
