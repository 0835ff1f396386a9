"""Background metadata enrichment for discovered tokens."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping

import aiohttp

from .catalog import TokenCatalog
from .classification import classify_metadata
from .clients.helius_das import DasAsset, HeliusDasClient
from .errors import CatalogUnavailable, MetadataParseError
from .event_bus import TOKEN_DISCOVERED, EventBus
from .ledger import LedgerClient
from .metadata.offchain import OffchainDocument, OffchainResolver, extract_social_links
from .metadata.onchain import OnchainMetadata, bonding_curve_pda, fetch_onchain_metadata
from .util.tasks import settle_in_chunks

logger = logging.getLogger(__name__)

PUMP_FUN = "pump.fun"
BONK_FUN = "bonk.fun"


def _clean(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _is_connectivity_error(exc: BaseException) -> bool:
    return isinstance(
        exc,
        (CatalogUnavailable, ConnectionError, asyncio.TimeoutError, aiohttp.ClientConnectionError),
    )


def curve_fields(mint: str, source: str | None) -> Dict[str, Any]:
    """Return curve-related update fields implied by the launch platform."""
    if source == PUMP_FUN:
        return {"is_on_curve": True, "bonding_curve_address": str(bonding_curve_pda(mint))}
    if source == BONK_FUN:
        return {"is_on_curve": True}
    return {}


class MetadataEnricher:
    """Fill in descriptive fields using on-chain data first and DAS second."""

    def __init__(
        self,
        catalog: TokenCatalog,
        ledger: LedgerClient,
        das: HeliusDasClient,
        resolver: OffchainResolver,
        bus: EventBus | None = None,
        *,
        batch_limit: int = 30,
        social_limit: int = 15,
        concurrency: int = 6,
        social_concurrency: int = 4,
        max_attempts: int = 3,
        retry_base: float = 0.5,
    ) -> None:
        self.catalog = catalog
        self.ledger = ledger
        self.das = das
        self.resolver = resolver
        self.batch_limit = batch_limit
        self.social_limit = social_limit
        self.concurrency = max(1, concurrency)
        self.social_concurrency = max(1, social_concurrency)
        self.max_attempts = max(1, max_attempts)
        self.retry_base = retry_base
        self._unsubscribe: Callable[[], None] | None = None
        if bus is not None:
            self._unsubscribe = bus.subscribe(TOKEN_DISCOVERED, self._on_discovered)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def _on_discovered(self, payload: Mapping[str, Any]) -> None:
        mint = payload.get("mint") if isinstance(payload, Mapping) else None
        if not mint:
            return
        try:
            await self.enrich_token(mint)
        except Exception as exc:
            logger.debug("Immediate enrichment failed for %s: %s", mint, exc)

    async def _lookup(self, mint: str) -> tuple[OnchainMetadata | None, DasAsset | None]:
        onchain, das = await asyncio.gather(
            fetch_onchain_metadata(self.ledger, mint),
            self.das.get_asset(mint),
            return_exceptions=True,
        )
        if isinstance(onchain, BaseException) and isinstance(das, BaseException):
            raise onchain
        if isinstance(onchain, BaseException):
            logger.debug("On-chain metadata lookup failed for %s: %s", mint, onchain)
            onchain = None
        if isinstance(das, BaseException):
            logger.debug("DAS lookup failed for %s: %s", mint, das)
            das = None
        return onchain, das

    async def _enrich_once(self, mint: str) -> bool:
        onchain, das = await self._lookup(mint)
        onchain = onchain or OnchainMetadata()
        das = das or DasAsset()

        name = _clean(onchain.name) or _clean(das.name)
        symbol = _clean(onchain.symbol) or _clean(das.symbol)
        uri = _clean(onchain.uri) or _clean(das.json_uri)
        image = _clean(das.image)

        document: OffchainDocument | None = None
        if uri:
            document = await self.resolver.fetch_document(uri)
        data = document.data if document and document.data else {}
        name = name or _clean(data.get("name"))
        symbol = symbol or _clean(data.get("symbol"))
        image = image or (document.image_url if document else None)

        if not (name or symbol or uri):
            logger.debug("No metadata found for %s", mint)
            return False

        verdict = classify_metadata(name, symbol)
        if not verdict.accepted:
            logger.info("Unwanted token %s (%s / %s): %s", mint, name, symbol, verdict.reason)
            return False

        update: Dict[str, Any] = {
            "name": name,
            "symbol": symbol,
            "metadata_uri": uri,
            "image_url": image,
        }
        if data:
            socials = extract_social_links(data)
            update.update(socials.as_update())
            update.update(curve_fields(mint, socials.source))
        changed = await self.catalog.update_metadata(mint, **update)
        if document is not None:
            await self.catalog.mark_socials_checked(mint)
        if changed:
            logger.info("Metadata enriched for %s: %s (%s)", mint, name or "?", symbol or "?")
        return bool(changed)

    async def enrich_token(self, mint: str) -> bool:
        """Enrich one mint, retrying transient failures.

        Returns ``True`` when any field changed. Exhausted retries leave the
        token with whatever it had; the next pass revisits it.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._enrich_once(mint)
            except MetadataParseError as exc:
                logger.warning("Skipping %s: %s", mint, exc)
                return False
            except Exception as exc:
                if attempt >= self.max_attempts:
                    logger.error("Failed to enrich %s after %d attempts: %s", mint, attempt, exc)
                    return False
                if _is_connectivity_error(exc):
                    delay = 2.0 ** attempt
                else:
                    delay = (2.0 ** (attempt - 1)) * self.retry_base
                logger.warning(
                    "Metadata enrichment failed for %s (attempt %d/%d): %s; retrying in %.1fs",
                    mint,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
        return False

    async def enrich_socials(self, mint: str) -> bool:
        token = await self.catalog.get_token(mint)
        if token is None or not token.metadata_uri:
            return False
        document = await self.resolver.fetch_document(token.metadata_uri)
        await self.catalog.mark_socials_checked(mint)
        if document is None or not document.data:
            return False
        socials = extract_social_links(document.data)
        update: Dict[str, Any] = dict(socials.as_update())
        update.update(curve_fields(mint, socials.source))
        if document.image_url:
            update["image_url"] = document.image_url
        if not update:
            return False
        changed = await self.catalog.update_metadata(mint, **update)
        if changed:
            logger.info("Social links updated for %s: %s", mint, ", ".join(sorted(changed)))
        return bool(changed)

    async def run_metadata_pass(self) -> int:
        mints = await self.catalog.find_mints_needing_metadata(self.batch_limit)
        if not mints:
            logger.debug("No tokens need metadata enrichment")
            return 0
        logger.info("Enriching metadata for %d tokens", len(mints))
        results = await settle_in_chunks(mints, self.enrich_token, self.concurrency)
        return _count_successes(results, "metadata")

    async def run_social_pass(self) -> int:
        mints = await self.catalog.find_mints_needing_socials(self.social_limit)
        if not mints:
            logger.debug("No tokens need social links enrichment")
            return 0
        logger.info("Enriching social links for %d tokens", len(mints))
        results = await settle_in_chunks(mints, self.enrich_socials, self.social_concurrency)
        return _count_successes(results, "social")


def _count_successes(results: List[Any], label: str) -> int:
    done = 0
    for result in results:
        if isinstance(result, BaseException):
            logger.warning("%s enrichment item failed: %s", label, result)
        elif result:
            done += 1
    return done


__all__ = ["MetadataEnricher", "curve_fields"]
