"""Multi-provider market data with ordered fallback and price alerts."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, MutableMapping, Optional, Tuple

import aiohttp
from cachetools import TTLCache

from .catalog import Token, TokenCatalog
from .config import Config
from .event_bus import PRICE_ALERT, TOKEN_UPDATED, EventBus
from .http import get_session
from .logging_utils import warn_once_per
from .rate_queue import RequestQueue
from .schemas import PriceAlert, TokenUpdated
from .util.mints import is_valid_solana_mint
from .util.tasks import settle_in_chunks

logger = logging.getLogger(__name__)

BIRDEYE_TIMEOUT = 2.0
JUPITER_TIMEOUT = 1.5
HELIUS_TIMEOUT = 2.0
QUOTE_CACHE_TTL = 30.0


def _monotonic() -> float:
    return time.monotonic()


@dataclass(slots=True)
class MarketQuote:
    price: float
    marketcap: float = 0.0
    volume_24h: float = 0.0
    liquidity: float = 0.0
    source: str = ""


@dataclass(slots=True)
class ProviderHealth:
    name: str
    cooldown_until: float = 0.0
    consecutive_failures: int = 0
    last_status: int | None = None
    healthy: bool = True

    def in_cooldown(self) -> bool:
        return _monotonic() < self.cooldown_until

    def record_success(self) -> None:
        self.cooldown_until = 0.0
        self.consecutive_failures = 0
        self.last_status = None
        self.healthy = True

    def record_failure(self, status: int | None, *, cooldown: float | None = None) -> None:
        self.consecutive_failures += 1
        self.last_status = status
        self.healthy = False
        if cooldown is not None:
            self.cooldown_until = max(self.cooldown_until, _monotonic() + cooldown)


def _extract_price(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    if isinstance(value, Mapping):
        for key in ("price", "value", "priceUsd", "price_usd", "usd", "price_per_token"):
            if key in value:
                price = _extract_price(value[key])
                if price is not None:
                    return price
    return None


def _number(value: Any) -> float:
    parsed = _extract_price(value)
    return parsed if parsed is not None and parsed > 0 else 0.0


def _retry_after_seconds(headers: Mapping[str, str] | None) -> float | None:
    if not headers:
        return None
    retry_after = headers.get("Retry-After") or headers.get("retry-after")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


async def _fetch_birdeye(
    session: aiohttp.ClientSession,
    mint: str,
    *,
    api_key: str,
    url: str,
    timeout: float = BIRDEYE_TIMEOUT,
) -> Optional[MarketQuote]:
    headers = {"X-API-KEY": api_key, "accept": "application/json", "x-chain": "solana"}
    async with session.get(
        url,
        params={"address": mint},
        headers=headers,
        timeout=aiohttp.ClientTimeout(total=timeout),
    ) as resp:
        resp.raise_for_status()
        payload = await resp.json(content_type=None)
    if not isinstance(payload, Mapping) or payload.get("success") is False:
        return None
    data = payload.get("data")
    if not isinstance(data, Mapping):
        return None
    price = _number(data.get("price"))
    if price <= 0:
        return None
    return MarketQuote(
        price=price,
        marketcap=_number(data.get("marketCap")) or _number(data.get("mc")),
        volume_24h=_number(data.get("v24hUSD")),
        liquidity=_number(data.get("liquidity")),
        source="birdeye",
    )


async def _fetch_jupiter(
    session: aiohttp.ClientSession,
    mint: str,
    *,
    url: str,
    timeout: float = JUPITER_TIMEOUT,
) -> Optional[MarketQuote]:
    async with session.get(
        url,
        params={"ids": mint},
        headers={"accept": "application/json"},
        timeout=aiohttp.ClientTimeout(total=timeout),
    ) as resp:
        resp.raise_for_status()
        payload = await resp.json(content_type=None)
    if not isinstance(payload, Mapping):
        return None
    data = payload.get("data")
    if not isinstance(data, Mapping):
        return None
    price = _number(data.get(mint))
    if price <= 0:
        return None
    return MarketQuote(price=price, source="jupiter")


async def _fetch_helius(
    session: aiohttp.ClientSession,
    mint: str,
    *,
    api_key: str,
    url: str,
    timeout: float = HELIUS_TIMEOUT,
) -> Optional[MarketQuote]:
    async with session.post(
        url,
        params={"api-key": api_key},
        json={"mintAccounts": [mint]},
        headers={"accept": "application/json"},
        timeout=aiohttp.ClientTimeout(total=timeout),
    ) as resp:
        resp.raise_for_status()
        payload = await resp.json(content_type=None)
    if not isinstance(payload, list) or not payload:
        return None
    price = _number(payload[0]) if isinstance(payload[0], Mapping) else 0.0
    if price <= 0:
        return None
    return MarketQuote(price=price, source="helius")


ProviderCall = Callable[[aiohttp.ClientSession, str], Awaitable[Optional[MarketQuote]]]


class MarketDataAggregator:
    """The single market-data path used by the sweep and on-demand refreshes.

    Providers are tried in priority order (Birdeye, Jupiter, Helius) and the
    first strictly positive price wins. Every provider call goes through the
    shared :class:`RequestQueue`.
    """

    def __init__(
        self,
        catalog: TokenCatalog,
        bus: EventBus,
        queue: RequestQueue,
        *,
        birdeye_api_key: str = "",
        helius_api_key: str = "",
        birdeye_url: str = "https://public-api.birdeye.so/defi/token_overview",
        jupiter_url: str = "https://price.jup.ag/v4/price",
        helius_url: str = "https://api.helius.xyz/v0/token-metadata",
        default_supply: float = 1_000_000_000.0,
        alert_threshold: float = 0.05,
        cache_ttl: float = QUOTE_CACHE_TTL,
        batch_limit: int = 20,
        concurrency: int = 5,
        max_age: float = 300.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.catalog = catalog
        self.bus = bus
        self.queue = queue
        self.birdeye_api_key = birdeye_api_key
        self.helius_api_key = helius_api_key
        self.birdeye_url = birdeye_url
        self.jupiter_url = jupiter_url
        self.helius_url = helius_url
        self.default_supply = default_supply
        self.alert_threshold = alert_threshold
        self.batch_limit = batch_limit
        self.concurrency = max(1, concurrency)
        self.max_age = max_age
        self._session = session
        self._cache: TTLCache = TTLCache(maxsize=4096, ttl=cache_ttl)
        self.health: Dict[str, ProviderHealth] = {
            name: ProviderHealth(name) for name in ("birdeye", "jupiter", "helius")
        }

    @classmethod
    def from_config(
        cls, config: Config, catalog: TokenCatalog, bus: EventBus, queue: RequestQueue
    ) -> "MarketDataAggregator":
        return cls(
            catalog,
            bus,
            queue,
            birdeye_api_key=config.birdeye_api_key,
            helius_api_key=config.helius_api_key,
            birdeye_url=config.birdeye_url,
            jupiter_url=config.jupiter_url,
            helius_url=config.helius_metadata_url,
            default_supply=config.default_supply,
            alert_threshold=config.price_alert_threshold,
            batch_limit=config.market_batch_limit,
            concurrency=config.market_concurrency,
            max_age=config.market_max_age,
        )

    def _providers(self) -> List[Tuple[str, ProviderCall]]:
        providers: List[Tuple[str, ProviderCall]] = []
        if self.birdeye_api_key:
            providers.append(
                ("birdeye", lambda s, m: _fetch_birdeye(s, m, api_key=self.birdeye_api_key, url=self.birdeye_url))
            )
        providers.append(("jupiter", lambda s, m: _fetch_jupiter(s, m, url=self.jupiter_url)))
        if self.helius_api_key:
            providers.append(
                ("helius", lambda s, m: _fetch_helius(s, m, api_key=self.helius_api_key, url=self.helius_url))
            )
        return providers

    def _record_provider_failure(self, name: str, exc: BaseException) -> None:
        status: int | None = None
        cooldown: float | None = None
        if isinstance(exc, aiohttp.ClientResponseError):
            status = exc.status
            if status in (401, 403):
                cooldown = 300.0
            elif status == 429:
                cooldown = _retry_after_seconds(exc.headers) or 10.0
        elif isinstance(exc, asyncio.TimeoutError):
            cooldown = 2.0
        elif isinstance(exc, aiohttp.ClientConnectorError):
            cooldown = 15.0
        state = self.health[name]
        was_cooling = state.in_cooldown()
        state.record_failure(status, cooldown=cooldown)
        if cooldown and not was_cooling:
            logger.warning(
                "Market data: %s entering cooldown for %.1fs (status=%s, error=%s)",
                name,
                cooldown,
                status,
                exc,
            )
            return
        key = (
            f"market-http:{name}:{status}"
            if status is not None
            else f"market-failure:{name}:{exc.__class__.__name__}"
        )
        warn_once_per(1.0, key, "Market data: %s failure %s", name, exc, logger=logger)

    async def fetch_quote(self, mint: str, *, supply: float | None = None) -> Optional[MarketQuote]:
        """Return the first positive quote across providers, or ``None``."""
        cached = self._cache.get(mint)
        if cached is not None:
            return cached
        session = self._session or await get_session()
        for name, call in self._providers():
            state = self.health[name]
            if state.in_cooldown():
                logger.debug("Market data: skipping %s (cooldown)", name)
                continue

            async def _work(call: ProviderCall = call) -> Optional[MarketQuote]:
                return await call(session, mint)

            try:
                quote = await self.queue.submit(_work)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                self._record_provider_failure(name, exc)
                continue
            state.record_success()
            if quote is None or quote.price <= 0:
                continue
            if quote.marketcap <= 0:
                base_supply = supply if supply and supply > 0 else self.default_supply
                quote.marketcap = base_supply * quote.price
            self._cache[mint] = quote
            return quote
        return None

    async def refresh(self, token: Token) -> Optional[MarketQuote]:
        """Fetch a quote for ``token`` and append it as a snapshot."""
        quote = await self.fetch_quote(token.mint, supply=token.supply)
        if quote is None:
            logger.debug("No market data for %s", token.mint)
            return None
        await self.catalog.append_snapshot(token.id, quote)
        logger.info(
            "Market data for %s from %s: price=%s marketcap=%s",
            token.mint,
            quote.source,
            quote.price,
            quote.marketcap,
        )
        self.bus.publish(
            TOKEN_UPDATED,
            TokenUpdated(
                mint=token.mint,
                price_usd=quote.price,
                marketcap=quote.marketcap,
                source=quote.source,
                status=token.status,
            ),
        )
        return quote

    async def refresh_with_alert(self, token: Token) -> Optional[MarketQuote]:
        """Refresh ``token`` and publish a price alert on large moves."""
        previous = await self.catalog.latest_snapshot(token.id)
        quote = await self.refresh(token)
        if quote is None or previous is None or not previous.price_usd or previous.price_usd <= 0:
            return quote
        change = (quote.price - previous.price_usd) / previous.price_usd
        if abs(change) > self.alert_threshold:
            logger.info("Price alert for %s: %+.2f%%", token.mint, change * 100)
            self.bus.publish(
                PRICE_ALERT,
                PriceAlert(
                    mint=token.mint,
                    previous_price=previous.price_usd,
                    current_price=quote.price,
                    change_percent=change * 100,
                    marketcap=quote.marketcap,
                    volume_24h=quote.volume_24h,
                    timestamp=time.time(),
                ),
            )
        return quote

    async def refresh_now(self, mint: str) -> Optional[MarketQuote]:
        """On-demand refresh for a single mint already in the catalog."""
        if not is_valid_solana_mint(mint):
            raise ValueError(f"invalid mint address: {mint!r}")
        token = await self.catalog.get_token(mint)
        if token is None:
            logger.info("refresh_now: %s is not in the catalog", mint)
            return None
        return await self.refresh_with_alert(token)

    async def run_sweep(self) -> int:
        tokens = await self.catalog.find_tokens_needing_market_data(self.batch_limit, self.max_age)
        if not tokens:
            logger.debug("No tokens need market data")
            return 0
        by_mint: MutableMapping[str, Token] = {t.mint: t for t in tokens}

        async def _one(mint: str) -> Optional[MarketQuote]:
            return await self.refresh_with_alert(by_mint[mint])

        results = await settle_in_chunks(list(by_mint), _one, self.concurrency)
        updated = 0
        for mint, result in zip(by_mint, results):
            if isinstance(result, BaseException):
                logger.warning("Market refresh failed for %s: %s", mint, result)
            elif result is not None:
                updated += 1
        logger.info("Market sweep updated %d/%d tokens", updated, len(by_mint))
        return updated


__all__ = ["MarketDataAggregator", "MarketQuote", "ProviderHealth"]
