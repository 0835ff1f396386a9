"""Helpers for interacting with the Helius DAS ``getAsset`` API."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp

from .. import jsonutil
from ..errors import ProviderError
from ..http import get_session
from ..rate_queue import RequestQueue

log = logging.getLogger(__name__)

_BACKOFF_BASE = 0.5
_BACKOFF_CAP = 8.0


class _RateLimited(Exception):
    def __init__(self, retry_after: str | None) -> None:
        super().__init__("rate limited")
        self.retry_after = retry_after


def _rpc_url_for(base: str, key: str) -> str:
    parts = urlsplit(base)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query["api-key"] = key
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _summarize_params(params: Any, *, limit: int = 256) -> str:
    rendered = jsonutil.dumps(params)
    if len(rendered) > limit:
        return f"{rendered[: limit - 3]}..."
    return rendered


@dataclass(slots=True)
class DasAsset:
    name: str | None = None
    symbol: str | None = None
    json_uri: str | None = None
    image: str | None = None


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_das_asset(result: Mapping[str, Any] | None) -> Optional[DasAsset]:
    """Pull the descriptive fields out of a ``getAsset`` result object."""

    if not isinstance(result, Mapping):
        return None
    content = result.get("content") or {}
    if not isinstance(content, Mapping):
        return None
    metadata = content.get("metadata") or {}
    links = content.get("links") or {}
    if not isinstance(metadata, Mapping):
        metadata = {}
    if not isinstance(links, Mapping):
        links = {}
    standard = _text(metadata.get("token_standard"))
    asset = DasAsset(
        name=_text(metadata.get("name")) or standard,
        symbol=_text(metadata.get("symbol")) or standard,
        json_uri=_text(content.get("json_uri")),
        image=_text(links.get("image")),
    )
    if not any((asset.name, asset.symbol, asset.json_uri, asset.image)):
        return None
    return asset


class HeliusDasClient:
    """``getAsset`` lookups routed through the shared provider queue.

    Without an API key every lookup returns ``None``.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://mainnet.helius-rpc.com",
        queue: RequestQueue | None = None,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 8.0,
        max_retries: int = 3,
    ) -> None:
        self.api_key = api_key or ""
        self.base_url = base_url
        self.queue = queue
        self._session = session
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _attempt(
        self, session: aiohttp.ClientSession, url: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        async with session.post(
            url,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as resp:
            if resp.status == 429:
                raise _RateLimited(resp.headers.get("Retry-After"))
            if resp.status >= 400:
                raise ProviderError("helius_das", f"HTTP {resp.status}", status=resp.status)
            text = await resp.text()
        try:
            data = jsonutil.loads(text)
        except jsonutil.JSONDecodeError as err:
            raise ProviderError("helius_das", "invalid JSON") from err
        if not isinstance(data, dict):
            raise ProviderError("helius_das", "unexpected response type")
        return data

    async def _post_rpc(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """POST helper with retry/backoff semantics for DAS JSON-RPC endpoints.

        Each attempt is a separate item on the provider queue.
        """

        session = self._session or await get_session()
        url = _rpc_url_for(self.base_url, self.api_key)
        payload = {
            "jsonrpc": "2.0",
            "id": f"das-{int(time.time() * 1000)}-{random.randint(1, 1000)}",
            "method": method,
            "params": params,
        }

        async def _call() -> Dict[str, Any]:
            return await self._attempt(session, url, payload)

        backoff = _BACKOFF_BASE
        last_exception: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                data = await (self.queue.submit(_call) if self.queue is not None else _call())
            except _RateLimited as exc:
                try:
                    delay = float(exc.retry_after) if exc.retry_after else backoff
                except (TypeError, ValueError):
                    delay = backoff
                wait_for = min(delay + random.uniform(0, delay * 0.25), _BACKOFF_CAP)
                log.warning(
                    "DAS request hit 429",
                    extra={"op": method, "attempt": attempt, "delay": wait_for},
                )
                last_exception = ProviderError("helius_das", "rate limited", status=429)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_exception = exc
                wait_for = min(backoff + random.uniform(0, backoff * 0.25), _BACKOFF_CAP)
                log.warning(
                    "Retrying DAS request",
                    extra={
                        "op": method,
                        "attempt": attempt,
                        "delay": wait_for,
                        "error_type": type(exc).__name__,
                    },
                )
            else:
                if data.get("error"):
                    raise ProviderError(
                        "helius_das",
                        f"{method} error {data['error']} (params={_summarize_params(params)})",
                    )
                return data
            if attempt >= self.max_retries:
                break
            await asyncio.sleep(wait_for)
            backoff = min(backoff * 2, _BACKOFF_CAP)
        if isinstance(last_exception, ProviderError):
            raise last_exception
        raise ProviderError("helius_das", f"{method} failed") from last_exception

    async def get_asset(self, mint: str) -> Optional[DasAsset]:
        if not self.enabled:
            return None
        data = await self._post_rpc("getAsset", {"id": mint})
        return parse_das_asset(data.get("result"))


__all__ = ["HeliusDasClient", "DasAsset", "parse_das_asset"]
