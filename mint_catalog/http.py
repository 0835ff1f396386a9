from __future__ import annotations

import asyncio
import logging
import os
import weakref

import aiohttp

logger = logging.getLogger(__name__)

USER_AGENT = "mint-catalog/1.0"

# Connector limits are configurable via environment variables.
CONNECTOR_LIMIT = int(os.getenv("HTTP_CONNECTOR_LIMIT", "100") or 100)
CONNECTOR_LIMIT_PER_HOST = int(os.getenv("HTTP_CONNECTOR_LIMIT_PER_HOST", "0") or 0)

# Maintain a session per event loop to avoid cross-loop usage errors when
# tests spin up several loops in the same process.
_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = (
    weakref.WeakKeyDictionary()
)


async def get_session() -> aiohttp.ClientSession:
    """Return an aiohttp session bound to the current event loop."""
    loop = asyncio.get_running_loop()
    sess = _SESSIONS.get(loop)
    if sess is None or sess.closed:
        connector = aiohttp.TCPConnector(
            limit=CONNECTOR_LIMIT,
            limit_per_host=CONNECTOR_LIMIT_PER_HOST,
            ttl_dns_cache=300,
        )
        sess = aiohttp.ClientSession(
            connector=connector,
            headers={"User-Agent": USER_AGENT},
        )
        _SESSIONS[loop] = sess
    return sess


async def close_session() -> None:
    """Close the session bound to the running loop, if any."""
    loop = asyncio.get_running_loop()
    sess = _SESSIONS.pop(loop, None)
    if sess is not None and not sess.closed:
        await sess.close()
        logger.debug("HTTP session closed")


__all__ = ["get_session", "close_session", "USER_AGENT"]
