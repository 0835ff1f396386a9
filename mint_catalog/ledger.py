"""JSON-RPC access to the Solana ledger."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp
from solana.rpc.async_api import AsyncClient
from solders.pubkey import Pubkey

from .errors import ProviderError
from .http import get_session

logger = logging.getLogger(__name__)

TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN2022_PROGRAM = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"


class _Retryable(Exception):
    def __init__(self, reason: str, *, status: int | None = None, retry_after: float | None = None) -> None:
        super().__init__(reason)
        self.status = status
        self.retry_after = retry_after


def _retry_after(headers: Mapping[str, str] | None) -> float | None:
    if not headers:
        return None
    raw = headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


class LedgerClient:
    """Thin ledger RPC client shared by the watcher, metadata and holder code.

    ``getTransaction`` and ``getProgramAccounts`` are plain JSON-RPC POSTs on
    the shared aiohttp session. Raw account reads go through solana-py's
    :class:`AsyncClient`.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        account_client: AsyncClient | None = None,
        tx_timeout: float = 4.0,
        max_attempts: int = 3,
        rate_limit_wait: float = 2.0,
    ) -> None:
        self.rpc_url = rpc_url
        self._session = session
        self._account_client = account_client
        self.tx_timeout = tx_timeout
        self.max_attempts = max(1, int(max_attempts))
        self.rate_limit_wait = rate_limit_wait
        self._next_id = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is not None:
            return self._session
        return await get_session()

    def _client(self) -> AsyncClient:
        if self._account_client is None:
            self._account_client = AsyncClient(self.rpc_url)
        return self._account_client

    async def _rpc(self, method: str, params: Sequence[Any], *, timeout: float) -> Any:
        self._next_id += 1
        body = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": list(params)}
        session = await self._get_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with session.post(self.rpc_url, json=body, timeout=client_timeout) as resp:
            if resp.status == 429:
                raise _Retryable(
                    "rate limited", status=429, retry_after=_retry_after(getattr(resp, "headers", None))
                )
            if resp.status >= 500:
                raise _Retryable(f"HTTP {resp.status}", status=resp.status)
            if resp.status >= 400:
                raise ProviderError("ledger", f"{method} HTTP {resp.status}", status=resp.status)
            payload = await resp.json(content_type=None)
        if not isinstance(payload, Mapping):
            raise ProviderError("ledger", f"{method} returned a non-object body")
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, Mapping) else str(error)
            raise ProviderError("ledger", f"{method}: {message}")
        return payload.get("result")

    async def _rpc_with_retry(self, method: str, params: Sequence[Any], *, timeout: float) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._rpc(method, params, timeout=timeout)
            except _Retryable as exc:
                failure: BaseException = exc
                status = exc.status
                retry_after = exc.retry_after
            except asyncio.TimeoutError as exc:
                failure, status, retry_after = exc, None, None
            except aiohttp.ClientError as exc:
                raise ProviderError("ledger", f"{method}: {exc}") from exc
            reason = str(failure) or "timed out"
            if attempt >= self.max_attempts:
                raise ProviderError("ledger", f"{method} {reason}", status=status) from failure
            wait = retry_after if retry_after is not None else self.rate_limit_wait * attempt
            logger.warning(
                "Ledger %s %s; retrying in %.1fs (attempt %d/%d)",
                method,
                reason,
                wait,
                attempt,
                self.max_attempts,
            )
            await asyncio.sleep(wait)
        raise ProviderError("ledger", f"{method} failed")  # pragma: no cover

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Return the parsed ``getTransaction`` result for ``signature``."""

        params = [
            signature,
            {
                "encoding": "jsonParsed",
                "maxSupportedTransactionVersion": 0,
                "commitment": "confirmed",
            },
        ]
        result = await self._rpc_with_retry("getTransaction", params, timeout=self.tx_timeout)
        return result if isinstance(result, dict) else None

    async def get_program_accounts_parsed(
        self,
        program_id: str,
        filters: Sequence[Mapping[str, Any]],
        *,
        timeout: float = 20.0,
    ) -> List[Dict[str, Any]]:
        params = [
            program_id,
            {"encoding": "jsonParsed", "commitment": "confirmed", "filters": list(filters)},
        ]
        result = await self._rpc_with_retry("getProgramAccounts", params, timeout=timeout)
        if isinstance(result, Mapping):
            # Some providers wrap the list with a context object.
            result = result.get("value")
        return [item for item in result or [] if isinstance(item, dict)]

    async def get_account_bytes(self, address: str | Pubkey) -> Optional[bytes]:
        """Return raw account data, or ``None`` when the account is missing."""

        pubkey = address if isinstance(address, Pubkey) else Pubkey.from_string(str(address))
        resp = await self._client().get_account_info(pubkey, encoding="base64")
        value = getattr(resp, "value", None)
        if not value:
            return None
        data = getattr(value, "data", None)
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        if isinstance(value, Mapping):
            data = value.get("data")
        encoded = None
        if isinstance(data, (list, tuple)) and data:
            encoded = data[0]
        elif isinstance(data, str):
            encoded = data
        if not isinstance(encoded, str):
            return None
        try:
            return base64.b64decode(encoded)
        except (ValueError, TypeError):
            return None

    async def close(self) -> None:
        if self._account_client is not None:
            await self._account_client.close()
            self._account_client = None


__all__ = ["LedgerClient", "TOKEN_PROGRAM", "TOKEN2022_PROGRAM"]
