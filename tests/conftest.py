from __future__ import annotations

import struct
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from mint_catalog import jsonutil
from mint_catalog.catalog import TokenCatalog
from mint_catalog.logging_utils import reset_warn_once_cache

# Real 32-byte base58 addresses; none of them trip the mint deny list.
SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

SAMPLE_CID = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"


@pytest.fixture(autouse=True)
def _reset_warn_once():
    reset_warn_once_cache()
    yield
    reset_warn_once_cache()


@pytest_asyncio.fixture
async def catalog(tmp_path):
    cat = TokenCatalog(f"sqlite:///{tmp_path / 'catalog.db'}", retry_delay=0.0)
    await cat.init()
    try:
        yield cat
    finally:
        await cat.close()


def _borsh_string(value: str, pad_to: int) -> bytes:
    raw = value.encode("utf-8").ljust(pad_to, b"\x00")
    return struct.pack("<I", len(raw)) + raw


def build_metadata_account(name: str, symbol: str, uri: str) -> bytes:
    """Lay out a Token Metadata account the way the program stores it."""
    header = b"\x04" + bytes(32) + bytes(range(32))
    body = _borsh_string(name, 32) + _borsh_string(symbol, 10) + _borsh_string(uri, 200)
    # seller fee bps and an empty creators option follow the strings
    return header + body + struct.pack("<H", 500) + b"\x00"


class DummyResponse:
    def __init__(
        self,
        payload: Any = None,
        *,
        status: int = 200,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> None:
        self.status = status
        self.headers = headers or {}
        self._payload = payload
        self._body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise RuntimeError(f"HTTP {self.status}")

    def _bytes(self) -> bytes:
        if self._body is not None:
            return self._body
        return jsonutil.dumps_bytes(self._payload)

    async def json(self, content_type: Any = None) -> Any:
        return jsonutil.loads(self._bytes())

    async def text(self) -> str:
        return self._bytes().decode("utf-8")

    async def read(self) -> bytes:
        return self._bytes()


class DummySession:
    """Route ``get``/``post`` calls to ``handler(method, url, kwargs)``."""

    def __init__(self, handler: Callable[[str, str, Dict[str, Any]], Any]) -> None:
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def _dispatch(self, method: str, url: str, kwargs: Dict[str, Any]) -> DummyResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        result = self.handler(method, url, kwargs)
        if isinstance(result, BaseException):
            raise result
        return result

    def get(self, url: str, **kwargs: Any) -> DummyResponse:
        return self._dispatch("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> DummyResponse:
        return self._dispatch("POST", url, kwargs)

    async def close(self) -> None:
        self.closed = True
