"""Resolution of off-chain metadata documents hosted on IPFS, Arweave or HTTP."""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urljoin

import aiohttp

from .. import jsonutil
from ..config import DEFAULT_IPFS_GATEWAYS
from ..http import get_session
from ..logging_utils import warn_once_per
from ..rate_queue import RequestQueue
from .onchain import BARE_CID_RE

logger = logging.getLogger(__name__)

ARWEAVE_GATEWAY = "https://arweave.net"
FETCH_TIMEOUT = 10.0
ROTATION_DELAY = 0.2

AR_ID_RE = re.compile(r"^[A-Za-z0-9_-]{40,64}$")
IMAGE_EXT_RE = re.compile(r"\.(png|jpg|jpeg|gif|webp|svg|bmp|tif|tiff)$", re.IGNORECASE)
_SCHEME_RE = re.compile(r"^(https?://|ipfs://|ar://)", re.IGNORECASE)

_IMAGE_KEYS = ("image", "image_url", "imageURI")
_TRAILING_IMAGE_KEYS = ("logo", "logoURI", "icon", "animation_url")
_SOCIAL_KEYS = ("website", "twitter", "telegram")
_CURVE_PLATFORMS = ("pump.fun", "bonk.fun")


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.replace("\x00", "").strip()
    return text or None


def ipfs_path(uri: str | None) -> str | None:
    """Return ``<cid>[/path]`` for IPFS references, else ``None``."""
    text = _clean(uri)
    if not text:
        return None
    if BARE_CID_RE.match(text):
        return text
    if text.lower().startswith("ipfs://"):
        path = text[len("ipfs://"):]
        if path.startswith("ipfs/"):
            path = path[len("ipfs/"):]
        return path or None
    return None


def to_http(uri: str | None, gateways: Sequence[str] = DEFAULT_IPFS_GATEWAYS) -> str | None:
    """Normalize an ipfs/ar/bare-id/http reference to a fetchable URL."""
    text = _clean(uri)
    if not text:
        return None
    path = ipfs_path(text)
    if path:
        return f"{gateways[0].rstrip('/')}/ipfs/{path}"
    lowered = text.lower()
    if lowered.startswith("ar://"):
        ident = text[len("ar://"):]
        return f"{ARWEAVE_GATEWAY}/{ident}" if ident else None
    if lowered.startswith(("http://", "https://")):
        return text
    if AR_ID_RE.match(text):
        return f"{ARWEAVE_GATEWAY}/{text}"
    return None


def _candidate_urls(uri: str, gateways: Sequence[str]) -> List[str]:
    first = to_http(uri, gateways)
    if not first:
        return []
    urls = [first]
    path = ipfs_path(uri)
    if path:
        urls.extend(f"{gw.rstrip('/')}/ipfs/{path}" for gw in gateways[1:])
    return urls


def absolutize(ref: str, base: str) -> str:
    text = ref.replace("\x00", "").strip()
    if not text:
        return text
    if text.lower().startswith("data:image/") or _SCHEME_RE.match(text):
        return text
    if BARE_CID_RE.match(text):
        return f"ipfs://{text}"
    if AR_ID_RE.match(text) and "arweave.net" in base.lower():
        return f"{ARWEAVE_GATEWAY}/{text}"
    return urljoin(base, text)


def pick_image_from_json(doc: Mapping[str, Any] | None) -> str | None:
    """Choose the most image-like reference in a metadata document."""
    if not isinstance(doc, Mapping):
        return None

    inline = doc.get("image_data")
    if isinstance(inline, str) and inline.strip().startswith("<svg"):
        encoded = base64.b64encode(inline.encode("utf-8")).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"

    properties = doc.get("properties") if isinstance(doc.get("properties"), Mapping) else {}
    extensions = doc.get("extensions") if isinstance(doc.get("extensions"), Mapping) else {}

    candidates: List[Any] = [doc.get(key) for key in _IMAGE_KEYS]
    candidates.append(properties.get("image"))
    candidates.append(extensions.get("image"))
    candidates.extend(doc.get(key) for key in _TRAILING_IMAGE_KEYS)

    files = properties.get("files") or doc.get("files")
    if isinstance(files, list):
        for entry in files:
            if isinstance(entry, str):
                candidates.append(entry)
            elif isinstance(entry, Mapping):
                candidates.append(entry.get("uri") or entry.get("cdn_uri"))

    texts = [c.strip() for c in candidates if isinstance(c, str) and c.strip()]
    for text in texts:
        if text.startswith("data:image/") or _SCHEME_RE.match(text):
            return text
        if BARE_CID_RE.match(text) or AR_ID_RE.match(text) or IMAGE_EXT_RE.search(text):
            return text
    return texts[0] if texts else None


@dataclass(slots=True)
class SocialLinks:
    website: str | None = None
    twitter: str | None = None
    telegram: str | None = None
    source: str | None = None

    def as_update(self) -> Dict[str, str]:
        return {k: v for k, v in (
            ("website", self.website),
            ("twitter", self.twitter),
            ("telegram", self.telegram),
            ("source", self.source),
        ) if v}


def extract_social_links(doc: Mapping[str, Any] | None) -> SocialLinks:
    if not isinstance(doc, Mapping):
        return SocialLinks()
    extensions = doc.get("extensions") if isinstance(doc.get("extensions"), Mapping) else {}
    links = SocialLinks()
    for key in _SOCIAL_KEYS:
        setattr(links, key, _clean(doc.get(key)) or _clean(extensions.get(key)))
    created_on = _clean(doc.get("createdOn"))
    if created_on:
        lowered = created_on.lower()
        for platform in _CURVE_PLATFORMS:
            if platform in lowered:
                links.source = platform
                break
    return links


@dataclass(slots=True)
class OffchainDocument:
    url: str
    data: Dict[str, Any] | None = None
    image_url: str | None = None


class OffchainResolver:
    """Fetch metadata documents with IPFS gateway rotation.

    Each HTTP attempt is funnelled through ``queue`` when one is given.
    """

    def __init__(
        self,
        *,
        gateways: Sequence[str] = DEFAULT_IPFS_GATEWAYS,
        queue: RequestQueue | None = None,
        session: aiohttp.ClientSession | None = None,
        timeout: float = FETCH_TIMEOUT,
        rotation_delay: float = ROTATION_DELAY,
    ) -> None:
        self.gateways = tuple(gateways) or DEFAULT_IPFS_GATEWAYS
        self.queue = queue
        self._session = session
        self.timeout = timeout
        self.rotation_delay = rotation_delay

    async def _attempt(self, url: str) -> Optional[OffchainDocument]:
        session = self._session or await get_session()
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
            if resp.status >= 400:
                logger.debug("Metadata fetch %s returned HTTP %s", url, resp.status)
                return None
            content_type = (resp.headers.get("Content-Type") or "").lower()
            if content_type.startswith("image/"):
                return OffchainDocument(url=url, image_url=url)
            body = await resp.read()
        try:
            data = jsonutil.loads(body)
        except jsonutil.JSONDecodeError:
            logger.debug("Metadata at %s is not JSON (content-type %r)", url, content_type)
            return None
        if not isinstance(data, dict):
            return None
        image = None
        raw = pick_image_from_json(data)
        if raw:
            absolute = absolutize(raw, url)
            if absolute.startswith("data:"):
                image = absolute
            else:
                image = to_http(absolute, self.gateways) or absolute
        return OffchainDocument(url=url, data=data, image_url=image)

    async def _guarded_attempt(self, url: str) -> Optional[OffchainDocument]:
        async def _call() -> Optional[OffchainDocument]:
            return await self._attempt(url)

        try:
            if self.queue is not None:
                return await self.queue.submit(_call)
            return await _call()
        except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as exc:
            warn_once_per(
                1.0,
                f"offchain:{url.split('/ipfs/')[0]}",
                "Metadata fetch from %s failed: %s",
                url,
                exc,
                logger=logger,
            )
            return None

    async def fetch_document(self, uri: str | None) -> Optional[OffchainDocument]:
        """Fetch the document behind ``uri``, rotating IPFS gateways on failure."""
        if not uri:
            return None
        urls = _candidate_urls(uri, self.gateways)
        for index, url in enumerate(urls):
            if index:
                await asyncio.sleep(self.rotation_delay)
            document = await self._guarded_attempt(url)
            if document is not None:
                return document
        return None

    async def resolve_image_url(self, uri: str | None) -> str | None:
        document = await self.fetch_document(uri)
        return document.image_url if document else None

    async def fetch_metadata_json(self, uri: str | None) -> Dict[str, Any] | None:
        document = await self.fetch_document(uri)
        return document.data if document else None


__all__ = [
    "OffchainDocument",
    "OffchainResolver",
    "SocialLinks",
    "absolutize",
    "extract_social_links",
    "ipfs_path",
    "pick_image_from_json",
    "to_http",
]
