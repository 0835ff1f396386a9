"""Websocket watcher that discovers newly initialized SPL token mints."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import websockets
from cachetools import TTLCache

from . import jsonutil
from .catalog import STATUS_FRESH, Token, TokenCatalog
from .classification import classify_mint, is_nft_mint_transaction
from .errors import CatalogUnavailable, ProviderError, TransactionParseError
from .event_bus import TOKEN_DISCOVERED, EventBus
from .ledger import TOKEN_PROGRAM, LedgerClient
from .schemas import NewTokenEvent
from .util.env import env_float, env_int

logger = logging.getLogger(__name__)

_INIT_MARKERS = ("Instruction: InitializeMint", "Instruction: InitializeMint2")


class WatcherState(str, enum.Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    PROCESSING = "processing"
    STOPPED = "stopped"


@dataclass(slots=True)
class MintCreation:
    mint: str
    decimals: int
    supply: float
    blocktime: float
    signature: str | None = None


def has_initialize_mint(logs: Iterable[Any]) -> bool:
    for line in logs or ():
        if isinstance(line, str) and any(marker in line for marker in _INIT_MARKERS):
            return True
    return False


def _flatten_instructions(raw: Mapping[str, Any]) -> Sequence[Dict[str, Any]]:
    message = (raw.get("transaction") or {}).get("message")
    outer = list((message or {}).get("instructions") or [])
    meta = raw.get("meta") or {}
    inners: List[Dict[str, Any]] = []
    for container in meta.get("innerInstructions") or []:
        for inner in (container or {}).get("instructions") or []:
            inners.append(inner)
    return [ix for ix in outer + inners if isinstance(ix, dict)]


def _supply_from_balances(meta: Mapping[str, Any], mint: str, decimals: int) -> float:
    total = 0.0
    for balance in meta.get("postTokenBalances") or []:
        if not isinstance(balance, Mapping) or balance.get("mint") != mint:
            continue
        amount = balance.get("uiTokenAmount") or {}
        ui_amount = amount.get("uiAmount")
        if ui_amount is None and amount.get("amount") is not None:
            try:
                ui_amount = int(amount["amount"]) / (10 ** decimals)
            except (TypeError, ValueError):
                ui_amount = None
        if isinstance(ui_amount, (int, float)):
            total += float(ui_amount)
    return total


def extract_mint_creation(tx: Mapping[str, Any] | None, signature: str | None = None) -> MintCreation:
    """Find the first InitializeMint instruction and pull out the new mint.

    Searches outer and inner instructions. Raises
    :class:`TransactionParseError` when nothing usable is found.
    """
    if not isinstance(tx, Mapping):
        raise TransactionParseError(f"no transaction body for {signature}")
    meta = tx.get("meta") or {}
    for ix in _flatten_instructions(tx):
        parsed = ix.get("parsed")
        if not isinstance(parsed, Mapping):
            continue
        ix_type = str(parsed.get("type") or "").lower()
        if ix_type not in {"initializemint", "initializemint2"}:
            continue
        info = parsed.get("info")
        if not isinstance(info, Mapping):
            continue
        mint = info.get("mint")
        if not isinstance(mint, str) or not mint:
            continue
        try:
            decimals = int(info.get("decimals", 0))
        except (TypeError, ValueError) as exc:
            raise TransactionParseError(f"bad decimals in {signature}") from exc
        supply = info.get("supply")
        if isinstance(supply, (int, float)) and supply > 0:
            supply_value = float(supply)
        else:
            supply_value = _supply_from_balances(meta, mint, decimals)
        blocktime = tx.get("blockTime")
        if not isinstance(blocktime, (int, float)) or blocktime <= 0:
            blocktime = time.time()
        return MintCreation(
            mint=mint,
            decimals=decimals,
            supply=supply_value,
            blocktime=float(blocktime),
            signature=signature,
        )
    raise TransactionParseError(f"no InitializeMint instruction in {signature}")


class MintWatcher:
    """Subscribe to token-program logs and persist newly created mints.

    ``handle_notification`` is the per-event entry point; ``run`` owns the
    websocket connection and reconnects with jittered backoff.
    """

    def __init__(
        self,
        ws_url: str,
        catalog: TokenCatalog,
        ledger: LedgerClient,
        bus: EventBus,
        *,
        program_id: str = TOKEN_PROGRAM,
        dedupe_ttl: float | None = None,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        self.ws_url = ws_url
        self.catalog = catalog
        self.ledger = ledger
        self.bus = bus
        self.program_id = program_id
        ttl = dedupe_ttl if dedupe_ttl is not None else env_float(
            "WATCHER_DEDUP_TTL_SEC", 3600.0, minimum=60.0
        )
        self._seen_signatures: TTLCache = TTLCache(maxsize=20000, ttl=ttl)
        self._seen_mints: TTLCache = TTLCache(maxsize=20000, ttl=ttl)
        self._connect = connect or websockets.connect
        self.ping_interval = env_int("WATCHER_PING_INTERVAL", 20, minimum=5)
        self.ping_timeout = env_int("WATCHER_PING_TIMEOUT", 20, minimum=5)
        self.max_queue = env_int("WATCHER_MAX_QUEUE", 512, minimum=64)
        self.backoff_start = env_float("WATCHER_BACKOFF_START", 1.0, minimum=0.5)
        self.backoff_cap = env_float("WATCHER_BACKOFF_CAP", 20.0, minimum=self.backoff_start)
        self._state = WatcherState.IDLE
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._stopping = False
        self.discovered = 0
        self.rejected = 0

    @property
    def state(self) -> WatcherState:
        return self._state

    def _set_state(self, state: WatcherState) -> None:
        if self._state is WatcherState.STOPPED:
            return
        if state is not self._state:
            logger.debug("Watcher state %s -> %s", self._state.value, state.value)
        self._state = state

    async def _subscribe_logs(self, ws: Any) -> None:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [
                {"mentions": [self.program_id]},
                {"commitment": "confirmed"},
            ],
        }
        await ws.send(jsonutil.dumps(payload))

    async def handle_notification(self, message: Mapping[str, Any]) -> Optional[Token]:
        """Process one decoded websocket message; returns the created token."""
        if message.get("method") != "logsNotification":
            if isinstance(message.get("result"), int):
                logger.info("Subscribed to %s logs (subscription %s)", self.program_id, message["result"])
                self._set_state(WatcherState.SUBSCRIBED)
            return None
        result = (message.get("params") or {}).get("result")
        if not isinstance(result, Mapping):
            return None
        value = result.get("value") or {}
        if value.get("err"):
            return None
        logs = value.get("logs")
        if not isinstance(logs, list) or not has_initialize_mint(logs):
            return None
        signature = value.get("signature")
        if not isinstance(signature, str) or signature in self._seen_signatures:
            return None
        self._set_state(WatcherState.PROCESSING)
        token: Optional[Token] = None
        try:
            token = await self.process_signature(signature)
        except CatalogUnavailable as exc:
            # Left out of the dedupe cache so a redelivery is processed again.
            logger.error("Could not persist mint from %s: %s", signature, exc)
            return None
        except Exception:
            logger.exception("Failed to process %s", signature)
        finally:
            self._set_state(WatcherState.SUBSCRIBED)
        self._seen_signatures[signature] = True
        return token

    async def process_signature(self, signature: str) -> Optional[Token]:
        try:
            tx = await self.ledger.get_transaction(signature)
        except ProviderError as exc:
            logger.warning("getTransaction failed for %s: %s", signature, exc)
            return None
        if tx is None:
            logger.warning("No transaction data for %s", signature)
            return None
        if (tx.get("meta") or {}).get("err"):
            return None

        try:
            creation = extract_mint_creation(tx, signature)
        except TransactionParseError as exc:
            logger.warning("Dropping %s: %s", signature, exc)
            return None

        verdict = classify_mint(creation.mint)
        if verdict.accepted:
            verdict = is_nft_mint_transaction(tx)
        if not verdict.accepted:
            self.rejected += 1
            logger.info("Skipping mint %s: %s", creation.mint, verdict.reason)
            return None
        if creation.mint in self._seen_mints:
            return None

        token, created = await self.catalog.upsert_discovered(
            creation.mint,
            creation.decimals,
            creation.supply,
            creation.blocktime,
            status=STATUS_FRESH,
        )
        self._seen_mints[creation.mint] = True
        if not created:
            return None

        self.discovered += 1
        logger.info(
            "Discovered mint %s (%d decimals, supply %s) in %s",
            creation.mint,
            creation.decimals,
            creation.supply,
            signature,
        )
        self.bus.publish(
            TOKEN_DISCOVERED,
            NewTokenEvent(
                mint=creation.mint,
                decimals=creation.decimals,
                supply=creation.supply,
                blocktime=creation.blocktime,
                signature=signature,
                status=token.status,
                source=token.source or "helius",
            ),
        )
        return token

    async def run(self) -> None:
        """Hold the subscription open until :meth:`stop` is called."""
        backoff = self.backoff_start
        while not self._stopping:
            try:
                async with self._connect(
                    self.ws_url,
                    ping_interval=self.ping_interval,
                    ping_timeout=self.ping_timeout,
                    max_queue=self.max_queue,
                ) as ws:
                    self._ws = ws
                    await self._subscribe_logs(ws)
                    backoff = self.backoff_start
                    async for raw in ws:
                        try:
                            message = jsonutil.loads(raw)
                        except jsonutil.JSONDecodeError:
                            continue
                        if isinstance(message, dict):
                            await self.handle_notification(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stopping:
                    break
                logger.warning("Log subscription dropped: %s; reconnecting in %.1fs", exc, backoff)
            finally:
                self._ws = None
            if self._stopping:
                break
            self._set_state(WatcherState.IDLE)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 1.6 + random.uniform(0, 0.5), self.backoff_cap)
        self._state = WatcherState.STOPPED

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run(), name="mint-watcher")
        return self._task

    async def stop(self, grace: float = 10.0) -> None:
        """Release the subscription and let an in-flight event finish within ``grace``."""
        self._stopping = True
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        task = self._task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=max(0.0, grace))
            if not done:
                logger.warning("Cancelling mint watcher after %.1fs shutdown grace", grace)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._state = WatcherState.STOPPED
        logger.info("Mint watcher stopped (%d discovered, %d rejected)", self.discovered, self.rejected)


__all__ = [
    "MintWatcher",
    "MintCreation",
    "WatcherState",
    "extract_mint_creation",
    "has_initialize_mint",
]
