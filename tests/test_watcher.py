import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
import pytest

from mint_catalog import jsonutil
from mint_catalog.errors import CatalogUnavailable, ProviderError, TransactionParseError
from mint_catalog.event_bus import TOKEN_DISCOVERED, EventBus
from mint_catalog.watcher import (
    MintWatcher,
    WatcherState,
    extract_mint_creation,
    has_initialize_mint,
)

INIT_LOGS = [
    "Program TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA invoke [1]",
    "Program log: Instruction: InitializeMint2",
]


def _tx(
    mint: str,
    *,
    decimals: int = 6,
    supply_ui: Optional[float] = 1_000_000.0,
    logs: Optional[List[str]] = None,
    inner: bool = False,
    account_keys: Optional[List[Any]] = None,
) -> Dict[str, Any]:
    ix = {
        "program": "spl-token",
        "programId": "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
        "parsed": {
            "type": "initializeMint2",
            "info": {"mint": mint, "decimals": decimals, "mintAuthority": "auth"},
        },
    }
    balances = []
    if supply_ui is not None:
        balances.append(
            {
                "mint": mint,
                "uiTokenAmount": {
                    "uiAmount": supply_ui,
                    "amount": str(int(supply_ui * 10**decimals)),
                    "decimals": decimals,
                },
            }
        )
    message: Dict[str, Any] = {
        "accountKeys": account_keys or [],
        "instructions": [] if inner else [ix],
    }
    meta: Dict[str, Any] = {
        "err": None,
        "logMessages": logs or list(INIT_LOGS),
        "postTokenBalances": balances,
        "innerInstructions": [{"index": 0, "instructions": [ix]}] if inner else [],
    }
    return {"blockTime": 1_700_000_000, "meta": meta, "transaction": {"message": message}}


def _notification(signature: str, logs: Optional[List[str]] = None, err: Any = None) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "method": "logsNotification",
        "params": {
            "result": {
                "context": {"slot": 1},
                "value": {"signature": signature, "err": err, "logs": logs or list(INIT_LOGS)},
            },
            "subscription": 7,
        },
    }


class FakeLedger:
    def __init__(self, transactions: Dict[str, Any], delay: float = 0.0) -> None:
        self.transactions = transactions
        self.delay = delay
        self.calls: List[str] = []

    async def get_transaction(self, signature: str):
        self.calls.append(signature)
        if self.delay:
            await asyncio.sleep(self.delay)
        tx = self.transactions.get(signature)
        if isinstance(tx, BaseException):
            raise tx
        return tx


def _watcher(catalog, ledger, bus=None, **kwargs):
    return MintWatcher("wss://example.invalid", catalog, ledger, bus or EventBus(), dedupe_ttl=60, **kwargs)


def test_initialize_mint_prefilter():
    assert has_initialize_mint(INIT_LOGS)
    assert has_initialize_mint(["Program log: Instruction: InitializeMint"])
    assert not has_initialize_mint(["Program log: Instruction: Transfer"])
    assert not has_initialize_mint(None)


def test_extract_from_inner_instruction():
    creation = extract_mint_creation(_tx("ABC123", inner=True), "sig")
    assert creation.mint == "ABC123"
    assert creation.decimals == 6
    assert creation.supply == 1_000_000.0
    assert creation.blocktime == 1_700_000_000


def test_extract_without_init_raises():
    tx = _tx("ABC123")
    tx["transaction"]["message"]["instructions"] = []
    with pytest.raises(TransactionParseError):
        extract_mint_creation(tx, "sig")
    with pytest.raises(TransactionParseError):
        extract_mint_creation(None, "sig")


@pytest.mark.asyncio
async def test_new_mint_is_persisted_and_published(catalog):
    ledger = FakeLedger({"sig1": _tx("ABC123")})
    bus = EventBus()
    events: List[Dict[str, Any]] = []
    bus.subscribe(TOKEN_DISCOVERED, events.append)
    watcher = _watcher(catalog, ledger, bus)

    token = await watcher.handle_notification(_notification("sig1"))

    assert token is not None
    stored = await catalog.get_token("ABC123")
    assert stored.status == "fresh"
    assert stored.decimals == 6
    assert stored.supply == 1_000_000
    assert len(events) == 1
    assert events[0]["mint"] == "ABC123"
    assert events[0]["signature"] == "sig1"
    assert watcher.discovered == 1

    # the same signature is only fetched once
    assert await watcher.handle_notification(_notification("sig1")) is None
    assert ledger.calls == ["sig1"]


@pytest.mark.asyncio
async def test_repeat_discovery_does_not_republish(catalog):
    ledger = FakeLedger({"sig1": _tx("ABC123")})
    bus = EventBus()
    events: List[Any] = []
    bus.subscribe(TOKEN_DISCOVERED, events.append)
    await catalog.upsert_discovered("ABC123", 6, 1_000_000, None, name="Known")
    watcher = _watcher(catalog, ledger, bus)

    assert await watcher.handle_notification(_notification("sig1")) is None
    assert events == []
    assert (await catalog.get_token("ABC123")).name == "Known"


@pytest.mark.asyncio
async def test_irrelevant_notifications_skip_ledger(catalog):
    ledger = FakeLedger({})
    watcher = _watcher(catalog, ledger)

    await watcher.handle_notification(_notification("sig1", logs=["Program log: Instruction: Transfer"]))
    await watcher.handle_notification(_notification("sig2", err={"InstructionError": [0, "x"]}))
    await watcher.handle_notification({"jsonrpc": "2.0", "result": 7, "id": 1})

    assert ledger.calls == []
    assert watcher.state is WatcherState.SUBSCRIBED


@pytest.mark.asyncio
async def test_denied_mint_is_not_persisted(catalog):
    ledger = FakeLedger({"sig1": _tx("POOLxyz")})
    watcher = _watcher(catalog, ledger)

    assert await watcher.handle_notification(_notification("sig1")) is None
    assert await catalog.get_token("POOLxyz") is None
    assert watcher.rejected == 1


@pytest.mark.asyncio
async def test_nft_mint_is_not_persisted(catalog):
    logs = INIT_LOGS + ["Program log: Candy Machine mint"]
    ledger = FakeLedger({"sig1": _tx("ABC123", logs=logs)})
    watcher = _watcher(catalog, ledger)

    assert await watcher.handle_notification(_notification("sig1")) is None
    assert await catalog.get_token("ABC123") is None


@pytest.mark.asyncio
async def test_unusable_transactions_are_dropped(catalog):
    broken = _tx("ABC123")
    broken["transaction"]["message"]["instructions"] = []
    ledger = FakeLedger(
        {
            "sig1": broken,
            "sig2": None,
            "sig3": ProviderError("ledger", "boom"),
        }
    )
    watcher = _watcher(catalog, ledger)

    for sig in ("sig1", "sig2", "sig3"):
        assert await watcher.handle_notification(_notification(sig)) is None
    assert dict(await catalog.status_counts()) == {}


class FakeSocket:
    def __init__(self, messages: List[Any]) -> None:
        self.messages = messages
        self.sent: List[Any] = []
        self.closed = False
        self._closed = asyncio.Event()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def send(self, data):
        self.sent.append(jsonutil.loads(data))

    async def close(self):
        self.closed = True
        self._closed.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message
        # hold the connection open like a quiet socket until closed
        await self._closed.wait()


@pytest.mark.asyncio
async def test_run_subscribes_and_processes_stream(catalog):
    socket = FakeSocket(
        [
            jsonutil.dumps({"jsonrpc": "2.0", "result": 3, "id": 1}),
            "not json",
            jsonutil.dumps(_notification("sig1")),
        ]
    )
    connects: List[Dict[str, Any]] = []

    def connect(url, **kwargs):
        connects.append({"url": url, **kwargs})
        return socket

    ledger = FakeLedger({"sig1": _tx("ABC123")})
    watcher = _watcher(catalog, ledger, connect=connect)
    watcher.start()
    for _ in range(200):
        if watcher.discovered:
            break
        await asyncio.sleep(0.01)
    await watcher.stop()

    assert watcher.discovered == 1
    assert watcher.state is WatcherState.STOPPED
    assert connects[0]["url"] == "wss://example.invalid"
    assert socket.sent[0]["method"] == "logsSubscribe"
    assert socket.sent[0]["params"][0] == {"mentions": ["TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"]}
    assert socket.closed


@pytest.mark.asyncio
async def test_transient_ledger_errors_stay_with_their_event(catalog):
    ledger = FakeLedger(
        {
            "sig1": asyncio.TimeoutError(),
            "sig2": aiohttp.ClientConnectionError("reset by peer"),
            "sig3": _tx("ABC123"),
        }
    )
    watcher = _watcher(catalog, ledger)

    assert await watcher.handle_notification(_notification("sig1")) is None
    assert await watcher.handle_notification(_notification("sig2")) is None
    assert await watcher.handle_notification(_notification("sig3")) is not None
    assert watcher.state is WatcherState.SUBSCRIBED
    assert watcher.discovered == 1


@pytest.mark.asyncio
async def test_failed_event_does_not_drop_the_subscription(catalog):
    socket = FakeSocket([jsonutil.dumps(_notification("sig1")), jsonutil.dumps(_notification("sig2"))])
    connects: List[str] = []

    def connect(url, **kwargs):
        connects.append(url)
        return socket

    ledger = FakeLedger({"sig1": aiohttp.ClientConnectionError("reset"), "sig2": _tx("ABC123")})
    watcher = _watcher(catalog, ledger, connect=connect)
    watcher.start()
    for _ in range(200):
        if watcher.discovered:
            break
        await asyncio.sleep(0.01)
    await watcher.stop(grace=1.0)

    assert ledger.calls == ["sig1", "sig2"]
    assert watcher.discovered == 1
    assert len(connects) == 1


@pytest.mark.asyncio
async def test_catalog_outage_allows_redelivery(catalog):
    ledger = FakeLedger({"sig1": _tx("ABC123")})
    watcher = _watcher(catalog, ledger)
    upsert = catalog.upsert_discovered
    failures = [CatalogUnavailable("database is locked")]

    async def flaky_upsert(*args, **kwargs):
        if failures:
            raise failures.pop()
        return await upsert(*args, **kwargs)

    catalog.upsert_discovered = flaky_upsert

    assert await watcher.handle_notification(_notification("sig1")) is None
    assert await catalog.get_token("ABC123") is None

    token = await watcher.handle_notification(_notification("sig1"))
    assert token is not None
    assert token.mint == "ABC123"
    assert ledger.calls == ["sig1", "sig1"]
    assert watcher.discovered == 1


@pytest.mark.asyncio
async def test_stop_lets_in_flight_event_finish(catalog):
    socket = FakeSocket([jsonutil.dumps(_notification("sig1"))])
    ledger = FakeLedger({"sig1": _tx("ABC123")}, delay=0.1)
    watcher = _watcher(catalog, ledger, connect=lambda url, **kwargs: socket)
    watcher.start()
    for _ in range(200):
        if ledger.calls:
            break
        await asyncio.sleep(0.005)

    await watcher.stop(grace=2.0)

    assert watcher.discovered == 1
    assert await catalog.get_token("ABC123") is not None
    assert watcher.state is WatcherState.STOPPED


@pytest.mark.asyncio
async def test_stop_cancels_after_grace(catalog):
    socket = FakeSocket([jsonutil.dumps(_notification("sig1"))])
    ledger = FakeLedger({"sig1": _tx("ABC123")}, delay=30)
    watcher = _watcher(catalog, ledger, connect=lambda url, **kwargs: socket)
    task = watcher.start()
    for _ in range(200):
        if ledger.calls:
            break
        await asyncio.sleep(0.005)

    await watcher.stop(grace=0.05)

    assert task.done()
    assert watcher.discovered == 0
    assert watcher.state is WatcherState.STOPPED
