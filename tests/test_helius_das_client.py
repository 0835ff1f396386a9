"""Tests for the Helius DAS client."""

from __future__ import annotations

import asyncio

import pytest

from mint_catalog.clients.helius_das import DasAsset, HeliusDasClient, parse_das_asset
from mint_catalog.errors import ProviderError
from mint_catalog.rate_queue import RequestQueue

from conftest import SOL_MINT, DummyResponse, DummySession

ASSET_RESULT = {
    "id": SOL_MINT,
    "content": {
        "json_uri": "https://meta.example/a.json",
        "metadata": {"name": "Alpha", "symbol": "ALP"},
        "links": {"image": "https://img.example/a.png"},
    },
}


def test_parse_das_asset():
    assert parse_das_asset(ASSET_RESULT) == DasAsset(
        name="Alpha",
        symbol="ALP",
        json_uri="https://meta.example/a.json",
        image="https://img.example/a.png",
    )


def test_parse_falls_back_to_token_standard():
    asset = parse_das_asset({"content": {"metadata": {"token_standard": "Fungible"}}})
    assert asset.name == "Fungible"
    assert asset.symbol == "Fungible"
    assert parse_das_asset({"content": {}}) is None
    assert parse_das_asset(None) is None


@pytest.mark.asyncio
async def test_disabled_without_key():
    session = DummySession(lambda m, u, k: DummyResponse({"result": ASSET_RESULT}))
    client = HeliusDasClient("", session=session)
    assert not client.enabled
    assert await client.get_asset(SOL_MINT) is None
    assert session.calls == []


@pytest.mark.asyncio
async def test_get_asset_goes_through_queue():
    session = DummySession(lambda m, u, k: DummyResponse({"jsonrpc": "2.0", "result": ASSET_RESULT}))
    queue = RequestQueue(0.0)
    client = HeliusDasClient("key-1", base_url="https://das.test/?foo=bar", queue=queue, session=session)

    asset = await client.get_asset(SOL_MINT)

    assert asset.name == "Alpha"
    assert queue.started == 1
    call = session.calls[0]
    assert call["url"] == "https://das.test/?foo=bar&api-key=key-1"
    assert call["json"]["method"] == "getAsset"
    assert call["json"]["params"] == {"id": SOL_MINT}


@pytest.mark.asyncio
async def test_post_rpc_retries_after_429():
    responses = [
        DummyResponse(status=429, headers={"Retry-After": "0"}),
        DummyResponse({"result": ASSET_RESULT}),
    ]
    session = DummySession(lambda m, u, k: responses.pop(0))
    client = HeliusDasClient("key-1", session=session)

    data = await client._post_rpc("getAsset", {"id": SOL_MINT})
    assert data["result"]["id"] == SOL_MINT
    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_post_rpc_error_message_includes_context():
    session = DummySession(lambda m, u, k: DummyResponse({"error": {"code": -32602, "message": "bad"}}))
    client = HeliusDasClient("key-1", session=session)

    with pytest.raises(ProviderError) as excinfo:
        await client._post_rpc("getAsset", {"id": SOL_MINT})
    message = str(excinfo.value)
    assert "getAsset" in message
    assert SOL_MINT in message


@pytest.mark.asyncio
async def test_post_rpc_http_error():
    session = DummySession(lambda m, u, k: DummyResponse(status=500))
    client = HeliusDasClient("key-1", session=session)
    with pytest.raises(ProviderError) as excinfo:
        await client.get_asset(SOL_MINT)
    assert excinfo.value.status == 500


@pytest.mark.asyncio
async def test_every_retry_goes_through_queue(monkeypatch):
    monkeypatch.setattr("mint_catalog.clients.helius_das._BACKOFF_BASE", 0.0)
    responses = [
        DummyResponse(status=429, headers={"Retry-After": "0"}),
        asyncio.TimeoutError(),
        DummyResponse({"result": ASSET_RESULT}),
    ]
    session = DummySession(lambda m, u, k: responses.pop(0))
    queue = RequestQueue(0.0)
    client = HeliusDasClient("key-1", queue=queue, session=session)
    asset = await client.get_asset(SOL_MINT)

    assert asset.name == "Alpha"
    assert len(session.calls) == 3
    assert queue.started == 3
