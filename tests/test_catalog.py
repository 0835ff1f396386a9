import datetime

import pytest

from mint_catalog.catalog import (
    STATUS_ACTIVE,
    STATUS_CURVE,
    STATUS_FRESH,
    HolderBalance,
    utcnow,
)
from mint_catalog.market_data import MarketQuote


@pytest.mark.asyncio
async def test_upsert_creates_then_merges(catalog):
    token, created = await catalog.upsert_discovered("ABC123", 6, 1_000_000, 1_700_000_000)
    assert created
    assert token.status == STATUS_FRESH
    assert token.decimals == 6
    assert token.supply == 1_000_000
    assert token.source == "helius"
    assert token.blocktime == datetime.datetime(2023, 11, 14, 22, 13, 20)

    again, created = await catalog.upsert_discovered(
        "ABC123", 6, 1_000_000, 1_700_000_000, name="Alpha", is_on_curve=True
    )
    assert not created
    assert again.id == token.id
    assert again.name == "Alpha"
    assert again.is_on_curve is True

    third, _ = await catalog.upsert_discovered("ABC123", 6, 1_000_000, None, name="Beta")
    assert third.name == "Alpha"
    assert third.is_on_curve is True


@pytest.mark.asyncio
async def test_update_metadata_coalesces(catalog):
    await catalog.upsert_discovered("ABC123", 6, 1.0, None)

    changed = await catalog.update_metadata("ABC123", name="Alpha", symbol="  ALP ", image_url="")
    assert changed == {"name", "symbol"}

    changed = await catalog.update_metadata("ABC123", name="Beta", twitter="https://x.com/alpha")
    assert changed == {"twitter"}

    token = await catalog.get_token("ABC123")
    assert token.name == "Alpha"
    assert token.symbol == "ALP"
    assert token.image_url is None


@pytest.mark.asyncio
async def test_update_metadata_source_and_curve_rules(catalog):
    await catalog.upsert_discovered("ABC123", 6, 1.0, None)

    assert "source" in await catalog.update_metadata("ABC123", source="pump.fun")
    assert await catalog.update_metadata("ABC123", source="bonk.fun") == frozenset()
    assert (await catalog.get_token("ABC123")).source == "pump.fun"

    await catalog.advance_status("ABC123", STATUS_ACTIVE)
    assert await catalog.update_metadata("ABC123", is_on_curve=True) == frozenset()
    assert (await catalog.get_token("ABC123")).is_on_curve is False


@pytest.mark.asyncio
async def test_update_metadata_rejects_unknown_fields(catalog):
    with pytest.raises(TypeError):
        await catalog.update_metadata("ABC123", decimals=9)
    assert await catalog.update_metadata("MISSING", name="x") == frozenset()


@pytest.mark.asyncio
async def test_status_only_moves_forward(catalog):
    await catalog.upsert_discovered("ABC123", 6, 1.0, None)

    assert await catalog.advance_status("ABC123", STATUS_CURVE)
    assert not await catalog.advance_status("ABC123", STATUS_FRESH)
    assert not await catalog.advance_status("ABC123", STATUS_CURVE)
    assert await catalog.advance_status("ABC123", STATUS_ACTIVE, clear_curve=True)

    # repeated discovery never demotes
    token, _ = await catalog.upsert_discovered("ABC123", 6, 1.0, None, status=STATUS_FRESH)
    assert token.status == STATUS_ACTIVE

    assert await catalog.reset_status("ABC123", STATUS_FRESH)
    assert (await catalog.get_token("ABC123")).status == STATUS_FRESH
    assert not await catalog.reset_status("MISSING")
    with pytest.raises(ValueError):
        await catalog.advance_status("ABC123", "rugged")


@pytest.mark.asyncio
async def test_set_curve_skips_active_tokens(catalog):
    await catalog.upsert_discovered("ABC123", 6, 1.0, None)
    assert await catalog.set_curve("ABC123", "Curve111")
    assert not await catalog.set_curve("MISSING")

    token = await catalog.get_token("ABC123")
    assert token.is_on_curve is True
    assert token.bonding_curve_address == "Curve111"

    # an existing address is kept
    assert await catalog.set_curve("ABC123", "Curve222")
    assert (await catalog.get_token("ABC123")).bonding_curve_address == "Curve111"

    await catalog.advance_status("ABC123", STATUS_ACTIVE, clear_curve=True)
    assert not await catalog.set_curve("ABC123")
    assert (await catalog.get_token("ABC123")).is_on_curve is False


@pytest.mark.asyncio
async def test_metadata_and_socials_queries(catalog):
    await catalog.upsert_discovered("EMPTY1", 6, 1.0, 100)
    await catalog.upsert_discovered(
        "FULL1",
        6,
        1.0,
        200,
        name="Full",
        symbol="FUL",
        metadata_uri="https://example.com/full.json",
        image_url="https://example.com/full.png",
    )

    assert await catalog.find_mints_needing_metadata(10) == ["EMPTY1"]
    assert await catalog.find_mints_needing_socials(10) == ["FULL1"]

    await catalog.mark_socials_checked("FULL1")
    assert await catalog.find_mints_needing_socials(10) == []
    assert await catalog.find_mints_needing_socials(10, recheck_after=-1) == ["FULL1"]


@pytest.mark.asyncio
async def test_market_data_candidates_respect_max_age(catalog):
    stale, _ = await catalog.upsert_discovered("STALE1", 6, 1.0, None)
    recent, _ = await catalog.upsert_discovered("RECENT1", 6, 1.0, None)
    await catalog.upsert_discovered("NEVER1", 6, 1.0, None)

    quote = MarketQuote(price=0.5, marketcap=10.0, source="jupiter")
    await catalog.append_snapshot(stale.id, quote, timestamp=utcnow() - datetime.timedelta(hours=1))
    await catalog.append_snapshot(recent.id, quote)

    mints = [t.mint for t in await catalog.find_tokens_needing_market_data(10, max_age=300)]
    assert set(mints) == {"STALE1", "NEVER1"}
    assert mints[0] == "NEVER1"


@pytest.mark.asyncio
async def test_snapshots_append_and_prune(catalog):
    a, _ = await catalog.upsert_discovered("TOKA", 6, 1.0, None)
    b, _ = await catalog.upsert_discovered("TOKB", 6, 1.0, None)
    now = utcnow()

    await catalog.append_snapshot(a.id, MarketQuote(1.0, source="x"), timestamp=now - datetime.timedelta(days=40))
    await catalog.append_snapshot(a.id, MarketQuote(2.0, source="x"), timestamp=now - datetime.timedelta(days=35))
    await catalog.append_snapshot(b.id, MarketQuote(3.0, source="x"), timestamp=now - datetime.timedelta(hours=1))

    removed = await catalog.prune_snapshots(datetime.timedelta(days=30))
    assert removed == 1

    history = await catalog.snapshot_history(a.id)
    assert [s.price_usd for s in history] == [2.0]
    latest_b = await catalog.latest_snapshot(b.id)
    assert latest_b.price_usd == 3.0
    assert latest_b.liquidity == 0.0


@pytest.mark.asyncio
async def test_replace_holders_drops_stale_owners(catalog):
    await catalog.replace_holders(
        "ABC123",
        [HolderBalance("owner1", 10.0, "10000000"), HolderBalance("owner2", 5.0, "5000000")],
    )
    await catalog.replace_holders(
        "ABC123",
        [HolderBalance("owner2", 7.0, "7000000"), HolderBalance("owner3", 1.0, "1000000")],
    )

    holders = await catalog.top_holders("ABC123")
    assert [(h.owner, h.amount) for h in holders] == [("owner2", 7.0), ("owner3", 1.0)]
    summary = await catalog.holder_summary("ABC123")
    assert summary.holder_count == 2
    assert summary.top_holder_amount == 7.0

    await catalog.replace_holders("ABC123", [])
    assert await catalog.top_holders("ABC123") == []
    assert (await catalog.holder_summary("ABC123")).holder_count == 0


@pytest.mark.asyncio
async def test_purge_denied_removes_rows_and_snapshots(catalog):
    bad, _ = await catalog.upsert_discovered("ABC123", 6, 1.0, None, name="Test Coin", symbol="TST")
    await catalog.upsert_discovered("DEF456", 6, 1.0, None, name="Real Coin", symbol="REAL")
    await catalog.upsert_discovered("POOLABC", 6, 1.0, None)
    await catalog.append_snapshot(bad.id, MarketQuote(1.0, source="x"))

    assert await catalog.purge_denied() == 2
    assert await catalog.get_token("ABC123") is None
    assert await catalog.get_token("POOLABC") is None
    assert await catalog.get_token("DEF456") is not None
    assert await catalog.latest_snapshot(bad.id) is None
    assert dict(await catalog.status_counts()) == {"fresh": 1}


@pytest.mark.asyncio
async def test_lifecycle_candidates(catalog):
    await catalog.upsert_discovered("CURVE1", 6, 1.0, None, is_on_curve=True)
    moving, _ = await catalog.upsert_discovered("MOVING1", 6, 1.0, None, status=STATUS_CURVE)
    await catalog.upsert_discovered("IDLE1", 6, 1.0, None, status=STATUS_CURVE)
    await catalog.append_snapshot(moving.id, MarketQuote(1.0, source="x"))

    fresh_on_curve, migrated = await catalog.find_lifecycle_candidates()
    assert fresh_on_curve == ["CURVE1"]
    assert migrated == ["MOVING1"]
