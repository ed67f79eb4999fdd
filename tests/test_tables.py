"""Tests for the SQLite table service."""

import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from sniper_sync.tables import (
    ACTIVITY,
    SETTINGS,
    STATUS,
    WATCHLIST,
    SQLiteTableService,
    select_one,
)

ADDRESS = "W" * 44
MINT = "M" * 40 + "BAGS"


@pytest.fixture
def temp_db_path():
    """Create a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_sniper.db"


@pytest_asyncio.fixture
async def tables(temp_db_path):
    """Create and connect to a test database."""
    service = SQLiteTableService(db_path=temp_db_path)
    await service.connect()
    yield service
    await service.close()


@pytest.mark.asyncio
async def test_insert_returns_row_with_defaults(tables):
    row = await tables.insert(
        ACTIVITY, {"address": ADDRESS, "kind": "INFO", "message": "hello"}
    )
    assert row["id"] is not None
    assert row["message"] == "hello"
    assert row["created_at"].endswith("+00:00")


@pytest.mark.asyncio
async def test_upsert_merges_only_given_columns(tables):
    """Columns absent from the upsert keep their stored values."""
    await tables.upsert(
        SETTINGS,
        {"address": ADDRESS, "slippage_pct": 25.0, "bribe": 0.01},
        on_conflict=["address"],
    )
    row = await tables.upsert(
        SETTINGS, {"address": ADDRESS, "slippage_pct": 30.0}, on_conflict=["address"]
    )
    assert row["slippage_pct"] == 30.0
    assert row["bribe"] == 0.01
    assert row["priority_fee"] == 0.0001

    rows = await tables.select(SETTINGS, {"address": ADDRESS})
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_upsert_with_only_key_columns(tables):
    """An upsert naming only the conflict key creates a default row once."""
    first = await tables.upsert(SETTINGS, {"address": ADDRESS}, on_conflict=["address"])
    second = await tables.upsert(SETTINGS, {"address": ADDRESS}, on_conflict=["address"])
    assert first["slippage_pct"] == 15
    assert second["address"] == ADDRESS


@pytest.mark.asyncio
async def test_upsert_requires_conflict_key(tables):
    with pytest.raises(ValueError):
        await tables.upsert(SETTINGS, {"address": ADDRESS}, on_conflict=[])


@pytest.mark.asyncio
async def test_composite_conflict_key(tables):
    await tables.upsert(
        WATCHLIST,
        {"address": ADDRESS, "mint_address": MINT, "buy_amount_sol": 0.1},
        on_conflict=["address", "mint_address"],
    )
    row = await tables.upsert(
        WATCHLIST,
        {"address": ADDRESS, "mint_address": MINT, "buy_amount_sol": 0.5},
        on_conflict=["address", "mint_address"],
    )
    assert row["buy_amount_sol"] == 0.5
    assert len(await tables.select(WATCHLIST, {"address": ADDRESS})) == 1


@pytest.mark.asyncio
async def test_select_filters_booleans_and_nulls(tables):
    await tables.insert(STATUS, {"address": "a" * 44, "is_running": True})
    await tables.insert(STATUS, {"address": "b" * 44, "is_running": False})

    running = await tables.select(STATUS, {"is_running": True})
    assert [row["address"] for row in running] == ["a" * 44]

    never_started = await tables.select(STATUS, {"started_at": None})
    assert len(never_started) == 2


@pytest.mark.asyncio
async def test_select_orders_newest_first_with_limit(tables):
    for i in range(3):
        await tables.insert(
            ACTIVITY,
            {
                "address": ADDRESS,
                "kind": "INFO",
                "message": f"m{i}",
                "created_at": datetime(2026, 1, 1, 0, 0, i, tzinfo=timezone.utc),
            },
        )
    rows = await tables.select(ACTIVITY, {"address": ADDRESS}, order_by="created_at", limit=2)
    assert [row["message"] for row in rows] == ["m2", "m1"]

    oldest = await tables.select(
        ACTIVITY, {"address": ADDRESS}, order_by="created_at", descending=False, limit=1
    )
    assert oldest[0]["message"] == "m0"


@pytest.mark.asyncio
async def test_update_and_delete_return_row_counts(tables):
    await tables.insert(STATUS, {"address": ADDRESS})
    assert await tables.update(STATUS, {"is_running": True}, {"address": ADDRESS}) == 1
    assert await tables.update(STATUS, {"is_running": True}, {"address": "x" * 44}) == 0

    row = await select_one(tables, STATUS, {"address": ADDRESS})
    assert row is not None and row["is_running"] == 1

    assert await tables.delete(STATUS, {"address": ADDRESS}) == 1
    assert await select_one(tables, STATUS, {"address": ADDRESS}) is None


@pytest.mark.asyncio
async def test_update_and_delete_require_filters(tables):
    with pytest.raises(ValueError):
        await tables.update(STATUS, {"is_running": False}, {})
    with pytest.raises(ValueError):
        await tables.delete(STATUS, {})


@pytest.mark.asyncio
async def test_metadata_dict_is_stored_as_json(tables):
    row = await tables.insert(
        ACTIVITY,
        {"address": ADDRESS, "kind": "INFO", "message": "m", "metadata": {"tx": "abc"}},
    )
    assert row["metadata"] == '{"tx": "abc"}'


@pytest.mark.asyncio
async def test_unknown_table_and_column_rejected(tables):
    with pytest.raises(ValueError):
        await tables.select("users")
    with pytest.raises(ValueError):
        await tables.select(STATUS, {"address; DROP TABLE status": ADDRESS})
