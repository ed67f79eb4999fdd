"""Tests for the activity feed."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from sniper_sync.activity import ActivityLog, TradeEvent, merge_feed, short_mint
from sniper_sync.models import ActivityRecord, LogKind, TradeRecord
from sniper_sync.tables import SQLiteTableService

ADDRESS = "W" * 44
MINT = "AbCdEfGh" + "x" * 32 + "BAGS"
BASE = datetime(2020, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _activity(i, seconds, message="event"):
    return ActivityRecord(
        id=i,
        address=ADDRESS,
        kind=LogKind.INFO,
        message=f"{message}-{i}",
        created_at=BASE + timedelta(seconds=seconds),
    )


def _trade(i, seconds, status="success", error=None):
    return TradeRecord(
        id=i,
        address=ADDRESS,
        mint_address=MINT,
        action="BUY",
        amount_sol=0.5,
        status=status,
        created_at=BASE + timedelta(seconds=seconds),
        error_message=error,
    )


def test_short_mint():
    assert short_mint(MINT) == "AbCdEfGh..."


def test_merge_is_newest_first():
    activities = [_activity(2, 30), _activity(1, 10)]
    trades = [_trade(7, 20), _trade(6, 0)]

    feed = merge_feed(activities, trades)

    assert [event.id for event in feed] == ["2", "trade-7", "1", "trade-6"]
    timestamps = [event.timestamp for event in feed]
    assert timestamps == sorted(timestamps, reverse=True)


def test_merge_respects_limit():
    activities = [_activity(i, 100 - i) for i in range(40)]
    trades = [_trade(i, 100 - i - 0.5) for i in range(40)]

    feed = merge_feed(activities, trades, limit=50)

    assert len(feed) == 50
    assert feed[0].id == "0"
    assert feed[1].id == "trade-0"


def test_merge_with_one_empty_stream():
    assert [e.id for e in merge_feed([], [_trade(1, 0)])] == ["trade-1"]
    assert merge_feed([], []) == []


def test_successful_trade_message():
    event = TradeEvent(_trade(1, 0, status="success"))
    assert event.kind is LogKind.SUCCESS
    assert event.message == "Bought 0.5 SOL of AbCdEfGh..."


def test_failed_trade_message():
    event = TradeEvent(_trade(1, 0, status="failed", error="Slippage exceeded"))
    assert event.kind is LogKind.ERROR
    assert event.message == "Trade Failed: Slippage exceeded (AbCdEfGh...)"


def test_failed_trade_without_reason():
    event = TradeEvent(_trade(1, 0, status="failed"))
    assert event.message == "Trade Failed: Unknown error (AbCdEfGh...)"


@pytest.fixture
def temp_db_path():
    """Create a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_sniper.db"


@pytest_asyncio.fixture
async def activity_log(temp_db_path):
    service = SQLiteTableService(db_path=temp_db_path)
    await service.connect()
    yield ActivityLog(service)
    await service.close()


@pytest.mark.asyncio
async def test_append_round_trips_metadata(activity_log):
    record = await activity_log.append(
        ADDRESS, LogKind.WARNING, "Low balance", metadata={"balance": 0.01}
    )
    assert record.kind is LogKind.WARNING
    assert record.metadata == {"balance": 0.01}
    assert record.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_load_feed_merges_persisted_streams(activity_log):
    tables = activity_log.tables
    await tables.insert(
        "activity",
        {"address": ADDRESS, "kind": "INFO", "message": "old", "created_at": BASE},
    )
    await activity_log.record_trade(ADDRESS, MINT, "BUY", 0.25, "success")
    await tables.insert(
        "trades",
        {
            "address": ADDRESS,
            "mint_address": MINT,
            "action": "BUY",
            "amount_sol": 0.1,
            "status": "failed",
            "created_at": BASE + timedelta(seconds=1),
        },
    )
    await tables.insert(
        "activity",
        {"address": "O" * 44, "kind": "INFO", "message": "other wallet"},
    )

    feed = await activity_log.load_feed(ADDRESS)

    assert [event.message for event in feed] == [
        "Bought 0.25 SOL of AbCdEfGh...",
        "Trade Failed: Unknown error (AbCdEfGh...)",
        "old",
    ]
