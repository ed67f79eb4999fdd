"""Tests for the dashboard synchronization session."""

import asyncio
import tempfile
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from sniper_sync.credentials import MANAGED_SIGNER_SENTINEL, CredentialStore
from sniper_sync.envelope import EnvelopeCipher
from sniper_sync.errors import NotFound, RemoteError
from sniper_sync.models import DEFAULT_PRIORITY_FEE, DEFAULT_SLIPPAGE_PCT, TokenQuote, utcnow
from sniper_sync.rotation import WalletRegistry
from sniper_sync.session import InFlightGuard, SyncSession
from sniper_sync.status import START_MESSAGE, STOP_MESSAGE, HeartbeatPolicy
from sniper_sync.tables import SETTINGS, STATUS, WALLETS, SQLiteTableService, select_one

PRINCIPAL = "did:privy:alice"
ADDRESS = "A" * 44
NEW_ADDRESS = "B" * 44
MINT = "AbCdEfGh" + "x" * 32 + "BAGS"
PRIVATE_KEY = "5" * 88


@pytest.fixture
def temp_db_path():
    """Create a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_sniper.db"


@pytest_asyncio.fixture
async def tables(temp_db_path):
    service = SQLiteTableService(db_path=temp_db_path)
    await service.connect()
    yield service
    await service.close()


@pytest.fixture
def credentials(tables):
    return CredentialStore(tables, EnvelopeCipher(secret="test-secret"))


@pytest_asyncio.fixture
async def registered(tables, credentials):
    return await WalletRegistry(tables, credentials).register(PRINCIPAL, ADDRESS, PRIVATE_KEY)


@pytest.fixture
def price_feed():
    feed = AsyncMock()
    feed.fetch_quotes.return_value = {
        MINT: TokenQuote(mint_address=MINT, price_usd=0.002, market_cap=150000, change_24h=12.5)
    }
    return feed


@pytest.fixture
def balance_feed():
    feed = AsyncMock()
    feed.fetch_balance.return_value = 1.5
    return feed


def _make_session(tables, credentials, price_feed, balance_feed, **kwargs):
    return SyncSession(
        principal=PRINCIPAL,
        tables=tables,
        credentials=credentials,
        price_feed=price_feed,
        balance_feed=balance_feed,
        **kwargs,
    )


@pytest_asyncio.fixture
async def session(tables, credentials, price_feed, balance_feed, registered):
    sync = _make_session(tables, credentials, price_feed, balance_feed)
    await sync.initialize()
    yield sync
    await sync.close()


def _messages(view):
    return [event.message for event in view.feed]


class TestInFlightGuard:
    """Tests for the per-action in-flight flags."""

    def test_all_or_nothing(self):
        guard = InFlightGuard()
        assert guard.try_acquire("status")
        assert not guard.try_acquire("wallet", "status")
        assert not guard.is_held("wallet")

        guard.release("status")
        assert guard.try_acquire("wallet", "status")
        assert guard.is_held("status")


@pytest.mark.asyncio
async def test_unregistered_principal_raises(tables, credentials, price_feed, balance_feed):
    sync = _make_session(tables, credentials, price_feed, balance_feed)
    with pytest.raises(NotFound):
        await sync.initialize()
    assert sync.active_loops() == set()
    await sync.close()


@pytest.mark.asyncio
async def test_initialize_loads_view(session):
    view = session.view
    assert view.address == ADDRESS
    assert view.has_key
    assert view.balance_sol == 1.5
    assert not view.is_running
    assert view.settings.slippage_pct == DEFAULT_SLIPPAGE_PCT
    assert view.watchlist == []
    assert session.active_loops() == {"balance"}


@pytest.mark.asyncio
async def test_close_stops_every_loop(session, price_feed, balance_feed):
    await session.add_watch(MINT, "0.5")
    await session.toggle()
    assert session.active_loops() == {"balance", "prices", "logs"}

    await session.close()

    assert session.closed
    assert session.active_loops() == set()
    balance_feed.close.assert_awaited()
    price_feed.close.assert_awaited()


@pytest.mark.asyncio
async def test_one_shot_session_starts_no_loops(
    tables, credentials, price_feed, balance_feed, registered
):
    sync = _make_session(tables, credentials, price_feed, balance_feed)
    await sync.initialize(start_loops=False)
    assert await sync.add_watch(MINT, 0.5)
    assert sync.active_loops() == set()
    await sync.close()


@pytest.mark.asyncio
async def test_add_watch_starts_price_loop(session, price_feed):
    assert await session.add_watch(MINT, "0.5")
    await asyncio.sleep(0)

    assert [entry.mint_address for entry in session.view.watchlist] == [MINT]
    assert "prices" in session.active_loops()
    assert "Added AbCdEfGh... to watchlist with 0.5 SOL" in _messages(session.view)

    await session.refresh_prices()
    assert session.view.token_stats[MINT].price_usd == 0.002


@pytest.mark.asyncio
async def test_remove_watch_stops_price_loop(session):
    await session.add_watch(MINT, 0.5)
    assert await session.remove_watch(MINT)

    assert session.view.watchlist == []
    assert "prices" not in session.active_loops()
    assert _messages(session.view)[0] == "Removed AbCdEfGh... from watchlist"


@pytest.mark.asyncio
async def test_invalid_watch_reports_error(session, tables):
    assert not await session.add_watch("A" * 40 + "BAGX", "0.5")
    assert session.view.message.startswith("Error: ")
    assert not await session.add_watch(MINT, "-1")
    assert await tables.select("watchlist", {"address": ADDRESS}) == []


@pytest.mark.asyncio
async def test_concurrent_toggles_mutate_once(session, tables):
    """A second toggle while the first is pending is ignored."""
    results = await asyncio.gather(session.toggle(), session.toggle())

    assert sorted(results) == [False, True]
    assert session.view.is_running
    starts = await tables.select("activity", {"message": START_MESSAGE})
    assert len(starts) == 1
    assert "logs" in session.active_loops()
    assert not session.is_pending("status")


@pytest.mark.asyncio
async def test_toggle_stops_running_sniper(session):
    await session.toggle()
    assert await session.toggle()

    assert not session.view.is_running
    assert "logs" not in session.active_loops()
    assert _messages(session.view)[0] == "Sniper stopped"


@pytest.mark.asyncio
async def test_toggle_without_key_delegates_to_managed_signer(
    tables, credentials, price_feed, balance_feed
):
    await tables.insert(WALLETS, {"address": ADDRESS, "owner_principal": PRINCIPAL})
    async with _make_session(tables, credentials, price_feed, balance_feed) as sync:
        await sync.initialize()
        assert not sync.view.has_key

        assert await sync.toggle()

        assert sync.view.is_running
        assert await credentials.is_managed(ADDRESS)


@pytest.mark.asyncio
async def test_toggle_without_key_stores_given_key(
    tables, credentials, price_feed, balance_feed
):
    await tables.insert(WALLETS, {"address": ADDRESS, "owner_principal": PRINCIPAL})
    async with _make_session(tables, credentials, price_feed, balance_feed) as sync:
        await sync.initialize()
        assert await sync.toggle(private_key=PRIVATE_KEY)
        assert await credentials.reveal(ADDRESS) == PRIVATE_KEY
    row = await select_one(tables, WALLETS, {"address": ADDRESS})
    assert row["encrypted_key"] != MANAGED_SIGNER_SENTINEL


@pytest.mark.asyncio
async def test_save_settings(session):
    assert await session.save_settings(slippage_pct="25", priority_fee="abc", bribe=0.002)

    settings = session.view.settings
    assert settings.slippage_pct == 25
    assert settings.priority_fee == 0.0001
    assert settings.bribe == 0.002
    assert _messages(session.view)[0] == "Settings saved!"


@pytest.mark.asyncio
async def test_rotate_wallet_moves_view(session, tables, balance_feed):
    await session.add_watch(MINT, 0.5)
    await session.toggle()

    assert await session.rotate_wallet(NEW_ADDRESS, "6" * 88)

    view = session.view
    assert view.address == NEW_ADDRESS
    assert not view.is_running
    assert view.watchlist == []
    assert view.message.startswith("Wallet updated successfully!")
    assert session.active_loops() == {"balance"}
    balance_feed.fetch_balance.assert_any_await(NEW_ADDRESS)

    wallets = await tables.select(WALLETS, {"owner_principal": PRINCIPAL})
    assert [row["address"] for row in wallets] == [NEW_ADDRESS]


@pytest.mark.asyncio
async def test_rotation_blocked_while_other_action_pending(session):
    results = await asyncio.gather(
        session.add_watch(MINT, 0.5),
        session.rotate_wallet(NEW_ADDRESS, "6" * 88),
    )
    assert results == [True, False]
    assert session.view.address == ADDRESS


@pytest.mark.asyncio
async def test_failed_rotation_keeps_old_view(session):
    assert not await session.rotate_wallet("short", PRIVATE_KEY)
    assert session.view.address == ADDRESS
    assert session.view.message.startswith("Error: ")


@pytest.mark.asyncio
async def test_rotation_failing_after_delete_unbinds_view(session, tables):
    await session.toggle()

    with patch.object(tables, "insert", side_effect=RemoteError("timeout")):
        assert not await session.rotate_wallet(NEW_ADDRESS, "6" * 88)

    assert session.view.address is None
    assert session.view.status is None
    assert session.active_loops() == set()
    assert "please retry" in session.view.message

    assert not await session.add_watch(MINT, 0.5)
    assert await tables.select("watchlist") == []


@pytest.mark.asyncio
async def test_rotation_failing_at_settings_binds_new_wallet(session, tables, balance_feed):
    original_upsert = tables.upsert

    async def upsert_failing_settings(table, row, on_conflict):
        if table == SETTINGS:
            raise RemoteError("timeout")
        return await original_upsert(table, row, on_conflict)

    with patch.object(tables, "upsert", side_effect=upsert_failing_settings):
        assert not await session.rotate_wallet(NEW_ADDRESS, "6" * 88)

    view = session.view
    assert view.address == NEW_ADDRESS
    assert view.settings.slippage_pct == DEFAULT_SLIPPAGE_PCT
    assert view.settings.priority_fee == DEFAULT_PRIORITY_FEE
    assert "defaults" in view.message
    assert session.active_loops() == {"balance"}
    assert session._loops["balance"].key == NEW_ADDRESS
    balance_feed.fetch_balance.assert_any_await(NEW_ADDRESS)

    assert await session.add_watch(MINT, 0.5)
    rows = await tables.select("watchlist", {"address": NEW_ADDRESS})
    assert [row["mint_address"] for row in rows] == [MINT]


@pytest.mark.asyncio
async def test_removed_mint_drops_its_quote(session):
    await session.add_watch(MINT, 0.5)
    await session.refresh_prices()
    assert MINT in session.view.token_stats

    await session.remove_watch(MINT)
    assert session.view.token_stats == {}

    # A quote batch that was in flight for the removed mint
    await session.refresh_prices([MINT])
    assert session.view.token_stats == {}


@pytest.mark.asyncio
async def test_closed_session_skips_feed_reads(session, balance_feed, price_feed):
    balance_calls = balance_feed.fetch_balance.await_count
    price_calls = price_feed.fetch_quotes.await_count

    await session.close()
    await session.refresh_balance()
    await session.refresh_prices([MINT])

    assert balance_feed.fetch_balance.await_count == balance_calls
    assert price_feed.fetch_quotes.await_count == price_calls


@pytest.mark.asyncio
async def test_balance_failure_keeps_last_value(session, balance_feed):
    balance_feed.fetch_balance.side_effect = RemoteError("rpc down")
    with pytest.raises(RemoteError):
        await session.refresh_balance()
    assert session.view.balance_sol == 1.5


@pytest.mark.asyncio
async def test_listener_notified_until_closed(tables, credentials, price_feed, balance_feed, registered):
    seen = []
    sync = _make_session(
        tables, credentials, price_feed, balance_feed, listener=lambda view: seen.append(view.address)
    )
    await sync.initialize(start_loops=False)
    assert seen and seen[-1] == ADDRESS

    await sync.close()
    count = len(seen)
    sync._notify()
    assert len(seen) == count


class TestHeartbeatPolicy:
    """Tests for how a stale worker heartbeat is surfaced."""

    @pytest_asyncio.fixture
    async def stale(self, tables, registered):
        await tables.update(
            STATUS,
            {"is_running": True, "last_heartbeat": utcnow() - timedelta(minutes=10)},
            {"address": ADDRESS},
        )

    @pytest.mark.asyncio
    async def test_flag_policy_marks_view(self, tables, credentials, price_feed, balance_feed, stale):
        async with _make_session(
            tables, credentials, price_feed, balance_feed,
            heartbeat_policy=HeartbeatPolicy.FLAG, heartbeat_max_age=60,
        ) as sync:
            await sync.initialize(start_loops=False)
            assert sync.view.heartbeat_stale
            assert sync.view.is_running

    @pytest.mark.asyncio
    async def test_ignore_policy(self, tables, credentials, price_feed, balance_feed, stale):
        async with _make_session(
            tables, credentials, price_feed, balance_feed,
            heartbeat_policy=HeartbeatPolicy.IGNORE, heartbeat_max_age=60,
        ) as sync:
            await sync.initialize(start_loops=False)
            assert not sync.view.heartbeat_stale

    @pytest.mark.asyncio
    async def test_auto_stop_policy(self, tables, credentials, price_feed, balance_feed, stale):
        async with _make_session(
            tables, credentials, price_feed, balance_feed,
            heartbeat_policy=HeartbeatPolicy.AUTO_STOP, heartbeat_max_age=60,
        ) as sync:
            await sync.initialize(start_loops=False)
            assert not sync.view.is_running
            assert not sync.view.heartbeat_stale
            assert STOP_MESSAGE in _messages(sync.view)
        row = await select_one(tables, STATUS, {"address": ADDRESS})
        assert row["is_running"] == 0

    @pytest.mark.asyncio
    async def test_auto_stop_on_refresh_updates_feed(
        self, tables, credentials, price_feed, balance_feed, registered
    ):
        await tables.update(
            STATUS,
            {"is_running": True, "last_heartbeat": utcnow()},
            {"address": ADDRESS},
        )
        async with _make_session(
            tables, credentials, price_feed, balance_feed,
            heartbeat_policy=HeartbeatPolicy.AUTO_STOP, heartbeat_max_age=60,
        ) as sync:
            await sync.initialize(start_loops=False)
            assert sync.view.is_running
            assert STOP_MESSAGE not in _messages(sync.view)

            await tables.update(
                STATUS,
                {"last_heartbeat": utcnow() - timedelta(minutes=10)},
                {"address": ADDRESS},
            )
            await sync.refresh_status()

            assert not sync.view.is_running
            assert _messages(sync.view)[0] == STOP_MESSAGE
            assert sync.view.message == "Sniper stopped: worker heartbeat is stale"
