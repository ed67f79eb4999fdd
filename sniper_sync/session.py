"""Dashboard synchronization session.

A :class:`SyncSession` owns everything one dashboard needs for one principal:
the view model, the read-refresh loops (balance, prices, activity feed and,
optionally, status), the per-action in-flight flags and the feed clients.
``close()`` cancels every loop it started; nothing fires afterwards.

Refresh loops only touch read-only projections. Mutations go through the
action methods, which never run twice concurrently for the same flag: a call
made while the previous one is pending is ignored and returns ``False``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Hashable, Iterable, Optional, Set, Union

from sniper_sync.activity import ActivityLog
from sniper_sync.config import Settings
from sniper_sync.credentials import CredentialStore
from sniper_sync.errors import NotFound, RotationError, SniperSyncError
from sniper_sync.feeds import BalanceFeed, PriceFeed
from sniper_sync.models import (
    DEFAULT_BRIBE,
    DEFAULT_PRIORITY_FEE,
    DEFAULT_SLIPPAGE_PCT,
    DashboardView,
    LogKind,
    TradingSettings,
    WalletRecord,
)
from sniper_sync.poller import PollingLoop, RefreshCallback
from sniper_sync.rotation import WalletRegistry
from sniper_sync.status import HeartbeatPolicy, SniperStatusMachine
from sniper_sync.tables import TableService
from sniper_sync.validation import parse_buy_amount, validate_mint, validate_private_key
from sniper_sync.watchlist import TradingSettingsStore, WatchlistStore

logger = logging.getLogger(__name__)

STATUS_FLAG = "status"
WATCHLIST_FLAG = "watchlist"
SETTINGS_FLAG = "settings"
WALLET_FLAG = "wallet"

ViewListener = Callable[[DashboardView], None]


class InFlightGuard:
    """Named in-flight flags, acquired all-or-nothing without waiting."""

    def __init__(self) -> None:
        self._held: Set[str] = set()

    def is_held(self, *names: str) -> bool:
        return any(name in self._held for name in names)

    def try_acquire(self, *names: str) -> bool:
        if self.is_held(*names):
            return False
        self._held.update(names)
        return True

    def release(self, *names: str) -> None:
        self._held.difference_update(names)


def _number_or_default(value: Union[str, float, int, None], default: float) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return number if number else default


class SyncSession:
    """Keeps a principal's dashboard view in step with the table service."""

    def __init__(
        self,
        principal: str,
        tables: TableService,
        credentials: CredentialStore,
        price_feed: PriceFeed,
        balance_feed: BalanceFeed,
        balance_interval: float = 10.0,
        price_interval: float = 15.0,
        log_interval: float = 5.0,
        status_interval: float = 0.0,
        heartbeat_policy: HeartbeatPolicy = HeartbeatPolicy.FLAG,
        heartbeat_max_age: float = 120.0,
        feed_limit: int = 50,
        listener: Optional[ViewListener] = None,
    ) -> None:
        self.principal = principal
        self.tables = tables
        self.credentials = credentials
        self.price_feed = price_feed
        self.balance_feed = balance_feed

        self.activity = ActivityLog(tables)
        self.registry = WalletRegistry(tables, credentials)
        self.status_machine = SniperStatusMachine(tables, credentials, self.activity)
        self.watchlist = WatchlistStore(tables, self.activity)
        self.settings_store = TradingSettingsStore(tables)

        self.balance_interval = balance_interval
        self.price_interval = price_interval
        self.log_interval = log_interval
        self.status_interval = status_interval
        self.heartbeat_policy = HeartbeatPolicy(heartbeat_policy)
        self.heartbeat_max_age = heartbeat_max_age
        self.feed_limit = feed_limit
        self.listener = listener

        self.view = DashboardView(principal=principal)
        self._guard = InFlightGuard()
        self._loops: Dict[str, PollingLoop] = {}
        self._closed = False
        self._loops_enabled = True

    @classmethod
    def from_settings(
        cls,
        principal: str,
        tables: TableService,
        credentials: CredentialStore,
        settings: Settings,
        listener: Optional[ViewListener] = None,
    ) -> "SyncSession":
        return cls(
            principal=principal,
            tables=tables,
            credentials=credentials,
            price_feed=PriceFeed(settings.dexscreener_api_url, settings.http_timeout_seconds),
            balance_feed=BalanceFeed(settings.solana_rpc_url, settings.http_timeout_seconds),
            balance_interval=settings.balance_poll_seconds,
            price_interval=settings.price_poll_seconds,
            log_interval=settings.log_poll_seconds,
            status_interval=settings.status_poll_seconds,
            heartbeat_policy=HeartbeatPolicy(settings.heartbeat_policy),
            heartbeat_max_age=settings.heartbeat_max_age_seconds,
            feed_limit=settings.activity_feed_limit,
            listener=listener,
        )

    async def __aenter__(self) -> "SyncSession":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def is_pending(self, flag: str) -> bool:
        return self._guard.is_held(flag)

    def active_loops(self) -> Set[str]:
        return {name for name, loop in self._loops.items() if loop.is_running}

    # --- Lifecycle ---

    async def initialize(self, start_loops: bool = True) -> DashboardView:
        """Resolve the principal's wallet and load the whole view.

        With ``start_loops=False`` the view is loaded once and no refresh
        loop is ever started (one-shot commands).

        Raises:
            NotFound: The principal has no wallet yet (route to onboarding).
        """
        self._loops_enabled = start_loops
        wallet = await self.registry.wallet_for_principal(self.principal)
        self._bind_wallet(wallet)
        await self._load_all()
        await self._sync_loops()
        self._notify()
        return self.view

    async def close(self) -> None:
        """Cancel every loop and release the feed clients."""
        self._closed = True
        loops = list(self._loops.values())
        self._loops.clear()
        for loop in loops:
            await loop.stop()
        await self.price_feed.close()
        await self.balance_feed.close()

    def _bind_wallet(self, wallet: WalletRecord) -> None:
        if self.view.address != wallet.address:
            self.view.balance_sol = None
            self.view.token_stats = {}
            self.view.feed = []
            self.view.watchlist = []
        self.view.address = wallet.address
        self.view.has_key = wallet.has_key

    async def _load_all(self) -> None:
        address = self.view.address
        if not address:
            return
        results = await asyncio.gather(
            self.load_settings(),
            self.load_watchlist(),
            self._load_status_and_logs(),
            self.refresh_balance(address),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, SniperSyncError):
                self._report("initialize", result)
            elif isinstance(result, BaseException):
                raise result

    async def _load_status_and_logs(self) -> None:
        # Logs are read after status so an auto-stop row is already in the feed
        try:
            await self.refresh_status()
        except SniperSyncError as exc:
            self._report("initialize", exc)
        await self.refresh_logs()

    def _unbind_wallet(self) -> None:
        self.view.address = None
        self.view.has_key = False
        self.view.balance_sol = None
        self.view.status = None
        self.view.settings = None
        self.view.watchlist = []
        self.view.token_stats = {}
        self.view.feed = []
        self.view.heartbeat_stale = False

    async def _rebind_after_failed_rotation(self) -> None:
        """Follow the principal's wallet row after a rotation stopped midway."""
        try:
            wallet = await self.registry.wallet_for_principal(self.principal)
        except NotFound:
            logger.warning("Principal %s has no wallet after failed rotation", self.principal)
            self._unbind_wallet()
        except SniperSyncError as exc:
            logger.warning("Could not re-resolve wallet after failed rotation: %s", exc)
            self._unbind_wallet()
        else:
            self._bind_wallet(wallet)
            await self._load_all()
        await self._sync_loops()

    # --- Loop management ---

    async def _ensure_loop(
        self,
        name: str,
        refresh: RefreshCallback,
        interval: float,
        key: Hashable,
        fire_immediately: bool = True,
    ) -> None:
        current = self._loops.get(name)
        if current is not None and current.key == key and current.is_running:
            return
        await self._stop_loop(name)
        loop = PollingLoop(
            name, refresh, interval, fire_immediately=fire_immediately, key=key
        )
        self._loops[name] = loop
        loop.start()
        logger.debug("Started %s loop (%ss)", name, interval)

    async def _stop_loop(self, name: str) -> None:
        loop = self._loops.pop(name, None)
        if loop is not None:
            await loop.stop()
            logger.debug("Stopped %s loop", name)

    async def _sync_loops(self) -> None:
        """Start, re-key or stop loops to match the current view."""
        if self._closed or not self._loops_enabled:
            return
        address = self.view.address

        if address:
            await self._ensure_loop(
                "balance",
                lambda: self.refresh_balance(address),
                self.balance_interval,
                key=address,
            )
        else:
            await self._stop_loop("balance")

        mints = frozenset(entry.mint_address for entry in self.view.watchlist)
        if mints:
            await self._ensure_loop(
                "prices",
                lambda: self.refresh_prices(mints),
                self.price_interval,
                key=mints,
            )
        else:
            await self._stop_loop("prices")

        running = bool(address) and self.view.is_running
        if running:
            await self._ensure_loop(
                "logs",
                self.refresh_logs,
                self.log_interval,
                key=address,
                fire_immediately=False,
            )
        else:
            await self._stop_loop("logs")

        if running and self.status_interval > 0:
            await self._ensure_loop(
                "status",
                self._poll_status,
                self.status_interval,
                key=address,
                fire_immediately=False,
            )
        else:
            await self._stop_loop("status")

    # --- Read paths ---

    async def refresh_balance(self, address: Optional[str] = None) -> None:
        address = address or self.view.address
        if not address or self._closed:
            return
        balance = await self.balance_feed.fetch_balance(address)
        if balance is not None and self.view.address == address:
            self.view.balance_sol = balance
            self._notify()

    async def refresh_prices(self, mints: Optional[Iterable[str]] = None) -> None:
        if mints is None:
            mints = [entry.mint_address for entry in self.view.watchlist]
        mint_list = list(mints)
        if not mint_list or self._closed:
            return
        quotes = await self.price_feed.fetch_quotes(mint_list)
        self.view.token_stats.update(quotes)
        self._prune_token_stats()
        self._notify()

    def _prune_token_stats(self) -> None:
        watched = {entry.mint_address for entry in self.view.watchlist}
        self.view.token_stats = {
            mint: quote for mint, quote in self.view.token_stats.items() if mint in watched
        }

    async def refresh_logs(self) -> None:
        """Re-read the canonical activity feed. Always available."""
        address = self.view.address
        if not address:
            return
        feed = await self.activity.load_feed(address, self.feed_limit)
        if self.view.address == address:
            self.view.feed = feed
            self._notify()

    async def refresh_status(self) -> None:
        address = self.view.address
        if not address:
            return
        status = await self.status_machine.load_status(address)
        if self.view.address == address:
            self.view.status = status
            await self._apply_heartbeat_policy()

    async def _poll_status(self) -> None:
        await self.refresh_status()
        await self._sync_loops()
        self._notify()

    async def load_settings(self) -> None:
        address = self.view.address
        if not address:
            return
        settings = await self.settings_store.load(address)
        if self.view.address == address:
            self.view.settings = settings

    async def load_watchlist(self) -> None:
        address = self.view.address
        if not address:
            return
        entries = await self.watchlist.list_entries(address)
        if self.view.address == address:
            self.view.watchlist = entries
            self._prune_token_stats()

    async def _apply_heartbeat_policy(self) -> None:
        status = self.view.status
        if status is None or self.heartbeat_policy is HeartbeatPolicy.IGNORE:
            self.view.heartbeat_stale = False
            return
        stale = status.is_heartbeat_stale(self.heartbeat_max_age)
        self.view.heartbeat_stale = stale
        if not stale:
            return
        age = status.heartbeat_age()
        logger.warning(
            "Worker heartbeat for %s is stale (age=%s, limit=%ss)",
            status.address,
            f"{age:.0f}s" if age is not None else "never",
            self.heartbeat_max_age,
        )
        if self.heartbeat_policy is HeartbeatPolicy.AUTO_STOP:
            if not self._guard.try_acquire(STATUS_FLAG):
                return
            try:
                self.view.status = await self.status_machine.stop(status.address)
                self.view.heartbeat_stale = False
                self.view.message = "Sniper stopped: worker heartbeat is stale"
                await self.refresh_logs()
            except SniperSyncError as exc:
                self._report("auto_stop", exc)
            finally:
                self._guard.release(STATUS_FLAG)

    # --- Write paths ---

    async def toggle(self, private_key: Optional[str] = None) -> bool:
        """Stop a running sniper or start a stopped one.

        Starting a wallet without a stored key first stores *private_key* if
        given, otherwise delegates custody to the managed signer.
        """
        address = self.view.address
        if not address:
            return False
        if not self._guard.try_acquire(STATUS_FLAG):
            logger.debug("Ignoring toggle: a status change is already in flight")
            return False
        self.view.message = None
        try:
            if self.view.is_running:
                self.view.status = await self.status_machine.stop(address)
            else:
                if not self.view.has_key:
                    if private_key:
                        await self.credentials.store(address, validate_private_key(private_key))
                    else:
                        await self.credentials.delegate_to_managed_signer(address)
                    self.view.has_key = True
                self.view.status = await self.status_machine.start(address)
            self.view.heartbeat_stale = False
            await self._sync_loops()
            await self.refresh_logs()
            return True
        except SniperSyncError as exc:
            self._report("toggle", exc)
            return False
        finally:
            self._guard.release(STATUS_FLAG)
            self._notify()

    async def add_watch(self, mint_address: str, buy_amount: Union[str, float]) -> bool:
        address = self.view.address
        if not address:
            return False
        if not self._guard.try_acquire(WATCHLIST_FLAG):
            logger.debug("Ignoring add: a watchlist change is already in flight")
            return False
        self.view.message = None
        try:
            mint = validate_mint(mint_address)
            amount = parse_buy_amount(buy_amount)
            await self.watchlist.add_entry(address, mint, amount)
            await self.load_watchlist()
            await self._sync_loops()
            await self.refresh_logs()
            return True
        except SniperSyncError as exc:
            self._report("add_watch", exc)
            return False
        finally:
            self._guard.release(WATCHLIST_FLAG)
            self._notify()

    async def remove_watch(self, mint_address: str) -> bool:
        address = self.view.address
        if not address:
            return False
        if not self._guard.try_acquire(WATCHLIST_FLAG):
            logger.debug("Ignoring remove: a watchlist change is already in flight")
            return False
        self.view.message = None
        try:
            await self.watchlist.remove_entry(address, mint_address.strip())
            await self.load_watchlist()
            await self._sync_loops()
            await self.refresh_logs()
            return True
        except SniperSyncError as exc:
            self._report("remove_watch", exc)
            return False
        finally:
            self._guard.release(WATCHLIST_FLAG)
            self._notify()

    async def save_settings(
        self,
        slippage_pct: Union[str, float, None] = None,
        priority_fee: Union[str, float, None] = None,
        bribe: Union[str, float, None] = None,
        notify_channel_id: Optional[str] = None,
    ) -> bool:
        """Upsert the whole settings row; unparseable numbers fall back to defaults."""
        address = self.view.address
        if not address:
            return False
        if not self._guard.try_acquire(SETTINGS_FLAG):
            logger.debug("Ignoring save: a settings save is already in flight")
            return False
        self.view.message = None
        try:
            settings = TradingSettings(
                address=address,
                slippage_pct=_number_or_default(slippage_pct, DEFAULT_SLIPPAGE_PCT),
                priority_fee=_number_or_default(priority_fee, DEFAULT_PRIORITY_FEE),
                bribe=_number_or_default(bribe, DEFAULT_BRIBE),
                notify_channel_id=(notify_channel_id or "").strip() or None,
            )
            self.view.settings = await self.settings_store.save(settings)
            await self.activity.append(address, LogKind.SUCCESS, "Settings saved!")
            await self.refresh_logs()
            return True
        except SniperSyncError as exc:
            self._report("save_settings", exc)
            return False
        finally:
            self._guard.release(SETTINGS_FLAG)
            self._notify()

    async def rotate_wallet(self, new_address: str, new_private_key: str) -> bool:
        """Replace the principal's wallet; the view moves only on full success."""
        flags = (WALLET_FLAG, STATUS_FLAG, WATCHLIST_FLAG, SETTINGS_FLAG)
        if not self._guard.try_acquire(*flags):
            logger.debug("Ignoring rotation: another action is in flight")
            return False
        self.view.message = None
        try:
            wallet = await self.registry.rotate(self.principal, new_address, new_private_key)
            self._bind_wallet(wallet)
            await self._load_all()
            await self._sync_loops()
            self.view.message = "Wallet updated successfully! The sniper will now use this wallet."
            return True
        except RotationError as exc:
            # Past the delete step the old address no longer belongs to the principal
            if exc.step != "delete_wallet":
                await self._rebind_after_failed_rotation()
            self._report("rotate_wallet", exc)
            return False
        except SniperSyncError as exc:
            self._report("rotate_wallet", exc)
            return False
        finally:
            self._guard.release(*flags)
            self._notify()

    # --- Feedback ---

    def _report(self, action: str, exc: SniperSyncError) -> None:
        message = str(exc)
        if isinstance(exc, RotationError) and exc.retryable:
            message = f"{message}. No wallet change was completed; please retry."
        elif isinstance(exc, RotationError):
            message = (
                f"{message}. The new wallet was saved but its settings/status "
                "are using defaults."
            )
        logger.warning("%s failed: %s", action, exc)
        self.view.message = f"Error: {message}"

    def _notify(self) -> None:
        if self.listener is not None and not self._closed:
            try:
                self.listener(self.view)
            except Exception:
                logger.exception("View listener failed")


__all__ = ["InFlightGuard", "SyncSession"]
