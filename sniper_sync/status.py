"""Sniper running/stopped state machine and heartbeat policy."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sniper_sync.activity import ActivityLog
from sniper_sync.credentials import CredentialStore
from sniper_sync.errors import NotFound, ValidationError
from sniper_sync.models import LogKind, SniperStatus, utcnow
from sniper_sync.tables import STATUS, WATCHLIST, TableService, select_one

logger = logging.getLogger(__name__)

START_MESSAGE = "Sniper started - monitoring for claims..."
STOP_MESSAGE = "Sniper stopped"


class HeartbeatPolicy(str, Enum):
    """What the dashboard does when a running worker stops heartbeating."""

    IGNORE = "ignore"
    FLAG = "flag"
    AUTO_STOP = "auto_stop"


class SniperStatusMachine:
    """STOPPED <-> RUNNING transitions for a wallet's worker."""

    def __init__(
        self,
        tables: TableService,
        credentials: CredentialStore,
        activity: ActivityLog,
    ) -> None:
        self.tables = tables
        self.credentials = credentials
        self.activity = activity

    async def get_status(self, address: str) -> SniperStatus:
        """Load the status row.

        Raises:
            NotFound: No status row exists for *address*.
        """
        row = await select_one(self.tables, STATUS, {"address": address})
        if row is None:
            raise NotFound(STATUS, address)
        return SniperStatus.from_row(row)

    async def load_status(self, address: str) -> SniperStatus:
        """Load the status row, falling back to the default STOPPED status."""
        try:
            return await self.get_status(address)
        except NotFound:
            return SniperStatus.defaults(address)

    async def start(self, address: str, now: Optional[datetime] = None) -> SniperStatus:
        """STOPPED -> RUNNING. A no-op when already running.

        Raises:
            ValidationError: The wallet has no key or managed-signer marker.
        """
        current = await self.load_status(address)
        if current.is_running:
            return current
        if not await self.credentials.has_key(address):
            raise ValidationError(
                "Wallet has no stored key; provide one or delegate to the managed signer"
            )

        now = now or utcnow()
        row = await self.tables.upsert(
            STATUS,
            {
                "address": address,
                "is_running": True,
                "started_at": now,
                "last_heartbeat": now,
            },
            on_conflict=["address"],
        )
        await self.activity.append(address, LogKind.SUCCESS, START_MESSAGE)
        logger.info("Sniper started for %s", address)
        return SniperStatus.from_row(row)

    async def stop(self, address: str, now: Optional[datetime] = None) -> SniperStatus:
        """RUNNING -> STOPPED. A no-op (and no activity row) when already stopped."""
        current = await self.load_status(address)
        if not current.is_running:
            return current

        now = now or utcnow()
        await self.tables.update(
            STATUS,
            {"is_running": False, "stopped_at": now},
            {"address": address},
        )
        await self.activity.append(address, LogKind.INFO, STOP_MESSAGE)
        logger.info("Sniper stopped for %s", address)
        return await self.load_status(address)

    # --- Worker side of the contract ---

    async def record_heartbeat(self, address: str, now: Optional[datetime] = None) -> bool:
        """Advance ``last_heartbeat`` while running. Returns False if not running."""
        current = await self.load_status(address)
        if not current.is_running:
            return False
        await self.tables.update(
            STATUS, {"last_heartbeat": now or utcnow()}, {"address": address}
        )
        return True

    async def running_addresses(self) -> List[str]:
        """Addresses whose worker should currently be active."""
        rows = await self.tables.select(STATUS, {"is_running": True})
        return [row["address"] for row in rows]

    async def mark_sniped(
        self, address: str, mint_address: str, now: Optional[datetime] = None
    ) -> bool:
        """Flag a watch entry as bought by the worker."""
        updated = await self.tables.update(
            WATCHLIST,
            {"sniped": True, "sniped_at": now or utcnow()},
            {"address": address, "mint_address": mint_address},
        )
        return updated > 0


__all__ = [
    "HeartbeatPolicy",
    "SniperStatusMachine",
    "START_MESSAGE",
    "STOP_MESSAGE",
]
