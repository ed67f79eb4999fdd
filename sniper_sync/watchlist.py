"""Watchlist and trading-settings persistence on the table service."""

from __future__ import annotations

import logging
from typing import List, Optional

from sniper_sync.activity import ActivityLog, short_mint
from sniper_sync.errors import NotFound
from sniper_sync.models import LogKind, TradingSettings, WatchEntry
from sniper_sync.tables import SETTINGS, WATCHLIST, TableService, select_one

logger = logging.getLogger(__name__)


class WatchlistStore:
    """Per-wallet watch entries, unique on (address, mint_address)."""

    def __init__(self, tables: TableService, activity: ActivityLog) -> None:
        self.tables = tables
        self.activity = activity

    async def list_entries(self, address: str) -> List[WatchEntry]:
        """Active entries for *address*, newest first."""
        rows = await self.tables.select(
            WATCHLIST,
            {"address": address, "is_active": True},
            order_by="created_at",
        )
        return [WatchEntry.from_row(row) for row in rows]

    async def get_entry(self, address: str, mint_address: str) -> Optional[WatchEntry]:
        row = await select_one(
            self.tables, WATCHLIST, {"address": address, "mint_address": mint_address}
        )
        return WatchEntry.from_row(row) if row else None

    async def add_entry(
        self, address: str, mint_address: str, buy_amount_sol: float
    ) -> WatchEntry:
        """Add or re-activate a mint. Inputs must already be validated."""
        row = await self.tables.upsert(
            WATCHLIST,
            {
                "address": address,
                "mint_address": mint_address,
                "buy_amount_sol": buy_amount_sol,
                "is_active": True,
            },
            on_conflict=["address", "mint_address"],
        )
        await self.activity.append(
            address,
            LogKind.INFO,
            f"Added {short_mint(mint_address)} to watchlist with {buy_amount_sol} SOL",
        )
        return WatchEntry.from_row(row)

    async def remove_entry(self, address: str, mint_address: str) -> bool:
        """Delete a mint from the watchlist. Returns False if it was not there."""
        removed = await self.tables.delete(
            WATCHLIST, {"address": address, "mint_address": mint_address}
        )
        if removed:
            await self.activity.append(
                address, LogKind.INFO, f"Removed {short_mint(mint_address)} from watchlist"
            )
        return removed > 0


class TradingSettingsStore:
    """Per-wallet trading settings; a missing row means defaults."""

    def __init__(self, tables: TableService) -> None:
        self.tables = tables

    async def get(self, address: str) -> TradingSettings:
        """Raises NotFound when the row is missing."""
        row = await select_one(self.tables, SETTINGS, {"address": address})
        if row is None:
            raise NotFound(SETTINGS, address)
        return TradingSettings.from_row(row)

    async def load(self, address: str) -> TradingSettings:
        try:
            return await self.get(address)
        except NotFound:
            logger.debug("No settings row for %s, using defaults", address)
            return TradingSettings.defaults(address)

    async def save(self, settings: TradingSettings) -> TradingSettings:
        row = await self.tables.upsert(SETTINGS, settings.to_row(), on_conflict=["address"])
        return TradingSettings.from_row(row)


__all__ = ["TradingSettingsStore", "WatchlistStore"]
