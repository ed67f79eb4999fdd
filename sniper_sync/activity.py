"""Activity feed: append-only activity rows merged with the worker's trades."""

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from sniper_sync.models import ActivityRecord, LogKind, TradeRecord
from sniper_sync.tables import ACTIVITY, TRADES, TableService

logger = logging.getLogger(__name__)


def short_mint(mint_address: str) -> str:
    return f"{mint_address[:8]}..."


@dataclass(frozen=True)
class ActivityEvent:
    """Feed entry backed by an activity row."""

    record: ActivityRecord

    @property
    def id(self) -> str:
        return str(self.record.id)

    @property
    def timestamp(self) -> datetime:
        return self.record.created_at

    @property
    def kind(self) -> LogKind:
        return self.record.kind

    @property
    def message(self) -> str:
        return self.record.message


@dataclass(frozen=True)
class TradeEvent:
    """Feed entry backed by a trade row."""

    record: TradeRecord

    @property
    def id(self) -> str:
        return f"trade-{self.record.id}"

    @property
    def timestamp(self) -> datetime:
        return self.record.created_at

    @property
    def kind(self) -> LogKind:
        return LogKind.SUCCESS if self.record.succeeded else LogKind.ERROR

    @property
    def message(self) -> str:
        trade = self.record
        if trade.succeeded:
            return f"Bought {trade.amount_sol} SOL of {short_mint(trade.mint_address)}"
        reason = trade.error_message or "Unknown error"
        return f"Trade Failed: {reason} ({short_mint(trade.mint_address)})"


FeedEvent = Union[ActivityEvent, TradeEvent]


def merge_feed(
    activities: Iterable[ActivityRecord],
    trades: Iterable[TradeRecord],
    limit: int = 50,
) -> List[FeedEvent]:
    """Merge two newest-first streams into one newest-first feed.

    Both inputs must already be ordered newest first (as the table service
    returns them); only the first *limit* merged events are consumed.
    """
    merged = heapq.merge(
        (ActivityEvent(a) for a in activities),
        (TradeEvent(t) for t in trades),
        key=lambda event: event.timestamp,
        reverse=True,
    )
    return list(itertools.islice(merged, limit))


class ActivityLog:
    """Reads and appends activity for one table service."""

    def __init__(self, tables: TableService) -> None:
        self.tables = tables

    async def append(
        self,
        address: str,
        kind: LogKind,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ActivityRecord:
        row = await self.tables.insert(
            ACTIVITY,
            {
                "address": address,
                "kind": kind.value,
                "message": message,
                "metadata": metadata,
            },
        )
        logger.debug("Activity %s for %s: %s", kind.value, address, message)
        return ActivityRecord.from_row(row)

    async def list_activities(self, address: str, limit: int = 50) -> List[ActivityRecord]:
        rows = await self.tables.select(
            ACTIVITY, {"address": address}, order_by="created_at", limit=limit
        )
        return [ActivityRecord.from_row(row) for row in rows]

    async def list_trades(self, address: str, limit: int = 50) -> List[TradeRecord]:
        rows = await self.tables.select(
            TRADES, {"address": address}, order_by="created_at", limit=limit
        )
        return [TradeRecord.from_row(row) for row in rows]

    async def load_feed(self, address: str, limit: int = 50) -> List[FeedEvent]:
        """Fetch both streams and merge them into the dashboard feed."""
        activities = await self.list_activities(address, limit)
        trades = await self.list_trades(address, limit)
        return merge_feed(activities, trades, limit)

    async def record_trade(
        self,
        address: str,
        mint_address: str,
        action: str,
        amount_sol: float,
        status: str,
        amount_tokens: Optional[float] = None,
        price_per_token: Optional[float] = None,
        tx_signature: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> TradeRecord:
        """Append a trade row (the worker's side of the feed)."""
        row = await self.tables.insert(
            TRADES,
            {
                "address": address,
                "mint_address": mint_address,
                "action": action,
                "amount_sol": amount_sol,
                "amount_tokens": amount_tokens,
                "price_per_token": price_per_token,
                "tx_signature": tx_signature,
                "status": status,
                "error_message": error_message,
            },
        )
        return TradeRecord.from_row(row)


__all__ = [
    "ActivityEvent",
    "ActivityLog",
    "FeedEvent",
    "TradeEvent",
    "merge_feed",
    "short_mint",
]
