"""Row-level table service used for every persisted entity.

The dashboard and the trading worker share one relational store. This module
treats it as a set of tables with row-level select/insert/upsert/update/delete;
``upsert`` always names its conflict key. :class:`SQLiteTableService` is the
local backend; the hosted backend lives in :mod:`sniper_sync.rest_tables`.
"""

from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import aiosqlite

from sniper_sync.config import DEFAULT_DB_PATH
from sniper_sync.errors import RemoteError

Row = Dict[str, Any]
Filters = Mapping[str, Any]

WALLETS = "wallets"
SETTINGS = "settings"
STATUS = "status"
WATCHLIST = "watchlist"
ACTIVITY = "activity"
TRADES = "trades"
SIGNUP_CODES = "signup_codes"

_NOW_SQL = "(strftime('%Y-%m-%dT%H:%M:%f', 'now') || '+00:00')"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS wallets (
    address TEXT PRIMARY KEY,
    encrypted_key TEXT,
    owner_principal TEXT UNIQUE,
    created_at TEXT DEFAULT {_NOW_SQL}
);

CREATE TABLE IF NOT EXISTS settings (
    address TEXT PRIMARY KEY,
    slippage_pct REAL NOT NULL DEFAULT 15,
    priority_fee REAL NOT NULL DEFAULT 0.0001,
    bribe REAL NOT NULL DEFAULT 0.0001,
    notify_channel_id TEXT
);

CREATE TABLE IF NOT EXISTS status (
    address TEXT PRIMARY KEY,
    is_running INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    stopped_at TEXT,
    last_heartbeat TEXT DEFAULT {_NOW_SQL}
);

CREATE TABLE IF NOT EXISTS watchlist (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    address TEXT NOT NULL,
    mint_address TEXT NOT NULL,
    buy_amount_sol REAL NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    sniped INTEGER NOT NULL DEFAULT 0,
    sniped_at TEXT,
    created_at TEXT DEFAULT {_NOW_SQL},
    UNIQUE(address, mint_address)
);

CREATE TABLE IF NOT EXISTS activity (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    address TEXT NOT NULL,
    kind TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT DEFAULT {_NOW_SQL}
);

CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    address TEXT NOT NULL,
    mint_address TEXT NOT NULL,
    action TEXT NOT NULL,
    amount_sol REAL,
    amount_tokens REAL,
    price_per_token REAL,
    tx_signature TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT,
    created_at TEXT DEFAULT {_NOW_SQL}
);

CREATE TABLE IF NOT EXISTS signup_codes (
    code TEXT PRIMARY KEY,
    is_used INTEGER NOT NULL DEFAULT 0,
    used_by TEXT,
    used_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_activity_address_time
ON activity(address, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_trades_address_time
ON trades(address, created_at DESC);
"""

KNOWN_TABLES = frozenset(
    {WALLETS, SETTINGS, STATUS, WATCHLIST, ACTIVITY, TRADES, SIGNUP_CODES}
)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


class TableService(Protocol):
    """Row-level operations every backend provides."""

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Row]:
        ...

    async def insert(self, table: str, row: Row) -> Row:
        ...

    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> Row:
        ...

    async def update(self, table: str, values: Row, filters: Filters) -> int:
        ...

    async def delete(self, table: str, filters: Filters) -> int:
        ...

    async def close(self) -> None:
        ...


async def select_one(
    tables: TableService, table: str, filters: Filters
) -> Optional[Row]:
    """Return the single row matching *filters*, or None."""
    rows = await tables.select(table, filters, limit=1)
    return rows[0] if rows else None


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def _check_table(table: str) -> str:
    if table not in KNOWN_TABLES:
        raise ValueError(f"Unknown table: {table!r}")
    return table


def _to_sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _where(filters: Optional[Filters]) -> Tuple[str, List[Any]]:
    if not filters:
        return "", []
    clauses = []
    params: List[Any] = []
    for column, value in filters.items():
        _check_identifier(column)
        if value is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column} = ?")
            params.append(_to_sql_value(value))
    return " WHERE " + " AND ".join(clauses), params


class SQLiteTableService:
    """Async SQLite backend for the shared tables."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.executescript(SCHEMA)
        await self._connection.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _ensure_connected(self) -> aiosqlite.Connection:
        """Ensure database is connected."""
        if not self._connection:
            await self.connect()
        return self._connection  # type: ignore

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Row]:
        conn = await self._ensure_connected()
        where, params = _where(filters)
        sql = f"SELECT * FROM {_check_table(table)}{where}"
        if order_by:
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY {_check_identifier(order_by)} {direction}, rowid {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        try:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise RemoteError(f"select from {table} failed: {exc}") from exc
        return [dict(row) for row in rows]

    async def insert(self, table: str, row: Row) -> Row:
        conn = await self._ensure_connected()
        columns = [_check_identifier(c) for c in row]
        placeholders = ", ".join("?" for _ in columns)
        sql = (
            f"INSERT INTO {_check_table(table)} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )
        async with self._lock:
            try:
                cursor = await conn.execute(sql, [_to_sql_value(v) for v in row.values()])
                result = await cursor.fetchone()
                await conn.commit()
            except aiosqlite.Error as exc:
                await conn.rollback()
                raise RemoteError(f"insert into {table} failed: {exc}") from exc
        return dict(result)

    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> Row:
        """Insert *row* or merge its columns into the row sharing *on_conflict*.

        Columns absent from *row* keep their stored (or default) values.
        """
        if not on_conflict:
            raise ValueError("upsert requires a conflict key")
        conn = await self._ensure_connected()
        columns = [_check_identifier(c) for c in row]
        conflict = [_check_identifier(c) for c in on_conflict]
        updates = [c for c in columns if c not in conflict] or conflict[:1]
        set_clause = ", ".join(f"{c} = excluded.{c}" for c in updates)
        placeholders = ", ".join("?" for _ in columns)
        sql = (
            f"INSERT INTO {_check_table(table)} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT({', '.join(conflict)}) DO UPDATE SET {set_clause} "
            "RETURNING *"
        )
        async with self._lock:
            try:
                cursor = await conn.execute(sql, [_to_sql_value(v) for v in row.values()])
                result = await cursor.fetchone()
                await conn.commit()
            except aiosqlite.Error as exc:
                await conn.rollback()
                raise RemoteError(f"upsert into {table} failed: {exc}") from exc
        return dict(result)

    async def update(self, table: str, values: Row, filters: Filters) -> int:
        if not filters:
            raise ValueError("update requires filters")
        conn = await self._ensure_connected()
        assignments = ", ".join(f"{_check_identifier(c)} = ?" for c in values)
        where, params = _where(filters)
        sql = f"UPDATE {_check_table(table)} SET {assignments}{where}"
        async with self._lock:
            try:
                cursor = await conn.execute(
                    sql, [_to_sql_value(v) for v in values.values()] + params
                )
                await conn.commit()
            except aiosqlite.Error as exc:
                await conn.rollback()
                raise RemoteError(f"update of {table} failed: {exc}") from exc
        return cursor.rowcount

    async def delete(self, table: str, filters: Filters) -> int:
        if not filters:
            raise ValueError("delete requires filters")
        conn = await self._ensure_connected()
        where, params = _where(filters)
        async with self._lock:
            try:
                cursor = await conn.execute(f"DELETE FROM {_check_table(table)}{where}", params)
                await conn.commit()
            except aiosqlite.Error as exc:
                await conn.rollback()
                raise RemoteError(f"delete from {table} failed: {exc}") from exc
        return cursor.rowcount


__all__ = [
    "ACTIVITY",
    "KNOWN_TABLES",
    "SETTINGS",
    "SIGNUP_CODES",
    "STATUS",
    "SQLiteTableService",
    "TRADES",
    "TableService",
    "WALLETS",
    "WATCHLIST",
    "select_one",
]
