"""Row schemas for the tables the dashboard and the worker share."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from sniper_sync.errors import RemoteError

DEFAULT_SLIPPAGE_PCT = 15.0
DEFAULT_PRIORITY_FEE = 0.0001
DEFAULT_BRIBE = 0.0001


class LogKind(str, Enum):
    """Severity of an activity feed entry."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 / SQLite timestamps into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise RemoteError(f"Unparseable timestamp from table service: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require(row: Mapping[str, Any], table: str, *names: str) -> None:
    missing = [name for name in names if row.get(name) is None]
    if missing:
        raise RemoteError(f"{table} row missing required field(s): {', '.join(missing)}")


def _parse_metadata(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or isinstance(value, dict):
        return value
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        return {"raw": value}
    return decoded if isinstance(decoded, dict) else {"value": decoded}


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class WalletRecord:
    """A principal's bound wallet. ``address`` is the natural key."""

    address: str
    owner_principal: Optional[str]
    encrypted_key: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def has_key(self) -> bool:
        return bool(self.encrypted_key)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WalletRecord":
        _require(row, "wallets", "address")
        return cls(
            address=row["address"],
            owner_principal=row.get("owner_principal"),
            encrypted_key=row.get("encrypted_key"),
            created_at=parse_timestamp(row.get("created_at")),
        )


@dataclass
class TradingSettings:
    """Per-wallet trading parameters, upserted as a whole row."""

    address: str
    slippage_pct: float = DEFAULT_SLIPPAGE_PCT
    priority_fee: float = DEFAULT_PRIORITY_FEE
    bribe: float = DEFAULT_BRIBE
    notify_channel_id: Optional[str] = None

    @classmethod
    def defaults(cls, address: str) -> "TradingSettings":
        return cls(address=address)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TradingSettings":
        _require(row, "settings", "address")
        return cls(
            address=row["address"],
            slippage_pct=_as_float(row.get("slippage_pct"), DEFAULT_SLIPPAGE_PCT),
            priority_fee=_as_float(row.get("priority_fee"), DEFAULT_PRIORITY_FEE),
            bribe=_as_float(row.get("bribe"), DEFAULT_BRIBE),
            notify_channel_id=row.get("notify_channel_id") or None,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "slippage_pct": self.slippage_pct,
            "priority_fee": self.priority_fee,
            "bribe": self.bribe,
            "notify_channel_id": self.notify_channel_id,
        }


@dataclass
class SniperStatus:
    """Running/stopped state of the worker for one wallet."""

    address: str
    is_running: bool = False
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None

    @property
    def state(self) -> str:
        return "RUNNING" if self.is_running else "STOPPED"

    def heartbeat_age(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds since the worker's last heartbeat, or None if never seen."""
        if self.last_heartbeat is None:
            return None
        now = now or utcnow()
        return (now - self.last_heartbeat).total_seconds()

    def is_heartbeat_stale(self, max_age_seconds: float, now: Optional[datetime] = None) -> bool:
        """True when running but the worker has gone quiet for too long."""
        if not self.is_running:
            return False
        age = self.heartbeat_age(now)
        return age is None or age > max_age_seconds

    @classmethod
    def defaults(cls, address: str) -> "SniperStatus":
        return cls(address=address)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SniperStatus":
        _require(row, "status", "address")
        return cls(
            address=row["address"],
            is_running=bool(row.get("is_running")),
            started_at=parse_timestamp(row.get("started_at")),
            stopped_at=parse_timestamp(row.get("stopped_at")),
            last_heartbeat=parse_timestamp(row.get("last_heartbeat")),
        )


@dataclass
class WatchEntry:
    """A token the worker should buy for this wallet when it is claimed."""

    id: Any
    address: str
    mint_address: str
    buy_amount_sol: float
    is_active: bool = True
    sniped: bool = False
    sniped_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WatchEntry":
        _require(row, "watchlist", "id", "address", "mint_address", "buy_amount_sol")
        return cls(
            id=row["id"],
            address=row["address"],
            mint_address=row["mint_address"],
            buy_amount_sol=float(row["buy_amount_sol"]),
            is_active=bool(row.get("is_active", True)),
            sniped=bool(row.get("sniped", False)),
            sniped_at=parse_timestamp(row.get("sniped_at")),
            created_at=parse_timestamp(row.get("created_at")),
        )


@dataclass
class ActivityRecord:
    """Append-only activity log row."""

    id: Any
    address: str
    kind: LogKind
    message: str
    created_at: datetime
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ActivityRecord":
        _require(row, "activity", "id", "address", "kind", "message", "created_at")
        try:
            kind = LogKind(str(row["kind"]).upper())
        except ValueError:
            kind = LogKind.INFO
        return cls(
            id=row["id"],
            address=row["address"],
            kind=kind,
            message=row["message"],
            created_at=parse_timestamp(row["created_at"]),  # type: ignore[arg-type]
            metadata=_parse_metadata(row.get("metadata")),
        )


@dataclass
class TradeRecord:
    """Append-only trade row written by the worker."""

    id: Any
    address: str
    mint_address: str
    action: str
    amount_sol: float
    status: str
    created_at: datetime
    amount_tokens: Optional[float] = None
    price_per_token: Optional[float] = None
    tx_signature: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status.lower() in ("success", "confirmed")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TradeRecord":
        _require(row, "trades", "id", "address", "mint_address", "created_at")
        return cls(
            id=row["id"],
            address=row["address"],
            mint_address=row["mint_address"],
            action=row.get("action") or "BUY",
            amount_sol=_as_float(row.get("amount_sol"), 0.0),
            status=row.get("status") or "pending",
            created_at=parse_timestamp(row["created_at"]),  # type: ignore[arg-type]
            amount_tokens=row.get("amount_tokens"),
            price_per_token=row.get("price_per_token"),
            tx_signature=row.get("tx_signature"),
            error_message=row.get("error_message"),
        )


@dataclass
class TokenQuote:
    """Price projection for one watched mint."""

    mint_address: str
    price_usd: Optional[float] = None
    market_cap: Optional[float] = None
    change_24h: float = 0.0
    liquidity_usd: float = 0.0


@dataclass
class DashboardView:
    """Everything the dashboard shows, owned by the sync session."""

    principal: str
    address: Optional[str] = None
    has_key: bool = False
    balance_sol: Optional[float] = None
    status: Optional[SniperStatus] = None
    settings: Optional[TradingSettings] = None
    watchlist: list = field(default_factory=list)
    token_stats: Dict[str, TokenQuote] = field(default_factory=dict)
    feed: list = field(default_factory=list)
    heartbeat_stale: bool = False
    message: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return bool(self.status and self.status.is_running)
