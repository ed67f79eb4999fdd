"""Application configuration management."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from sniper_sync.errors import ConfigError

DEFAULT_DB_PATH = Path.home() / ".bags-sniper" / "sniper.db"

HeartbeatPolicyName = Literal["ignore", "flag", "auto_stop"]


class Settings(BaseSettings):
    """Runtime configuration loaded from environment or `.env`."""

    model_config = SettingsConfigDict(
        env_file=(".env",),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Checked lazily by the envelope cipher on first use
    encryption_key: Optional[str] = Field(default=None, alias="ENCRYPTION_KEY")

    supabase_url: Optional[str] = Field(default=None, alias="SUPABASE_URL")
    supabase_key: Optional[str] = Field(default=None, alias="SUPABASE_KEY")
    database_path: Path = Field(default=DEFAULT_DB_PATH, alias="SNIPER_DB_PATH")

    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
    )
    dexscreener_api_url: str = Field(
        default="https://api.dexscreener.com/latest/dex",
        alias="DEXSCREENER_API_URL",
    )
    http_timeout_seconds: float = Field(
        default=10.0, alias="HTTP_TIMEOUT_SECONDS", gt=0, le=120
    )

    balance_poll_seconds: float = Field(
        default=10.0, alias="BALANCE_POLL_SECONDS", gt=0
    )
    price_poll_seconds: float = Field(
        default=15.0, alias="PRICE_POLL_SECONDS", gt=0
    )
    log_poll_seconds: float = Field(default=5.0, alias="LOG_POLL_SECONDS", gt=0)
    status_poll_seconds: float = Field(
        default=0.0, alias="STATUS_POLL_SECONDS", ge=0
    )

    heartbeat_max_age_seconds: int = Field(
        default=120, alias="HEARTBEAT_MAX_AGE_SECONDS", ge=1
    )
    heartbeat_policy: HeartbeatPolicyName = Field(
        default="flag", alias="HEARTBEAT_POLICY"
    )
    activity_feed_limit: int = Field(
        default=50, alias="ACTIVITY_FEED_LIMIT", ge=1, le=500
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def uses_rest_backend(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Return cached Settings instance, raising a helpful message on failure."""
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


__all__ = ["Settings", "load_settings", "DEFAULT_DB_PATH"]
