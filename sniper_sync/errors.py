"""Typed error kinds shared by the cipher, the stores and the sync session."""

from __future__ import annotations

from typing import Optional


class SniperSyncError(Exception):
    """Base class for every error this package raises on purpose."""


class ConfigError(SniperSyncError):
    """Required configuration (e.g. the encryption secret) is missing or invalid."""


class IntegrityError(SniperSyncError):
    """An envelope failed authentication or is malformed.

    The stored key must be treated as unrecoverable; callers never substitute
    a fallback value.
    """


class NotFound(SniperSyncError):
    """No row exists for the requested key."""

    def __init__(self, table: str, key: str, detail: Optional[str] = None) -> None:
        self.table = table
        self.key = key
        message = detail or f"No {table} row for {key}"
        super().__init__(message)


class ValidationError(SniperSyncError):
    """Local input check failed; nothing was sent to the remote layer."""


class RemoteError(SniperSyncError):
    """A table service or feed call failed."""


class RotationError(RemoteError):
    """A wallet rotation step failed after earlier steps may have committed."""

    def __init__(self, step: str, cause: Exception, retryable: bool) -> None:
        self.step = step
        self.cause = cause
        self.retryable = retryable
        super().__init__(f"Wallet rotation failed at step '{step}': {cause}")


__all__ = [
    "SniperSyncError",
    "ConfigError",
    "IntegrityError",
    "NotFound",
    "ValidationError",
    "RemoteError",
    "RotationError",
]
