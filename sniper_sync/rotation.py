"""Wallet registration and the rotation protocol.

There is no distributed transaction across the table service, so rotation is
an ordered sequence of single-row calls:

1. delete every wallet the principal owns (idempotent);
2. insert the new wallet with its sealed key;
3. upsert default trading settings for the new address;
4. upsert a stopped status row for the new address.

A failure at step 2 leaves the principal with no wallet and is retryable from
scratch. A failure at step 3 or 4 leaves a usable wallet without settings or
status rows; readers fall back to defaults for missing rows. Watch entries of
the previous address are not migrated.
"""

from __future__ import annotations

import logging
from typing import Optional

from sniper_sync.credentials import CredentialStore
from sniper_sync.errors import NotFound, RemoteError, RotationError, ValidationError
from sniper_sync.models import TradingSettings, WalletRecord, utcnow
from sniper_sync.tables import (
    SETTINGS,
    SIGNUP_CODES,
    STATUS,
    WALLETS,
    TableService,
    select_one,
)
from sniper_sync.validation import validate_address, validate_private_key

logger = logging.getLogger(__name__)


class WalletRegistry:
    """Binds wallets to principals, keeping at most one live wallet each."""

    def __init__(self, tables: TableService, credentials: CredentialStore) -> None:
        self.tables = tables
        self.credentials = credentials

    async def wallet_for_principal(self, principal: str) -> WalletRecord:
        """Return the principal's live wallet.

        Raises:
            NotFound: The principal has not registered a wallet.
        """
        row = await select_one(self.tables, WALLETS, {"owner_principal": principal})
        if row is None:
            raise NotFound(WALLETS, principal, f"No wallet linked to principal {principal}")
        return WalletRecord.from_row(row)

    async def register(
        self,
        principal: str,
        address: str,
        private_key: str,
        signup_code: Optional[str] = None,
    ) -> WalletRecord:
        """Onboard a principal's first wallet."""
        address = validate_address(address)
        private_key = validate_private_key(private_key)

        try:
            existing = await self.wallet_for_principal(principal)
        except NotFound:
            existing = None
        if existing is not None:
            raise ValidationError(
                "A wallet is already linked to this account; use wallet rotation instead"
            )

        owner_row = await select_one(self.tables, WALLETS, {"address": address})
        if owner_row is not None and owner_row.get("owner_principal") not in (None, principal):
            raise ValidationError("This wallet is already registered to another account")

        envelope = self.credentials.seal(private_key)

        if signup_code is not None:
            await self.redeem_signup_code(signup_code, address)

        row = await self.tables.upsert(
            WALLETS,
            {"address": address, "encrypted_key": envelope, "owner_principal": principal},
            on_conflict=["address"],
        )
        await self.tables.upsert(SETTINGS, {"address": address}, on_conflict=["address"])
        await self.tables.upsert(
            STATUS, {"address": address, "is_running": False}, on_conflict=["address"]
        )
        logger.info("Registered wallet %s for principal %s", address, principal)
        return WalletRecord.from_row(row)

    async def redeem_signup_code(self, code: str, address: str) -> None:
        """Consume a single-use signup code.

        Raises:
            ValidationError: Unknown or already-used code.
        """
        code = code.strip()
        row = await select_one(self.tables, SIGNUP_CODES, {"code": code})
        if row is None:
            raise ValidationError("Invalid or non-existent code.")
        if row.get("is_used"):
            raise ValidationError("This code has already been used.")

        # Conditional on is_used=false so two concurrent redemptions cannot both win
        updated = await self.tables.update(
            SIGNUP_CODES,
            {"is_used": True, "used_by": address, "used_at": utcnow()},
            {"code": code, "is_used": False},
        )
        if updated == 0:
            raise ValidationError("Code failed to redeem (possibly used just now).")

    async def rotate(
        self,
        principal: str,
        new_address: str,
        new_private_key: str,
    ) -> WalletRecord:
        """Replace the principal's wallet with a new one.

        Raises:
            ValidationError: Bad address/key; nothing was written.
            ConfigError: No encryption secret; nothing was written.
            RotationError: A remote step failed; see ``step`` and ``retryable``.
        """
        new_address = validate_address(new_address)
        new_private_key = validate_private_key(new_private_key)
        envelope = self.credentials.seal(new_private_key)

        owner_row = await select_one(self.tables, WALLETS, {"address": new_address})
        if owner_row is not None and owner_row.get("owner_principal") != principal:
            raise ValidationError("This wallet is already registered to another account")

        try:
            removed = await self.tables.delete(WALLETS, {"owner_principal": principal})
        except RemoteError as exc:
            raise RotationError("delete_wallet", exc, retryable=True) from exc
        logger.info("Rotation for %s: removed %d previous wallet(s)", principal, removed)

        try:
            row = await self.tables.insert(
                WALLETS,
                {
                    "address": new_address,
                    "encrypted_key": envelope,
                    "owner_principal": principal,
                },
            )
        except RemoteError as exc:
            logger.error(
                "Rotation for %s failed after delete; principal has no wallet", principal
            )
            raise RotationError("insert_wallet", exc, retryable=True) from exc

        try:
            await self.tables.upsert(
                SETTINGS,
                TradingSettings.defaults(new_address).to_row(),
                on_conflict=["address"],
            )
        except RemoteError as exc:
            raise RotationError("reset_settings", exc, retryable=False) from exc

        try:
            await self.tables.upsert(
                STATUS,
                {"address": new_address, "is_running": False},
                on_conflict=["address"],
            )
        except RemoteError as exc:
            raise RotationError("reset_status", exc, retryable=False) from exc

        logger.info("Rotated principal %s to wallet %s", principal, new_address)
        return WalletRecord.from_row(row)


__all__ = ["WalletRegistry"]
