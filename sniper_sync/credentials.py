"""Credential store: the only reader/writer of ``wallets.encrypted_key``."""

from __future__ import annotations

import logging

from sniper_sync.envelope import EnvelopeCipher, is_encrypted
from sniper_sync.errors import IntegrityError, NotFound
from sniper_sync.models import WalletRecord
from sniper_sync.tables import WALLETS, TableService, select_one

logger = logging.getLogger(__name__)

# Written instead of a key when signing is delegated to the managed signer
MANAGED_SIGNER_SENTINEL = "privy_managed"


class CredentialStore:
    """Seal, store and reveal private keys keyed by wallet address.

    Callers own activity logging; this class only touches the wallets table.
    """

    def __init__(self, tables: TableService, cipher: EnvelopeCipher) -> None:
        self.tables = tables
        self.cipher = cipher

    def seal(self, plaintext_key: str) -> str:
        """Encrypt a key without writing it anywhere."""
        return self.cipher.encrypt(plaintext_key)

    async def get_wallet(self, address: str) -> WalletRecord:
        row = await select_one(self.tables, WALLETS, {"address": address})
        if row is None:
            raise NotFound(WALLETS, address)
        return WalletRecord.from_row(row)

    async def store(self, address: str, plaintext_key: str) -> None:
        """Encrypt *plaintext_key* and replace the wallet's stored key."""
        envelope = self.seal(plaintext_key)
        updated = await self.tables.update(
            WALLETS, {"encrypted_key": envelope}, {"address": address}
        )
        if updated == 0:
            raise NotFound(WALLETS, address)
        logger.info("Stored encrypted key for wallet %s", address)

    async def reveal(self, address: str) -> str:
        """Return the plaintext key for *address*.

        Legacy untagged values (including the managed-signer sentinel) are
        returned unchanged.

        Raises:
            NotFound: No wallet row, or the row has no key.
            IntegrityError: The stored envelope does not authenticate.
        """
        wallet = await self.get_wallet(address)
        if not wallet.encrypted_key:
            raise NotFound(WALLETS, address, f"Wallet {address} has no stored key")
        try:
            return self.cipher.decrypt(wallet.encrypted_key)
        except IntegrityError:
            logger.error("Stored key for wallet %s failed to decrypt", address)
            raise

    async def has_key(self, address: str) -> bool:
        try:
            wallet = await self.get_wallet(address)
        except NotFound:
            return False
        return wallet.has_key

    async def is_managed(self, address: str) -> bool:
        wallet = await self.get_wallet(address)
        return wallet.encrypted_key == MANAGED_SIGNER_SENTINEL

    async def delegate_to_managed_signer(self, address: str) -> None:
        """Mark the wallet as signed by the managed signer instead of a stored key."""
        updated = await self.tables.update(
            WALLETS, {"encrypted_key": MANAGED_SIGNER_SENTINEL}, {"address": address}
        )
        if updated == 0:
            raise NotFound(WALLETS, address)
        logger.info("Wallet %s custody delegated to managed signer", address)

    async def migrate_legacy_keys(self) -> int:
        """Seal every stored key still in the legacy plaintext format.

        Returns:
            Number of wallets migrated.
        """
        migrated = 0
        for row in await self.tables.select(WALLETS):
            wallet = WalletRecord.from_row(row)
            stored = wallet.encrypted_key
            if not stored or is_encrypted(stored) or stored == MANAGED_SIGNER_SENTINEL:
                continue
            logger.warning("Migrating legacy plaintext key for wallet %s", wallet.address)
            await self.store(wallet.address, stored)
            migrated += 1
        return migrated

    async def reencrypt_all(self, previous: EnvelopeCipher) -> int:
        """Re-seal every envelope written under *previous* with the current secret.

        Any envelope that fails under the previous secret aborts the run with
        IntegrityError; wallets already re-sealed stay re-sealed.

        Returns:
            Number of wallets re-encrypted.
        """
        rekeyed = 0
        for row in await self.tables.select(WALLETS):
            wallet = WalletRecord.from_row(row)
            stored = wallet.encrypted_key
            if not stored or not is_encrypted(stored):
                continue
            plaintext = previous.decrypt(stored)
            await self.store(wallet.address, plaintext)
            rekeyed += 1
        logger.info("Re-encrypted %d wallet key(s) under the current secret", rekeyed)
        return rekeyed


__all__ = ["CredentialStore", "MANAGED_SIGNER_SENTINEL"]
