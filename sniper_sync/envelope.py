"""AES-256-GCM envelope for private keys at rest.

Envelope format::

    ENCRYPTED:<iv hex>:<ciphertext+tag hex>

The symmetric key is derived with PBKDF2-HMAC-SHA256 from an operator-held
secret and a fixed, deployment-wide salt. The operator can therefore decrypt
every stored key; this is the custody model, not an end-to-end scheme.

Strings without the ``ENCRYPTED:`` tag are legacy plaintext keys written before
encryption was introduced. They are returned unchanged by :func:`decrypt` so
old rows keep working; this path offers no protection and operators should run
the legacy migration to seal them.
"""

from __future__ import annotations

import logging
import secrets
from typing import Callable, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from sniper_sync.errors import ConfigError, IntegrityError

logger = logging.getLogger(__name__)

ENVELOPE_PREFIX = "ENCRYPTED:"
KDF_SALT = b"bags-sniper-salt-v1"
KDF_ITERATIONS = 100_000
KEY_BYTES = 32
NONCE_BYTES = 12


def derive_key(secret: Union[str, bytes]) -> bytes:
    """Derive the 256-bit AES key from the operator secret."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret)


def is_encrypted(value: str) -> bool:
    """Check whether a stored key carries the envelope tag."""
    return value.startswith(ENVELOPE_PREFIX)


def encrypt(key: bytes, plaintext: str) -> str:
    """Seal *plaintext* under *key* with a fresh random nonce."""
    nonce = secrets.token_bytes(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return f"{ENVELOPE_PREFIX}{nonce.hex()}:{ciphertext.hex()}"


def decrypt(key: Optional[bytes], envelope: str) -> str:
    """Open an envelope, or pass a legacy untagged string through.

    *key* may be ``None`` only when *envelope* is a legacy string.

    Raises:
        IntegrityError: The envelope is malformed or fails authentication.
    """
    if not is_encrypted(envelope):
        logger.warning("Stored key is not encrypted (legacy plaintext format)")
        return envelope
    if key is None:
        raise ConfigError("An encryption key is required to open an envelope")

    parts = envelope.split(":")
    if len(parts) != 3:
        raise IntegrityError("Invalid encrypted key format")

    try:
        nonce = bytes.fromhex(parts[1])
        ciphertext = bytes.fromhex(parts[2])
    except ValueError as exc:
        raise IntegrityError(f"Invalid hex in envelope: {exc}") from exc

    if len(nonce) != NONCE_BYTES:
        raise IntegrityError(
            f"Invalid IV length: expected {NONCE_BYTES}, got {len(nonce)}"
        )

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise IntegrityError("Envelope failed authentication") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise IntegrityError("Invalid UTF-8 in decrypted key") from exc


class EnvelopeCipher:
    """Envelope encryption bound to one operator secret.

    The secret is resolved and the key derived on first use, so a process
    without ``ENCRYPTION_KEY`` can start and only fails when it actually needs
    to seal or open a key.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        secret_loader: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self._secret = secret
        self._secret_loader = secret_loader
        self._key: Optional[bytes] = None

    @classmethod
    def from_settings(cls) -> "EnvelopeCipher":
        """Build a cipher that reads ``ENCRYPTION_KEY`` from settings lazily."""
        from sniper_sync.config import load_settings

        return cls(secret_loader=lambda: load_settings().encryption_key)

    def _get_key(self) -> bytes:
        if self._key is None:
            secret = self._secret
            if secret is None and self._secret_loader is not None:
                secret = self._secret_loader()
            if not secret:
                raise ConfigError("ENCRYPTION_KEY not set in environment")
            self._key = derive_key(secret)
        return self._key

    def encrypt(self, plaintext: str) -> str:
        return encrypt(self._get_key(), plaintext)

    def decrypt(self, envelope: str) -> str:
        if not is_encrypted(envelope):
            return decrypt(None, envelope)
        return decrypt(self._get_key(), envelope)


__all__ = [
    "ENVELOPE_PREFIX",
    "KDF_ITERATIONS",
    "KDF_SALT",
    "EnvelopeCipher",
    "decrypt",
    "derive_key",
    "encrypt",
    "is_encrypted",
]
