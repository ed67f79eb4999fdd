"""Local input checks run before anything reaches the table service.

These are product rules, not Solana validity checks: the watchlist only
accepts Bags launchpad mints, which all end in ``BAGS``.
"""

from __future__ import annotations

import math
from typing import Optional

from sniper_sync.errors import ValidationError

ADDRESS_MIN_LENGTH = 40
ADDRESS_MAX_LENGTH = 50
MINT_SUFFIX = "BAGS"
PRIVATE_KEY_MIN_LENGTH = 50


def validate_address(address: Optional[str]) -> str:
    """Return the trimmed address or raise if its length is out of policy."""
    trimmed = (address or "").strip()
    if len(trimmed) < ADDRESS_MIN_LENGTH or len(trimmed) > ADDRESS_MAX_LENGTH:
        raise ValidationError(
            "Invalid address length. Solana addresses are ~44 characters."
        )
    return trimmed


def validate_mint(mint_address: Optional[str]) -> str:
    """Validate a token mint for the watchlist."""
    trimmed = validate_address(mint_address)
    if not trimmed.endswith(MINT_SUFFIX):
        raise ValidationError(
            f"Only Bags token addresses are allowed (must end with {MINT_SUFFIX})."
        )
    return trimmed


def validate_private_key(private_key: Optional[str]) -> str:
    """Accept a base58 key string or a bracketed byte-array form.

    Only the shape is checked; the key is never parsed or verified.
    """
    trimmed = (private_key or "").strip()
    if not trimmed:
        raise ValidationError("Private key is required")
    if trimmed.startswith("["):
        if not trimmed.endswith("]") or len(trimmed) < 3:
            raise ValidationError("Invalid private key format")
        return trimmed
    if len(trimmed) < PRIVATE_KEY_MIN_LENGTH:
        raise ValidationError("Invalid private key format")
    return trimmed


def parse_buy_amount(value: object) -> float:
    """Parse a positive SOL amount."""
    try:
        amount = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError("Please enter a valid buy amount.") from None
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("Please enter a valid buy amount.")
    return amount


__all__ = [
    "MINT_SUFFIX",
    "parse_buy_amount",
    "validate_address",
    "validate_mint",
    "validate_private_key",
]
