"""Shared formatting helpers for prices, balances and large numbers."""

from __future__ import annotations

from datetime import datetime
from typing import Optional


def format_price(price: Optional[float]) -> str:
    """Format price with appropriate precision.

    Returns ``"N/A"`` for *None*, otherwise scales decimal places based
    on magnitude so very small token prices remain readable.
    """
    if price is None:
        return "N/A"
    if price >= 1:
        return f"${price:,.4f}"
    elif price >= 0.0001:
        return f"${price:.6f}"
    else:
        return f"${price:.10f}"


def format_large_number(value: Optional[float]) -> str:
    """Format large numbers with K/M/B suffix."""
    if value is None:
        return "N/A"
    if value >= 1_000_000_000:
        return f"${value / 1_000_000_000:.2f}B"
    elif value >= 1_000_000:
        return f"${value / 1_000_000:.2f}M"
    elif value >= 1_000:
        return f"${value / 1_000:.2f}K"
    else:
        return f"${value:,.0f}"


def format_change(change: Optional[float]) -> str:
    """Signed 24h percentage change."""
    if change is None:
        return "N/A"
    return f"{change:+.2f}%"


def format_sol(amount: Optional[float]) -> str:
    if amount is None:
        return "-"
    return f"{amount:.4f} SOL"


def format_log_time(timestamp: Optional[datetime]) -> str:
    """Local wall-clock time for feed rows."""
    if timestamp is None:
        return "-"
    return timestamp.astimezone().strftime("%H:%M:%S")


def shorten_address(address: str, edge: int = 4) -> str:
    if len(address) <= edge * 2 + 3:
        return address
    return f"{address[:edge]}...{address[-edge:]}"
