"""CLI output formatting with table support."""

from __future__ import annotations

import json
import sys
from enum import Enum
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table

from sniper_sync.formatting import (
    format_change,
    format_large_number,
    format_log_time,
    format_price,
    format_sol,
    shorten_address,
)
from sniper_sync.models import DashboardView, LogKind

_KIND_STYLES = {
    LogKind.INFO: "blue",
    LogKind.WARNING: "yellow",
    LogKind.ERROR: "red",
    LogKind.SUCCESS: "green",
}


class OutputFormat(Enum):
    """Supported output formats."""

    TEXT = "text"
    JSON = "json"
    TABLE = "table"


def view_to_dict(view: DashboardView) -> Dict[str, Any]:
    """JSON-friendly projection of the dashboard view."""
    status = view.status
    settings = view.settings
    return {
        "principal": view.principal,
        "address": view.address,
        "has_key": view.has_key,
        "balance_sol": view.balance_sol,
        "state": status.state if status else "STOPPED",
        "started_at": status.started_at.isoformat() if status and status.started_at else None,
        "stopped_at": status.stopped_at.isoformat() if status and status.stopped_at else None,
        "last_heartbeat": (
            status.last_heartbeat.isoformat() if status and status.last_heartbeat else None
        ),
        "heartbeat_stale": view.heartbeat_stale,
        "settings": settings.to_row() if settings else None,
        "watchlist": [
            {
                "mint_address": entry.mint_address,
                "buy_amount_sol": entry.buy_amount_sol,
                "sniped": entry.sniped,
                "price_usd": (
                    view.token_stats[entry.mint_address].price_usd
                    if entry.mint_address in view.token_stats
                    else None
                ),
            }
            for entry in view.watchlist
        ],
        "feed": [
            {
                "id": event.id,
                "kind": event.kind.value,
                "message": event.message,
                "timestamp": event.timestamp.isoformat(),
            }
            for event in view.feed
        ],
        "message": view.message,
    }


class CLIOutput:
    """Unified output handler for CLI."""

    def __init__(
        self,
        format: OutputFormat = OutputFormat.TABLE,
        verbose: bool = False,
        stream: Any = None,
    ) -> None:
        self.format = format
        self.verbose = verbose
        self.stream = stream or sys.stdout
        self._console: Optional[Console] = None

        if format == OutputFormat.TABLE:
            self._console = Console(file=self.stream)

    def dashboard(self, view: DashboardView) -> None:
        """Output the dashboard view."""
        if self.format == OutputFormat.JSON:
            print(json.dumps(view_to_dict(view), indent=2), file=self.stream)
        elif self.format == OutputFormat.TABLE:
            self._table_dashboard(view)
        else:
            self._text_dashboard(view)

    def _text_dashboard(self, view: DashboardView) -> None:
        """Plain text output."""
        state = view.status.state if view.status else "STOPPED"
        lines = [
            f"Wallet:  {view.address or '-'}",
            f"Balance: {format_sol(view.balance_sol)}",
            f"Sniper:  {state}" + (" (heartbeat stale)" if view.heartbeat_stale else ""),
        ]
        if view.watchlist:
            lines.append("Watchlist:")
            for entry in view.watchlist:
                quote = view.token_stats.get(entry.mint_address)
                price = format_price(quote.price_usd) if quote else "N/A"
                lines.append(
                    f"  {entry.mint_address}  {entry.buy_amount_sol} SOL  {price}"
                    + ("  [sniped]" if entry.sniped else "")
                )
        if view.feed:
            lines.append("Activity:")
            for event in view.feed:
                lines.append(
                    f"  {format_log_time(event.timestamp)} [{event.kind.value}] {event.message}"
                )
        if view.message:
            lines.append(view.message)
        print("\n".join(lines), file=self.stream)

    def _table_dashboard(self, view: DashboardView) -> None:
        """Rich terminal output with tables."""
        assert self._console is not None
        state = view.status.state if view.status else "STOPPED"
        state_style = "green" if state == "RUNNING" else "red"
        self._console.print(
            f"[bold]{shorten_address(view.address or '-', 6)}[/bold]  "
            f"{format_sol(view.balance_sol)}  "
            f"[{state_style}]{state}[/{state_style}]"
        )
        if view.heartbeat_stale:
            self.warning("Worker heartbeat is stale")

        watch = Table(title="Watchlist", show_header=True, header_style="bold cyan")
        watch.add_column("Token", style="cyan", no_wrap=True)
        watch.add_column("Buy", justify="right")
        watch.add_column("Price", justify="right")
        watch.add_column("MCap", justify="right")
        watch.add_column("24h", justify="right")
        watch.add_column("Sniped")
        for entry in view.watchlist:
            quote = view.token_stats.get(entry.mint_address)
            watch.add_row(
                shorten_address(entry.mint_address, 6),
                format_sol(entry.buy_amount_sol),
                format_price(quote.price_usd) if quote else "N/A",
                format_large_number(quote.market_cap) if quote else "N/A",
                format_change(quote.change_24h) if quote else "N/A",
                "✓" if entry.sniped else "",
            )
        self._console.print(watch)

        feed = Table(title="Activity", show_header=True, header_style="bold cyan")
        feed.add_column("Time", style="dim", no_wrap=True)
        feed.add_column("Kind")
        feed.add_column("Message", overflow="fold")
        for event in view.feed:
            style = _KIND_STYLES.get(event.kind, "white")
            feed.add_row(
                format_log_time(event.timestamp),
                f"[{style}]{event.kind.value}[/{style}]",
                event.message,
            )
        self._console.print(feed)

        if view.message and view.message.startswith("Error:"):
            self.error(view.message)
        elif view.message:
            self.info(view.message)

    def status(self, message: str) -> None:
        """Output a status message."""
        if self.format == OutputFormat.JSON:
            return
        if self._console:
            self._console.print(f"[dim]⏳ {message}[/dim]")
        else:
            print(f"⏳ {message}", file=self.stream)

    def info(self, message: str) -> None:
        """Output an info message."""
        if self.format == OutputFormat.JSON:
            return
        if self._console:
            self._console.print(f"[blue]ℹ️  {message}[/blue]")
        else:
            print(f"ℹ️  {message}", file=self.stream)

    def success(self, message: str) -> None:
        if self.format == OutputFormat.JSON:
            print(json.dumps({"ok": True, "message": message}), file=self.stream)
            return
        if self._console:
            self._console.print(f"[green]✅ {message}[/green]")
        else:
            print(f"✅ {message}", file=self.stream)

    def warning(self, message: str) -> None:
        """Output a warning message."""
        if self.format == OutputFormat.JSON:
            print(json.dumps({"warning": message}), file=sys.stderr)
            return
        if self._console:
            self._console.print(f"[yellow]⚠️  {message}[/yellow]")
        else:
            print(f"⚠️  {message}", file=sys.stderr)

    def error(self, message: str) -> None:
        """Output an error message."""
        if self.format == OutputFormat.JSON:
            print(json.dumps({"error": message}), file=sys.stderr)
            return
        if self._console:
            self._console.print(f"[red]❌ {message}[/red]")
        else:
            print(f"❌ {message}", file=sys.stderr)
