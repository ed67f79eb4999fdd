"""CLI interface for the Bags sniper dashboard."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Optional

from sniper_sync.config import Settings, load_settings
from sniper_sync.credentials import CredentialStore
from sniper_sync.envelope import EnvelopeCipher
from sniper_sync.errors import NotFound, SniperSyncError
from sniper_sync.output import CLIOutput, OutputFormat
from sniper_sync.rest_tables import RestTableService
from sniper_sync.rotation import WalletRegistry
from sniper_sync.session import SyncSession
from sniper_sync.tables import SQLiteTableService, TableService

logger = logging.getLogger(__name__)


def open_table_service(settings: Settings) -> TableService:
    """Hosted PostgREST backend when configured, local SQLite otherwise."""
    if settings.uses_rest_backend:
        return RestTableService(
            settings.supabase_url,  # type: ignore[arg-type]
            settings.supabase_key,  # type: ignore[arg-type]
            timeout=settings.http_timeout_seconds,
        )
    return SQLiteTableService(settings.database_path)


def _read_private_key(args: argparse.Namespace) -> str:
    if getattr(args, "key_stdin", False):
        return sys.stdin.read().strip()
    if getattr(args, "key", None):
        return args.key
    return getpass.getpass("Private key: ")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sniper-sync",
        description="Bags sniper dashboard - manage a wallet, watchlist and sniper state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sniper-sync register alice <ADDRESS> --code WELCOME1
  sniper-sync watch-add alice <MINT>BAGS 0.5
  sniper-sync start alice
  sniper-sync dashboard alice --seconds 60
  sniper-sync -o json status alice
        """,
    )
    parser.add_argument(
        "-o", "--output",
        choices=["text", "json", "table"],
        default="table",
        help="Output format (default: table)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show debug information",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    register = sub.add_parser("register", help="Link a first wallet to a principal")
    register.add_argument("principal")
    register.add_argument("address")
    register.add_argument("--key", help="Private key (prompted for when omitted)")
    register.add_argument("--key-stdin", action="store_true", help="Read the key from stdin")
    register.add_argument("--code", help="Single-use signup code")

    rotate = sub.add_parser("rotate", help="Replace the principal's wallet")
    rotate.add_argument("principal")
    rotate.add_argument("address")
    rotate.add_argument("--key", help="Private key (prompted for when omitted)")
    rotate.add_argument("--key-stdin", action="store_true", help="Read the key from stdin")

    start = sub.add_parser("start", help="Start the sniper")
    start.add_argument("principal")
    start.add_argument("--key", help="Store this key first if the wallet has none")
    start.add_argument(
        "--managed",
        action="store_true",
        help="Delegate signing to the managed signer if the wallet has no key",
    )

    stop = sub.add_parser("stop", help="Stop the sniper")
    stop.add_argument("principal")

    watch_add = sub.add_parser("watch-add", help="Add a mint to the watchlist")
    watch_add.add_argument("principal")
    watch_add.add_argument("mint")
    watch_add.add_argument("amount", help="Buy amount in SOL")

    watch_remove = sub.add_parser("watch-remove", help="Remove a mint from the watchlist")
    watch_remove.add_argument("principal")
    watch_remove.add_argument("mint")

    settings = sub.add_parser("settings", help="Save trading settings")
    settings.add_argument("principal")
    settings.add_argument("--slippage", help="Slippage percent")
    settings.add_argument("--priority-fee", help="Priority fee in SOL")
    settings.add_argument("--bribe", help="Bribe in SOL")
    settings.add_argument("--notify-channel", help="Notification channel id")

    status = sub.add_parser("status", help="Show the dashboard once")
    status.add_argument("principal")

    dashboard = sub.add_parser("dashboard", help="Keep the dashboard refreshing")
    dashboard.add_argument("principal")
    dashboard.add_argument(
        "--seconds",
        type=float,
        default=0,
        help="Stop after this many seconds (default: until interrupted)",
    )
    dashboard.add_argument(
        "--refresh",
        type=float,
        default=5.0,
        help="Seconds between renders (default: 5)",
    )

    sub.add_parser("migrate-keys", help="Encrypt legacy plaintext keys")

    rekey = sub.add_parser("rekey", help="Re-encrypt every key under the current secret")
    rekey.add_argument(
        "--previous-secret",
        help="Secret the keys are currently sealed with (prompted for when omitted)",
    )

    return parser


async def _run_action(
    args: argparse.Namespace,
    session: SyncSession,
    output: CLIOutput,
) -> bool:
    command = args.command
    if command == "start":
        if session.view.is_running:
            output.info("Sniper is already running")
            return True
        if not session.view.has_key and not args.key and not args.managed:
            output.error("Wallet has no stored key; pass --key or --managed")
            return False
        return await session.toggle(private_key=args.key)
    if command == "stop":
        if not session.view.is_running:
            output.info("Sniper is already stopped")
            return True
        return await session.toggle()
    if command == "watch-add":
        return await session.add_watch(args.mint, args.amount)
    if command == "watch-remove":
        return await session.remove_watch(args.mint)
    if command == "settings":
        current = session.view.settings
        return await session.save_settings(
            slippage_pct=args.slippage if args.slippage is not None else (
                current.slippage_pct if current else None
            ),
            priority_fee=args.priority_fee if args.priority_fee is not None else (
                current.priority_fee if current else None
            ),
            bribe=args.bribe if args.bribe is not None else (
                current.bribe if current else None
            ),
            notify_channel_id=args.notify_channel if args.notify_channel is not None else (
                current.notify_channel_id if current else None
            ),
        )
    if command == "rotate":
        return await session.rotate_wallet(args.address, _read_private_key(args))
    return True


async def _run_dashboard(
    args: argparse.Namespace,
    session: SyncSession,
    output: CLIOutput,
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + args.seconds if args.seconds > 0 else None
    output.status(f"Refreshing every {args.refresh:g}s (Ctrl+C to stop)")
    output.dashboard(session.view)
    while deadline is None or loop.time() < deadline:
        wait = args.refresh
        if deadline is not None:
            wait = min(wait, max(deadline - loop.time(), 0))
        await asyncio.sleep(wait)
        output.dashboard(session.view)


async def run_command(
    args: argparse.Namespace,
    settings: Settings,
    tables: TableService,
    output: CLIOutput,
) -> int:
    """Execute one parsed command against *tables*. Returns the exit code."""
    cipher = EnvelopeCipher(secret=settings.encryption_key)
    credentials = CredentialStore(tables, cipher)

    if args.command == "register":
        registry = WalletRegistry(tables, credentials)
        wallet = await registry.register(
            args.principal, args.address, _read_private_key(args), signup_code=args.code
        )
        output.success(f"Registered wallet {wallet.address} for {args.principal}")
        return 0

    if args.command == "migrate-keys":
        migrated = await credentials.migrate_legacy_keys()
        output.success(f"Migrated {migrated} legacy key(s)")
        return 0

    if args.command == "rekey":
        previous_secret = args.previous_secret or getpass.getpass("Previous secret: ")
        rekeyed = await credentials.reencrypt_all(EnvelopeCipher(secret=previous_secret))
        output.success(f"Re-encrypted {rekeyed} key(s)")
        return 0

    session = SyncSession.from_settings(args.principal, tables, credentials, settings)
    async with session:
        try:
            await session.initialize(start_loops=args.command == "dashboard")
        except NotFound:
            output.error(f"No wallet linked to {args.principal}; run 'register' first")
            return 1

        if args.command == "dashboard":
            try:
                await _run_dashboard(args, session, output)
            except asyncio.CancelledError:
                output.info("Interrupted")
            return 0

        if args.command == "status":
            output.dashboard(session.view)
            return 0

        ok = await _run_action(args, session, output)
        output.dashboard(session.view)
        return 0 if ok else 1


async def async_main(argv: Optional[list] = None) -> int:
    """Async CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        output_format = OutputFormat(args.output)
    except ValueError:
        output_format = OutputFormat.TABLE

    output = CLIOutput(format=output_format, verbose=args.verbose)

    try:
        settings = load_settings()
    except SniperSyncError as exc:
        output.error(f"Failed to load settings: {exc}")
        output.info("Check your .env file and environment variables")
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    tables = open_table_service(settings)
    try:
        return await run_command(args, settings, tables, output)
    except SniperSyncError as exc:
        output.error(f"Error: {exc}")
        return 1
    finally:
        await tables.close()


def main() -> None:
    """Synchronous wrapper for CLI entry."""
    try:
        code = asyncio.run(async_main())
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
