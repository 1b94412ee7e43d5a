#!/usr/bin/env python3
"""CLI entry point for davsync."""

import argparse
import signal
import sys
from contextlib import closing
from pathlib import Path
from types import FrameType

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .core.auth import CredentialResolver
from .core.backups import BackupRotator
from .core.client import WebDavClient
from .core.locks import LockCoordinator
from .core.operations import ConflictPolicy, SyncEngine, SyncResult
from .core.scheduler import Scheduler
from .core.state import Action, SyncStateStore
from .errors import ConfigError, DavSyncError
from .logging_setup import setup_logging
from .models.config import FileEntry, SyncConfig, default_config_path

console = Console()


def load_config(args: argparse.Namespace) -> SyncConfig:
    """Load the config named on the command line, or the default one."""
    config_path = Path(args.config).expanduser() if args.config else default_config_path()
    return SyncConfig.load(config_path)


def confirm_overwrite(entry: FileEntry, action: Action) -> bool:
    """Ask before a transfer throws away unsynced changes."""
    if not sys.stdin.isatty():
        console.print(f"[yellow]{entry.identifier}: not a terminal, refusing to overwrite without --force")
        return False
    side = "remote" if action is Action.UPLOAD else "local"
    return Confirm.ask(
        f"{action.value.capitalize()} of [bold]{entry.identifier}[/bold] discards {side} changes. Continue?",
        default=False,
        console=console,
    )


def build_engine(config: SyncConfig, args: argparse.Namespace) -> SyncEngine:
    """Wire client, locks, backups and state together for one invocation."""
    settings = config.settings
    resolver = CredentialResolver.default(username=settings.username, keyring_service=settings.keyring_service)
    client = WebDavClient(resolver=resolver, retries=settings.transfer_retries, verify_tls=settings.verify_tls)
    locks = LockCoordinator(
        lock_dir=config.state_dir / "locks",
        client=client,
        lock_retries=settings.lock_retries,
        retry_delay=settings.lock_retry_delay,
        lock_timeout=settings.lock_timeout,
        skip_remote=getattr(args, "no_remote_lock", False),
    )
    backups = BackupRotator(
        config.backup_dir,
        min_count=settings.backup_min_count,
        max_age_days=settings.backup_max_age_days,
    )

    if getattr(args, "overwrite_local", False):
        policy = ConflictPolicy.OVERWRITE_LOCAL
    elif getattr(args, "overwrite_remote", False):
        policy = ConflictPolicy.OVERWRITE_REMOTE
    else:
        policy = ConflictPolicy.NONE

    return SyncEngine(
        client=client,
        state=SyncStateStore(config.state_dir),
        locks=locks,
        backups=backups,
        policy=policy,
        force=getattr(args, "force", False),
        confirm=confirm_overwrite,
        dry_run=getattr(args, "dry_run", False),
    )


def print_results(results: list[SyncResult]) -> int:
    """Show per-file results and a summary; return the exit code."""
    transferred = sum(1 for r in results if r.success and not r.skipped)
    skipped_count = sum(1 for r in results if r.skipped)
    conflict_count = sum(1 for r in results if r.conflict)
    failed = [r for r in results if not r.success]

    for result in results:
        if result.conflict:
            console.print(f"[red]CONFLICT: {result.identifier}")
            console.print(f"          {result.message}")
        elif not result.success:
            console.print(f"[red]FAILED: {result.identifier}")
            console.print(f"        {result.message}")
        elif result.skipped:
            console.print(f"[dim]{result.message}[/dim]")
        else:
            console.print(f"[green]{result.message}")

    console.print(
        f"\n[bold]Summary:[/bold] {transferred} transferred, {skipped_count} skipped, "
        f"{conflict_count} conflicts, {len(failed) - conflict_count} failed"
    )

    if failed:
        console.print(f"[red]Sync failed for: {', '.join(r.identifier for r in failed)}")
        return 1
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    """Sync one or all files, once or repeatedly."""
    config = load_config(args)
    if not config.files:
        console.print("[yellow]No files configured")
        return 0

    with closing(build_engine(config, args)) as engine:
        scheduler = Scheduler(engine, config.files)
        scheduler.select(args.identifier)

        if args.dry_run:
            console.print("[yellow](DRY RUN - no changes will be made)")

        if args.repeat:
            console.print(f"Syncing every {args.repeat:g} min. Stop with Ctrl+C.", style="blue")
            try:
                scheduler.run_forever(args.repeat, args.identifier, on_pass=print_results)
            except KeyboardInterrupt:
                console.print("Stopped.")
            return 0

        return print_results(scheduler.run_once(args.identifier))


def cmd_put(args: argparse.Namespace) -> int:
    """Upload one file."""
    config = load_config(args)
    entry = config.get_file(args.identifier)
    with closing(build_engine(config, args)) as engine:
        return print_results([engine.put(entry)])


def cmd_get(args: argparse.Namespace) -> int:
    """Download one file."""
    config = load_config(args)
    entry = config.get_file(args.identifier)
    with closing(build_engine(config, args)) as engine:
        return print_results([engine.get(entry)])


def cmd_status(args: argparse.Namespace) -> int:
    """Show configured files and their sync state."""
    config = load_config(args)
    state = SyncStateStore(config.state_dir)
    backups = BackupRotator(config.backup_dir)

    console.print(f"\n[bold]Remote:[/bold] {config.base_url}")
    console.print(f"[bold]State:[/bold] {state.state_file}")

    if not config.files:
        console.print("[dim]No files configured.[/dim]")
        return 0

    table = Table()
    table.add_column("Id")
    table.add_column("Local")
    table.add_column("Remote")
    table.add_column("Last Sync")
    table.add_column("Hash")
    table.add_column("Backups", justify="right")

    for entry in config.files:
        record = state.get(entry.identifier)
        table.add_row(
            entry.identifier,
            str(entry.local_path),
            entry.remote_url,
            record.last_sync_time[:19] if record else "Never",
            record.last_local_hash[:8] if record else "N/A",
            str(len(backups.list_entries(entry.identifier))),
        )

    console.print(table)
    return 0


def _terminate(signum: int, frame: FrameType | None) -> None:
    # Unwinds the running operation so its locks and temp file are released.
    raise SystemExit(128 + signum)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="davsync",
        description="Sync named local files with a WebDAV server",
    )
    parser.add_argument("-c", "--config", help="Config file (default: $DAVSYNC_CONFIG or ~/.config/davsync/config.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", help="Also log to this file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Sync one or all files")
    sync_parser.add_argument("identifier", nargs="?", help="File to sync (default: all)")
    policy = sync_parser.add_mutually_exclusive_group()
    policy.add_argument("--overwrite-local", action="store_true", help="On conflict, replace local with remote")
    policy.add_argument("--overwrite-remote", action="store_true", help="On conflict, replace remote with local")
    sync_parser.add_argument("--dry-run", action="store_true", help="Show what would happen")
    sync_parser.add_argument("--repeat", type=float, metavar="MINUTES", help="Sync again every MINUTES")

    # put / get commands
    put_parser = subparsers.add_parser("put", help="Upload a file, overwriting the remote copy")
    put_parser.add_argument("identifier", help="File to upload")
    get_parser = subparsers.add_parser("get", help="Download a file, overwriting the local copy")
    get_parser.add_argument("identifier", help="File to download")

    for sub in (sync_parser, put_parser, get_parser):
        sub.add_argument("--force", action="store_true", help="Overwrite without asking")
        sub.add_argument("--no-remote-lock", action="store_true", help="Do not LOCK remote resources")

    # status command
    subparsers.add_parser("status", help="Show sync status")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging("DEBUG" if args.verbose else "WARNING", log_file=args.log_file)
    signal.signal(signal.SIGTERM, _terminate)

    commands = {
        "sync": cmd_sync,
        "put": cmd_put,
        "get": cmd_get,
        "status": cmd_status,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    if getattr(args, "repeat", None) is not None and args.repeat <= 0:
        console.print("[red]--repeat needs a positive number of minutes")
        return 2

    try:
        return command(args)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}")
        return 2
    except DavSyncError as e:
        console.print(f"[red]{e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
