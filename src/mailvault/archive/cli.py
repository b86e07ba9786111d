"""CLI commands for archiving mailboxes."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from filelock import FileLock, Timeout
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ..telemetry.audit import AuditLogger
from .config import PASSWORD_ENV_VAR, ArchiveConfig
from .errors import ArchiveLockedError, AuthenticationFailedError, IndexCorruptionError
from .index_store import ArchiveIndexStore
from .session import LOCK_FILENAME, ArchiveRunReport, ArchiveSession

console = Console()
error_console = Console(stderr=True)

archive_app = typer.Typer(help="Mailbox archive commands")

EXIT_CANCELLED = 130


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_date(value: Optional[str], option: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        error_console.print(f"Error: {option} must be YYYY-MM-DD, got '{value}'")
        raise typer.Exit(1)


async def _run_with_signals(session: ArchiveSession) -> ArchiveRunReport:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        return await session.run(cancel_event)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


@archive_app.command("sync")
def sync_archive(
    server: Optional[str] = typer.Option(None, "--server", "-s", help="IMAP server hostname"),
    username: Optional[str] = typer.Option(None, "--username", "-u", help="Login name"),
    password: Optional[str] = typer.Option(
        None, "--password", "-p", envvar=PASSWORD_ENV_VAR, help="Password or app password"
    ),
    port: Optional[int] = typer.Option(None, "--port", "-r", help="IMAPS port (default: 993)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Archive root (default: EmailArchive)"),
    start_date: Optional[str] = typer.Option(None, "--start-date", help="Only mail on or after YYYY-MM-DD"),
    end_date: Optional[str] = typer.Option(None, "--end-date", help="Only mail on or before YYYY-MM-DD"),
    all_folders: bool = typer.Option(False, "--all-folders", "-a", help="Archive every selectable folder"),
    folder: Optional[List[str]] = typer.Option(None, "--folder", "-f", help="Folder to archive (repeatable)"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="UIDs per batch (default: 50)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Incrementally archive a mailbox into a local maildir tree.

    The server is never modified. Re-running is safe: already archived
    messages are skipped.

    Examples:
        mailvault archive sync -s imap.example.com -u me@example.com -o ~/Mail
        mailvault archive sync --config archive.yaml --all-folders
    """
    _configure_logging(verbose)

    start = _parse_date(start_date, "--start-date")
    end = _parse_date(end_date, "--end-date")
    overrides = {
        "server": server,
        "username": username,
        "password": password,
        "port": port,
        "output_dir": output,
        "start_date": start.date() if start else None,
        "end_date": end.date() if end else None,
        "all_folders": all_folders or None,
        "folders": list(folder) if folder else None,
        "batch_size": batch_size,
    }
    try:
        if config_path is not None:
            config = ArchiveConfig.from_yaml(config_path, **overrides)
        else:
            config = ArchiveConfig.from_sources(None, **overrides)
    except (ValidationError, ValueError, OSError) as exc:
        error_console.print(f"Error: invalid configuration: {exc}")
        raise typer.Exit(1)

    recorder = AuditLogger(config.telemetry_dir) if config.telemetry_dir else None
    session = ArchiveSession(config, recorder=recorder)

    console.print(f"[bold blue]Archiving {config.username}@{config.server} into {config.output_dir}[/bold blue]")
    try:
        report = asyncio.run(_run_with_signals(session))
    except AuthenticationFailedError as exc:
        error_console.print(f"Error: {exc}. Check your credentials.")
        raise typer.Exit(1)
    except ArchiveLockedError as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        error_console.print("Cancelled.")
        raise typer.Exit(EXIT_CANCELLED)

    _print_report(report)
    if report.cancelled:
        raise typer.Exit(EXIT_CANCELLED)


def _print_report(report: ArchiveRunReport) -> None:
    if report.rebuild is not None:
        console.print(
            f"[yellow]Index was rebuilt from {report.rebuild.records_indexed} sidecars "
            f"({report.rebuild.sidecars_skipped} skipped)[/yellow]"
        )

    table = Table(title="Archive Run")
    table.add_column("Folder", style="cyan")
    table.add_column("Found", justify="right")
    table.add_column("Stored", justify="right", style="green")
    table.add_column("Duplicates", justify="right")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Checkpoint", justify="right")
    for result in report.folders:
        table.add_row(
            result.folder,
            str(result.uids_found),
            str(result.stored),
            str(result.duplicates),
            str(result.failed),
            str(result.checkpoint_uid),
        )
    console.print(table)

    for name in report.skipped_folders:
        console.print(f"[yellow]Skipped folder {name}[/yellow]")
    status = "cancelled" if report.cancelled else "complete"
    console.print(
        f"Archive {status}: {report.stored} stored, {report.duplicates} duplicates, "
        f"{report.failed} failed in {report.duration_seconds:.1f}s"
    )


@archive_app.command("status")
def archive_status(
    output: Path = typer.Option(Path("EmailArchive"), "--output", "-o", help="Archive root"),
) -> None:
    """Show per-folder message counts and sync cursors.

    Reads the index without locking the archive, so it can run while a sync
    is in progress. The index is never repaired from here; use
    ``rebuild-index`` for that.
    """
    root = output.expanduser().resolve()
    if not root.exists():
        error_console.print(f"Error: no archive at {root}")
        raise typer.Exit(1)

    store = ArchiveIndexStore(root)
    try:
        store.open_readonly()
    except FileNotFoundError:
        error_console.print(f"Error: no index at {root}; run a sync first")
        raise typer.Exit(1)
    except ArchiveLockedError as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)
    except IndexCorruptionError as exc:
        error_console.print(f"Error: {exc}. Run 'mailvault archive rebuild-index'.")
        raise typer.Exit(1)
    try:
        counts = store.statistics()
        cursors = {cursor.folder: cursor for cursor in store.iter_cursors()}
        total = store.count_messages()
    finally:
        store.close()

    table = Table(title=f"Archive {root}")
    table.add_column("Folder", style="cyan")
    table.add_column("Messages", justify="right")
    table.add_column("Last UID", justify="right")
    table.add_column("UIDVALIDITY", justify="right")
    for name in sorted(set(counts) | set(cursors)):
        cursor = cursors.get(name)
        table.add_row(
            name,
            str(counts.get(name, 0)),
            str(cursor.last_uid) if cursor else "-",
            str(cursor.uid_validity) if cursor else "-",
        )
    console.print(table)
    console.print(f"Total messages: {total}")


@archive_app.command("rebuild-index")
def rebuild_index(
    output: Path = typer.Option(Path("EmailArchive"), "--output", "-o", help="Archive root"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Rebuild the index from sidecar files.

    The current index is kept as a backup beside the new one. Sync cursors
    are not recoverable, so the next sync rescans every folder.
    """
    _configure_logging(verbose)
    root = output.expanduser().resolve()
    if not root.exists():
        error_console.print(f"Error: no archive at {root}")
        raise typer.Exit(1)

    lock = FileLock(str(root / LOCK_FILENAME), timeout=0)
    try:
        lock.acquire()
    except Timeout:
        error_console.print(f"Error: archive at {root} is locked by another process")
        raise typer.Exit(1)
    try:
        store = ArchiveIndexStore(root)
        report = store.open()
        if report is None:
            report = store.rebuild(reason="operator requested", backup_label="backup")
        store.close()
    except ArchiveLockedError as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)
    finally:
        lock.release()

    console.print(f"[green]Re-indexed {report.records_indexed} messages[/green]")
    if report.sidecars_skipped:
        console.print(f"[yellow]Skipped {report.sidecars_skipped} malformed sidecars[/yellow]")
    if report.backup_path:
        console.print(f"Previous index kept at {report.backup_path}")


@archive_app.command("verify-audit")
def verify_audit(
    telemetry_dir: Path = typer.Option(..., "--telemetry-dir", "-t", help="Audit log directory"),
) -> None:
    """Verify the hash chain of the audit event log."""
    audit = AuditLogger(telemetry_dir.expanduser().resolve())
    if audit.verify():
        console.print("[green]Audit log chain intact[/green]")
        return
    error_console.print("Error: audit log chain is broken")
    raise typer.Exit(1)


__all__ = ["archive_app"]
