"""One archive run: lock, open the index, then sync under the resilience policies."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Awaitable, Callable, List, Optional, Set

from filelock import FileLock, Timeout

from ..telemetry.audit import EventRecorder
from .archive_events import ArchiveAuditEvents, ArchiveEventEmitter
from .config import ArchiveConfig
from .cursor import SyncCursorManager
from .errors import ArchiveLockedError, FailureKind, OperationCancelledError, classify_exception
from .fetcher import FolderSyncer, FolderSyncResult
from .folders import FolderEnumerator
from .index_store import ArchiveIndexStore, RebuildReport
from .mailbox import RemoteMailbox, connect_mailbox
from .resilience import CircuitBreakerPolicy, RetryForeverPolicy
from .storage import MaildirStorageWriter

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".mailvault.lock"

MailboxFactory = Callable[[ArchiveConfig], Awaitable[RemoteMailbox]]


@dataclass
class ArchiveRunReport:
    """Summary of one archive run."""

    run_id: str
    folders: List[FolderSyncResult] = field(default_factory=list)
    skipped_folders: List[str] = field(default_factory=list)
    rebuild: Optional[RebuildReport] = None
    cancelled: bool = False
    attempts: int = 0
    duration_seconds: float = 0.0

    @property
    def stored(self) -> int:
        return sum(result.stored for result in self.folders)

    @property
    def duplicates(self) -> int:
        return sum(result.duplicates for result in self.folders)

    @property
    def failed(self) -> int:
        return sum(result.failed for result in self.folders)


class ArchiveSession:
    """Runs the connect, enumerate and sync unit until it completes.

    Connection faults anywhere in the unit tear the connection down and the
    unit is retried indefinitely behind a circuit breaker. Folders finished
    earlier in the same run are not visited again on a retry. Authentication
    failures propagate immediately.
    """

    def __init__(
        self,
        config: ArchiveConfig,
        *,
        mailbox_factory: Optional[MailboxFactory] = None,
        recorder: Optional[EventRecorder] = None,
        retry_policy: Optional[RetryForeverPolicy] = None,
        circuit_breaker: Optional[CircuitBreakerPolicy] = None,
        hostname: Optional[str] = None,
    ) -> None:
        self._config = config
        self._mailbox_factory = mailbox_factory or connect_mailbox
        self._events = ArchiveEventEmitter(recorder)
        self._retry = retry_policy or RetryForeverPolicy(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
            events=self._events,
        )
        self._breaker = circuit_breaker or CircuitBreakerPolicy(
            failure_threshold=config.breaker_failure_threshold,
            cooldown_seconds=config.breaker_cooldown_seconds,
            events=self._events,
        )
        self._hostname = hostname

    @property
    def run_id(self) -> str:
        return self._events.run_id

    async def run(self, cancel_event: Optional[asyncio.Event] = None) -> ArchiveRunReport:
        """Archive the configured folders.

        Raises:
            AuthenticationFailedError: Credentials were rejected
            ArchiveLockedError: Another process is archiving into the same root
        """
        start = time.perf_counter()
        root = self._config.output_dir
        root.mkdir(parents=True, exist_ok=True)
        report = ArchiveRunReport(run_id=self.run_id)

        lock = FileLock(str(root / LOCK_FILENAME), timeout=0)
        try:
            lock.acquire()
        except Timeout as exc:
            raise ArchiveLockedError(f"Archive at {root} is locked by another process") from exc

        try:
            store = ArchiveIndexStore(root, events=self._events)
            report.rebuild = await asyncio.to_thread(store.open)
            try:
                storage = MaildirStorageWriter(
                    root, store, events=self._events, hostname=self._hostname
                )
                cursors = SyncCursorManager(store, self._events)
                completed: Set[str] = set()

                logger.info(
                    "Starting archive session for %s",
                    self._config.server,
                    extra={"run_id": self.run_id, "output_dir": str(root)},
                )
                self._events.emit(
                    ArchiveAuditEvents.SESSION_STARTED,
                    status="started",
                    server=self._config.server,
                    all_folders=self._config.all_folders,
                )

                async def unit() -> None:
                    await self._run_once(report, storage, cursors, completed, cancel_event)

                try:
                    await self._retry.execute(
                        lambda: self._breaker.execute(unit),
                        cancel_event,
                    )
                except OperationCancelledError:
                    logger.warning("Archive run cancelled while waiting to reconnect")
                    report.cancelled = True
                report.attempts = self._retry.attempts + 1
            finally:
                await asyncio.to_thread(store.close)
        finally:
            lock.release()

        report.duration_seconds = time.perf_counter() - start
        logger.info(
            "Archive session finished: %d stored, %d duplicates, %d failed",
            report.stored,
            report.duplicates,
            report.failed,
            extra={"run_id": self.run_id, "cancelled": report.cancelled},
        )
        self._events.emit(
            ArchiveAuditEvents.SESSION_COMPLETED,
            status="cancelled" if report.cancelled else "success",
            stored=report.stored,
            duplicates=report.duplicates,
            failed=report.failed,
            attempts=report.attempts,
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report

    async def _run_once(
        self,
        report: ArchiveRunReport,
        storage: MaildirStorageWriter,
        cursors: SyncCursorManager,
        completed: Set[str],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            report.cancelled = True
            return

        mailbox = await self._mailbox_factory(self._config)
        try:
            folders = await FolderEnumerator(
                mailbox,
                all_folders=self._config.all_folders,
                folders=self._config.folders,
            ).enumerate()
            syncer = FolderSyncer(
                mailbox,
                storage,
                cursors,
                batch_size=self._config.batch_size,
                events=self._events,
                cancel_event=cancel_event,
            )
            since, before = self._date_bounds()
            for folder in folders:
                if folder in completed:
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    return
                try:
                    result = await syncer.sync_folder(folder, since=since, before=before)
                except BaseException as exc:
                    if syncer.last_result is not None and syncer.last_result.folder == folder:
                        _record_result(report, syncer.last_result)
                    if not isinstance(exc, Exception) or classify_exception(exc) is not FailureKind.MESSAGE:
                        raise
                    logger.error(
                        "Skipping folder %s: %s",
                        folder,
                        exc,
                        extra={"folder": folder, "error_type": type(exc).__name__},
                    )
                    report.skipped_folders.append(folder)
                    completed.add(folder)
                    continue
                _record_result(report, result)
                if result.cancelled:
                    report.cancelled = True
                    return
                completed.add(folder)
        finally:
            await mailbox.close()

    def _date_bounds(self) -> tuple[Optional[date], Optional[date]]:
        # IMAP BEFORE is exclusive; the configured end date is inclusive.
        before = self._config.end_date + timedelta(days=1) if self._config.end_date else None
        return self._config.start_date, before


def _record_result(report: ArchiveRunReport, result: FolderSyncResult) -> None:
    # A folder interrupted by a reconnect is revisited; keep one entry per folder.
    for existing in report.folders:
        if existing.folder == result.folder:
            existing.merge(result)
            return
    report.folders.append(result)


__all__ = ["ArchiveRunReport", "ArchiveSession", "LOCK_FILENAME", "MailboxFactory"]
