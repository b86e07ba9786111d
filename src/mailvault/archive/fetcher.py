"""Per-folder batch fetcher driven by an explicit state machine.

One ``sync_folder`` call walks a folder through::

    IDLE -> OPENED -> SEARCHING -> (FETCH_ENVELOPES -> FILTER_BY_DEDUP
         -> STREAM_AND_PERSIST -> ADVANCE_CURSOR)* -> DONE | ERROR

Per-message faults are absorbed here. Connection faults are not caught: they
leave the folder in ``ERROR`` and propagate to the session wrapper, which
reconnects and resumes from the last persisted checkpoint.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set

from .archive_events import ArchiveAuditEvents, ArchiveEventEmitter
from .cursor import SyncCursorManager
from .errors import FailureKind, InvalidStateTransitionError, classify_exception
from .identifiers import UNKNOWN_ID, normalize_message_id
from .mailbox import Envelope, RemoteMailbox
from .storage import MaildirStorageWriter, SaveOutcome

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


class FolderSyncState(str, Enum):
    """States of a single folder sync."""

    IDLE = "idle"
    OPENED = "opened"
    SEARCHING = "searching"
    FETCH_ENVELOPES = "fetch_envelopes"
    FILTER_BY_DEDUP = "filter_by_dedup"
    STREAM_AND_PERSIST = "stream_and_persist"
    ADVANCE_CURSOR = "advance_cursor"
    DONE = "done"
    ERROR = "error"


VALID_TRANSITIONS: Dict[FolderSyncState, Set[FolderSyncState]] = {
    FolderSyncState.IDLE: {FolderSyncState.OPENED, FolderSyncState.ERROR},
    FolderSyncState.OPENED: {FolderSyncState.SEARCHING, FolderSyncState.ERROR},
    FolderSyncState.SEARCHING: {
        FolderSyncState.FETCH_ENVELOPES,  # Work found
        FolderSyncState.DONE,  # Nothing new, or cancelled
        FolderSyncState.ERROR,
    },
    FolderSyncState.FETCH_ENVELOPES: {FolderSyncState.FILTER_BY_DEDUP, FolderSyncState.ERROR},
    FolderSyncState.FILTER_BY_DEDUP: {FolderSyncState.STREAM_AND_PERSIST, FolderSyncState.ERROR},
    FolderSyncState.STREAM_AND_PERSIST: {FolderSyncState.ADVANCE_CURSOR, FolderSyncState.ERROR},
    FolderSyncState.ADVANCE_CURSOR: {
        FolderSyncState.FETCH_ENVELOPES,  # Next batch
        FolderSyncState.DONE,
        FolderSyncState.ERROR,
    },
    FolderSyncState.DONE: set(),
    FolderSyncState.ERROR: set(),
}


class FolderSyncStateMachine:
    """Tracks and validates the state of one folder sync."""

    def __init__(self, folder: str) -> None:
        self.folder = folder
        self.state = FolderSyncState.IDLE
        self.history: List[FolderSyncState] = [FolderSyncState.IDLE]

    def transition(self, to_state: FolderSyncState) -> None:
        if to_state not in VALID_TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                f"Invalid folder sync transition for {self.folder}: "
                f"{self.state.value} -> {to_state.value}"
            )
        logger.debug(
            "Folder %s: %s -> %s",
            self.folder,
            self.state.value,
            to_state.value,
        )
        self.state = to_state
        self.history.append(to_state)

    def fail(self) -> None:
        if self.state not in (FolderSyncState.DONE, FolderSyncState.ERROR):
            self.transition(FolderSyncState.ERROR)


@dataclass
class FolderSyncResult:
    """Outcome of syncing one folder."""

    folder: str
    uid_validity: int = 0
    uids_found: int = 0
    stored: int = 0
    duplicates: int = 0
    failed_uids: List[int] = field(default_factory=list)
    checkpoint_uid: int = 0
    cursor_reset: bool = False
    batches: int = 0
    cancelled: bool = False
    state: FolderSyncState = FolderSyncState.IDLE
    duration_seconds: float = 0.0

    @property
    def failed(self) -> int:
        return len(self.failed_uids)

    def merge(self, later: "FolderSyncResult") -> None:
        """Fold a later attempt at the same folder into this result."""
        if later.uid_validity:
            self.uid_validity = later.uid_validity
            self.checkpoint_uid = later.checkpoint_uid
        self.uids_found = max(self.uids_found, later.uids_found)
        self.stored += later.stored
        self.duplicates += later.duplicates
        self.failed_uids.extend(uid for uid in later.failed_uids if uid not in self.failed_uids)
        self.cursor_reset = self.cursor_reset or later.cursor_reset
        self.batches += later.batches
        self.cancelled = later.cancelled
        self.state = later.state
        self.duration_seconds += later.duration_seconds


@dataclass
class _Checkpoint:
    """Last contiguous success; frozen for the rest of the run after a failure."""

    uid: int
    frozen: bool = False

    def record_success(self, uid: int) -> None:
        if not self.frozen:
            self.uid = max(self.uid, uid)

    def record_failure(self) -> None:
        self.frozen = True


class FolderSyncer:
    """Incrementally archives one folder at a time."""

    def __init__(
        self,
        mailbox: RemoteMailbox,
        storage: MaildirStorageWriter,
        cursors: SyncCursorManager,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        events: Optional[ArchiveEventEmitter] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._mailbox = mailbox
        self._storage = storage
        self._cursors = cursors
        self._batch_size = batch_size
        self._events = events or ArchiveEventEmitter()
        self._cancel_event = cancel_event
        self.last_result: Optional[FolderSyncResult] = None

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def sync_folder(
        self,
        folder: str,
        since: Optional[date] = None,
        before: Optional[date] = None,
    ) -> FolderSyncResult:
        """Archive every message in ``folder`` beyond its stored cursor.

        Args:
            folder: Remote folder name
            since: Only messages received on or after this date
            before: Only messages received before this date

        Returns:
            Counts, failures and the persisted checkpoint

        Raises:
            Connection-class and authentication exceptions, unchanged. The
            counts gathered before the exception stay on ``last_result``.
        """
        start = time.perf_counter()
        machine = FolderSyncStateMachine(folder)
        result = FolderSyncResult(folder=folder)
        self.last_result = result
        try:
            await self._run(machine, result, since, before)
        except BaseException:
            machine.fail()
            result.state = machine.state
            result.duration_seconds = time.perf_counter() - start
            raise
        result.state = machine.state
        result.duration_seconds = time.perf_counter() - start

        logger.info(
            "Folder %s processed: %d stored, %d duplicates, %d failed",
            folder,
            result.stored,
            result.duplicates,
            result.failed,
            extra={
                "folder": folder,
                "uids_found": result.uids_found,
                "checkpoint_uid": result.checkpoint_uid,
                "cancelled": result.cancelled,
            },
        )
        self._events.emit(
            ArchiveAuditEvents.FOLDER_PROCESSED,
            status="cancelled" if result.cancelled else "success",
            folder=folder,
            uids_found=result.uids_found,
            stored=result.stored,
            duplicates=result.duplicates,
            failed=result.failed,
            checkpoint_uid=result.checkpoint_uid,
            cursor_reset=result.cursor_reset,
        )
        return result

    async def _run(
        self,
        machine: FolderSyncStateMachine,
        result: FolderSyncResult,
        since: Optional[date],
        before: Optional[date],
    ) -> None:
        folder = machine.folder
        status = await self._mailbox.open_folder(folder)
        machine.transition(FolderSyncState.OPENED)
        result.uid_validity = status.uid_validity

        position = await self._cursors.get_cursor(folder, status.uid_validity)
        result.cursor_reset = position.is_reset
        result.checkpoint_uid = position.last_uid
        if position.is_reset:
            logger.warning(
                "UIDVALIDITY changed for %s; performing full rescan, already archived mail is skipped",
                folder,
                extra={"folder": folder, "uid_validity": status.uid_validity},
            )

        machine.transition(FolderSyncState.SEARCHING)
        uids = await self._mailbox.search_uids(position.last_uid, since=since, before=before)
        result.uids_found = len(uids)
        if not uids:
            logger.debug("No new messages in %s", folder, extra={"after_uid": position.last_uid})
            machine.transition(FolderSyncState.DONE)
            return
        logger.info(
            "Found %d messages to process in %s",
            len(uids),
            folder,
            extra={"folder": folder, "after_uid": position.last_uid},
        )

        checkpoint = _Checkpoint(uid=position.last_uid)
        for offset in range(0, len(uids), self._batch_size):
            if self._cancelled():
                result.cancelled = True
                break
            batch = uids[offset : offset + self._batch_size]
            machine.transition(FolderSyncState.FETCH_ENVELOPES)
            await self._process_batch(machine, result, status.uid_validity, batch, checkpoint)
            result.batches += 1
            if result.cancelled:
                break

        machine.transition(FolderSyncState.DONE)

    async def _process_batch(
        self,
        machine: FolderSyncStateMachine,
        result: FolderSyncResult,
        uid_validity: int,
        batch: Sequence[int],
        checkpoint: _Checkpoint,
    ) -> None:
        folder = machine.folder
        envelopes = await self._mailbox.fetch_envelopes(batch)

        machine.transition(FolderSyncState.FILTER_BY_DEDUP)
        pending: List[Envelope] = []
        outcome: Dict[int, bool] = {}
        for uid in batch:
            envelope = envelopes.get(uid)
            if envelope is None:
                # Expunged between search and fetch.
                logger.debug("UID %d vanished from %s", uid, folder)
                outcome[uid] = True
                continue
            message_id = normalize_message_id(envelope.message_id)
            if message_id != UNKNOWN_ID and await self._storage.message_exists(message_id):
                result.duplicates += 1
                outcome[uid] = True
                continue
            pending.append(envelope)

        machine.transition(FolderSyncState.STREAM_AND_PERSIST)
        stored_before = result.stored
        pending_by_uid = {envelope.uid: envelope for envelope in pending}
        for uid in batch:
            envelope = pending_by_uid.get(uid)
            if envelope is None:
                continue
            if self._cancelled():
                result.cancelled = True
                break
            outcome[uid] = await self._persist(folder, envelope, result)

        # Contiguity is evaluated in UID order; unattempted UIDs end the run.
        for uid in batch:
            succeeded = outcome.get(uid)
            if succeeded is None:
                break
            if succeeded:
                checkpoint.record_success(uid)
            else:
                checkpoint.record_failure()
                break

        machine.transition(FolderSyncState.ADVANCE_CURSOR)
        if checkpoint.uid > result.checkpoint_uid:
            await self._cursors.advance_cursor(folder, checkpoint.uid, uid_validity)
            result.checkpoint_uid = checkpoint.uid

        self._events.emit(
            ArchiveAuditEvents.BATCH_PERSISTED,
            folder=folder,
            batch_size=len(batch),
            stored=result.stored - stored_before,
            checkpoint_uid=result.checkpoint_uid,
            cursor_frozen=checkpoint.frozen,
        )

    async def _persist(self, folder: str, envelope: Envelope, result: FolderSyncResult) -> bool:
        try:
            saved = await self._storage.save_stream(
                self._mailbox.iter_message(envelope.uid, envelope.size),
                envelope.message_id,
                envelope.internal_date,
                folder,
            )
        except Exception as exc:  # noqa: BLE001
            if classify_exception(exc) is not FailureKind.MESSAGE:
                raise
            result.failed_uids.append(envelope.uid)
            logger.error(
                "Failed to archive UID %d in %s: %s",
                envelope.uid,
                folder,
                exc,
                extra={"folder": folder, "uid": envelope.uid},
            )
            self._events.emit(
                ArchiveAuditEvents.MESSAGE_FAILED,
                status="failed",
                folder=folder,
                uid=envelope.uid,
                error_type=type(exc).__name__,
            )
            return False

        if saved.outcome is SaveOutcome.STORED:
            result.stored += 1
        else:
            result.duplicates += 1
        return True


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "FolderSyncResult",
    "FolderSyncState",
    "FolderSyncStateMachine",
    "FolderSyncer",
    "VALID_TRANSITIONS",
]
