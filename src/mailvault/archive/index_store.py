"""SQLite index of archived messages and per-folder sync cursors.

The index is a derived cache. The ``.eml`` files and their sidecars on disk
are the source of truth: when the store file cannot be opened it is moved
aside (never deleted) and rebuilt by walking the sidecars. Cursors cannot be
recovered from sidecars, so after a rebuild every folder rescans from UID 0
and deduplication keeps the rescan from storing anything twice.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional

from pydantic import BaseModel, Field

from .archive_events import ArchiveAuditEvents, ArchiveEventEmitter
from .errors import ArchiveLockedError, IndexCorruptionError
from .sidecar import iter_sidecars

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.v1.db"
REBUILD_COMMIT_INTERVAL = 500
DEFAULT_BUSY_TIMEOUT = 30.0


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class MessageRecord(BaseModel):
    """Dedup record for one archived message."""

    message_id: str = Field(..., description="Normalized message identifier")
    folder: str = Field(..., description="Folder the message was archived from")
    imported_at: datetime = Field(..., description="When the record was inserted")


class SyncCursor(BaseModel):
    """Checkpoint for incremental folder sync."""

    folder: str = Field(..., description="Remote folder name")
    last_uid: int = Field(default=0, ge=0, description="Highest durably archived UID")
    uid_validity: int = Field(..., ge=0, description="UIDVALIDITY the cursor belongs to")


@dataclass
class RebuildReport:
    """Outcome of a self-healing index rebuild."""

    reason: str
    records_indexed: int = 0
    sidecars_skipped: int = 0
    backup_path: Optional[Path] = None
    duration_seconds: float = 0.0
    skipped_paths: list[Path] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    message_id TEXT PRIMARY KEY,
    folder TEXT NOT NULL,
    imported_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_state (
    folder TEXT PRIMARY KEY,
    last_uid INTEGER NOT NULL,
    uid_validity INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_folder ON messages(folder);
"""


class ArchiveIndexStore:
    """SQLite-backed dedup index and cursor store with self-healing open."""

    def __init__(
        self,
        root: Path,
        *,
        events: Optional[ArchiveEventEmitter] = None,
        filename: str = INDEX_FILENAME,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ) -> None:
        """Initialize the store (call ``open`` or ``open_readonly`` before use).

        Args:
            root: Archive root directory holding the store file
            events: Optional event emitter for rebuild notifications
            filename: Store file name under ``root``
            busy_timeout: Seconds to wait for a lock held by another connection
        """
        self._root = Path(root)
        self._path = self._root / filename
        self._busy_timeout = busy_timeout
        self._events = events or ArchiveEventEmitter()
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def root(self) -> Path:
        return self._root

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> Optional[RebuildReport]:
        """Open the store, rebuilding it from sidecars when it is unreadable.

        Lock contention is not corruption: a store that another connection
        holds locked is left in place.

        Returns:
            The rebuild report when a rebuild was needed, None otherwise

        Raises:
            ArchiveLockedError: Another connection held the store locked past
                the busy timeout
        """
        self._root.mkdir(parents=True, exist_ok=True)
        try:
            self._connect_and_migrate()
        except sqlite3.DatabaseError as exc:
            if _is_lock_contention(exc):
                raise ArchiveLockedError(f"Index store {self._path} is locked by another connection") from exc
            logger.error(
                "Index store unreadable, rebuilding from sidecars",
                extra={"index_path": str(self._path), "error": str(exc)},
            )
            return self.rebuild(reason=f"corruption: {exc}")
        return None

    def open_readonly(self) -> None:
        """Open an existing store for reading only.

        Never migrates, rebuilds or moves the store file, so it is safe while
        a sync is writing to the same archive.

        Raises:
            FileNotFoundError: The store file does not exist
            ArchiveLockedError: Another connection held the store locked
            IndexCorruptionError: The store file cannot be read
        """
        if not self._path.exists():
            raise FileNotFoundError(f"No index store at {self._path}")
        uri = f"{self._path.resolve().as_uri()}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, timeout=self._busy_timeout, check_same_thread=False)
        try:
            conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            conn.execute("SELECT COUNT(*) FROM sync_state").fetchone()
        except sqlite3.DatabaseError as exc:
            conn.close()
            if _is_lock_contention(exc):
                raise ArchiveLockedError(f"Index store {self._path} is locked by another connection") from exc
            raise IndexCorruptionError(f"Index store {self._path} is unreadable: {exc}") from exc
        self._conn = conn

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.commit()
        finally:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "ArchiveIndexStore":
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _connect_and_migrate(self) -> None:
        conn = sqlite3.connect(str(self._path), timeout=self._busy_timeout, check_same_thread=False)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.executescript(SCHEMA)
            conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            conn.execute("SELECT COUNT(*) FROM sync_state").fetchone()
        except sqlite3.DatabaseError:
            conn.close()
            raise
        self._conn = conn

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Index store is not open")
        return self._conn

    # -- rebuild -------------------------------------------------------------

    def rebuild(self, *, reason: str = "operator requested", backup_label: str = "corrupt") -> RebuildReport:
        """Move the current store file aside and rebuild it from sidecars.

        Args:
            reason: Why the rebuild happened, for logs and events
            backup_label: Marker placed in the backup filename

        Returns:
            Report with counts and the backup location

        Raises:
            IndexCorruptionError: A fresh store could not be created either
        """
        start = time.perf_counter()
        report = RebuildReport(reason=reason)

        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error:
                logger.warning("Error closing index store before rebuild", exc_info=True)
            self._conn = None

        report.backup_path = self._move_aside(backup_label)
        self._events.emit(
            ArchiveAuditEvents.REBUILD_TRIGGERED,
            status="started",
            reason=reason,
            backup_path=str(report.backup_path) if report.backup_path else None,
        )

        try:
            self._connect_and_migrate()
        except sqlite3.DatabaseError as exc:
            raise IndexCorruptionError(f"Cannot create a fresh index at {self._path}: {exc}") from exc
        conn = self._require_conn()

        logger.info("Rebuilding index from sidecars", extra={"archive_root": str(self._root)})
        pending = 0
        for result in iter_sidecars(self._root):
            if result.sidecar is None:
                logger.warning(
                    "Skipping malformed sidecar %s: %s",
                    result.path,
                    result.error,
                )
                report.sidecars_skipped += 1
                report.skipped_paths.append(result.path)
                continue
            cur = conn.execute(
                "INSERT OR IGNORE INTO messages (message_id, folder, imported_at) VALUES (?, ?, ?)",
                (
                    result.sidecar.message_id,
                    result.sidecar.folder,
                    _utcnow().isoformat(),
                ),
            )
            report.records_indexed += cur.rowcount
            pending += 1
            if pending >= REBUILD_COMMIT_INTERVAL:
                conn.commit()
                pending = 0
        conn.commit()

        report.duration_seconds = time.perf_counter() - start
        logger.info(
            "Index rebuild complete. Re-indexed %d messages",
            report.records_indexed,
            extra={
                "records_indexed": report.records_indexed,
                "sidecars_skipped": report.sidecars_skipped,
            },
        )
        self._events.emit(
            ArchiveAuditEvents.REBUILD_TRIGGERED,
            status="completed",
            reason=reason,
            records_indexed=report.records_indexed,
            sidecars_skipped=report.sidecars_skipped,
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report

    def _move_aside(self, label: str) -> Optional[Path]:
        if not self._path.exists():
            return None
        stamp = _utcnow().strftime("%Y%m%dT%H%M%S%fZ")
        backup = self._path.with_name(f"{self._path.name}.{label}.{stamp}")
        os.rename(self._path, backup)
        for suffix in ("-wal", "-shm"):
            companion = self._path.with_name(self._path.name + suffix)
            if companion.exists():
                os.rename(companion, backup.with_name(backup.name + suffix))
        logger.warning("Moved index store aside to %s", backup)
        return backup

    # -- messages ------------------------------------------------------------

    def message_exists(self, message_id: str) -> bool:
        if not message_id:
            return False
        row = self._require_conn().execute(
            "SELECT 1 FROM messages WHERE message_id = ? LIMIT 1",
            (message_id,),
        ).fetchone()
        return row is not None

    def insert_message(self, message_id: str, folder: str, imported_at: Optional[datetime] = None) -> bool:
        """Insert a dedup record; returns False when it already existed."""
        conn = self._require_conn()
        with conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO messages (message_id, folder, imported_at) VALUES (?, ?, ?)",
                (message_id, folder, (imported_at or _utcnow()).isoformat()),
            )
        return cur.rowcount == 1

    def fetch_message(self, message_id: str) -> Optional[MessageRecord]:
        row = self._require_conn().execute(
            "SELECT message_id, folder, imported_at FROM messages WHERE message_id = ?",
            (message_id,),
        ).fetchone()
        if not row:
            return None
        return MessageRecord(
            message_id=row[0],
            folder=row[1],
            imported_at=datetime.fromisoformat(row[2]),
        )

    def count_messages(self, folder: Optional[str] = None) -> int:
        conn = self._require_conn()
        if folder is None:
            row = conn.execute("SELECT COUNT(*) FROM messages").fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) FROM messages WHERE folder = ?", (folder,)).fetchone()
        return int(row[0])

    def statistics(self) -> Dict[str, int]:
        """Message counts per folder."""
        rows = self._require_conn().execute(
            "SELECT folder, COUNT(*) FROM messages GROUP BY folder ORDER BY folder"
        ).fetchall()
        return {row[0]: int(row[1]) for row in rows}

    # -- cursors -------------------------------------------------------------

    def fetch_cursor(self, folder: str) -> Optional[SyncCursor]:
        row = self._require_conn().execute(
            "SELECT folder, last_uid, uid_validity FROM sync_state WHERE folder = ?",
            (folder,),
        ).fetchone()
        if not row:
            return None
        return SyncCursor(folder=row[0], last_uid=row[1], uid_validity=row[2])

    def upsert_cursor(self, folder: str, last_uid: int, uid_validity: int) -> bool:
        """Conditionally store a cursor.

        The row changes only when ``last_uid`` is greater than the stored
        value or ``uid_validity`` differs, so an out-of-order completion can
        never move a cursor backwards within one validity epoch.

        Returns:
            True if the stored cursor changed
        """
        conn = self._require_conn()
        with conn:
            cur = conn.execute(
                """
                INSERT INTO sync_state (folder, last_uid, uid_validity)
                VALUES (?, ?, ?)
                ON CONFLICT(folder) DO UPDATE SET
                    last_uid = excluded.last_uid,
                    uid_validity = excluded.uid_validity
                WHERE sync_state.last_uid < excluded.last_uid
                   OR sync_state.uid_validity != excluded.uid_validity
                """,
                (folder, last_uid, uid_validity),
            )
        return cur.rowcount > 0

    def iter_cursors(self) -> Iterator[SyncCursor]:
        rows = self._require_conn().execute(
            "SELECT folder, last_uid, uid_validity FROM sync_state ORDER BY folder"
        ).fetchall()
        for row in rows:
            yield SyncCursor(folder=row[0], last_uid=row[1], uid_validity=row[2])


def _is_lock_contention(exc: sqlite3.DatabaseError) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "ArchiveIndexStore",
    "INDEX_FILENAME",
    "MessageRecord",
    "RebuildReport",
    "SyncCursor",
]
