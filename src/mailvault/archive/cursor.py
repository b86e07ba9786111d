"""Per-folder sync cursor with UIDVALIDITY reset detection."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .archive_events import ArchiveAuditEvents, ArchiveEventEmitter
from .index_store import ArchiveIndexStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CursorPosition:
    """Where incremental sync resumes in a folder."""

    last_uid: int
    is_reset: bool = False
    stored_validity: Optional[int] = None


class SyncCursorManager:
    """Reads and advances folder cursors through the index store.

    A cursor only moves forward within one UIDVALIDITY epoch. When the server
    reports a different UIDVALIDITY the stored UIDs are meaningless, so the
    cursor restarts at zero and deduplication absorbs the full rescan.
    """

    def __init__(
        self,
        store: ArchiveIndexStore,
        events: Optional[ArchiveEventEmitter] = None,
    ) -> None:
        self._store = store
        self._events = events or ArchiveEventEmitter()

    async def get_cursor(self, folder: str, uid_validity: int) -> CursorPosition:
        """Return the resume point for ``folder`` under ``uid_validity``."""
        stored = await asyncio.to_thread(self._store.fetch_cursor, folder)
        if stored is None:
            return CursorPosition(last_uid=0)

        if stored.uid_validity == uid_validity:
            return CursorPosition(last_uid=stored.last_uid, stored_validity=stored.uid_validity)

        logger.warning(
            "UIDVALIDITY changed for %s (%s -> %s); rescanning from UID 0",
            folder,
            stored.uid_validity,
            uid_validity,
            extra={
                "folder": folder,
                "old_uid_validity": stored.uid_validity,
                "new_uid_validity": uid_validity,
                "discarded_last_uid": stored.last_uid,
            },
        )
        # Persist the new epoch now so the reset is reported once.
        await asyncio.to_thread(self._store.upsert_cursor, folder, 0, uid_validity)
        self._events.emit(
            ArchiveAuditEvents.CURSOR_RESET,
            folder=folder,
            old_uid_validity=stored.uid_validity,
            new_uid_validity=uid_validity,
        )
        return CursorPosition(last_uid=0, is_reset=True, stored_validity=stored.uid_validity)

    async def advance_cursor(self, folder: str, uid: int, uid_validity: int) -> bool:
        """Move the cursor forward to ``uid``; returns True if it moved."""
        if uid <= 0:
            return False
        changed = await asyncio.to_thread(self._store.upsert_cursor, folder, uid, uid_validity)
        if changed:
            logger.debug(
                "Advanced cursor for %s to %d",
                folder,
                uid,
                extra={"folder": folder, "last_uid": uid, "uid_validity": uid_validity},
            )
            self._events.emit(
                ArchiveAuditEvents.CURSOR_ADVANCED,
                folder=folder,
                last_uid=uid,
                uid_validity=uid_validity,
            )
        return changed


__all__ = ["CursorPosition", "SyncCursorManager"]
