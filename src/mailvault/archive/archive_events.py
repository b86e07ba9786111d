"""Archive-specific audit event names and a failure-tolerant emitter.

The archive core behaves identically whether or not a recorder is attached:
``ArchiveEventEmitter.emit`` is a no-op without a recorder and never lets a
recorder failure escape into the sync path.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from ..telemetry.audit import AuditEvent, EventRecorder

logger = logging.getLogger(__name__)

EVENT_SOURCE = "mailvault_archive"


class ArchiveAuditEvents:
    """Event names emitted by the archive core."""

    SESSION_STARTED = "archive_session_started"
    SESSION_COMPLETED = "archive_session_completed"
    FOLDER_PROCESSED = "archive_folder_processed"
    BATCH_PERSISTED = "archive_batch_persisted"
    CURSOR_ADVANCED = "archive_cursor_advanced"
    CURSOR_RESET = "archive_cursor_reset"
    MESSAGE_STORED = "archive_message_stored"
    MESSAGE_FAILED = "archive_message_failed"
    REBUILD_TRIGGERED = "archive_index_rebuild_triggered"
    RETRY_ATTEMPTED = "archive_retry_attempted"
    BREAKER_OPENED = "archive_breaker_opened"
    BREAKER_CLOSED = "archive_breaker_closed"


class ArchiveEventEmitter:
    """Binds an optional recorder to one archive run."""

    def __init__(
        self,
        recorder: Optional[EventRecorder] = None,
        *,
        run_id: Optional[str] = None,
    ) -> None:
        self._recorder = recorder
        self.run_id = run_id or uuid.uuid4().hex

    @property
    def enabled(self) -> bool:
        return self._recorder is not None

    def emit(
        self,
        action: str,
        *,
        status: str = "success",
        attempt: Optional[int] = None,
        **metadata: object,
    ) -> None:
        if self._recorder is None:
            return
        event = AuditEvent(
            job_id=self.run_id,
            source=EVENT_SOURCE,
            action=action,
            status=status,
            timestamp=datetime.now(timezone.utc),
            attempt=attempt,
            metadata={key: value for key, value in metadata.items() if value is not None},
        )
        try:
            self._recorder.record(event)
        except Exception:  # noqa: BLE001
            logger.debug("Event recorder failed for %s", action, exc_info=True)


__all__ = ["ArchiveAuditEvents", "ArchiveEventEmitter", "EVENT_SOURCE"]
