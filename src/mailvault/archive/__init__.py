"""Incremental, read-only mailbox archiving.

Public entry point is :class:`ArchiveSession`; the remaining exports are the
building blocks it composes.
"""

from .config import ArchiveConfig
from .cursor import CursorPosition, SyncCursorManager
from .errors import (
    ArchiveError,
    ArchiveLockedError,
    AuthenticationFailedError,
    CircuitOpenError,
    ConnectionFaultError,
    FailureKind,
    MessagePersistError,
    OperationCancelledError,
    classify_exception,
)
from .fetcher import FolderSyncer, FolderSyncResult, FolderSyncState
from .folders import FolderEnumerator
from .index_store import ArchiveIndexStore, MessageRecord, RebuildReport, SyncCursor
from .mailbox import Envelope, FolderInfo, FolderStatus, ImapRemoteMailbox, RemoteMailbox, connect_mailbox
from .resilience import BreakerState, CircuitBreakerPolicy, RetryForeverPolicy
from .session import ArchiveRunReport, ArchiveSession
from .sidecar import MetadataSidecar
from .storage import MaildirStorageWriter, SaveOutcome, SaveResult

__all__ = [
    "ArchiveConfig",
    "ArchiveError",
    "ArchiveIndexStore",
    "ArchiveLockedError",
    "ArchiveRunReport",
    "ArchiveSession",
    "AuthenticationFailedError",
    "BreakerState",
    "CircuitBreakerPolicy",
    "CircuitOpenError",
    "ConnectionFaultError",
    "CursorPosition",
    "Envelope",
    "FailureKind",
    "FolderEnumerator",
    "FolderInfo",
    "FolderStatus",
    "FolderSyncResult",
    "FolderSyncState",
    "FolderSyncer",
    "ImapRemoteMailbox",
    "MaildirStorageWriter",
    "MessagePersistError",
    "MessageRecord",
    "MetadataSidecar",
    "OperationCancelledError",
    "RebuildReport",
    "RemoteMailbox",
    "RetryForeverPolicy",
    "SaveOutcome",
    "SaveResult",
    "SyncCursor",
    "SyncCursorManager",
    "classify_exception",
    "connect_mailbox",
]
