"""Exception hierarchy and failure classification for the archive core."""

from __future__ import annotations

import asyncio
import imaplib
import socket
import ssl
from enum import Enum
from typing import Optional

from imapclient.exceptions import LoginError, ProtocolError


class ArchiveError(Exception):
    """Base exception for archive errors."""


class AuthenticationFailedError(ArchiveError):
    """Raised when the server rejects the configured credentials.

    Never retried: fixing it requires new credentials, not patience.
    """


class ConnectionFaultError(ArchiveError):
    """Raised for connection-level faults (resets, timeouts, broken streams)."""


class CircuitOpenError(ConnectionFaultError):
    """Raised while the circuit breaker is open and failing fast."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Circuit breaker open; next attempt permitted in {retry_after:.1f}s")
        self.retry_after = retry_after


class MessagePersistError(ArchiveError):
    """Raised when a single message cannot be written to the archive."""

    def __init__(self, message: str, *, message_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message_id = message_id


class MessageUnavailableError(ArchiveError):
    """Raised when the server returns no content for a requested UID."""

    def __init__(self, uid: int) -> None:
        super().__init__(f"Server returned no content for UID {uid}")
        self.uid = uid


class IndexCorruptionError(ArchiveError):
    """Raised when the index store file cannot be opened or migrated."""


class ArchiveLockedError(ArchiveError):
    """Raised when another process holds the archive lock."""


class OperationCancelledError(ArchiveError):
    """Raised when an operator cancellation interrupts a retry wait."""


class InvalidStateTransitionError(ValueError):
    """Raised when the folder sync state machine is driven out of order."""


class FailureKind(str, Enum):
    """Failure classes that decide where an exception is handled."""

    AUTHENTICATION = "authentication"
    CONNECTION = "connection"
    MESSAGE = "message"
    CANCELLED = "cancelled"


_CONNECTION_ERRORS = (
    ConnectionFaultError,
    ProtocolError,
    imaplib.IMAP4.abort,
    asyncio.TimeoutError,
    TimeoutError,
    socket.timeout,
    ssl.SSLError,
    ConnectionError,
    EOFError,
)


def classify_exception(exc: BaseException) -> FailureKind:
    """Map an exception onto the handling layer responsible for it.

    Connection faults belong to the session wrapper, authentication faults are
    fatal, everything else is a per-message fault absorbed by the fetcher.
    """
    if isinstance(exc, (asyncio.CancelledError, OperationCancelledError)):
        return FailureKind.CANCELLED
    if isinstance(exc, (AuthenticationFailedError, LoginError)):
        return FailureKind.AUTHENTICATION
    if isinstance(exc, imaplib.IMAP4.error) and "AUTHENTICATIONFAILED" in str(exc).upper():
        return FailureKind.AUTHENTICATION
    if isinstance(exc, (MessagePersistError, MessageUnavailableError)):
        return FailureKind.MESSAGE
    if isinstance(exc, _CONNECTION_ERRORS):
        return FailureKind.CONNECTION
    # Raw OSErrors only reach this point from the transport; the storage
    # writer wraps its own filesystem errors in MessagePersistError.
    if isinstance(exc, OSError):
        return FailureKind.CONNECTION
    return FailureKind.MESSAGE


__all__ = [
    "ArchiveError",
    "ArchiveLockedError",
    "AuthenticationFailedError",
    "CircuitOpenError",
    "ConnectionFaultError",
    "FailureKind",
    "IndexCorruptionError",
    "InvalidStateTransitionError",
    "MessagePersistError",
    "MessageUnavailableError",
    "OperationCancelledError",
    "classify_exception",
]
