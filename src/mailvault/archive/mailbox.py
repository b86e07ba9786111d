"""Read-only remote mailbox access.

The archive core talks to the server exclusively through ``RemoteMailbox``.
``ImapRemoteMailbox`` is the imapclient-backed implementation; it exposes
read operations only, every folder is selected read-only and bodies are
fetched with ``BODY.PEEK`` so the ``\\Seen`` flag is never set.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, TypeVar

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import LoginError

from .config import ArchiveConfig
from .errors import AuthenticationFailedError, ConnectionFaultError, MessageUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENVELOPE_FETCH_ITEMS = ["ENVELOPE", "INTERNALDATE", "RFC822.SIZE"]


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FolderInfo:
    name: str
    flags: Tuple[str, ...] = ()
    delimiter: Optional[str] = None

    @property
    def selectable(self) -> bool:
        lowered = {flag.lower() for flag in self.flags}
        return "\\noselect" not in lowered and "\\nonexistent" not in lowered


@dataclass(frozen=True)
class FolderStatus:
    """Result of opening a folder read-only."""

    name: str
    uid_validity: int
    exists: int = 0


@dataclass(frozen=True)
class Envelope:
    """Lightweight per-message metadata fetched without the body."""

    uid: int
    message_id: Optional[str]
    internal_date: datetime
    size: Optional[int] = None
    subject: Optional[str] = None


class RemoteMailbox(Protocol):
    """Read-only operations the archive core needs from a server."""

    async def list_folders(self) -> List[FolderInfo]:
        ...

    async def open_folder(self, name: str) -> FolderStatus:
        ...

    async def search_uids(
        self,
        after_uid: int = 0,
        since: Optional[date] = None,
        before: Optional[date] = None,
    ) -> List[int]:
        ...

    async def fetch_envelopes(self, uids: Sequence[int]) -> Dict[int, Envelope]:
        ...

    def iter_message(self, uid: int, size_hint: Optional[int] = None) -> AsyncIterator[bytes]:
        ...

    async def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# IMAP implementation
# ---------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Lifecycle states for an IMAP connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class ImapRemoteMailbox:
    """imapclient-backed ``RemoteMailbox`` with TLS enforcement."""

    config: ArchiveConfig

    client: Optional[IMAPClient] = field(default=None, init=False)
    state: ConnectionState = field(default=ConnectionState.DISCONNECTED, init=False)
    selected_folder: Optional[str] = field(default=None, init=False)
    _connect_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    async def connect(self) -> None:
        """Open the TLS connection and log in.

        Raises:
            AuthenticationFailedError: Credentials were rejected
            ConnectionFaultError: The server could not be reached in time
        """
        self.state = ConnectionState.CONNECTING
        abandoned = threading.Event()
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._connect_sync, abandoned),
                timeout=self.config.connect_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self.state = ConnectionState.FAILED
            await asyncio.to_thread(self._abandon_connect, abandoned)
            raise ConnectionFaultError(
                f"Timed out connecting to {self.config.server}:{self.config.port}"
            ) from exc
        except LoginError as exc:
            self.state = ConnectionState.FAILED
            raise AuthenticationFailedError(
                f"Authentication failed for {self.config.username}@{self.config.server}"
            ) from exc
        except OSError as exc:
            self.state = ConnectionState.FAILED
            raise ConnectionFaultError(
                f"Could not connect to {self.config.server}:{self.config.port}: {exc}"
            ) from exc
        self.state = ConnectionState.CONNECTED
        logger.info(
            "Connected to %s",
            self.config.server,
            extra={"server": self.config.server, "port": self.config.port},
        )

    def _connect_sync(self, abandoned: threading.Event) -> None:
        client = IMAPClient(
            host=self.config.server,
            port=self.config.port,
            ssl=True,
            ssl_context=self._create_ssl_context(),
            timeout=self.config.read_timeout_seconds,
            use_uid=True,
        )
        try:
            client.login(self.config.username, self.config.password.get_secret_value())
        except BaseException:
            _safe_logout(client)
            raise
        with self._connect_lock:
            if not abandoned.is_set():
                self.client = client
                return
        # The caller timed out while the login was still running.
        _safe_logout(client)

    def _abandon_connect(self, abandoned: threading.Event) -> None:
        with self._connect_lock:
            abandoned.set()
            client, self.client = self.client, None
        if client is not None:
            _safe_logout(client)

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context

    def _require_client(self) -> IMAPClient:
        if self.client is None:
            raise ConnectionFaultError("Mailbox is not connected")
        return self.client

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.config.read_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectionFaultError(
                f"IMAP operation timed out after {self.config.read_timeout_seconds}s"
            ) from exc

    async def list_folders(self) -> List[FolderInfo]:
        client = self._require_client()
        entries = await self._call(client.list_folders)
        folders: List[FolderInfo] = []
        for flags, delimiter, name in entries:
            folders.append(
                FolderInfo(
                    name=_to_text(name),
                    flags=tuple(_to_text(flag) for flag in flags),
                    delimiter=_to_text(delimiter) if delimiter else None,
                )
            )
        return folders

    async def open_folder(self, name: str) -> FolderStatus:
        client = self._require_client()
        response = await self._call(client.select_folder, name, readonly=True)
        self.selected_folder = name
        return FolderStatus(
            name=name,
            uid_validity=int(response.get(b"UIDVALIDITY", 0)),
            exists=int(response.get(b"EXISTS", 0)),
        )

    async def search_uids(
        self,
        after_uid: int = 0,
        since: Optional[date] = None,
        before: Optional[date] = None,
    ) -> List[int]:
        client = self._require_client()
        criteria: List[Any] = ["UID", f"{after_uid + 1}:*"] if after_uid > 0 else ["ALL"]
        if since is not None:
            criteria.extend(["SINCE", since])
        if before is not None:
            criteria.extend(["BEFORE", before])
        uids = await self._call(client.search, criteria)
        # "n:*" always matches the highest UID, even when it is below n.
        return sorted(int(uid) for uid in uids if int(uid) > after_uid)

    async def fetch_envelopes(self, uids: Sequence[int]) -> Dict[int, Envelope]:
        if not uids:
            return {}
        client = self._require_client()
        response = await self._call(client.fetch, list(uids), ENVELOPE_FETCH_ITEMS)
        envelopes: Dict[int, Envelope] = {}
        for uid, data in response.items():
            envelope = data.get(b"ENVELOPE")
            internal_date = data.get(b"INTERNALDATE")
            envelopes[int(uid)] = Envelope(
                uid=int(uid),
                message_id=_to_text(getattr(envelope, "message_id", None)),
                internal_date=_as_utc(internal_date),
                size=data.get(b"RFC822.SIZE"),
                subject=_to_text(getattr(envelope, "subject", None)),
            )
        return envelopes

    async def iter_message(self, uid: int, size_hint: Optional[int] = None) -> AsyncIterator[bytes]:
        """Yield the raw message in partial-fetch chunks.

        Reading stops only on a short or empty chunk. ``size_hint`` (the
        reported RFC822.SIZE) is advisory; servers that under-report it must
        not truncate the archived copy.
        """
        client = self._require_client()
        chunk_size = self.config.chunk_size_bytes
        offset = 0
        while True:
            item = f"BODY.PEEK[]<{offset}.{chunk_size}>"
            response = await self._call(client.fetch, [uid], [item])
            chunk = _extract_body(response.get(uid))
            if chunk is None:
                if offset == 0:
                    raise MessageUnavailableError(uid)
                break
            if chunk:
                yield chunk
            offset += len(chunk)
            if len(chunk) < chunk_size:
                break
        if size_hint is not None and offset != size_hint:
            logger.debug(
                "UID %d body is %d bytes, server reported %d",
                uid,
                offset,
                size_hint,
                extra={"uid": uid, "bytes": offset, "reported_size": size_hint},
            )

    async def close(self) -> None:
        client = self.client
        self.client = None
        self.selected_folder = None
        self.state = ConnectionState.DISCONNECTED
        if client is not None:
            await asyncio.to_thread(_safe_logout, client)


async def connect_mailbox(config: ArchiveConfig) -> ImapRemoteMailbox:
    """Create and connect an ``ImapRemoteMailbox``."""
    mailbox = ImapRemoteMailbox(config)
    await mailbox.connect()
    return mailbox


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_logout(client: IMAPClient) -> None:
    try:
        client.logout()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Error during logout", exc_info=exc)


def _extract_body(data: Optional[Dict[bytes, Any]]) -> Optional[bytes]:
    if not data:
        return None
    for key, value in data.items():
        if isinstance(key, bytes) and key.startswith(b"BODY["):
            if value is None:
                return None
            return bytes(value)
    return None


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    # imapclient normalises INTERNALDATE to naive local time.
    return value.astimezone(timezone.utc)


__all__ = [
    "ConnectionState",
    "Envelope",
    "FolderInfo",
    "FolderStatus",
    "ImapRemoteMailbox",
    "RemoteMailbox",
    "connect_mailbox",
]
