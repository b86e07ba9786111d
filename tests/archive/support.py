"""In-memory mailbox, message builder and fake clock used by archive tests."""

from __future__ import annotations

import imaplib
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from mailvault.archive.mailbox import Envelope, FolderInfo, FolderStatus

BASE_DATE = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


# ============================================================================
# Message builder
# ============================================================================


def build_message(
    message_id: Optional[str] = "<msg-1@example.com>",
    subject: str = "Quarterly report",
    sender: str = "Alice <alice@example.com>",
    to: str = "bob@example.com",
    date_header: Optional[str] = "Mon, 01 Jan 2024 10:00:00 +0000",
    body: str = "Hello Bob,\r\nsee attached.\r\n",
    multipart: bool = False,
) -> bytes:
    """Build a raw RFC 822 message."""
    lines = []
    if message_id is not None:
        lines.append(f"Message-ID: {message_id}")
    lines.append(f"Subject: {subject}")
    lines.append(f"From: {sender}")
    lines.append(f"To: {to}")
    if date_header is not None:
        lines.append(f"Date: {date_header}")
    lines.append("MIME-Version: 1.0")
    if multipart:
        lines.append('Content-Type: multipart/mixed; boundary="XYZ"')
        payload = (
            "--XYZ\r\nContent-Type: text/plain\r\n\r\n"
            f"{body}\r\n"
            "--XYZ\r\nContent-Type: application/pdf\r\n"
            'Content-Disposition: attachment; filename="report.pdf"\r\n\r\n'
            "JVBERi0xLjQK\r\n--XYZ--\r\n"
        )
    else:
        lines.append("Content-Type: text/plain; charset=utf-8")
        payload = body
    return ("\r\n".join(lines) + "\r\n\r\n" + payload).encode("utf-8")


async def iter_chunks(raw: bytes, size: int = 16) -> AsyncIterator[bytes]:
    for offset in range(0, len(raw), size):
        yield raw[offset : offset + size]


# ============================================================================
# Fake remote mailbox
# ============================================================================


@dataclass
class FakeMessage:
    uid: int
    raw: bytes
    message_id: Optional[str]
    internal_date: datetime


@dataclass
class FakeFolder:
    name: str
    uid_validity: int = 1
    flags: Tuple[str, ...] = ()
    messages: Dict[int, FakeMessage] = field(default_factory=dict)


class FakeMailbox:
    """In-memory ``RemoteMailbox`` with injectable faults.

    Only read operations exist, so any attempt to mutate the server would
    fail with AttributeError.
    """

    def __init__(self, chunk_size: int = 32) -> None:
        self.folders: Dict[str, FakeFolder] = {}
        self.chunk_size = chunk_size
        self.selected: Optional[str] = None
        self.closed = False
        self.body_fetches: List[Tuple[str, int]] = []
        self.search_calls: List[Tuple[str, int, Optional[date], Optional[date]]] = []
        self.body_errors: Dict[int, BaseException] = {}
        self.body_error_after_first_chunk = False
        self.vanished_uids: set[int] = set()
        self.open_errors: Dict[str, BaseException] = {}

    # -- setup ---------------------------------------------------------------

    def add_folder(self, name: str, uid_validity: int = 1, flags: Sequence[str] = ()) -> FakeFolder:
        folder = FakeFolder(name=name, uid_validity=uid_validity, flags=tuple(flags))
        self.folders[name] = folder
        return folder

    def add_message(
        self,
        folder: str,
        uid: int,
        raw: Optional[bytes] = None,
        *,
        message_id: Optional[str] = "auto",
        internal_date: Optional[datetime] = None,
    ) -> FakeMessage:
        if message_id == "auto":
            message_id = f"<uid-{uid}@{folder.lower()}.example.com>"
        if raw is None:
            raw = build_message(message_id=message_id, subject=f"Message {uid}")
        message = FakeMessage(
            uid=uid,
            raw=raw,
            message_id=message_id,
            internal_date=internal_date or BASE_DATE + timedelta(minutes=uid),
        )
        self.folders.setdefault(folder, FakeFolder(name=folder)).messages[uid] = message
        return message

    # -- RemoteMailbox -------------------------------------------------------

    async def list_folders(self) -> List[FolderInfo]:
        return [FolderInfo(name=f.name, flags=f.flags, delimiter="/") for f in self.folders.values()]

    async def open_folder(self, name: str) -> FolderStatus:
        if name in self.open_errors:
            raise self.open_errors[name]
        if name not in self.folders:
            raise imaplib.IMAP4.error(f"select failed: NO [NONEXISTENT] {name}")
        self.selected = name
        folder = self.folders[name]
        return FolderStatus(name=name, uid_validity=folder.uid_validity, exists=len(folder.messages))

    async def search_uids(
        self,
        after_uid: int = 0,
        since: Optional[date] = None,
        before: Optional[date] = None,
    ) -> List[int]:
        assert self.selected is not None
        self.search_calls.append((self.selected, after_uid, since, before))
        result = []
        for uid, message in self.folders[self.selected].messages.items():
            if uid <= after_uid:
                continue
            day = message.internal_date.date()
            if since is not None and day < since:
                continue
            if before is not None and day >= before:
                continue
            result.append(uid)
        return sorted(result)

    async def fetch_envelopes(self, uids: Sequence[int]) -> Dict[int, Envelope]:
        assert self.selected is not None
        messages = self.folders[self.selected].messages
        envelopes = {}
        for uid in uids:
            if uid in self.vanished_uids or uid not in messages:
                continue
            message = messages[uid]
            envelopes[uid] = Envelope(
                uid=uid,
                message_id=message.message_id,
                internal_date=message.internal_date,
                size=len(message.raw),
            )
        return envelopes

    async def iter_message(self, uid: int, size_hint: Optional[int] = None) -> AsyncIterator[bytes]:
        assert self.selected is not None
        self.body_fetches.append((self.selected, uid))
        raw = self.folders[self.selected].messages[uid].raw
        error = self.body_errors.get(uid)
        if error is not None and not self.body_error_after_first_chunk:
            raise error
        for index, offset in enumerate(range(0, len(raw), self.chunk_size)):
            if error is not None and index == 1:
                raise error
            yield raw[offset : offset + self.chunk_size]

    async def close(self) -> None:
        self.closed = True
        self.selected = None


# ============================================================================
# Deterministic time
# ============================================================================


class FakeClock:
    """Monotonic clock advanced explicitly or by ``FakeSleeper``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleeper:
    """Async sleep replacement that records delays and advances a clock."""

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


class RecordingRecorder:
    """EventRecorder that keeps events in memory."""

    def __init__(self) -> None:
        self.events = []

    def record(self, event) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [event.action for event in self.events]


def eml_files(root: Path) -> List[Path]:
    return sorted(path for path in root.rglob("*.eml") if path.parent.name == "cur")


def sidecar_files(root: Path) -> List[Path]:
    return sorted(root.rglob("*.meta.json"))
