"""Maildir-style storage writer with atomic commits.

Layout under the archive root::

    <root>/<folder>/tmp/   staged downloads, never visible to readers
    <root>/<folder>/new/   created for maildir compatibility
    <root>/<folder>/cur/   finalized ``.eml`` files and their ``.meta.json`` sidecars

The rename from ``tmp/`` into ``cur/`` is the only commit point. The sidecar
is written after the rename and the index record after the sidecar, so
anything present in the index is fully present on disk.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email import policy
from email.message import Message
from email.parser import BytesHeaderParser
from email.utils import parsedate_to_datetime
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional

from .archive_events import ArchiveAuditEvents, ArchiveEventEmitter
from .errors import MessagePersistError
from .identifiers import (
    UNKNOWN_ID,
    fallback_message_id,
    folder_directory_name,
    generate_filename,
    normalize_message_id,
)
from .index_store import ArchiveIndexStore
from .sidecar import MetadataSidecar, read_sidecar, sidecar_path_for, write_sidecar

logger = logging.getLogger(__name__)

MAX_COLLISION_ATTEMPTS = 10
MAX_HEADER_BYTES = 256 * 1024
DIGEST_BLOCK_BYTES = 1024 * 1024
MAILDIR_SUBDIRS = ("cur", "new", "tmp")


class SaveOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class SaveResult:
    """What happened to one message handed to the writer."""

    outcome: SaveOutcome
    message_id: str
    path: Optional[Path] = None

    @property
    def stored(self) -> bool:
        return self.outcome is SaveOutcome.STORED


@dataclass(frozen=True)
class _PreparedMessage:
    staged: Path
    folder: str
    folder_dir: Path
    safe_id: str
    received_at: datetime
    sidecar: MetadataSidecar


class MaildirStorageWriter:
    """Turns a raw message byte stream into an archive entry plus sidecar."""

    def __init__(
        self,
        root: Path,
        index_store: ArchiveIndexStore,
        *,
        events: Optional[ArchiveEventEmitter] = None,
        hostname: Optional[str] = None,
    ) -> None:
        self._root = Path(root)
        self._index = index_store
        self._events = events or ArchiveEventEmitter()
        self._hostname = hostname

    @property
    def root(self) -> Path:
        return self._root

    async def message_exists(self, message_id: str) -> bool:
        return await asyncio.to_thread(self._index.message_exists, message_id)

    async def save_stream(
        self,
        chunks: AsyncIterator[bytes],
        message_id: Optional[str],
        received_at: datetime,
        folder: str,
    ) -> SaveResult:
        """Persist one message.

        Args:
            chunks: Raw RFC 822 bytes, consumed lazily
            message_id: Identifier from the envelope, may be empty
            received_at: Server receive time, used for naming and as the
                sidecar date when the header has none
            folder: Remote folder name

        Returns:
            ``STORED`` with the final path, or ``DUPLICATE`` when the message
            was already archived

        Raises:
            MessagePersistError: The message could not be written; nothing
                was committed and the staged file has been removed
        """
        caller_id = normalize_message_id(message_id)
        if caller_id != UNKNOWN_ID and await self.message_exists(caller_id):
            return SaveResult(SaveOutcome.DUPLICATE, caller_id)

        folder_dir = self._root / folder_directory_name(folder)
        staged = await self._stage(chunks, folder_dir, received_at, caller_id)

        try:
            headers = await asyncio.to_thread(_read_headers, staged)
            safe_id = caller_id
            if safe_id == UNKNOWN_ID:
                safe_id = normalize_message_id(_header_text(headers, "Message-ID"))
                if safe_id == UNKNOWN_ID:
                    digest = await asyncio.to_thread(_file_digest, staged)
                    safe_id = fallback_message_id(received_at, digest)
                if await self.message_exists(safe_id):
                    await asyncio.to_thread(_discard, staged)
                    return SaveResult(SaveOutcome.DUPLICATE, safe_id)
            sidecar = _build_sidecar(headers, safe_id, folder, received_at)
        except asyncio.CancelledError:
            await asyncio.shield(asyncio.to_thread(_discard, staged))
            raise
        except Exception as exc:  # noqa: BLE001
            await asyncio.to_thread(_discard, staged)
            raise MessagePersistError(
                f"Failed to parse staged message for {folder}: {exc}",
                message_id=caller_id,
            ) from exc

        prepared = _PreparedMessage(
            staged=staged,
            folder=folder,
            folder_dir=folder_dir,
            safe_id=safe_id,
            received_at=received_at,
            sidecar=sidecar,
        )
        # Once staging is complete the commit runs to the end even if the
        # caller is cancelled.
        result = await asyncio.shield(asyncio.to_thread(self._commit_sync, prepared))
        if result.stored:
            self._events.emit(
                ArchiveAuditEvents.MESSAGE_STORED,
                folder=folder,
                message_id=result.message_id,
            )
        return result

    # -- staging -------------------------------------------------------------

    async def _stage(
        self,
        chunks: AsyncIterator[bytes],
        folder_dir: Path,
        received_at: datetime,
        message_id: str,
    ) -> Path:
        try:
            await asyncio.to_thread(_ensure_maildir, folder_dir)
        except OSError as exc:
            raise MessagePersistError(
                f"Cannot create folder directories under {folder_dir}: {exc}",
                message_id=message_id,
            ) from exc

        stamp = int(received_at.timestamp())
        staged = folder_dir / "tmp" / f"{stamp}.{uuid.uuid4().hex}.tmp"
        try:
            fp = await asyncio.to_thread(staged.open, "xb")
        except OSError as exc:
            raise MessagePersistError(
                f"Failed to create staging file in {folder_dir}: {exc}",
                message_id=message_id,
            ) from exc

        # Errors from the chunk iterator belong to the transport and
        # propagate unchanged; only local write failures become per-message.
        try:
            with fp:
                async for chunk in chunks:
                    if chunk:
                        await asyncio.to_thread(_write_chunk, fp, chunk, message_id)
                await asyncio.to_thread(_flush_and_sync, fp, message_id)
        except BaseException:
            await asyncio.shield(asyncio.to_thread(_discard, staged))
            raise
        return staged

    # -- commit --------------------------------------------------------------

    def _commit_sync(self, prepared: _PreparedMessage) -> SaveResult:
        try:
            return self._commit_unchecked(prepared)
        except OSError as exc:
            _discard(prepared.staged)
            raise MessagePersistError(
                f"Failed to commit message {prepared.safe_id}: {exc}",
                message_id=prepared.safe_id,
            ) from exc

    def _commit_unchecked(self, prepared: _PreparedMessage) -> SaveResult:
        cur_dir = prepared.folder_dir / "cur"
        for attempt in range(MAX_COLLISION_ATTEMPTS + 1):
            name_id = prepared.safe_id if attempt == 0 else f"{prepared.safe_id}_{attempt}"
            final = cur_dir / generate_filename(prepared.received_at, name_id, self._hostname)
            if not final.exists():
                return self._promote(prepared, final)
            if self._belongs_to(final, prepared.safe_id):
                return self._heal(prepared, final)
            logger.debug(
                "Final path collision for %s, trying next suffix",
                prepared.safe_id,
                extra={"path": str(final), "attempt": attempt},
            )

        logger.warning(
            "Exhausted %d filename suffixes for %s; treating as already archived",
            MAX_COLLISION_ATTEMPTS,
            prepared.safe_id,
            extra={"folder": prepared.folder, "message_id": prepared.safe_id},
        )
        _discard(prepared.staged)
        self._index.insert_message(prepared.safe_id, prepared.folder)
        return SaveResult(SaveOutcome.DUPLICATE, prepared.safe_id)

    def _promote(self, prepared: _PreparedMessage, final: Path) -> SaveResult:
        final.parent.mkdir(parents=True, exist_ok=True)
        os.rename(prepared.staged, final)
        write_sidecar(sidecar_path_for(final), prepared.sidecar)
        self._index.insert_message(prepared.safe_id, prepared.folder)
        logger.debug(
            "Archived message %s",
            prepared.safe_id,
            extra={"folder": prepared.folder, "path": str(final)},
        )
        return SaveResult(SaveOutcome.STORED, prepared.safe_id, final)

    def _heal(self, prepared: _PreparedMessage, final: Path) -> SaveResult:
        """Index an entry a previous run finalized but never recorded."""
        _discard(prepared.staged)
        if write_sidecar(sidecar_path_for(final), prepared.sidecar):
            logger.info(
                "Restored missing sidecar for %s",
                prepared.safe_id,
                extra={"path": str(final)},
            )
        self._index.insert_message(prepared.safe_id, prepared.folder)
        return SaveResult(SaveOutcome.DUPLICATE, prepared.safe_id, final)

    @staticmethod
    def _belongs_to(final: Path, safe_id: str) -> bool:
        sidecar_path = sidecar_path_for(final)
        if not sidecar_path.exists():
            # Finalized by a run that crashed before writing its sidecar.
            return True
        try:
            return read_sidecar(sidecar_path).message_id == safe_id
        except (OSError, ValueError):
            return False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ensure_maildir(folder_dir: Path) -> None:
    for name in MAILDIR_SUBDIRS:
        (folder_dir / name).mkdir(parents=True, exist_ok=True)


def _write_chunk(fp: BinaryIO, chunk: bytes, message_id: str) -> None:
    try:
        fp.write(chunk)
    except OSError as exc:
        raise MessagePersistError(f"Failed to write staged message: {exc}", message_id=message_id) from exc


def _flush_and_sync(fp: BinaryIO, message_id: str) -> None:
    try:
        fp.flush()
        os.fsync(fp.fileno())
    except OSError as exc:
        raise MessagePersistError(f"Failed to flush staged message: {exc}", message_id=message_id) from exc


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove staged file %s: %s", path, exc)


def _file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fp:
        for block in iter(lambda: fp.read(DIGEST_BLOCK_BYTES), b""):
            digest.update(block)
    return digest.hexdigest()


def _read_headers(path: Path) -> Message:
    """Parse only the header block of a staged message."""
    lines: list[bytes] = []
    total = 0
    with path.open("rb") as fp:
        for line in fp:
            if line in (b"\r\n", b"\n"):
                break
            lines.append(line)
            total += len(line)
            if total >= MAX_HEADER_BYTES:
                break
    return BytesHeaderParser(policy=policy.default).parsebytes(b"".join(lines))


def _header_text(headers: Message, name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _build_sidecar(headers: Message, safe_id: str, folder: str, received_at: datetime) -> MetadataSidecar:
    return MetadataSidecar(
        message_id=safe_id,
        subject=_header_text(headers, "Subject"),
        sender=_header_text(headers, "From"),
        recipients=_header_text(headers, "To"),
        date=_parse_date(_header_text(headers, "Date")) or received_at,
        folder=folder,
        archived_at=datetime.now(timezone.utc),
        has_attachments=headers.get_content_type() == "multipart/mixed",
    )


__all__ = ["MaildirStorageWriter", "SaveOutcome", "SaveResult"]
