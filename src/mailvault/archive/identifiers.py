"""Message identifier normalization and archive file naming.

Identifiers arrive from untrusted headers and end up inside filenames, so
every value that reaches the filesystem passes through this module first.
"""

from __future__ import annotations

import hashlib
import re
import socket
from datetime import datetime, timezone
from typing import Optional

UNKNOWN_ID = "unknown"
MAX_MESSAGE_ID_LENGTH = 100
HASH_SUFFIX_LENGTH = 8
MAX_FOLDER_NAME_LENGTH = 100
MAX_HOSTNAME_LENGTH = 20
MAILDIR_INFO_SUFFIX = ":2,S"
ARCHIVE_EXTENSION = ".eml"
SIDECAR_SUFFIX = ".meta.json"

_RESERVED_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')


def compute_hash(value: str) -> str:
    """Return the lowercase hex SHA-256 digest of ``value``."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_message_id(raw: Optional[str]) -> str:
    """Normalize a Message-ID into a filesystem-safe dedup key.

    Reserved and separator characters become ``_``, surrounding whitespace and
    angle brackets are trimmed, the result is case-folded, and overlong values
    keep a prefix plus a short hash of the whole value.
    """
    if raw is None or not raw.strip():
        return UNKNOWN_ID

    # Brackets are trimmed before substitution so "<id@host>" keeps its shape.
    normalized = raw.strip().strip("<>").strip()
    normalized = _RESERVED_CHARS.sub("_", normalized)
    normalized = normalized.strip("_ ").lower()

    if normalized in {"", ".", ".."}:
        return UNKNOWN_ID

    if len(normalized) > MAX_MESSAGE_ID_LENGTH:
        digest = compute_hash(normalized)[:HASH_SUFFIX_LENGTH]
        keep = MAX_MESSAGE_ID_LENGTH - HASH_SUFFIX_LENGTH - 1
        normalized = f"{normalized[:keep]}_{digest}"

    return normalized


def sanitize_for_filename(value: Optional[str], max_length: int) -> str:
    """Collapse a display name into ``[A-Za-z0-9._-]`` characters."""
    if value is None or not value.strip():
        return UNKNOWN_ID

    chars: list[str] = []
    for char in value:
        if char.isalnum() or char in "-_.":
            chars.append(char)
        elif chars and chars[-1] != "_":
            chars.append("_")
        if len(chars) >= max_length:
            break

    result = "".join(chars).strip("_")
    if result in {"", ".", ".."}:
        return UNKNOWN_ID
    return result


def fallback_message_id(received_at: datetime, content_digest: str) -> str:
    """Derive a stable identifier for messages that carry no Message-ID.

    ``content_digest`` is a hash of the raw message, so distinct messages
    received in the same second get distinct identifiers while a re-fetch of
    the same message maps to the same one.
    """
    return compute_hash(f"{_as_utc(received_at).isoformat()}\n{content_digest}")[:16]


def folder_directory_name(folder: str) -> str:
    return sanitize_for_filename(folder, MAX_FOLDER_NAME_LENGTH)


def host_discriminator(hostname: Optional[str] = None) -> str:
    return sanitize_for_filename(hostname or socket.gethostname(), MAX_HOSTNAME_LENGTH)


def generate_filename(received_at: datetime, safe_id: str, hostname: Optional[str] = None) -> str:
    """Build the final archive filename.

    Format: ``<unix seconds>.<safe id>.<host>:2,S.eml``
    """
    timestamp = int(_as_utc(received_at).timestamp())
    return f"{timestamp}.{safe_id}.{host_discriminator(hostname)}{MAILDIR_INFO_SUFFIX}{ARCHIVE_EXTENSION}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = [
    "ARCHIVE_EXTENSION",
    "MAX_MESSAGE_ID_LENGTH",
    "SIDECAR_SUFFIX",
    "UNKNOWN_ID",
    "compute_hash",
    "fallback_message_id",
    "folder_directory_name",
    "generate_filename",
    "host_discriminator",
    "normalize_message_id",
    "sanitize_for_filename",
]
