"""Metadata sidecars stored beside each archived message.

A sidecar is the durable source of truth for the index: the index store can
always be reconstructed by walking the sidecars under the archive root.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .identifiers import SIDECAR_SUFFIX


class MetadataSidecar(BaseModel):
    """Display metadata for one archived message."""

    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(..., description="Normalized message identifier")
    subject: Optional[str] = Field(default=None, description="Decoded Subject header")
    sender: Optional[str] = Field(default=None, alias="from", description="From header")
    recipients: Optional[str] = Field(default=None, alias="to", description="To header")
    date: datetime = Field(..., description="Header date, or received time when absent")
    folder: str = Field(..., description="Remote folder the message was archived from")
    archived_at: datetime = Field(..., description="When the entry was committed")
    has_attachments: bool = Field(default=False, description="Top-level multipart/mixed")

    @field_validator("message_id", "folder")
    @classmethod
    def _require_text(cls, value: str) -> str:  # type: ignore[override]
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


@dataclass(frozen=True)
class SidecarScanResult:
    """One sidecar file encountered during an archive walk."""

    path: Path
    sidecar: Optional[MetadataSidecar] = None
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.sidecar is not None


def sidecar_path_for(archive_path: Path) -> Path:
    return archive_path.with_name(archive_path.name + SIDECAR_SUFFIX)


def write_sidecar(path: Path, sidecar: MetadataSidecar) -> bool:
    """Atomically write ``sidecar`` to ``path``.

    Returns False without touching anything when a sidecar already exists.
    """
    if path.exists():
        return False
    staging = path.with_name(path.name + ".tmp")
    with staging.open("w", encoding="utf-8") as fp:
        fp.write(sidecar.to_json())
        fp.flush()
        os.fsync(fp.fileno())
    os.replace(staging, path)
    return True


def read_sidecar(path: Path) -> MetadataSidecar:
    return MetadataSidecar.model_validate_json(path.read_text(encoding="utf-8"))


def iter_sidecars(root: Path) -> Iterator[SidecarScanResult]:
    """Lazily walk every sidecar under ``root``.

    Unreadable or invalid sidecars are yielded with ``error`` set rather than
    raised, so a single bad file never stops a walk. Calling again restarts
    the walk from the beginning.
    """
    if not root.exists():
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            if not name.endswith(SIDECAR_SUFFIX):
                continue
            path = Path(dirpath) / name
            try:
                yield SidecarScanResult(path=path, sidecar=read_sidecar(path))
            except (OSError, UnicodeDecodeError, ValidationError, ValueError) as exc:
                yield SidecarScanResult(path=path, error=str(exc))


__all__ = [
    "MetadataSidecar",
    "SidecarScanResult",
    "iter_sidecars",
    "read_sidecar",
    "sidecar_path_for",
    "write_sidecar",
]
