"""Tamper-evident audit log for archive runs.

Events are appended as JSON lines. Each line carries the hash of the previous
line (``chain_prev``) and its own canonical hash (``chain_hash``); the running
head of the chain is kept in a small manifest so ``verify`` can detect edits
or truncation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """Represents a structured audit event."""

    job_id: str
    source: str
    action: str
    status: str
    timestamp: datetime
    attempt: Optional[int] = None
    metadata: Dict[str, object] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "job_id": self.job_id,
            "source": self.source,
            "action": self.action,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.attempt is not None:
            payload["attempt"] = self.attempt
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@runtime_checkable
class EventRecorder(Protocol):
    """Narrow sink interface for structured events."""

    def record(self, event: AuditEvent) -> None:
        ...


@dataclass
class AuditLogger:
    """Writes append-only, hash-chained audit logs.

    Attributes:
        output_dir: Directory for audit log files
        filename: Name of the active audit log file
        max_bytes: Maximum log size before rotation
        manifest_name: Name of the manifest file holding the chain head
    """

    output_dir: Path
    filename: str = "audit.log"
    max_bytes: int = 5 * 1024 * 1024
    manifest_name: str = "audit_manifest.json"

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._path = self.output_dir / self.filename
        self._manifest_path = self.output_dir / self.manifest_name
        if not self._manifest_path.exists():
            self._save_manifest({"last_hash": None, "segment_start": None, "rotated": []})

    @property
    def path(self) -> Path:
        return self._path

    def record(self, event: AuditEvent) -> None:
        payload = event.to_payload()
        chained = self._augment_with_chain(payload)
        with self._path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(chained, separators=(",", ":"), default=str) + "\n")
        self._rotate_if_needed()

    def verify(self, *, path: Optional[Path] = None) -> bool:
        """Verify the integrity of the active log's hash chain.

        Returns:
            True if the chain is intact, False if any entry was altered
        """
        target = path or self._path
        if not target.exists():
            return True
        manifest = self._load_manifest()
        previous_hash = manifest.get("segment_start")
        last_seen = previous_hash
        for entry in _iter_json_lines(target):
            if entry.get("chain_prev") != previous_hash:
                return False
            if entry.get("chain_hash") != _compute_chain_hash(entry):
                return False
            previous_hash = entry.get("chain_hash")
            last_seen = previous_hash
        if path is None and last_seen != manifest.get("last_hash"):
            return False
        return True

    def iter_events(self, *, path: Optional[Path] = None) -> Iterable[Dict[str, object]]:
        target = path or self._path
        if not target.exists():
            return
        yield from _iter_json_lines(target)

    def _augment_with_chain(self, payload: Dict[str, object]) -> Dict[str, object]:
        manifest = self._load_manifest()
        augmented = dict(payload)
        augmented["chain_prev"] = manifest.get("last_hash")
        augmented["chain_hash"] = _compute_chain_hash(augmented)
        manifest["last_hash"] = augmented["chain_hash"]
        self._save_manifest(manifest)
        return augmented

    def _rotate_if_needed(self) -> None:
        if not self._path.exists():
            return
        if self._path.stat().st_size < self.max_bytes:
            return
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        rotated_name = self.output_dir / f"audit-{timestamp}.log"
        os.replace(self._path, rotated_name)
        manifest = self._load_manifest()
        rotated = list(manifest.get("rotated", []))
        rotated.append(
            {
                "path": rotated_name.name,
                "closed_at": datetime.now(timezone.utc).isoformat(),
                "hash": manifest.get("last_hash"),
            }
        )
        manifest["rotated"] = rotated
        manifest["segment_start"] = manifest.get("last_hash")
        self._save_manifest(manifest)

    def _load_manifest(self) -> Dict[str, object]:
        return json.loads(self._manifest_path.read_text(encoding="utf-8"))

    def _save_manifest(self, manifest: Dict[str, object]) -> None:
        self._manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")


def _compute_chain_hash(payload: Dict[str, object]) -> str:
    canonical = json.dumps(
        {k: payload[k] for k in sorted(payload) if k != "chain_hash"},
        separators=(",", ":"),
        default=str,
    )
    return sha256(canonical.encode("utf-8")).hexdigest()


def _iter_json_lines(path: Path) -> Iterable[Dict[str, object]]:
    with path.open("r", encoding="utf-8") as fp:
        for line in fp:
            line = line.strip()
            if not line:
                continue
            yield json.loads(line)


__all__ = ["AuditEvent", "AuditLogger", "EventRecorder"]
