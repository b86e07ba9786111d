"""Shared fixtures for archive tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from mailvault.archive.archive_events import ArchiveEventEmitter
from mailvault.archive.cursor import SyncCursorManager
from mailvault.archive.index_store import ArchiveIndexStore
from mailvault.archive.storage import MaildirStorageWriter

from tests.archive.support import FakeMailbox, RecordingRecorder


@pytest.fixture
def archive_root(tmp_path: Path) -> Path:
    return tmp_path / "archive"


@pytest.fixture
def recorder() -> RecordingRecorder:
    return RecordingRecorder()


@pytest.fixture
def events(recorder: RecordingRecorder) -> ArchiveEventEmitter:
    return ArchiveEventEmitter(recorder, run_id="test-run")


@pytest.fixture
def index_store(archive_root: Path, events: ArchiveEventEmitter):
    """Open index store, closed after the test."""
    store = ArchiveIndexStore(archive_root, events=events)
    store.open()
    yield store
    store.close()


@pytest.fixture
def storage(archive_root: Path, index_store: ArchiveIndexStore, events: ArchiveEventEmitter) -> MaildirStorageWriter:
    return MaildirStorageWriter(archive_root, index_store, events=events, hostname="testhost")


@pytest.fixture
def cursors(index_store: ArchiveIndexStore, events: ArchiveEventEmitter) -> SyncCursorManager:
    return SyncCursorManager(index_store, events)


@pytest.fixture
def mailbox() -> FakeMailbox:
    box = FakeMailbox()
    box.add_folder("INBOX", uid_validity=7)
    return box
