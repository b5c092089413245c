"""Common test fixtures for Chronicle Notes."""

import datetime
import tempfile
from datetime import timezone
from pathlib import Path

import pytest

from chronicle_notes.config import config
from chronicle_notes.models.db_models import init_db
from chronicle_notes.services.note_service import NoteService
from chronicle_notes.storage.edit_lock import EditLock
from chronicle_notes.storage.note_repository import NoteRepository
from chronicle_notes.storage.version_archive import VersionArchive


class FakeClock:
    """Manually advanced clock, callable like utc_now()."""

    def __init__(self, start: datetime.datetime):
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> datetime.datetime:
        self.now = self.now + datetime.timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def temp_db_dir():
    """Create a temporary directory for the database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_db_dir, monkeypatch):
    """Configure with test paths and default limits (auto-restored)."""
    monkeypatch.setattr(config, "database_path", temp_db_dir / "test_notes.db")
    monkeypatch.setattr(config, "database_url", None)
    monkeypatch.setattr(config, "lock_stale_seconds", 300)
    monkeypatch.setattr(config, "max_versions_per_note", 50)
    monkeypatch.setattr(config, "max_title_length", 200)
    monkeypatch.setattr(config, "require_lock_for_update", False)
    yield config


@pytest.fixture
def engine(test_config):
    """A fresh SQLite database with the full schema."""
    db_engine = init_db(test_config.get_db_url())
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime.datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def note_repository(engine):
    """Create a test note repository."""
    yield NoteRepository(engine=engine)


@pytest.fixture
def edit_lock(note_repository, clock):
    yield EditLock(note_repository, clock=clock)


@pytest.fixture
def version_archive(note_repository, clock):
    yield VersionArchive(note_repository, clock=clock)


@pytest.fixture
def note_service(note_repository, edit_lock, version_archive, clock):
    """Create a test NoteService sharing the fake clock."""
    yield NoteService(
        repository=note_repository,
        lock=edit_lock,
        archive=version_archive,
        clock=clock,
    )
