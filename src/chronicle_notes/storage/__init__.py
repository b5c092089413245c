"""Storage layer for Chronicle Notes."""

from chronicle_notes.storage.base import Repository
from chronicle_notes.storage.edit_lock import EditLock
from chronicle_notes.storage.note_repository import NoteRepository
from chronicle_notes.storage.version_archive import VersionArchive
from chronicle_notes.storage.visibility import VisibilityScope

__all__ = [
    "Repository",
    "NoteRepository",
    "EditLock",
    "VersionArchive",
    "VisibilityScope",
]
