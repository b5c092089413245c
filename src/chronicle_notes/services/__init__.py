"""Service layer for Chronicle Notes."""

from chronicle_notes.services.note_service import NoteService

__all__ = ["NoteService"]
