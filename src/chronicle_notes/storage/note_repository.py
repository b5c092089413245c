"""Repository for note storage and retrieval."""
import datetime
import logging
from typing import List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

from chronicle_notes.exceptions import (
    ConflictError,
    ErrorCode,
    LockConflictError,
    NoteNotFoundError,
    StorageError,
)
from chronicle_notes.models.db_models import DBNote, get_session_factory, init_db
from chronicle_notes.models.schema import (
    ContentBlock,
    Note,
    content_from_json,
    content_to_json,
    ensure_timezone_aware,
    entry_from_json,
    entry_to_json,
)
from chronicle_notes.storage.base import Repository
from chronicle_notes.storage.visibility import VisibilityScope

logger = logging.getLogger(__name__)


class NoteRepository(Repository[Note]):
    """System of record for notes.

    The repository never snapshots or locks on its own; the service decides
    when to archive a version and which lock predicate guards a write.
    """

    def __init__(self, engine: Optional[Engine] = None):
        """Initialize the repository.

        Args:
            engine: SQLAlchemy engine. If None, uses default from config.
        """
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        """Convert a DB row into a Note model."""
        return Note(
            id=db_note.id,
            campaign_id=db_note.campaign_id,
            user_id=db_note.user_id,
            entity_id=db_note.entity_id,
            title=db_note.title,
            content=content_from_json(db_note.content),
            entry=entry_from_json(db_note.entry),
            entry_html=db_note.entry_html,
            color=db_note.color,
            pinned=bool(db_note.pinned),
            is_shared=bool(db_note.is_shared),
            last_edited_by=db_note.last_edited_by,
            locked_by=db_note.locked_by,
            locked_at=ensure_timezone_aware(db_note.locked_at),
            created_at=ensure_timezone_aware(db_note.created_at),
            updated_at=ensure_timezone_aware(db_note.updated_at),
        )

    def create(self, note: Note) -> Note:
        """Insert a new note.

        The Note model has already applied the title and color defaults and
        rejected empty campaign/owner IDs. A new note is always unlocked.

        Returns:
            The note as stored.
        """
        db_note = DBNote(
            id=note.id,
            campaign_id=note.campaign_id,
            user_id=note.user_id,
            entity_id=note.entity_id,
            title=note.title,
            content=content_to_json(note.content),
            entry=entry_to_json(note.entry),
            entry_html=note.entry_html,
            color=note.color,
            pinned=note.pinned,
            is_shared=note.is_shared,
            last_edited_by=note.last_edited_by,
            locked_by=None,
            locked_at=None,
            created_at=note.created_at,
            updated_at=note.updated_at,
        )
        try:
            with self.session_factory() as session:
                session.add(db_note)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to create note", operation="create",
                code=ErrorCode.STORAGE_WRITE_FAILED, original_error=e,
            ) from e

        logger.debug(f"Created note {note.id} in campaign {note.campaign_id}")
        return self.get(note.id)

    def get(self, id: str) -> Note:
        """Get a note by ID.

        Raises:
            NoteNotFoundError: If no note has this ID.
        """
        with self.session_factory() as session:
            db_note = session.get(DBNote, id)
            if db_note is None:
                raise NoteNotFoundError(id)
            return self._db_note_to_model(db_note)

    def exists(self, id: str) -> bool:
        """Return True if a note with this ID exists."""
        with self.session_factory() as session:
            found = session.execute(
                select(DBNote.id).where(DBNote.id == id)
            ).first()
            return found is not None

    def update(self, note: Note, guard: Optional[ColumnElement] = None) -> Note:
        """Replace the mutable fields of an existing note.

        Ownership, campaign, entity, creation time and lock columns are never
        touched here; ``note.updated_at`` is written as given. ``guard`` is an
        extra predicate evaluated in the same UPDATE statement, so the write and the check it depends on are atomic.

        Raises:
            NoteNotFoundError: If the note does not exist.
            LockConflictError: If the note exists but the guard rejected the write.
        """
        conditions = [DBNote.id == note.id]
        if guard is not None:
            conditions.append(guard)

        stmt = (
            update(DBNote)
            .where(and_(*conditions))
            .values(
                title=note.title,
                content=content_to_json(note.content),
                entry=entry_to_json(note.entry),
                entry_html=note.entry_html,
                color=note.color,
                pinned=note.pinned,
                is_shared=note.is_shared,
                last_edited_by=note.last_edited_by,
                updated_at=note.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            with self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                rows = result.rowcount
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to update note", operation="update",
                code=ErrorCode.STORAGE_WRITE_FAILED, original_error=e,
            ) from e

        if rows == 0:
            current = self.get(note.id)  # raises NoteNotFoundError
            raise LockConflictError(
                "note is currently being edited by another user",
                note_id=note.id,
                holder_id=current.locked_by,
                code=ErrorCode.LOCK_HELD_BY_OTHER,
            )
        return self.get(note.id)

    def update_content(
        self,
        note_id: str,
        expected: List[ContentBlock],
        content: List[ContentBlock],
        updated_at: datetime.datetime,
    ) -> Note:
        """Swap the content blocks if they still equal ``expected``.

        No other column is written, so concurrent edits to the title or the
        editor document survive.

        Raises:
            NoteNotFoundError: If the note does not exist.
            ConflictError: If the stored content no longer equals ``expected``.
        """
        stmt = (
            update(DBNote)
            .where(and_(DBNote.id == note_id, DBNote.content == content_to_json(expected)))
            .values(content=content_to_json(content), updated_at=updated_at)
            .execution_options(synchronize_session=False)
        )
        try:
            with self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                rows = result.rowcount
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to update note content", operation="update_content",
                code=ErrorCode.STORAGE_WRITE_FAILED, original_error=e,
            ) from e

        if rows == 0:
            self.get(note_id)  # raises NoteNotFoundError
            raise ConflictError(
                "note content changed concurrently",
                code=ErrorCode.CONTENT_CHANGED,
                details={"note_id": note_id},
            )
        return self.get(note_id)

    def delete(self, id: str) -> None:
        """Delete a note and, through the foreign key cascade, its versions.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        try:
            with self.session_factory() as session:
                db_note = session.get(DBNote, id)
                if db_note is None:
                    raise NoteNotFoundError(id)
                session.delete(db_note)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to delete note", operation="delete",
                code=ErrorCode.STORAGE_WRITE_FAILED, original_error=e,
            ) from e
        logger.debug(f"Deleted note {id}")

    def list_visible(self, scope: VisibilityScope) -> List[Note]:
        """List the notes a scope may see, pinned first then newest edits."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNote)
                .where(scope.clause())
                .order_by(DBNote.pinned.desc(), DBNote.updated_at.desc())
            ).scalars().all()
            return [self._db_note_to_model(row) for row in rows]
