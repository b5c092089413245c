"""Pessimistic edit lock stored on the notes table.

The lock is a lease: ``locked_by`` names the holder and ``locked_at`` is
refreshed by heartbeats. A lock whose ``locked_at`` is older than the
staleness window may be taken over by anyone. Every transition is a single
conditional UPDATE, so independent processes sharing the database cannot
both believe they hold the same lock.
"""
import datetime
import logging
from typing import Callable, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

from chronicle_notes.config import config
from chronicle_notes.exceptions import (
    ErrorCode,
    LockConflictError,
    NoteNotFoundError,
    StorageError,
)
from chronicle_notes.models.db_models import DBNote
from chronicle_notes.models.schema import Note, utc_now
from chronicle_notes.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime.datetime]


class EditLock:
    """Acquire, renew and release per-note edit locks."""

    def __init__(
        self,
        repository: NoteRepository,
        stale_after: Optional[datetime.timedelta] = None,
        clock: Clock = utc_now,
    ):
        """Initialize the lock manager.

        Args:
            repository: Note store the lock columns live in.
            stale_after: Staleness window. Defaults to config.lock_stale_seconds.
            clock: Source of "now"; replaceable so the window can be tested.
        """
        self.repository = repository
        self.session_factory = repository.session_factory
        self.stale_after = stale_after or datetime.timedelta(
            seconds=config.lock_stale_seconds
        )
        self.clock = clock

    def _execute(self, stmt, operation: str) -> int:
        """Run one conditional UPDATE and return the matched row count."""
        try:
            with self.session_factory() as session:
                result = session.execute(
                    stmt.execution_options(synchronize_session=False)
                )
                session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to {operation} note lock", operation=operation,
                code=ErrorCode.STORAGE_WRITE_FAILED, original_error=e,
            ) from e

    def is_stale(self, note: Note, now: Optional[datetime.datetime] = None) -> bool:
        """Return True if the note's lock has outlived the staleness window."""
        if note.locked_at is None:
            return False
        now = now or self.clock()
        return now - note.locked_at > self.stale_after

    def acquire(self, note_id: str, requester_id: str) -> Note:
        """Take or refresh the lock.

        Succeeds when the note is unlocked, already held by the requester, or
        held by a stale lease. Never waits for a live holder.

        Returns:
            The note with the requester recorded as lock holder.

        Raises:
            NoteNotFoundError: If the note does not exist.
            LockConflictError: If another identity holds a live lock.
        """
        now = self.clock()
        cutoff = now - self.stale_after
        stmt = (
            update(DBNote)
            .where(
                and_(
                    DBNote.id == note_id,
                    or_(
                        DBNote.locked_by.is_(None),
                        DBNote.locked_by == requester_id,
                        DBNote.locked_at < cutoff,
                    ),
                )
            )
            .values(locked_by=requester_id, locked_at=now)
        )
        if self._execute(stmt, "acquire") == 0:
            current = self.repository.get(note_id)  # raises NoteNotFoundError
            logger.debug(
                f"Lock on note {note_id} refused for {requester_id}; "
                f"held by {current.locked_by}"
            )
            raise LockConflictError(
                "note is currently being edited by another user",
                note_id=note_id,
                holder_id=current.locked_by,
                code=ErrorCode.LOCK_HELD_BY_OTHER,
            )
        logger.debug(f"Lock on note {note_id} acquired by {requester_id}")
        return self.repository.get(note_id)

    def release(self, note_id: str, requester_id: str) -> None:
        """Clear the lock if the requester holds it.

        Releasing a lock held by someone else, or an unlocked note, is a
        silent no-op.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        stmt = (
            update(DBNote)
            .where(and_(DBNote.id == note_id, DBNote.locked_by == requester_id))
            .values(locked_by=None, locked_at=None)
        )
        if self._execute(stmt, "release") == 0:
            if not self.repository.exists(note_id):
                raise NoteNotFoundError(note_id)
            return
        logger.debug(f"Lock on note {note_id} released by {requester_id}")

    def force_release(self, note_id: str) -> None:
        """Clear the lock whoever holds it. Callers gate who may do this.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        stmt = (
            update(DBNote)
            .where(DBNote.id == note_id)
            .values(locked_by=None, locked_at=None)
        )
        if self._execute(stmt, "force-release") == 0:
            raise NoteNotFoundError(note_id)
        logger.info(f"Lock on note {note_id} force-released")

    def heartbeat(self, note_id: str, requester_id: str) -> None:
        """Renew the lease of a lock the requester holds.

        Raises:
            NoteNotFoundError: If the note does not exist.
            LockConflictError: If the requester no longer holds the lock and
                must re-acquire it before continuing to edit.
        """
        stmt = (
            update(DBNote)
            .where(and_(DBNote.id == note_id, DBNote.locked_by == requester_id))
            .values(locked_at=self.clock())
        )
        if self._execute(stmt, "heartbeat") == 0:
            current = self.repository.get(note_id)  # raises NoteNotFoundError
            raise LockConflictError(
                "lock not held by this user",
                note_id=note_id,
                holder_id=current.locked_by,
                code=ErrorCode.LOCK_NOT_HELD,
            )

    def write_guard(self, editor_id: str, require_held: bool = False) -> ColumnElement:
        """Predicate that gates a content write on the lock state.

        With ``require_held`` the editor must hold a live lock. Otherwise the
        write is refused only while another identity holds a live lock.
        """
        cutoff = self.clock() - self.stale_after
        if require_held:
            return and_(DBNote.locked_by == editor_id, DBNote.locked_at >= cutoff)
        return or_(
            DBNote.locked_by.is_(None),
            DBNote.locked_by == editor_id,
            DBNote.locked_at < cutoff,
        )
