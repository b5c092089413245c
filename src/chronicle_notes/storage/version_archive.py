"""Append-only history of note snapshots with bounded retention."""
import datetime
import logging
from typing import Callable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from chronicle_notes.config import config
from chronicle_notes.exceptions import (
    ErrorCode,
    StorageError,
    ValidationError,
    VersionNotFoundError,
)
from chronicle_notes.models.db_models import DBNoteVersion
from chronicle_notes.models.schema import (
    Note,
    NoteVersion,
    content_from_json,
    content_to_json,
    ensure_timezone_aware,
    entry_from_json,
    entry_to_json,
    generate_id,
    utc_now,
)
from chronicle_notes.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


class VersionArchive:
    """Stores immutable snapshots of notes, newest first, capped per note.

    Snapshots are never updated. Once a note has more than ``max_versions``
    snapshots, the oldest ones are deleted.
    """

    def __init__(
        self,
        repository: NoteRepository,
        max_versions: Optional[int] = None,
        clock: Callable[[], datetime.datetime] = utc_now,
    ):
        """Initialize the archive.

        Args:
            repository: Note store whose engine holds the version table.
            max_versions: Retention cap. Defaults to config.max_versions_per_note.
            clock: Source of snapshot timestamps.
        """
        self.repository = repository
        self.session_factory = repository.session_factory
        if max_versions is None:
            max_versions = config.max_versions_per_note
        if max_versions < 1:
            raise ValidationError(
                "max_versions must be at least 1", field="max_versions", value=max_versions
            )
        self.max_versions = max_versions
        self.clock = clock

    @staticmethod
    def _db_version_to_model(db_version: DBNoteVersion) -> NoteVersion:
        return NoteVersion(
            id=db_version.id,
            note_id=db_version.note_id,
            user_id=db_version.user_id,
            title=db_version.title,
            content=content_from_json(db_version.content),
            entry=entry_from_json(db_version.entry),
            entry_html=db_version.entry_html,
            created_at=ensure_timezone_aware(db_version.created_at),
        )

    def snapshot(self, note: Note, editor_id: str) -> NoteVersion:
        """Archive the note's current title and content, then prune.

        Args:
            note: Note in the state to preserve.
            editor_id: Identity whose action triggered the snapshot.

        Returns:
            The stored snapshot.

        Raises:
            StorageError: If the snapshot could not be written.
        """
        version = NoteVersion(
            id=generate_id(),
            note_id=note.id,
            user_id=editor_id,
            title=note.title,
            content=note.content,
            entry=note.entry,
            entry_html=note.entry_html,
            created_at=self.clock(),
        )
        try:
            with self.session_factory() as session:
                session.add(DBNoteVersion(
                    id=version.id,
                    note_id=version.note_id,
                    user_id=version.user_id,
                    title=version.title,
                    content=content_to_json(version.content),
                    entry=entry_to_json(version.entry),
                    entry_html=version.entry_html,
                    created_at=version.created_at,
                ))
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to write note version", operation="snapshot",
                code=ErrorCode.STORAGE_WRITE_FAILED, original_error=e,
            ) from e

        self.prune(note.id)
        return version

    def prune(self, note_id: str, keep: Optional[int] = None) -> int:
        """Delete the oldest snapshots beyond the retention cap.

        Args:
            note_id: Note whose history is pruned.
            keep: Snapshots to keep. Defaults to the retention cap; 0 clears
                the history.

        Returns:
            Number of snapshots deleted.

        Raises:
            ValidationError: If keep is negative.
        """
        if keep is None:
            keep = self.max_versions
        elif keep < 0:
            raise ValidationError("keep must not be negative", field="keep", value=keep)
        try:
            with self.session_factory() as session:
                expired = session.execute(
                    select(DBNoteVersion.seq)
                    .where(DBNoteVersion.note_id == note_id)
                    .order_by(DBNoteVersion.created_at.desc(), DBNoteVersion.seq.desc())
                    .offset(keep)
                ).scalars().all()
                if not expired:
                    return 0
                session.execute(
                    delete(DBNoteVersion).where(DBNoteVersion.seq.in_(expired))
                )
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to prune note versions", operation="prune",
                code=ErrorCode.STORAGE_WRITE_FAILED, original_error=e,
            ) from e

        logger.debug(f"Pruned {len(expired)} old versions of note {note_id}")
        return len(expired)

    def list(self, note_id: str, limit: Optional[int] = None) -> List[NoteVersion]:
        """Return a note's snapshots, newest first.

        Raises:
            ValidationError: If limit is less than 1.
        """
        if limit is None:
            limit = self.max_versions
        elif limit < 1:
            raise ValidationError("limit must be at least 1", field="limit", value=limit)
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNoteVersion)
                .where(DBNoteVersion.note_id == note_id)
                .order_by(DBNoteVersion.created_at.desc(), DBNoteVersion.seq.desc())
                .limit(limit)
            ).scalars().all()
            return [self._db_version_to_model(row) for row in rows]

    def get(self, version_id: str) -> NoteVersion:
        """Fetch one snapshot.

        Raises:
            VersionNotFoundError: If no snapshot has this ID.
        """
        with self.session_factory() as session:
            row = session.execute(
                select(DBNoteVersion).where(DBNoteVersion.id == version_id)
            ).scalar_one_or_none()
            if row is None:
                raise VersionNotFoundError(version_id)
            return self._db_version_to_model(row)

    def count(self, note_id: str) -> int:
        """Number of snapshots currently kept for a note."""
        with self.session_factory() as session:
            return session.execute(
                select(func.count())
                .select_from(DBNoteVersion)
                .where(DBNoteVersion.note_id == note_id)
            ).scalar_one()
