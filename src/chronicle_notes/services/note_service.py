"""Service layer for collaborative note operations."""

import datetime
import logging
from typing import Any, Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from chronicle_notes.config import config
from chronicle_notes.exceptions import (
    ErrorCode,
    LockConflictError,
    ValidationError,
)
from chronicle_notes.models.schema import (
    ChecklistBlock,
    CreateNoteRequest,
    Note,
    NoteVersion,
    ToggleCheckRequest,
    UpdateNoteRequest,
    utc_now,
)
from chronicle_notes.observability import traced
from chronicle_notes.sanitize import sanitize_html
from chronicle_notes.storage.edit_lock import EditLock
from chronicle_notes.storage.note_repository import NoteRepository
from chronicle_notes.storage.version_archive import VersionArchive
from chronicle_notes.storage.visibility import VisibilityScope

logger = logging.getLogger(__name__)

# Fields an update may change, in the order they are applied.
_UPDATABLE_FIELDS = ("title", "content", "entry", "entry_html", "color", "pinned", "is_shared")
# Fields where an explicit None clears the value instead of leaving it alone.
_CLEARABLE_FIELDS = ("entry", "entry_html")


def _to_validation_error(exc: PydanticValidationError) -> ValidationError:
    """Convert the first pydantic error into a BadRequest ValidationError."""
    first = exc.errors()[0]
    field = str(first["loc"][0]) if first.get("loc") else None
    message = first.get("msg", "invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    code = ErrorCode.NOTE_VALIDATION_FAILED
    if field == "title":
        code = ErrorCode.NOTE_TITLE_TOO_LONG
    elif field == "content":
        code = ErrorCode.CONTENT_INVALID
    return ValidationError(message, field=field, value=first.get("input"), code=code)


class NoteService:
    """Orchestrates the note store, edit lock and version archive.

    The service owns the ordering of side effects: snapshot before mutate,
    sanitize before store, and gate content writes on the lock state.
    """

    def __init__(
        self,
        repository: Optional[NoteRepository] = None,
        engine: Optional[Any] = None,
        lock: Optional[EditLock] = None,
        archive: Optional[VersionArchive] = None,
        clock: Callable[[], datetime.datetime] = utc_now,
    ):
        """Initialize the service.

        Args:
            repository: Note storage backend. Created with defaults if None.
            engine: Pre-configured SQLAlchemy engine to pass to NoteRepository.
                Only used when repository is None.
            lock: Edit lock manager. Built on the repository if None.
            archive: Version archive. Built on the repository if None.
            clock: Source of "now" shared with the lock and archive it builds.
        """
        if repository is not None:
            self.repository = repository
        elif engine is not None:
            self.repository = NoteRepository(engine=engine)
        else:
            self.repository = NoteRepository()
        self.clock = clock
        self.lock = lock or EditLock(self.repository, clock=clock)
        self.archive = archive or VersionArchive(self.repository, clock=clock)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _snapshot(self, note: Note, editor_id: str) -> Optional[NoteVersion]:
        """Archive the note's current state. Failures are logged, never raised."""
        try:
            return self.archive.snapshot(note, editor_id)
        except Exception as e:
            logger.warning(f"Failed to snapshot note {note.id} before edit: {e}")
            return None

    def _check_writable(self, note: Note, editor_id: str) -> None:
        """Fail before snapshotting when the lock state would refuse the write.

        The conditional UPDATE in _persist remains the authoritative check.
        """
        held_live = note.is_locked and not self.lock.is_stale(note, self.clock())
        if config.require_lock_for_update:
            if not (held_live and note.locked_by == editor_id):
                raise LockConflictError(
                    "lock not held by this user",
                    note_id=note.id,
                    holder_id=note.locked_by,
                    code=ErrorCode.LOCK_NOT_HELD,
                )
        elif held_live and note.locked_by != editor_id:
            raise LockConflictError(
                "note is currently being edited by another user",
                note_id=note.id,
                holder_id=note.locked_by,
            )

    def _persist(self, note: Note, editor_id: str) -> Note:
        """Write the note through the lock gate and return the stored state."""
        require_held = config.require_lock_for_update
        guard = self.lock.write_guard(editor_id, require_held=require_held)
        try:
            return self.repository.update(note, guard=guard)
        except LockConflictError as e:
            if require_held:
                raise LockConflictError(
                    "lock not held by this user",
                    note_id=note.id,
                    holder_id=e.holder_id,
                    code=ErrorCode.LOCK_NOT_HELD,
                ) from e
            raise

    # =========================================================================
    # Notes
    # =========================================================================

    @traced("create_note")
    def create(self, campaign_id: str, user_id: str, request: CreateNoteRequest) -> Note:
        """Create a new note.

        Args:
            campaign_id: Campaign the note belongs to.
            user_id: Owner, also recorded as the first editor.
            request: Initial fields. Blank title becomes "Untitled", blank
                color the configured default, missing content an empty list.

        Returns:
            The note as stored.

        Raises:
            ValidationError: If an ID is empty or the title is too long.
        """
        now = self.clock()
        try:
            note = Note(
                campaign_id=campaign_id,
                user_id=user_id,
                entity_id=request.entity_id or None,
                title=request.title,
                content=request.content or [],
                entry=request.entry,
                entry_html=sanitize_html(request.entry_html) if request.entry_html else None,
                color=request.color,
                is_shared=request.is_shared,
                last_edited_by=user_id,
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise _to_validation_error(e) from e

        created = self.repository.create(note)
        logger.info(f"Note {created.id} created by {user_id} in campaign {campaign_id}")
        return created

    @traced("get_note")
    def get(self, note_id: str) -> Note:
        """Retrieve a note by ID. Raises NoteNotFoundError if absent."""
        return self.repository.get(note_id)

    @traced("update_note")
    def update(self, note_id: str, editor_id: str, request: UpdateNoteRequest) -> Note:
        """Apply a partial update.

        The pre-edit state is archived first (best-effort). Only fields set
        on the request are changed.

        Args:
            note_id: Note to edit.
            editor_id: Identity making the edit.
            request: Fields to change.

        Returns:
            The updated note.

        Raises:
            NoteNotFoundError: If the note does not exist.
            ValidationError: If a new title or color is invalid.
            LockConflictError: If the lock state refuses the write.
        """
        current = self.repository.get(note_id)
        edited = current.model_copy(deep=True)

        try:
            for field in _UPDATABLE_FIELDS:
                if not request.provided(field):
                    continue
                value = getattr(request, field)
                if value is None and field not in _CLEARABLE_FIELDS:
                    continue
                if field == "entry_html" and value is not None:
                    value = sanitize_html(value)
                setattr(edited, field, value)
        except PydanticValidationError as e:
            raise _to_validation_error(e) from e

        self._check_writable(current, editor_id)
        self._snapshot(current, editor_id)

        edited.last_edited_by = editor_id
        edited.updated_at = self.clock()
        updated = self._persist(edited, editor_id)
        logger.debug(f"Note {note_id} updated by {editor_id}")
        return updated

    @traced("delete_note")
    def delete(self, note_id: str) -> None:
        """Delete a note together with its version history."""
        self.repository.delete(note_id)
        logger.info(f"Note {note_id} deleted")

    @traced("toggle_check")
    def toggle_check(self, note_id: str, block_index: int, item_index: int) -> Note:
        """Flip one checklist item.

        Toggles are not archived as versions. Only the content column is
        written, and only if it is unchanged since it was read.

        Raises:
            NoteNotFoundError: If the note does not exist.
            ConflictError: If the content changed between the read and the write.
            ValidationError: If either index is out of range or the block is
                not a checklist. The note is left untouched.
        """
        try:
            address = ToggleCheckRequest(block_index=block_index, item_index=item_index)
        except PydanticValidationError as e:
            raise _to_validation_error(e) from e

        note = self.repository.get(note_id)
        content = [block.model_copy(deep=True) for block in note.content]

        if not 0 <= address.block_index < len(content):
            raise ValidationError(
                "block index out of range", field="block_index",
                value=address.block_index, code=ErrorCode.BLOCK_INDEX_OUT_OF_RANGE,
            )
        block = content[address.block_index]
        if not isinstance(block, ChecklistBlock):
            raise ValidationError(
                "block is not a checklist", field="block_index",
                value=address.block_index, code=ErrorCode.BLOCK_NOT_CHECKLIST,
            )
        if not 0 <= address.item_index < len(block.items):
            raise ValidationError(
                "item index out of range", field="item_index",
                value=address.item_index, code=ErrorCode.ITEM_INDEX_OUT_OF_RANGE,
            )

        item = block.items[address.item_index]
        item.checked = not item.checked
        return self.repository.update_content(note_id, note.content, content, self.clock())

    @traced("list_notes")
    def list_notes(self, scope: VisibilityScope) -> List[Note]:
        """List the notes visible under a scope, pinned first."""
        return self.repository.list_visible(scope)

    # =========================================================================
    # Edit lock
    # =========================================================================

    @traced("acquire_lock")
    def acquire_lock(self, note_id: str, requester_id: str) -> Note:
        """Take, refresh or reclaim the edit lock. See EditLock.acquire."""
        return self.lock.acquire(note_id, requester_id)

    @traced("release_lock")
    def release_lock(self, note_id: str, requester_id: str) -> None:
        """Release the requester's lock; a no-op for anyone else."""
        self.lock.release(note_id, requester_id)

    @traced("force_release_lock")
    def force_release_lock(self, note_id: str) -> None:
        """Clear the lock regardless of holder. Callers gate who may do this."""
        self.lock.force_release(note_id)

    @traced("heartbeat")
    def heartbeat(self, note_id: str, requester_id: str) -> None:
        """Renew the requester's lease or fail with LockConflictError."""
        self.lock.heartbeat(note_id, requester_id)

    # =========================================================================
    # Versions
    # =========================================================================

    @traced("list_versions")
    def list_versions(self, note_id: str, limit: Optional[int] = None) -> List[NoteVersion]:
        """Return a note's snapshots, newest first."""
        self.repository.get(note_id)  # raises NoteNotFoundError
        return self.archive.list(note_id, limit=limit)

    @traced("get_version")
    def get_version(self, version_id: str) -> NoteVersion:
        """Fetch one snapshot. Raises VersionNotFoundError if absent."""
        return self.archive.get(version_id)

    @traced("restore_version")
    def restore_version(self, note_id: str, version_id: str, user_id: str) -> Note:
        """Roll a note back to a snapshot.

        The current state is archived first, so a restore can itself be
        undone. The snapshot's HTML is sanitized again before it is stored.

        Raises:
            NoteNotFoundError: If the note does not exist.
            VersionNotFoundError: If the version does not exist.
            ValidationError: If the version belongs to a different note.
            LockConflictError: If the lock state refuses the write.
        """
        current = self.repository.get(note_id)
        version = self.archive.get(version_id)
        if version.note_id != note_id:
            raise ValidationError(
                "version does not belong to this note", field="version_id",
                value=version_id, code=ErrorCode.VERSION_NOTE_MISMATCH,
            )

        restored = current.model_copy(deep=True)
        try:
            restored.title = version.title
            restored.content = [block.model_copy(deep=True) for block in version.content]
            restored.entry = version.entry
            restored.entry_html = (
                sanitize_html(version.entry_html) if version.entry_html else None
            )
        except PydanticValidationError as e:
            raise _to_validation_error(e) from e

        self._check_writable(current, user_id)
        self._snapshot(current, user_id)

        restored.last_edited_by = user_id
        restored.updated_at = self.clock()
        note = self._persist(restored, user_id)
        logger.info(f"Note {note_id} restored to version {version_id} by {user_id}")
        return note
