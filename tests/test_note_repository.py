"""Tests for the NoteRepository class."""
import pytest
from sqlalchemy import and_

from chronicle_notes.exceptions import (
    ConflictError,
    ErrorCode,
    LockConflictError,
    NoteNotFoundError,
)
from chronicle_notes.models.db_models import DBNote
from chronicle_notes.models.schema import (
    ChecklistBlock,
    ChecklistItem,
    Note,
    ParagraphBlock,
)
from chronicle_notes.storage.visibility import VisibilityScope


def _make_note(**overrides):
    fields = dict(
        campaign_id="camp-1",
        user_id="alice",
        title="Harbor district",
        content=[
            ParagraphBlock(value="Smugglers use the old lighthouse."),
            ChecklistBlock(items=[ChecklistItem(text="Bribe the guard")]),
        ],
    )
    fields.update(overrides)
    return Note(**fields)


class TestNoteRepository:
    """Tests for the NoteRepository class."""

    def test_create_and_get(self, note_repository):
        note = _make_note(entry={"type": "doc"}, entry_html="<p>hi</p>")
        created = note_repository.create(note)
        assert created.id == note.id

        fetched = note_repository.get(note.id)
        assert fetched.title == "Harbor district"
        assert fetched.content == note.content
        assert fetched.entry == {"type": "doc"}
        assert fetched.entry_html == "<p>hi</p>"
        assert fetched.created_at.tzinfo is not None

    def test_created_note_is_unlocked(self, note_repository):
        created = note_repository.create(_make_note())
        assert created.locked_by is None
        assert created.locked_at is None

    def test_get_missing_raises_not_found(self, note_repository):
        with pytest.raises(NoteNotFoundError):
            note_repository.get("does-not-exist")

    def test_exists(self, note_repository):
        note = note_repository.create(_make_note())
        assert note_repository.exists(note.id)
        assert not note_repository.exists("does-not-exist")

    def test_update_replaces_mutable_fields(self, note_repository):
        note = note_repository.create(_make_note())
        note.title = "Harbor district (revised)"
        note.content = [ParagraphBlock(value="Cleared out.")]
        note.pinned = True
        note.last_edited_by = "bob"

        updated = note_repository.update(note)
        assert updated.title == "Harbor district (revised)"
        assert updated.content == [ParagraphBlock(value="Cleared out.")]
        assert updated.pinned is True
        assert updated.last_edited_by == "bob"
        assert updated.user_id == "alice"

    def test_update_missing_raises_not_found(self, note_repository):
        with pytest.raises(NoteNotFoundError):
            note_repository.update(_make_note())

    def test_update_rejected_by_guard(self, note_repository):
        note = note_repository.create(_make_note())
        note.title = "Never written"
        with pytest.raises(LockConflictError):
            note_repository.update(note, guard=and_(DBNote.user_id == "nobody"))
        assert note_repository.get(note.id).title == "Harbor district"

    def test_update_content_writes_only_content(self, note_repository, clock):
        note = note_repository.create(_make_note())
        renamed = note.model_copy(deep=True)
        renamed.title = "Renamed elsewhere"
        note_repository.update(renamed)

        toggled = [block.model_copy(deep=True) for block in note.content]
        toggled[1].items[0].checked = True
        clock.advance(5)
        updated = note_repository.update_content(note.id, note.content, toggled, clock())

        assert updated.title == "Renamed elsewhere"
        assert updated.content[1].items[0].checked is True
        assert updated.updated_at == clock()

    def test_update_content_conflicts_when_content_changed(self, note_repository):
        note = note_repository.create(_make_note())
        replaced = note.model_copy(deep=True)
        replaced.content = [ParagraphBlock(value="Rewritten")]
        note_repository.update(replaced)

        with pytest.raises(ConflictError) as exc_info:
            note_repository.update_content(
                note.id, note.content, [ParagraphBlock(value="stale")], note.updated_at
            )
        assert exc_info.value.code == ErrorCode.CONTENT_CHANGED
        assert note_repository.get(note.id).content == [ParagraphBlock(value="Rewritten")]

    def test_update_content_missing_raises_not_found(self, note_repository):
        with pytest.raises(NoteNotFoundError):
            note_repository.update_content("does-not-exist", [], [], _make_note().updated_at)

    def test_delete(self, note_repository):
        note = note_repository.create(_make_note())
        note_repository.delete(note.id)
        assert not note_repository.exists(note.id)

    def test_delete_missing_raises_not_found(self, note_repository):
        with pytest.raises(NoteNotFoundError):
            note_repository.delete("does-not-exist")

    def test_delete_cascades_versions(self, note_repository, version_archive):
        note = note_repository.create(_make_note())
        version_archive.snapshot(note, "alice")
        version_archive.snapshot(note, "alice")
        assert version_archive.count(note.id) == 2

        note_repository.delete(note.id)
        assert version_archive.count(note.id) == 0

    def test_list_orders_pinned_first(self, note_repository, clock):
        older = note_repository.create(_make_note(title="older", updated_at=clock()))
        newer = note_repository.create(
            _make_note(title="newer", updated_at=clock.advance(60))
        )
        pinned = note_repository.create(
            _make_note(title="pinned", pinned=True, updated_at=clock.advance(-3600))
        )

        scope = VisibilityScope(requester_id="alice", campaign_id="camp-1")
        ids = [n.id for n in note_repository.list_visible(scope)]
        assert ids == [pinned.id, newer.id, older.id]
