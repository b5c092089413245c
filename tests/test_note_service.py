# tests/test_note_service.py
"""Tests for the NoteService class."""
from unittest.mock import patch

import pytest

from chronicle_notes.exceptions import (
    ConflictError,
    ErrorCode,
    LockConflictError,
    NoteNotFoundError,
    StorageError,
    ValidationError,
    VersionNotFoundError,
)
from chronicle_notes.models.schema import (
    ChecklistBlock,
    ChecklistItem,
    CreateNoteRequest,
    ParagraphBlock,
    UpdateNoteRequest,
)
from chronicle_notes.storage.visibility import VisibilityScope

CAMPAIGN = "camp-1"


def _checklist_note(note_service):
    return note_service.create(
        CAMPAIGN,
        "alice",
        CreateNoteRequest(
            title="Shopping",
            content=[
                ParagraphBlock(value="Before the heist"),
                ChecklistBlock(items=[
                    ChecklistItem(text="Rope"),
                    ChecklistItem(text="Lantern", checked=True),
                ]),
            ],
        ),
    )


class TestCreate:
    """Tests for creating notes."""

    def test_blank_title_becomes_untitled(self, note_service):
        note = note_service.create(CAMPAIGN, "alice", CreateNoteRequest(title=""))
        assert note.title == "Untitled"
        assert note_service.get(note.id).title == "Untitled"

    def test_defaults(self, note_service, clock):
        note = note_service.create(CAMPAIGN, "alice", CreateNoteRequest())
        assert note.content == []
        assert note.color == "#374151"
        assert note.user_id == "alice"
        assert note.last_edited_by == "alice"
        assert note.is_shared is False
        assert note.created_at == clock()

    def test_title_too_long(self, note_service):
        with pytest.raises(ValidationError) as exc_info:
            note_service.create(CAMPAIGN, "alice", CreateNoteRequest(title="x" * 201))
        assert exc_info.value.code == ErrorCode.NOTE_TITLE_TOO_LONG
        assert exc_info.value.kind == "bad_request"

    def test_empty_campaign_rejected(self, note_service):
        with pytest.raises(ValidationError):
            note_service.create("", "alice", CreateNoteRequest(title="Orphan"))

    def test_entry_html_is_sanitized(self, note_service):
        note = note_service.create(
            CAMPAIGN,
            "alice",
            CreateNoteRequest(entry_html='<p onclick="steal()">Hi<script>alert(1)</script></p>'),
        )
        assert "script" not in note.entry_html
        assert "onclick" not in note.entry_html
        assert "Hi" in note.entry_html

    def test_shared_and_entity(self, note_service):
        note = note_service.create(
            CAMPAIGN, "alice", CreateNoteRequest(entity_id="ent-7", is_shared=True)
        )
        assert note.entity_id == "ent-7"
        assert note.is_shared is True


class TestUpdate:
    """Tests for partial updates."""

    def test_partial_update(self, note_service):
        note = _checklist_note(note_service)
        updated = note_service.update(note.id, "bob", UpdateNoteRequest(color="#ff0000"))
        assert updated.color == "#ff0000"
        assert updated.title == "Shopping"
        assert updated.content == note.content
        assert updated.last_edited_by == "bob"

    def test_update_adds_one_version_and_advances_updated_at(self, note_service, clock):
        note = _checklist_note(note_service)
        clock.advance(5)
        updated = note_service.update(note.id, "alice", UpdateNoteRequest(title="Groceries"))

        assert updated.updated_at > note.updated_at
        versions = note_service.list_versions(note.id)
        assert len(versions) == 1
        assert versions[0].title == "Shopping"
        assert versions[0].user_id == "alice"

        note_service.update(note.id, "alice", UpdateNoteRequest(title="Groceries 2"))
        assert len(note_service.list_versions(note.id)) == 2

    def test_update_missing(self, note_service):
        with pytest.raises(NoteNotFoundError):
            note_service.update("does-not-exist", "alice", UpdateNoteRequest(title="x"))

    def test_update_title_too_long_leaves_no_version(self, note_service):
        note = _checklist_note(note_service)
        with pytest.raises(ValidationError) as exc_info:
            note_service.update(note.id, "alice", UpdateNoteRequest(title="x" * 201))
        assert exc_info.value.code == ErrorCode.NOTE_TITLE_TOO_LONG
        assert note_service.list_versions(note.id) == []
        assert note_service.get(note.id).title == "Shopping"

    def test_blank_title_on_update_becomes_untitled(self, note_service):
        note = _checklist_note(note_service)
        updated = note_service.update(note.id, "alice", UpdateNoteRequest(title="  "))
        assert updated.title == "Untitled"

    def test_entry_html_sanitized_and_clearable(self, note_service):
        note = _checklist_note(note_service)
        updated = note_service.update(
            note.id,
            "alice",
            UpdateNoteRequest(entry={"type": "doc"}, entry_html='<a href="javascript:x()">x</a>'),
        )
        assert "javascript" not in updated.entry_html
        assert updated.entry == {"type": "doc"}

        cleared = note_service.update(
            note.id, "alice", UpdateNoteRequest(entry=None, entry_html=None)
        )
        assert cleared.entry is None
        assert cleared.entry_html is None

    def test_update_refused_while_other_holds_lock(self, note_service):
        note = _checklist_note(note_service)
        note_service.acquire_lock(note.id, "bob")
        with pytest.raises(LockConflictError):
            note_service.update(note.id, "alice", UpdateNoteRequest(title="Mine"))
        assert note_service.get(note.id).title == "Shopping"
        assert note_service.list_versions(note.id) == []

    def test_update_allowed_for_holder_and_after_staleness(self, note_service, clock):
        note = _checklist_note(note_service)
        note_service.acquire_lock(note.id, "bob")
        note_service.update(note.id, "bob", UpdateNoteRequest(title="Bob's"))

        clock.advance(301)
        updated = note_service.update(note.id, "alice", UpdateNoteRequest(title="Alice's"))
        assert updated.title == "Alice's"

    def test_guard_rechecks_inside_write(self, note_service, edit_lock):
        """A lock taken between the pre-check and the write still wins."""
        note = _checklist_note(note_service)
        original_snapshot = note_service._snapshot

        def snapshot_then_steal_lock(current, editor_id):
            result = original_snapshot(current, editor_id)
            edit_lock.acquire(note.id, "bob")
            return result

        with patch.object(note_service, "_snapshot", side_effect=snapshot_then_steal_lock):
            with pytest.raises(LockConflictError):
                note_service.update(note.id, "alice", UpdateNoteRequest(title="Lost"))
        assert note_service.get(note.id).title == "Shopping"

    def test_require_lock_for_update(self, note_service, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "require_lock_for_update", True)
        note = _checklist_note(note_service)

        with pytest.raises(LockConflictError) as exc_info:
            note_service.update(note.id, "alice", UpdateNoteRequest(title="No lock"))
        assert exc_info.value.code == ErrorCode.LOCK_NOT_HELD

        note_service.acquire_lock(note.id, "alice")
        updated = note_service.update(note.id, "alice", UpdateNoteRequest(title="Locked"))
        assert updated.title == "Locked"

    def test_snapshot_failure_does_not_block_update(self, note_service, version_archive):
        note = _checklist_note(note_service)
        with patch.object(
            version_archive, "snapshot", side_effect=StorageError("disk full", operation="snapshot")
        ):
            updated = note_service.update(note.id, "alice", UpdateNoteRequest(title="Saved"))
        assert updated.title == "Saved"
        assert note_service.list_versions(note.id) == []


class TestToggleCheck:
    """Tests for flipping checklist items."""

    def test_toggle_flips_one_item(self, note_service):
        note = _checklist_note(note_service)
        toggled = note_service.toggle_check(note.id, 1, 0)
        items = toggled.content[1].items
        assert items[0].checked is True
        assert items[1].checked is True

        toggled = note_service.toggle_check(note.id, 1, 1)
        assert toggled.content[1].items[1].checked is False

    def test_toggle_does_not_snapshot(self, note_service):
        note = _checklist_note(note_service)
        note_service.toggle_check(note.id, 1, 0)
        assert note_service.list_versions(note.id) == []

    def test_block_out_of_range(self, note_service):
        note = note_service.create(
            CAMPAIGN, "alice",
            CreateNoteRequest(content=[ChecklistBlock(items=[ChecklistItem(text="a")])]),
        )
        with pytest.raises(ValidationError) as exc_info:
            note_service.toggle_check(note.id, 2, 5)
        assert exc_info.value.code == ErrorCode.BLOCK_INDEX_OUT_OF_RANGE
        assert note_service.get(note.id) == note

    def test_negative_index(self, note_service):
        note = _checklist_note(note_service)
        with pytest.raises(ValidationError):
            note_service.toggle_check(note.id, -1, 0)

    def test_block_not_checklist(self, note_service):
        note = _checklist_note(note_service)
        with pytest.raises(ValidationError) as exc_info:
            note_service.toggle_check(note.id, 0, 0)
        assert exc_info.value.code == ErrorCode.BLOCK_NOT_CHECKLIST

    def test_item_out_of_range(self, note_service):
        note = _checklist_note(note_service)
        with pytest.raises(ValidationError) as exc_info:
            note_service.toggle_check(note.id, 1, 2)
        assert exc_info.value.code == ErrorCode.ITEM_INDEX_OUT_OF_RANGE
        assert note_service.get(note.id).content == note.content

    def test_toggle_missing_note(self, note_service):
        with pytest.raises(NoteNotFoundError):
            note_service.toggle_check("does-not-exist", 0, 0)

    @staticmethod
    def _edit_after_first_read(note_service, monkeypatch, request):
        """Make the next repository read be followed by a committed edit from bob."""
        original_get = note_service.repository.get
        edited = []

        def get_then_edit(note_id):
            current = original_get(note_id)
            if not edited:
                edited.append(note_id)
                note_service.update(note_id, "bob", request)
            return current

        monkeypatch.setattr(note_service.repository, "get", get_then_edit)

    def test_toggle_keeps_concurrent_title_edit(self, note_service, monkeypatch):
        note = _checklist_note(note_service)
        self._edit_after_first_read(
            note_service, monkeypatch, UpdateNoteRequest(title="Renamed")
        )
        note_service.toggle_check(note.id, 1, 0)

        final = note_service.get(note.id)
        assert final.title == "Renamed"
        assert final.last_edited_by == "bob"
        assert final.content[1].items[0].checked is True

    def test_toggle_conflicts_with_concurrent_content_edit(self, note_service, monkeypatch):
        note = _checklist_note(note_service)
        self._edit_after_first_read(
            note_service, monkeypatch,
            UpdateNoteRequest(content=[ParagraphBlock(value="Replaced")]),
        )
        with pytest.raises(ConflictError) as exc_info:
            note_service.toggle_check(note.id, 1, 0)

        assert exc_info.value.code == ErrorCode.CONTENT_CHANGED
        assert note_service.get(note.id).content == [ParagraphBlock(value="Replaced")]


class TestRestore:
    """Tests for restoring versions."""

    def test_restore_twice(self, note_service, clock):
        note = _checklist_note(note_service)
        clock.advance(1)
        note_service.update(
            note.id, "alice",
            UpdateNoteRequest(title="Changed", content=[ParagraphBlock(value="new")]),
        )
        original = note_service.list_versions(note.id)[0]
        assert original.title == "Shopping"

        clock.advance(1)
        first = note_service.restore_version(note.id, original.id, "bob")
        clock.advance(1)
        second = note_service.restore_version(note.id, original.id, "bob")

        for restored in (first, second):
            assert restored.title == original.title
            assert restored.content == original.content
            assert restored.last_edited_by == "bob"
        # one snapshot from the update, one per restore
        assert len(note_service.list_versions(note.id)) == 3

    def test_pre_restore_state_is_recoverable(self, note_service, clock):
        note = _checklist_note(note_service)
        clock.advance(1)
        note_service.update(note.id, "alice", UpdateNoteRequest(title="Changed"))
        original = note_service.list_versions(note.id)[0]
        clock.advance(1)
        note_service.restore_version(note.id, original.id, "bob")

        newest = note_service.list_versions(note.id)[0]
        assert newest.title == "Changed"
        assert newest.user_id == "bob"

    def test_cross_note_version_is_bad_request(self, note_service):
        first = _checklist_note(note_service)
        second = _checklist_note(note_service)
        note_service.update(first.id, "alice", UpdateNoteRequest(title="x"))
        version = note_service.list_versions(first.id)[0]

        with pytest.raises(ValidationError) as exc_info:
            note_service.restore_version(second.id, version.id, "alice")
        assert exc_info.value.code == ErrorCode.VERSION_NOTE_MISMATCH
        assert exc_info.value.kind == "bad_request"

    def test_restore_missing_version(self, note_service):
        note = _checklist_note(note_service)
        with pytest.raises(VersionNotFoundError):
            note_service.restore_version(note.id, "does-not-exist", "alice")

    def test_restore_resanitizes_html(self, note_service, version_archive):
        note = _checklist_note(note_service)
        unsafe = note.model_copy(update={"entry_html": "<p>ok</p><script>bad()</script>"})
        version = version_archive.snapshot(unsafe, "alice")

        restored = note_service.restore_version(note.id, version.id, "alice")
        assert "script" not in restored.entry_html
        assert "ok" in restored.entry_html


class TestRetention:
    """The archive never keeps more than the cap."""

    def test_version_cap(self, note_service, test_config, monkeypatch, clock):
        monkeypatch.setattr(note_service.archive, "max_versions", 3)
        note = _checklist_note(note_service)
        for i in range(6):
            clock.advance(1)
            note_service.update(note.id, "alice", UpdateNoteRequest(title=f"Rev {i}"))
            assert len(note_service.list_versions(note.id)) <= 3
        titles = [v.title for v in note_service.list_versions(note.id)]
        assert titles == ["Rev 4", "Rev 3", "Rev 2"]


class TestLockAndList:
    """Lock delegation and listing."""

    def test_lock_ops_delegate(self, note_service, clock):
        note = _checklist_note(note_service)
        assert note_service.acquire_lock(note.id, "alice").locked_by == "alice"
        with pytest.raises(LockConflictError):
            note_service.acquire_lock(note.id, "bob")
        note_service.heartbeat(note.id, "alice")
        note_service.release_lock(note.id, "bob")
        assert note_service.get(note.id).locked_by == "alice"
        note_service.force_release_lock(note.id)
        assert note_service.get(note.id).locked_by is None

    def test_list_notes(self, note_service):
        mine = _checklist_note(note_service)
        note_service.create(CAMPAIGN, "bob", CreateNoteRequest(title="Bob private"))
        shared = note_service.create(
            CAMPAIGN, "bob", CreateNoteRequest(title="Bob shared", is_shared=True)
        )
        scope = VisibilityScope(requester_id="alice", campaign_id=CAMPAIGN)
        ids = {n.id for n in note_service.list_notes(scope)}
        assert ids == {mine.id, shared.id}

    def test_delete_removes_versions(self, note_service):
        note = _checklist_note(note_service)
        note_service.update(note.id, "alice", UpdateNoteRequest(title="x"))
        version_id = note_service.list_versions(note.id)[0].id
        note_service.delete(note.id)
        with pytest.raises(NoteNotFoundError):
            note_service.get(note.id)
        with pytest.raises(VersionNotFoundError):
            note_service.get_version(version_id)
