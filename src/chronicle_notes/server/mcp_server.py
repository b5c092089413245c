"""MCP server exposing campaign notes as tools."""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError as PydanticValidationError

from chronicle_notes.config import config
from chronicle_notes.exceptions import NoteNotFoundError, NotesError, ValidationError
from chronicle_notes.models.schema import (
    CreateNoteRequest,
    Note,
    NoteVersion,
    UpdateNoteRequest,
)
from chronicle_notes.observability import metrics, timed_operation
from chronicle_notes.sanitize import strip_secrets_html, strip_secrets_json
from chronicle_notes.services.note_service import NoteService
from chronicle_notes.storage.visibility import VisibilityScope

logger = logging.getLogger(__name__)

OWNER_ROLE = "owner"


class NotesMcpServer:
    """MCP server for campaign notes.

    The host application authenticates the caller and passes ``user_id``,
    ``campaign_id`` and, where it matters, the caller's ``campaign_role`` on
    every tool call.
    """

    def __init__(self, engine=None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by the service.
                When None, the service creates one from config.
        """
        self.mcp = FastMCP(config.server_name)
        self.note_service = NoteService(engine=engine)
        self._register_tools()
        logger.info(f"Chronicle notes MCP server {config.server_version} initialized")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, NotesError):
            # not_found/bad_request/conflict are expected; storage is not
            log = logger.error if error.kind == "storage" else logger.warning
            log(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, PydanticValidationError):
            first = error.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            logger.warning(f"Invalid tool input [{error_id}]: {error}")
            return f"Error: Invalid input for {location}: {first.get('msg')}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    # =========================================================================
    # Access helpers
    # =========================================================================

    def _load_visible(self, note_id: str, user_id: str, campaign_id: str) -> Note:
        """Load a note the caller may see.

        Notes from another campaign, or private notes of another user, are
        reported as not found so their existence does not leak.
        """
        note = self.note_service.get(note_id)
        scope = VisibilityScope(requester_id=user_id, campaign_id=campaign_id)
        if not scope.permits(note):
            raise NoteNotFoundError(note_id)
        return note

    def _load_owned(self, note_id: str, user_id: str, campaign_id: str) -> Note:
        """Load a note the caller owns, else report it as not found."""
        note = self._load_visible(note_id, user_id, campaign_id)
        if note.user_id != user_id:
            raise NoteNotFoundError(note_id)
        return note

    @staticmethod
    def _sees_secrets(note: Note, user_id: str, campaign_role: str) -> bool:
        return note.user_id == user_id or campaign_role == OWNER_ROLE

    @staticmethod
    def _hide_secrets(data: Dict[str, Any]) -> Dict[str, Any]:
        data["entry"] = strip_secrets_json(data.get("entry"))
        data["entry_html"] = strip_secrets_html(data.get("entry_html")) or None
        return data

    def _note_to_dict(self, note: Note, user_id: str, campaign_role: str) -> Dict[str, Any]:
        """Serialize a note, hiding inline secrets from non-privileged readers."""
        data = note.model_dump(mode="json")
        if not self._sees_secrets(note, user_id, campaign_role):
            self._hide_secrets(data)
        return data

    def _version_to_dict(
        self, version: NoteVersion, note: Note, user_id: str, campaign_role: str
    ) -> Dict[str, Any]:
        """Serialize a snapshot under the same secret rules as its note."""
        data = version.model_dump(mode="json")
        if not self._sees_secrets(note, user_id, campaign_role):
            self._hide_secrets(data)
        return data

    @staticmethod
    def _dump(payload: Any) -> str:
        return json.dumps(payload, indent=2, ensure_ascii=False)

    # =========================================================================
    # Tools
    # =========================================================================

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="note_create")
        def note_create(
            user_id: str,
            campaign_id: str,
            title: str = "",
            content: Optional[List[Dict[str, Any]]] = None,
            entity_id: Optional[str] = None,
            entry: Optional[Dict[str, Any]] = None,
            entry_html: Optional[str] = None,
            color: str = "",
            is_shared: bool = False,
        ) -> str:
            """Create a note in a campaign.
            Args:
                user_id: The calling user, who becomes the owner
                campaign_id: Campaign the note belongs to
                title: Note title (blank becomes "Untitled")
                content: Blocks, e.g. [{"type": "text", "value": "..."},
                    {"type": "checklist", "items": [{"text": "...", "checked": false}]}]
                entity_id: Entity page to attach the note to (optional)
                entry: Rich-text editor document (optional)
                entry_html: HTML rendering of the editor document (optional)
                color: Display color (optional)
                is_shared: Make the note visible to all campaign members
            """
            with timed_operation("note_create", campaign_id=campaign_id) as op:
                try:
                    request = CreateNoteRequest(
                        entity_id=entity_id,
                        title=title,
                        content=content,
                        entry=entry,
                        entry_html=entry_html,
                        color=color,
                        is_shared=is_shared,
                    )
                    note = self.note_service.create(campaign_id, user_id, request)
                    op["note_id"] = note.id
                    return self._dump(self._note_to_dict(note, user_id, OWNER_ROLE))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_get")
        def note_get(
            user_id: str,
            campaign_id: str,
            note_id: str,
            campaign_role: str = "player",
        ) -> str:
            """Retrieve a note visible to the caller.
            Args:
                user_id: The calling user
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
                campaign_role: Caller's campaign role; inline secrets are
                    only shown to the note owner and campaign owners
            """
            with timed_operation("note_get", note_id=note_id):
                try:
                    note = self._load_visible(note_id, user_id, campaign_id)
                    return self._dump(self._note_to_dict(note, user_id, campaign_role))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_update")
        def note_update(
            user_id: str,
            campaign_id: str,
            note_id: str,
            title: Optional[str] = None,
            content: Optional[List[Dict[str, Any]]] = None,
            entry: Optional[Dict[str, Any]] = None,
            entry_html: Optional[str] = None,
            color: Optional[str] = None,
            pinned: Optional[bool] = None,
            is_shared: Optional[bool] = None,
            clear_entry: bool = False,
            campaign_role: str = "player",
        ) -> str:
            """Update a note. Omitted fields are left unchanged.
            Args:
                user_id: The calling user (recorded as last editor)
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
                title: New title (optional)
                content: New block list (optional)
                entry: New editor document (optional)
                entry_html: New HTML rendering (optional, sanitized)
                color: New display color (optional)
                pinned: Pin or unpin (owner only, ignored for others)
                is_shared: Share or unshare (owner only, ignored for others)
                clear_entry: Remove the rich-text document and its HTML
                campaign_role: Caller's campaign role (controls secret visibility)
            """
            with timed_operation("note_update", note_id=note_id):
                try:
                    note = self._load_visible(note_id, user_id, campaign_id)
                    fields: Dict[str, Any] = {
                        "title": title,
                        "content": content,
                        "entry": entry,
                        "entry_html": entry_html,
                        "color": color,
                        "pinned": pinned,
                        "is_shared": is_shared,
                    }
                    if note.user_id != user_id:
                        fields.pop("pinned")
                        fields.pop("is_shared")
                    payload = {k: v for k, v in fields.items() if v is not None}
                    if clear_entry:
                        payload["entry"] = None
                        payload["entry_html"] = None
                    request = UpdateNoteRequest(**payload)
                    updated = self.note_service.update(note_id, user_id, request)
                    return self._dump(self._note_to_dict(updated, user_id, campaign_role))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_delete")
        def note_delete(user_id: str, campaign_id: str, note_id: str) -> str:
            """Delete a note and its history. Only the owner may delete.
            Args:
                user_id: The calling user
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
            """
            with timed_operation("note_delete", note_id=note_id):
                try:
                    self._load_owned(note_id, user_id, campaign_id)
                    self.note_service.delete(note_id)
                    return f"Note {note_id} deleted successfully"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_toggle_check")
        def note_toggle_check(
            user_id: str,
            campaign_id: str,
            note_id: str,
            block_index: int,
            item_index: int,
            campaign_role: str = "player",
        ) -> str:
            """Check or uncheck one checklist item.
            Args:
                user_id: The calling user
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
                block_index: Zero-based index of the checklist block
                item_index: Zero-based index of the item within the block
                campaign_role: Caller's campaign role (controls secret visibility)
            """
            with timed_operation("note_toggle_check", note_id=note_id):
                try:
                    self._load_visible(note_id, user_id, campaign_id)
                    note = self.note_service.toggle_check(note_id, block_index, item_index)
                    return self._dump(self._note_to_dict(note, user_id, campaign_role))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_list")
        def note_list(
            user_id: str,
            campaign_id: str,
            scope: str = "all",
            entity_id: Optional[str] = None,
            campaign_role: str = "player",
        ) -> str:
            """List the caller's own notes plus shared notes in a campaign.
            Args:
                user_id: The calling user
                campaign_id: Campaign to list
                scope: "all" (default), "campaign" (notes not attached to an
                    entity) or "entity" (notes on one entity page)
                entity_id: Entity page, required for scope "entity"
                campaign_role: Caller's campaign role (controls secret visibility)
            """
            with timed_operation("note_list", campaign_id=campaign_id, scope=scope) as op:
                try:
                    visibility = VisibilityScope.for_request(
                        user_id, campaign_id, entity_id=entity_id, scope=scope
                    )
                    notes = self.note_service.list_notes(visibility)
                    op["result_count"] = len(notes)
                    return self._dump(
                        [self._note_to_dict(n, user_id, campaign_role) for n in notes]
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_lock")
        def note_lock(user_id: str, campaign_id: str, note_id: str) -> str:
            """Acquire the edit lock on a note.

            Fails if another user holds a live lock. A lock not heartbeated
            within the staleness window is taken over.
            Args:
                user_id: The calling user
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
            """
            with timed_operation("note_lock", note_id=note_id):
                try:
                    self._load_visible(note_id, user_id, campaign_id)
                    note = self.note_service.acquire_lock(note_id, user_id)
                    return self._dump({
                        "note_id": note.id,
                        "locked_by": note.locked_by,
                        "locked_at": note.locked_at.isoformat() if note.locked_at else None,
                    })
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_unlock")
        def note_unlock(user_id: str, campaign_id: str, note_id: str) -> str:
            """Release the caller's edit lock. Does nothing if another user holds it.
            Args:
                user_id: The calling user
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
            """
            with timed_operation("note_unlock", note_id=note_id):
                try:
                    self._load_visible(note_id, user_id, campaign_id)
                    self.note_service.release_lock(note_id, user_id)
                    return f"Lock on note {note_id} released"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_heartbeat")
        def note_heartbeat(user_id: str, campaign_id: str, note_id: str) -> str:
            """Keep the caller's edit lock alive.

            Fails if the lock was lost; the caller must lock again before editing.
            Args:
                user_id: The calling user
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
            """
            with timed_operation("note_heartbeat", note_id=note_id):
                try:
                    self._load_visible(note_id, user_id, campaign_id)
                    self.note_service.heartbeat(note_id, user_id)
                    return f"Lock on note {note_id} renewed"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_force_unlock")
        def note_force_unlock(
            user_id: str,
            campaign_id: str,
            note_id: str,
            campaign_role: str = "player",
        ) -> str:
            """Clear the edit lock whoever holds it. Campaign owners only.
            Args:
                user_id: The calling user
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
                campaign_role: Caller's campaign role; must be "owner"
            """
            with timed_operation("note_force_unlock", note_id=note_id):
                try:
                    if campaign_role != OWNER_ROLE:
                        return "Error: only campaign owners can force-unlock notes"
                    note = self.note_service.get(note_id)
                    if note.campaign_id != campaign_id:
                        raise NoteNotFoundError(note_id)
                    self.note_service.force_release_lock(note_id)
                    logger.info(f"Lock on note {note_id} force-released by {user_id}")
                    return f"Lock on note {note_id} force-released"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_versions")
        def note_versions(
            user_id: str,
            campaign_id: str,
            note_id: str,
            limit: int = 50,
        ) -> str:
            """List a note's saved versions, newest first.
            Args:
                user_id: The calling user
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
                limit: Maximum number of versions to return (default 50)
            """
            with timed_operation("note_versions", note_id=note_id) as op:
                try:
                    self._load_visible(note_id, user_id, campaign_id)
                    versions = self.note_service.list_versions(note_id, limit=limit)
                    op["result_count"] = len(versions)
                    return self._dump([
                        {
                            "id": v.id,
                            "user_id": v.user_id,
                            "title": v.title,
                            "created_at": v.created_at.isoformat(),
                        }
                        for v in versions
                    ])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_version_get")
        def note_version_get(
            user_id: str,
            campaign_id: str,
            note_id: str,
            version_id: str,
            campaign_role: str = "player",
        ) -> str:
            """Retrieve one saved version of a note.
            Args:
                user_id: The calling user
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note the version belongs to
                version_id: ID of the version
                campaign_role: Caller's campaign role (controls secret visibility)
            """
            with timed_operation("note_version_get", version_id=version_id):
                try:
                    note = self._load_visible(note_id, user_id, campaign_id)
                    version = self.note_service.get_version(version_id)
                    if version.note_id != note_id:
                        raise ValidationError(
                            "version does not belong to this note",
                            field="version_id", value=version_id,
                        )
                    return self._dump(
                        self._version_to_dict(version, note, user_id, campaign_role)
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_version_restore")
        def note_version_restore(
            user_id: str,
            campaign_id: str,
            note_id: str,
            version_id: str,
            campaign_role: str = "player",
        ) -> str:
            """Restore a note to a saved version. The current state is saved first.
            Args:
                user_id: The calling user (recorded as last editor)
                campaign_id: Campaign the caller is acting in
                note_id: ID of the note
                version_id: ID of the version to restore
                campaign_role: Caller's campaign role (controls secret visibility)
            """
            with timed_operation("note_version_restore", note_id=note_id):
                try:
                    self._load_visible(note_id, user_id, campaign_id)
                    note = self.note_service.restore_version(note_id, version_id, user_id)
                    return self._dump(self._note_to_dict(note, user_id, campaign_role))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="note_metrics")
        def note_metrics() -> str:
            """Report per-operation counters and timings for this server."""
            return self._dump({
                "summary": metrics.get_summary(),
                "operations": metrics.get_metrics(),
            })

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
