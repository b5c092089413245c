"""Data models for Chronicle Notes."""

import datetime
import json
import uuid
from datetime import timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

# Column width of notes.color
MAX_COLOR_LENGTH = 20


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(
    dt_value: Optional[datetime.datetime],
) -> Optional[datetime.datetime]:
    """Treat naive datetimes coming back from the database as UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise
        unchanged. None stays None.
    """
    if dt_value is None:
        return None
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def generate_id() -> str:
    """Generate a note or version ID (36-character UUID4 string)."""
    return str(uuid.uuid4())


def normalize_title(title: Optional[str], max_length: int) -> str:
    """Trim a title and apply the "Untitled" default.

    Raises:
        ValueError: If the trimmed title is longer than max_length characters.
    """
    from chronicle_notes.config import config

    cleaned = (title or "").strip()
    if not cleaned:
        return config.default_title
    if len(cleaned) > max_length:
        raise ValueError(f"title must be {max_length} characters or less")
    return cleaned


def normalize_color(color: Optional[str]) -> str:
    """Trim a display color and fall back to the configured default."""
    from chronicle_notes.config import config

    cleaned = (color or "").strip()
    if not cleaned:
        return config.default_color
    if len(cleaned) > MAX_COLOR_LENGTH:
        raise ValueError(f"color must be {MAX_COLOR_LENGTH} characters or less")
    return cleaned


class ParagraphBlock(BaseModel):
    """A block of plain text."""

    type: Literal["text"] = "text"
    value: str = Field(default="", description="Paragraph text")

    model_config = {"extra": "forbid"}


class ChecklistItem(BaseModel):
    """A single togglable checklist entry."""

    text: str = Field(default="", description="Item label")
    checked: bool = Field(default=False, description="Whether the item is done")

    model_config = {"extra": "forbid"}


class ChecklistBlock(BaseModel):
    """An ordered list of checklist items."""

    type: Literal["checklist"] = "checklist"
    items: List[ChecklistItem] = Field(default_factory=list)

    model_config = {"extra": "forbid"}


ContentBlock = Annotated[
    Union[ParagraphBlock, ChecklistBlock], Field(discriminator="type")
]

_content_adapter = TypeAdapter(List[ContentBlock])


def content_to_json(content: List[ContentBlock]) -> str:
    """Serialize content blocks for storage."""
    return _content_adapter.dump_json(content).decode("utf-8")


def content_from_json(raw: Optional[str]) -> List[ContentBlock]:
    """Parse stored content blocks. Empty or NULL columns yield no blocks."""
    if not raw:
        return []
    return _content_adapter.validate_json(raw)


def entry_to_json(entry: Optional[Dict[str, Any]]) -> Optional[str]:
    """Serialize the editor document, keeping NULL as NULL."""
    if entry is None:
        return None
    return json.dumps(entry, ensure_ascii=False)


def entry_from_json(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse the stored editor document."""
    if not raw:
        return None
    return json.loads(raw)


class Note(BaseModel):
    """A campaign note owned by one user."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    campaign_id: str = Field(..., description="Campaign the note belongs to")
    user_id: str = Field(..., description="Owner of the note")
    entity_id: Optional[str] = Field(
        default=None, description="Entity page the note is pinned to (None = campaign-wide)"
    )
    title: str = Field(default="Untitled", description="Title of the note")
    content: List[ContentBlock] = Field(
        default_factory=list, description="Ordered text and checklist blocks"
    )
    entry: Optional[Dict[str, Any]] = Field(
        default=None, description="Structured rich-text document from the editor"
    )
    entry_html: Optional[str] = Field(
        default=None, description="Sanitized HTML mirror of the rich-text document"
    )
    color: str = Field(default="#374151", description="Display color")
    pinned: bool = Field(default=False)
    is_shared: bool = Field(
        default=False, description="Visible to all campaign members, not just the owner"
    )
    last_edited_by: Optional[str] = Field(default=None)
    locked_by: Optional[str] = Field(default=None, description="Edit lock holder")
    locked_at: Optional[datetime.datetime] = Field(
        default=None, description="When the edit lock was acquired or last heartbeated"
    )
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("campaign_id", "user_id")
    @classmethod
    def validate_required_ids(cls, v: str) -> str:
        """Campaign and owner IDs are mandatory."""
        if not v or not v.strip():
            raise ValueError("ID cannot be empty")
        return v

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Apply the title default and length cap."""
        from chronicle_notes.config import config

        return normalize_title(v, config.max_title_length)

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        """Apply the color default and length cap."""
        return normalize_color(v)

    @model_validator(mode="after")
    def validate_lock_pair(self) -> "Note":
        """locked_by and locked_at are either both set or both empty."""
        if (self.locked_by is None) != (self.locked_at is None):
            raise ValueError("locked_by and locked_at must be set together")
        return self

    @property
    def is_locked(self) -> bool:
        return self.locked_by is not None


class NoteVersion(BaseModel):
    """Immutable snapshot of a note's title and content."""

    id: str = Field(default_factory=generate_id)
    note_id: str = Field(..., description="Note this snapshot belongs to")
    user_id: str = Field(..., description="Editor whose action triggered the snapshot")
    title: str = Field(default="")
    content: List[ContentBlock] = Field(default_factory=list)
    entry: Optional[Dict[str, Any]] = Field(default=None)
    entry_html: Optional[str] = Field(default=None)
    created_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"extra": "forbid", "frozen": True}


class CreateNoteRequest(BaseModel):
    """Fields accepted when creating a note."""

    entity_id: Optional[str] = None
    title: str = ""
    content: Optional[List[ContentBlock]] = None
    entry: Optional[Dict[str, Any]] = None
    entry_html: Optional[str] = None
    color: str = ""
    is_shared: bool = False

    model_config = {"extra": "forbid"}


class UpdateNoteRequest(BaseModel):
    """Partial update. Only fields explicitly provided are applied.

    ``entry`` and ``entry_html`` may be provided as None to clear them; for
    the other fields None means "leave unchanged".
    """

    title: Optional[str] = None
    content: Optional[List[ContentBlock]] = None
    entry: Optional[Dict[str, Any]] = None
    entry_html: Optional[str] = None
    color: Optional[str] = None
    pinned: Optional[bool] = None
    is_shared: Optional[bool] = None

    model_config = {"extra": "forbid"}

    def provided(self, field: str) -> bool:
        """Return True if the field was present in the request."""
        return field in self.model_fields_set


class ToggleCheckRequest(BaseModel):
    """Address of one checklist item inside a note."""

    block_index: int
    item_index: int

    model_config = {"extra": "forbid"}
