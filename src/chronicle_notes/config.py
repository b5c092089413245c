"""Configuration module for Chronicle Notes."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from chronicle_notes import __version__

# Project root .env, anchored to __file__ so the process CWD does not matter.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level overrides
_USER_ENV = Path.home() / ".chronicle_notes" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NotesConfig(BaseModel):
    """Configuration for the notes core and its tool server."""

    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("CHRONICLE_NOTES_BASE_DIR", "."))
    )
    # Database configuration. database_url wins over database_path when set,
    # which is how a shared MariaDB/PostgreSQL store is selected.
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("CHRONICLE_NOTES_DATABASE_PATH", "data/db/chronicle_notes.db")
        )
    )
    database_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("CHRONICLE_NOTES_DATABASE_URL") or None
    )
    # Edit lock lease: a lock not heartbeated within this window is stale and
    # may be reclaimed by any requester.
    lock_stale_seconds: int = Field(
        default_factory=lambda: int(os.getenv("CHRONICLE_NOTES_LOCK_STALE_SECONDS", "300"))
    )
    # When true, update/restore require the editor to hold a live lock.
    # Otherwise only a live lock held by someone else blocks a write.
    require_lock_for_update: bool = Field(
        default_factory=lambda: _env_flag("CHRONICLE_NOTES_REQUIRE_LOCK_FOR_UPDATE", "false")
    )
    # Retention cap for the version archive
    max_versions_per_note: int = Field(
        default_factory=lambda: int(os.getenv("CHRONICLE_NOTES_MAX_VERSIONS_PER_NOTE", "50"))
    )
    max_title_length: int = Field(
        default_factory=lambda: int(os.getenv("CHRONICLE_NOTES_MAX_TITLE_LENGTH", "200"))
    )
    default_title: str = Field(default="Untitled")
    default_color: str = Field(
        default_factory=lambda: os.getenv("CHRONICLE_NOTES_DEFAULT_COLOR", "#374151")
    )
    # Server configuration
    server_name: str = Field(
        default_factory=lambda: os.getenv("CHRONICLE_NOTES_SERVER_NAME", "chronicle-notes")
    )
    server_version: str = Field(default=__version__)
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("CHRONICLE_NOTES_LOG_DIR"))
            if os.getenv("CHRONICLE_NOTES_LOG_DIR")
            else None
        )
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "NotesConfig":
        """Reject limits that would disable locking, retention or titles."""
        if self.lock_stale_seconds < 1:
            raise ValueError("lock_stale_seconds must be >= 1")
        if self.max_versions_per_note < 1:
            raise ValueError("max_versions_per_note must be >= 1")
        if self.max_title_length < 1:
            raise ValueError("max_title_length must be >= 1")
        if self.lock_stale_seconds < 30:
            logger.warning(
                "lock_stale_seconds=%d is very short; idle editors will lose "
                "their locks between heartbeats.",
                self.lock_stale_seconds,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = NotesConfig()
