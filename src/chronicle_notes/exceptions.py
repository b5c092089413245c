"""Custom exceptions for Chronicle Notes.

Every error carries a machine-readable code and a ``kind`` that tells the
caller how to react: ``not_found``, ``bad_request`` and ``conflict`` are
expected, recoverable outcomes; ``storage`` means the store itself failed.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002
    NOTE_TITLE_TOO_LONG = 1003

    # Content errors (2xxx)
    CONTENT_INVALID = 2001
    BLOCK_INDEX_OUT_OF_RANGE = 2002
    BLOCK_NOT_CHECKLIST = 2003
    ITEM_INDEX_OUT_OF_RANGE = 2004
    CONTENT_CHANGED = 2005

    # Lock errors (3xxx)
    LOCK_HELD_BY_OTHER = 3001
    LOCK_NOT_HELD = 3002

    # Version errors (4xxx)
    VERSION_NOT_FOUND = 4001
    VERSION_NOTE_MISMATCH = 4002

    # Storage errors (5xxx)
    STORAGE_READ_FAILED = 5001
    STORAGE_WRITE_FAILED = 5002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_SCOPE = 7002


class NotesError(Exception):
    """Base exception for all Chronicle Notes errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    kind = "internal"

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "kind": self.kind,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NotFoundError(NotesError):
    """A note or version does not exist."""

    kind = "not_found"


class BadRequestError(NotesError):
    """The caller supplied invalid or mismatched input."""

    kind = "bad_request"


class ConflictError(NotesError):
    """The operation collides with another identity's lock or concurrent write."""

    kind = "conflict"


class NoteNotFoundError(NotFoundError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or "note not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id}
        )
        self.note_id = note_id


class VersionNotFoundError(NotFoundError):
    """Raised when a note version cannot be found."""

    def __init__(self, version_id: str, message: Optional[str] = None):
        super().__init__(
            message or "note version not found",
            code=ErrorCode.VERSION_NOT_FOUND,
            details={"version_id": version_id}
        )
        self.version_id = version_id


class ValidationError(BadRequestError):
    """Raised for invalid titles, content, indices or scopes."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class LockConflictError(ConflictError):
    """Raised when a lock is held by someone else or not held by the caller."""

    def __init__(
        self,
        message: str,
        note_id: str,
        holder_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.LOCK_HELD_BY_OTHER
    ):
        details = {"note_id": note_id}
        if holder_id:
            details["holder_id"] = holder_id

        super().__init__(message, code=code, details=details)
        self.note_id = note_id
        self.holder_id = holder_id


class StorageError(NotesError):
    """Raised when the underlying database operation fails."""

    kind = "storage"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error
