"""Custom exceptions for the NoteShare service.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Every kind that can cross the
core/transport boundary has exactly one class here:

- NotFoundError (NoteNotFoundError, AuthorNotFoundError)
- ValidationError
- AuthorizationError
- ConflictError
- StoreError
- SearchIndexError (IndexBuildError)
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Lookup errors (1xxx)
    NOTE_NOT_FOUND = 1001
    AUTHOR_NOT_FOUND = 1002

    # Validation errors (2xxx)
    VALIDATION_FAILED = 2001
    INVALID_PRIVACY = 2002
    INVALID_LIMIT = 2003
    INVALID_AUTHOR_NAME = 2004

    # Authorization errors (3xxx)
    NOT_AUTHORIZED = 3001
    BAD_CREDENTIALS = 3002
    NO_MATCHING_ROW = 3003

    # Conflict errors (4xxx)
    DUPLICATE_AUTHOR = 4001

    # Store errors (5xxx)
    STORAGE_READ_FAILED = 5001
    STORAGE_WRITE_FAILED = 5002
    STORAGE_CONNECTION_FAILED = 5003
    DANGLING_AUTHOR = 5004

    # Search index errors (6xxx)
    INDEX_WRITE_FAILED = 6001
    INDEX_QUERY_FAILED = 6002
    INDEX_INVALID = 6003
    INDEX_BUILD_FAILED = 6004
    INDEX_LOCKED = 6005


class NoteShareError(Exception):
    """Base exception for all NoteShare errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

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


class NotFoundError(NoteShareError):
    """Raised when a requested record does not exist or is not visible."""


class NoteNotFoundError(NotFoundError):
    """Raised when a note is absent or hidden from the viewer.

    The two cases produce the same message and details so callers
    cannot learn whether a note they may not read exists.
    """

    def __init__(self, note_id: int, viewer_id: Optional[int] = None):
        details: Dict[str, Any] = {"note_id": note_id}
        if viewer_id is not None:
            details["viewer_id"] = viewer_id
        super().__init__(
            f"No note {note_id} accessible to viewer",
            code=ErrorCode.NOTE_NOT_FOUND,
            details=details
        )
        self.note_id = note_id
        self.viewer_id = viewer_id


class AuthorNotFoundError(NotFoundError):
    """Raised when an author id does not resolve."""

    def __init__(self, author_id: int, message: Optional[str] = None):
        super().__init__(
            message or f"Author {author_id} not found",
            code=ErrorCode.AUTHOR_NOT_FOUND,
            details={"author_id": author_id}
        )
        self.author_id = author_id


class ValidationError(NoteShareError):
    """Raised for malformed input, always before any write."""

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


class AuthorizationError(NoteShareError):
    """Raised when the caller is not entitled to the operation."""

    def __init__(
        self,
        message: str,
        caller_id: Optional[int] = None,
        code: ErrorCode = ErrorCode.NOT_AUTHORIZED
    ):
        details = {}
        if caller_id is not None:
            details["caller_id"] = caller_id

        super().__init__(message, code=code, details=details)
        self.caller_id = caller_id


class ConflictError(NoteShareError):
    """Raised when a unique constraint would be violated."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.DUPLICATE_AUTHOR,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code=code, details=details)


class StoreError(NoteShareError):
    """Raised for any failure touching the relational store."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
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


class SearchIndexError(NoteShareError):
    """Raised for failures in the full-text index."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.INDEX_QUERY_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.query = query
        self.original_error = original_error


class IndexBuildError(SearchIndexError):
    """Raised when a rebuild cannot complete.

    Attributes:
        note_id: The note being indexed when the build failed, if any
    """

    def __init__(
        self,
        message: str,
        note_id: Optional[int] = None,
        code: ErrorCode = ErrorCode.INDEX_BUILD_FAILED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, code=code, original_error=original_error)
        self.note_id = note_id
        if note_id is not None:
            self.details["note_id"] = note_id
