"""Data models for the NoteShare service."""

import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from noteshare.exceptions import ErrorCode, NoteShareError, ValidationError

# Maximum length of a derived note title
TITLE_MAX_LENGTH = 80

T = TypeVar("T")


class Privacy(IntEnum):
    """Visibility level of a note.

    The integer values are persisted and accepted from callers as-is.
    """

    PRIVATE = 0  # Author only
    PROTECTED = 1  # Author plus authors they share with
    PUBLIC = 2  # Everyone


DEFAULT_PRIVACY = Privacy.PROTECTED


def validate_privacy(value: Any) -> Privacy:
    """Coerce a caller-supplied privacy level, rejecting anything out of range.

    Args:
        value: A Privacy member or its integer value.

    Returns:
        The matching Privacy member.

    Raises:
        ValidationError: If the value is not one of 0, 1, 2.
    """
    # bool is an int subclass; True would otherwise pass as PROTECTED
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"Illegal privacy mode: {value!r}",
            field="privacy",
            value=value,
            code=ErrorCode.INVALID_PRIVACY,
        )
    try:
        return Privacy(value)
    except ValueError:
        raise ValidationError(
            f"Illegal privacy mode: {value}",
            field="privacy",
            value=value,
            code=ErrorCode.INVALID_PRIVACY,
        ) from None


def validate_limit(value: Any) -> int:
    """Check a caller-supplied result limit (a non-negative int)."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            f"Limit must be a non-negative integer: {value!r}",
            field="limit",
            value=value,
            code=ErrorCode.INVALID_LIMIT,
        )
    return value


def validate_note_ids(value: Any) -> List[int]:
    """Materialize a caller-supplied collection of note ids, dropping repeats.

    Raises:
        ValidationError: If the value is not iterable or holds a non-integer.
    """
    try:
        ids = list(dict.fromkeys(value))
    except TypeError:
        raise ValidationError(
            f"Expected a list of note ids: {value!r}",
            field="note_ids",
            value=value,
        ) from None
    for note_id in ids:
        if isinstance(note_id, bool) or not isinstance(note_id, int):
            raise ValidationError(
                f"Note id must be an integer: {note_id!r}",
                field="note_ids",
                value=note_id,
            )
    return ids


def unix_now() -> int:
    """Current time as integer unix seconds."""
    return int(time.time())


def derive_title(content: str) -> str:
    """Derive a display title from note content.

    Uses the first non-blank line with any leading markdown heading
    marks removed, truncated to TITLE_MAX_LENGTH characters.
    """
    for line in content.splitlines():
        stripped = line.strip().lstrip("#").strip()
        if stripped:
            return stripped[:TITLE_MAX_LENGTH]
    return ""


class Author(BaseModel):
    """A registered author. The credential hash never leaves the store."""

    id: int = Field(..., description="Store-assigned author id")
    name: str = Field(..., description="Display and login name")

    model_config = {"frozen": True}


class Note(BaseModel):
    """A note as returned to a viewer who is allowed to read it."""

    id: int = Field(..., description="Store-assigned note id")
    author_id: int = Field(..., description="Id of the authoring Author")
    content: str = Field(..., description="Note body, stored byte-for-byte")
    created_at: int = Field(..., description="Creation time in unix seconds")
    privacy: Privacy = Field(default=DEFAULT_PRIVACY, description="Visibility level")
    render_hint: int = Field(default=0, description="Presentation tag, opaque to the store")

    model_config = {"frozen": True}

    @property
    def title(self) -> str:
        return derive_title(self.content)


class NoteDraft(BaseModel):
    """Input for creating a note."""

    author_id: int
    content: str
    created_at: int = Field(default_factory=unix_now)
    privacy: Privacy = Field(default=DEFAULT_PRIVACY)
    render_hint: int = 0

    @field_validator("privacy", mode="before")
    @classmethod
    def check_privacy(cls, v: Any) -> Privacy:
        """Reject out-of-range privacy levels with the service's own error."""
        return validate_privacy(v)


class NoteTitle(BaseModel):
    """Identifier and derived title of a visible note."""

    id: int
    title: str


@dataclass(frozen=True)
class SearchHit:
    """A single full-text match.

    Attributes:
        note_id: Id of the matching note.
        score: Relevance, higher is better.
    """

    note_id: int
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.note_id, "score": self.score}


@dataclass(frozen=True)
class RebuildReport:
    """Outcome of a full index rebuild."""

    doc_count: int
    elapsed_seconds: float
    repaired_self_shares: int = 0

    @property
    def docs_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return float(self.doc_count)
        return self.doc_count / self.elapsed_seconds


@dataclass
class OperationResult(Generic[T]):
    """Typed outcome of a service operation.

    Attributes:
        status: "ok" when a value was produced, "empty" for a successful
            call with nothing to return (no rows, no hits), "error" when
            the operation failed.
        value: The produced value, if any.
        error: The failure, when status is "error".
    """

    status: Literal["ok", "empty", "error"]
    value: Optional[T] = None
    error: Optional[NoteShareError] = field(default=None)

    @classmethod
    def success(cls, value: Optional[T] = None) -> "OperationResult[T]":
        """Wrap a value, treating None and empty collections as empty-success."""
        if value is None:
            return cls(status="empty")
        if isinstance(value, (list, tuple)) and not value:
            return cls(status="empty", value=value)
        return cls(status="ok", value=value)

    @classmethod
    def failure(cls, error: NoteShareError) -> "OperationResult[T]":
        return cls(status="error", error=error)

    @property
    def ok(self) -> bool:
        """True for both ok and empty outcomes."""
        return self.status != "error"

    @property
    def error_kind(self) -> Optional[str]:
        """Name of the error category, e.g. 'NotFoundError'."""
        if self.error is None:
            return None
        for kind in type(self.error).__mro__:
            if kind.__module__ == "noteshare.exceptions" and kind.__base__ is NoteShareError:
                return kind.__name__
        return type(self.error).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result: Dict[str, Any] = {"status": self.status}
        if self.error is not None:
            result["error"] = self.error.to_dict()
            result["error"]["kind"] = self.error_kind
        elif self.value is not None:
            result["value"] = _to_plain(self.value)
        return result


def _to_plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (SearchHit,)):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    return value
