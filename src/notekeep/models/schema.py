"""Data models and the validation boundary for the notekeep store.

Every entity entering or leaving the repository passes through
``validate_note`` / ``validate_folder``. Only a missing identifier (and, for
folders, a missing name) is a hard failure; every other field degrades
gracefully to a sanitized value.
"""

import datetime
import logging
import os
import re
import secrets
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Type, TypeVar, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from notekeep.exceptions import ErrorCode, ValidationError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1024 * 1024  # 1 MiB of characters
MAX_TAG_LENGTH = 50
MAX_TAGS_PER_NOTE = 20
DEFAULT_COLOR = "#ffffff"

HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware UTC, treating naive values as UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same instant expressed in UTC, or now if dt_value is None.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Parse a persisted timestamp into an aware UTC datetime.

    Accepts datetimes, ISO 8601 strings (including a trailing ``Z``) and
    numbers, which are read as JavaScript-style epoch milliseconds.

    Returns:
        The parsed datetime, or None if the value cannot be interpreted.
    """
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_timezone_aware(datetime.datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


# Counter for same-microsecond uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id(prefix: str = "note") -> str:
    """Generate an opaque, globally unique identifier.

    Returns:
        A string in format "<prefix>_YYYYMMDDTHHMMSSsssssscccccc_rrrrrrrr" where
        the timestamp orders ids by creation, the 6-digit counter separates ids
        created within the same microsecond, and the random suffix separates
        ids generated on different devices.

    Identifiers are never reused: the timestamp is monotonic per process and
    the random suffix makes cross-device collisions negligible.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp == _last_timestamp:
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 1_000_000

        _counter %= 1_000_000

        date_time = now.strftime("%Y%m%dT%H%M%S")
        return (
            f"{prefix}_{date_time}{now.microsecond:06d}{_counter:06d}"
            f"_{secrets.token_hex(4)}"
        )


# =============================================================================
# Field sanitizers (pure, idempotent)
# =============================================================================


def sanitize_text(value: Any, max_length: int, field_name: str) -> str:
    """Trim a single-line text field and clamp it to max_length."""
    if not isinstance(value, str):
        return ""
    text = value.strip()
    if len(text) > max_length:
        logger.warning(
            f"{field_name} truncated from {len(text)} to {max_length} characters"
        )
        text = text[:max_length].rstrip()
    return text


def sanitize_content(value: Any) -> str:
    """Clamp note content to the maximum note size."""
    if not isinstance(value, str):
        return ""
    if len(value) > MAX_CONTENT_LENGTH:
        logger.warning(
            f"Content truncated from {len(value)} to {MAX_CONTENT_LENGTH} characters"
        )
        return value[:MAX_CONTENT_LENGTH]
    return value


def sanitize_color(value: Any) -> str:
    """Return value if it is a #RRGGBB color, else the default white."""
    if isinstance(value, str) and HEX_COLOR_PATTERN.match(value):
        return value
    return DEFAULT_COLOR


def sanitize_tags(value: Any) -> List[str]:
    """Trim, clamp, de-duplicate and cap a tag list, preserving order.

    Tags are case-sensitive. The cap applies after de-duplication, so the
    first MAX_TAGS_PER_NOTE distinct tags survive.
    """
    if not isinstance(value, (list, tuple)):
        return []
    tags: List[str] = []
    seen: Set[str] = set()
    for raw in value:
        if not isinstance(raw, str):
            continue
        tag = raw.strip()[:MAX_TAG_LENGTH].rstrip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        tags.append(tag)
    if len(tags) > MAX_TAGS_PER_NOTE:
        logger.warning(
            f"Tag list capped from {len(tags)} to {MAX_TAGS_PER_NOTE} tags"
        )
        tags = tags[:MAX_TAGS_PER_NOTE]
    return tags


def sanitize_reference(
    value: Any, known_ids: Optional[Iterable[str]], field_name: str
) -> Optional[str]:
    """Null out a folder reference that does not point at a known folder.

    When known_ids is None the existence check is skipped.
    """
    if not value or not isinstance(value, str):
        return None
    if known_ids is not None and value not in known_ids:
        logger.warning(f"Invalid {field_name}: {value}")
        return None
    return value


def clamp_int(value: Any, minimum: int, default: int) -> int:
    """Coerce value to an int no smaller than minimum."""
    if isinstance(value, bool):
        value = int(value)
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        number = default
    return max(minimum, number)


def _context_ids(info: ValidationInfo) -> Optional[Set[str]]:
    if info.context and info.context.get("folder_ids") is not None:
        return set(info.context["folder_ids"])
    return None


def _coerce_bool(value: Any) -> bool:
    return bool(value)


def _coerce_timestamp(value: Any) -> datetime.datetime:
    return parse_timestamp(value) or utc_now()


def _require_id(value: Any, kind: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{kind} ID is required and must be a non-empty string")
    return value


# =============================================================================
# Models
# =============================================================================


class QuickFilter(str, Enum):
    """Coarse note filters offered by the note list."""

    ALL = "all"
    RECENT = "recent"  # modified within the last week
    FAVORITES = "favorites"
    SHARED = "shared"


class SortKey(str, Enum):
    """Sort orders for note queries."""

    MODIFIED = "modified"  # newest modification first
    CREATED = "created"  # newest creation first
    TITLE = "title"  # alphabetical
    FOLDER = "folder"  # alphabetical by folder name


class NoteMetadata(BaseModel):
    """Derived and bookkeeping data attached to a note."""

    word_count: int = Field(
        default=0, validation_alias=AliasChoices("word_count", "wordCount")
    )
    attachments: List[Any] = Field(default_factory=list)
    links: List[Any] = Field(default_factory=list)
    version: int = Field(default=1, description="Monotonic edit counter, >= 1")

    model_config = {"extra": "ignore"}

    @field_validator("word_count", mode="before")
    @classmethod
    def _clamp_word_count(cls, v: Any) -> int:
        return clamp_int(v, 0, 0)

    @field_validator("attachments", "links", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> List[Any]:
        return list(v) if isinstance(v, (list, tuple)) else []

    @field_validator("version", mode="before")
    @classmethod
    def _clamp_version(cls, v: Any) -> int:
        return clamp_int(v, 1, 1)


class Note(BaseModel):
    """A note in the store."""

    id: str = Field(..., description="Opaque unique identifier")
    title: str = Field(default="", description="Title of the note")
    content: str = Field(default="", description="Rich markup content")
    color: str = Field(default=DEFAULT_COLOR)
    tags: List[str] = Field(default_factory=list)
    folder_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("folder_id", "folderId")
    )
    is_favorite: bool = Field(
        default=False, validation_alias=AliasChoices("is_favorite", "isFavorite")
    )
    is_shared: bool = Field(
        default=False, validation_alias=AliasChoices("is_shared", "isShared")
    )
    created_at: datetime.datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("created_at", "createdAt"),
    )
    modified_at: datetime.datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("modified_at", "modifiedAt"),
    )
    is_dirty: bool = Field(
        default=False, validation_alias=AliasChoices("is_dirty", "isDirty")
    )
    synced: bool = Field(default=False, description="Pushed to the remote endpoint")
    metadata: NoteMetadata = Field(default_factory=NoteMetadata)

    model_config = {"extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, v: Any) -> str:
        return _require_id(v, "Note")

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, v: Any) -> str:
        return sanitize_text(v, MAX_TITLE_LENGTH, "Title")

    @field_validator("content", mode="before")
    @classmethod
    def validate_content(cls, v: Any) -> str:
        return sanitize_content(v)

    @field_validator("color", mode="before")
    @classmethod
    def validate_color(cls, v: Any) -> str:
        return sanitize_color(v)

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: Any) -> List[str]:
        return sanitize_tags(v)

    @field_validator("folder_id", mode="before")
    @classmethod
    def validate_folder_id(cls, v: Any, info: ValidationInfo) -> Optional[str]:
        return sanitize_reference(v, _context_ids(info), "folder ID")

    @field_validator("is_favorite", "is_shared", "is_dirty", "synced", mode="before")
    @classmethod
    def validate_flags(cls, v: Any) -> bool:
        return _coerce_bool(v)

    @field_validator("created_at", "modified_at", mode="before")
    @classmethod
    def validate_timestamps(cls, v: Any) -> datetime.datetime:
        return _coerce_timestamp(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def validate_metadata(cls, v: Any) -> Any:
        if isinstance(v, (NoteMetadata, Mapping)):
            return v
        return {}

    @model_validator(mode="after")
    def _order_timestamps(self) -> "Note":
        if self.modified_at < self.created_at:
            self.modified_at = self.created_at
        return self

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the JSON record persisted by the store."""
        return self.model_dump(mode="json")


class Folder(BaseModel):
    """A folder grouping notes. Folders may nest through parent_id."""

    id: str = Field(..., description="Opaque unique identifier")
    name: str = Field(..., description="Display name, required")
    parent_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("parent_id", "parentId")
    )
    color: str = Field(default=DEFAULT_COLOR)
    created_at: datetime.datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("created_at", "createdAt"),
    )
    modified_at: datetime.datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("modified_at", "modifiedAt"),
    )

    model_config = {"extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, v: Any) -> str:
        return _require_id(v, "Folder")

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> str:
        name = sanitize_text(v, MAX_TITLE_LENGTH, "Folder name")
        if not name:
            raise ValueError("Folder name is required")
        return name

    @field_validator("parent_id", mode="before")
    @classmethod
    def validate_parent_id(cls, v: Any, info: ValidationInfo) -> Optional[str]:
        parent_id = sanitize_reference(v, _context_ids(info), "parent folder ID")
        if parent_id is not None and parent_id == info.data.get("id"):
            return None
        return parent_id

    @field_validator("color", mode="before")
    @classmethod
    def validate_color(cls, v: Any) -> str:
        return sanitize_color(v)

    @field_validator("created_at", "modified_at", mode="before")
    @classmethod
    def validate_timestamps(cls, v: Any) -> datetime.datetime:
        return _coerce_timestamp(v)

    @model_validator(mode="after")
    def _order_timestamps(self) -> "Folder":
        if self.modified_at < self.created_at:
            self.modified_at = self.created_at
        return self

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the JSON record persisted by the store."""
        return self.model_dump(mode="json")


@dataclass
class FolderSummary:
    """A folder with its derived note count.

    Attributes:
        folder: The folder itself.
        note_count: Number of notes whose folder_id is this folder's id.
    """

    folder: Folder
    note_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {**self.folder.to_record(), "note_count": self.note_count}


# =============================================================================
# Validation boundary
# =============================================================================

EntityT = TypeVar("EntityT", Note, Folder)


def _reject(
    message: str,
    strict: bool,
    field: Optional[str] = None,
    value: Any = None,
    errors: Optional[list] = None,
    code: ErrorCode = ErrorCode.VALIDATION_FAILED,
) -> None:
    if strict:
        raise ValidationError(message, field=field, value=value, errors=errors, code=code)
    logger.warning(f"{message} (skipped)")
    return None


def _validate_entity(
    model: Type[EntityT],
    data: Any,
    strict: bool,
    folder_ids: Optional[Iterable[str]],
) -> Optional[EntityT]:
    kind = model.__name__
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if not isinstance(data, Mapping):
        return _reject(
            f"{kind} must be an object",
            strict,
            value=type(data).__name__,
            code=ErrorCode.INVALID_ENTITY_TYPE,
        )

    context = {"folder_ids": set(folder_ids) if folder_ids is not None else None}
    try:
        return model.model_validate(dict(data), context=context)
    except PydanticValidationError as e:
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
            }
            for err in e.errors()
        ]
        field = errors[0]["field"] if errors else None
        missing = any(err["type"] == "missing" for err in e.errors())
        return _reject(
            f"{kind} validation failed: {errors[0]['message'] if errors else e}",
            strict,
            field=field,
            value=data.get("id"),
            errors=errors,
            code=(
                ErrorCode.MISSING_REQUIRED_FIELD
                if missing
                else ErrorCode.VALIDATION_FAILED
            ),
        )


def validate_note(
    data: Union[Note, Mapping, Any],
    strict: bool = False,
    folder_ids: Optional[Iterable[str]] = None,
) -> Optional[Note]:
    """Validate and sanitize a note.

    Args:
        data: A Note, or a mapping in snake_case or legacy camelCase keys.
        strict: Raise ValidationError instead of returning None on hard failure.
        folder_ids: Live folder ids; folder references outside this set are
            nulled. None skips the existence check.

    Returns:
        A sanitized Note, or None in lenient mode when the input is unusable.

    Raises:
        ValidationError: In strict mode, when the input is not an object or
            has no usable id.
    """
    return _validate_entity(Note, data, strict, folder_ids)


def validate_folder(
    data: Union[Folder, Mapping, Any],
    strict: bool = False,
    folder_ids: Optional[Iterable[str]] = None,
) -> Optional[Folder]:
    """Validate and sanitize a folder.

    A missing id or an empty name is a hard failure; every other field
    degrades to a default. ``folder_ids`` is checked against ``parent_id``.
    """
    return _validate_entity(Folder, data, strict, folder_ids)
