"""Pydantic schemas for the memory engine -- payloads, records, and context.

Defines:
- Enums: MessageRole, PinType
- Create payloads: MessageCreate, SummaryCreate, PinCreate (input validation)
- Records: SessionRead, MessageRead, SummaryRead, PinRead
- Results: MemoryContext (assembled context), MemoryStats (per-session counts)
- validate_payload(): builds a payload and maps pydantic failures onto the
  engine's ValidationError
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator
from pydantic import ValidationError as PydanticValidationError

from src.recall.core.errors import ValidationError

M = TypeVar("M", bound=BaseModel)

SessionId = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)
]
ImportanceScore = Annotated[float, Field(ge=0.0, le=1.0, allow_inf_nan=False)]

DEFAULT_MESSAGE_IMPORTANCE = 0.5
DEFAULT_SUMMARY_IMPORTANCE = 0.7
DEFAULT_PIN_IMPORTANCE = 0.8


# ── Enums ───────────────────────────────────────────────────────────────────


class MessageRole(str, Enum):
    """Speaker of a transcript turn."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class PinType(str, Enum):
    """How a pin came to exist."""

    USER = "user"  # Explicit user action
    AUTO = "auto"  # Automatic content detection hook
    CODE = "code"
    CONCEPT = "concept"
    SYSTEM = "system"


# ── Create Payloads ─────────────────────────────────────────────────────────


class MessageCreate(BaseModel):
    """Schema for recording a transcript turn."""

    session_id: SessionId
    role: MessageRole
    text: str
    importance_score: ImportanceScore = DEFAULT_MESSAGE_IMPORTANCE


class SummaryCreate(BaseModel):
    """Schema for persisting a summary over a closed message id range."""

    session_id: SessionId
    text: Annotated[str, StringConstraints(min_length=1)]
    message_count: int = Field(ge=1)
    start_message_id: int
    end_message_id: int
    importance_score: ImportanceScore = DEFAULT_SUMMARY_IMPORTANCE

    @model_validator(mode="after")
    def _check_range(self) -> SummaryCreate:
        if self.end_message_id < self.start_message_id:
            raise ValueError(
                f"end_message_id ({self.end_message_id}) precedes "
                f"start_message_id ({self.start_message_id})"
            )
        return self


class PinCreate(BaseModel):
    """Schema for creating a pin."""

    session_id: SessionId
    content: Annotated[str, StringConstraints(min_length=1)]
    source_message_id: int | None = None
    importance_score: ImportanceScore = DEFAULT_PIN_IMPORTANCE
    pin_type: PinType = PinType.USER


class ImportanceUpdate(BaseModel):
    """Schema for rewriting a message's importance (external scoring step)."""

    message_id: int
    importance_score: ImportanceScore


# ── Records ─────────────────────────────────────────────────────────────────


class SessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str | None = None
    created_at: datetime


class MessageRead(BaseModel):
    """A stored transcript turn."""

    model_config = ConfigDict(frozen=True)

    id: int
    session_id: str
    role: MessageRole
    text: str
    importance_score: float
    created_at: datetime


class SummaryRead(BaseModel):
    """A stored summary. ``text`` is the condensed history."""

    model_config = ConfigDict(frozen=True)

    id: int
    session_id: str
    text: str
    message_count: int
    start_message_id: int
    end_message_id: int
    importance_score: float
    created_at: datetime


class PinRead(BaseModel):
    """A stored pin."""

    model_config = ConfigDict(frozen=True)

    id: int
    session_id: str
    content: str
    source_message_id: int | None = None
    importance_score: float
    pin_type: PinType
    created_at: datetime


# ── Results ─────────────────────────────────────────────────────────────────


class MemoryContext(BaseModel):
    """Bounded context assembled for one request.

    ``recent_messages`` is chronological (oldest first). ``total_tokens`` is
    the estimated size of every returned pin, summary, and message.
    """

    pins: list[PinRead] = Field(default_factory=list)
    summaries: list[SummaryRead] = Field(default_factory=list)
    recent_messages: list[MessageRead] = Field(default_factory=list)
    total_tokens: int = 0


class MemoryStats(BaseModel):
    """Per-session memory statistics."""

    total_messages: int = 0
    total_summaries: int = 0
    total_pins: int = 0
    oldest_message: datetime | None = None
    newest_message: datetime | None = None
    average_importance_score: float = 0.0


# ── Validation ──────────────────────────────────────────────────────────────


def clean_session_id(session_id: str) -> str:
    """Strip a session id, rejecting empty or non-string values."""
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValidationError("session_id must be a non-empty string")
    return session_id.strip()


def validate_payload(model: type[M], **data: Any) -> M:
    """Build ``model`` from keyword data.

    Raises:
        ValidationError: If pydantic rejects the data. The pydantic error
            list is attached as ``errors``.
    """
    try:
        return model(**data)
    except PydanticValidationError as exc:
        details = exc.errors(include_url=False, include_context=False)
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "payload" for err in details)
        raise ValidationError(
            f"Invalid {model.__name__}: {fields}", errors=details
        ) from exc
