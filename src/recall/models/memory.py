"""Memory persistence models -- sessions and the three memory tables.

Four SQLAlchemy models on the shared declarative Base:
- SessionModel: Conversation thread, exclusive owner of all memory rows
- MessageModel: Transcript turns with an importance score
- SummaryModel: Condensed segments covering a message id range
- PinModel: Facts that are always recalled, never budget-truncated

Every memory row carries a session_id foreign key with ON DELETE CASCADE,
so removing a session removes everything it owned. Summaries reference
message ids by value only; summarized messages are never deleted.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.recall.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionModel(Base):
    """A single conversation thread.

    Deleting a session cascades to its messages, summaries, and pins at
    the database level (ON DELETE CASCADE) and the ORM relationships are
    passive so SQLAlchemy does not load children before deleting.
    """

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    title: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    messages: Mapped[list[MessageModel]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    summaries: Mapped[list[SummaryModel]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    pins: Mapped[list[PinModel]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class MessageModel(Base):
    """One transcript turn."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "importance_score >= 0 AND importance_score <= 1",
            name="ck_messages_importance_range",
        ),
        Index("ix_messages_session_created", "session_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    importance_score: Mapped[float] = mapped_column(Float, default=0.5, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    session: Mapped[SessionModel] = relationship(back_populates="messages")


class SummaryModel(Base):
    """Condensed replacement for a contiguous range of older messages."""

    __tablename__ = "conversation_summaries"
    __table_args__ = (
        CheckConstraint(
            "importance_score >= 0 AND importance_score <= 1",
            name="ck_summaries_importance_range",
        ),
        Index("ix_summaries_session_created", "session_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False)
    start_message_id: Mapped[int] = mapped_column(Integer, nullable=False)
    end_message_id: Mapped[int] = mapped_column(Integer, nullable=False)
    importance_score: Mapped[float] = mapped_column(Float, default=0.7, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    session: Mapped[SessionModel] = relationship(back_populates="summaries")


class PinModel(Base):
    """Explicitly or automatically flagged fact (append-only)."""

    __tablename__ = "semantic_pins"
    __table_args__ = (
        CheckConstraint(
            "importance_score >= 0 AND importance_score <= 1",
            name="ck_pins_importance_range",
        ),
        Index("ix_pins_session_created", "session_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    source_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    importance_score: Mapped[float] = mapped_column(Float, default=0.8, nullable=False)
    pin_type: Mapped[str] = mapped_column(String(20), default="user", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    session: Mapped[SessionModel] = relationship(back_populates="pins")
