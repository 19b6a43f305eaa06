"""Memory tables: sessions, messages, conversation_summaries, semantic_pins.

Revision ID: 001_memory_tables
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_memory_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _session_fk() -> sa.Column:
    return sa.Column(
        "session_id",
        sa.String(100),
        sa.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )


def _importance(name: str, default: float) -> tuple[sa.Column, sa.CheckConstraint]:
    return (
        sa.Column("importance_score", sa.Float(), nullable=False, server_default=sa.text(str(default))),
        sa.CheckConstraint(
            "importance_score >= 0 AND importance_score <= 1",
            name=f"ck_{name}_importance_range",
        ),
    )


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("title", sa.String(300), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _session_fk(),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        *_importance("messages", 0.5),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_messages_session_created", "messages", ["session_id", "created_at"])

    op.create_table(
        "conversation_summaries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _session_fk(),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("message_count", sa.Integer(), nullable=False),
        sa.Column("start_message_id", sa.Integer(), nullable=False),
        sa.Column("end_message_id", sa.Integer(), nullable=False),
        *_importance("summaries", 0.7),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_summaries_session_created", "conversation_summaries", ["session_id", "created_at"]
    )

    op.create_table(
        "semantic_pins",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _session_fk(),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("source_message_id", sa.Integer(), nullable=True),
        *_importance("pins", 0.8),
        sa.Column("pin_type", sa.String(20), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_pins_session_created", "semantic_pins", ["session_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_pins_session_created", table_name="semantic_pins")
    op.drop_table("semantic_pins")
    op.drop_index("ix_summaries_session_created", table_name="conversation_summaries")
    op.drop_table("conversation_summaries")
    op.drop_index("ix_messages_session_created", table_name="messages")
    op.drop_table("messages")
    op.drop_table("sessions")
