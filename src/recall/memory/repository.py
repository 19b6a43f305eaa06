"""Memory stores -- async CRUD for sessions, messages, summaries, and pins.

Each repository takes an async_sessionmaker in its constructor (no module
level store singletons) and converts SQLAlchemy rows into frozen pydantic
records. All calls share the same policy:

- Inputs are validated before touching the database (ValidationError).
- Calls that own their database session retry one transient failure and
  surface anything else as StorageError.
- Read calls also accept a caller-owned ``session`` so several reads can
  share one snapshot. Those calls leave retry and error translation to the
  session owner (see core.database.run_in_snapshot).
- Every call accepts ``timeout`` (seconds); expiry raises
  DeadlineExceededError.

Writes create the owning session row on first use (idempotently, so
concurrent first writes for one session all succeed) unless the repository
was built with ``require_existing_session=True``, in which case an unknown
session id raises NotFoundError.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TypeVar

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.recall.core.database import SessionFactory, call_with_retry, run_with_deadline
from src.recall.core.errors import NotFoundError, ValidationError
from src.recall.memory.schemas import (
    DEFAULT_MESSAGE_IMPORTANCE,
    DEFAULT_PIN_IMPORTANCE,
    DEFAULT_SUMMARY_IMPORTANCE,
    ImportanceUpdate,
    MessageCreate,
    MessageRead,
    MessageRole,
    PinCreate,
    PinRead,
    PinType,
    SessionRead,
    SummaryCreate,
    SummaryRead,
    clean_session_id,
    validate_payload,
)
from src.recall.models.memory import (
    MessageModel,
    PinModel,
    SessionModel,
    SummaryModel,
    utcnow,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Dialects whose INSERT supports ON CONFLICT DO NOTHING
_CONFLICT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


# ── Serialization Helpers ───────────────────────────────────────────────────


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _model_to_session(model: SessionModel) -> SessionRead:
    return SessionRead(id=model.id, title=model.title, created_at=_as_utc(model.created_at))


def _model_to_message(model: MessageModel) -> MessageRead:
    return MessageRead(
        id=model.id,
        session_id=model.session_id,
        role=MessageRole(model.role),
        text=model.text,
        importance_score=model.importance_score,
        created_at=_as_utc(model.created_at),
    )


def _model_to_summary(model: SummaryModel) -> SummaryRead:
    return SummaryRead(
        id=model.id,
        session_id=model.session_id,
        text=model.summary,
        message_count=model.message_count,
        start_message_id=model.start_message_id,
        end_message_id=model.end_message_id,
        importance_score=model.importance_score,
        created_at=_as_utc(model.created_at),
    )


def _model_to_pin(model: PinModel) -> PinRead:
    return PinRead(
        id=model.id,
        session_id=model.session_id,
        content=model.content,
        source_message_id=model.source_message_id,
        importance_score=model.importance_score,
        pin_type=PinType(model.pin_type),
        created_at=_as_utc(model.created_at),
    )


# ── Base ────────────────────────────────────────────────────────────────────


class _Repository:
    """Shared session handling, retry, and deadline policy.

    Args:
        session_factory: async_sessionmaker yielding AsyncSession instances.
        retry_attempts: Total attempts for a transient failure (2 = one retry).
        default_timeout: Deadline applied when a call passes no ``timeout``.
        require_existing_session: Reject writes for unknown session ids.
        clock: Source of ``created_at`` timestamps.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        retry_attempts: int = 2,
        default_timeout: float | None = None,
        require_existing_session: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._retry_attempts = retry_attempts
        self._default_timeout = default_timeout
        self._require_existing_session = require_existing_session
        self._clock = clock

    async def _run(
        self,
        name: str,
        operation: Callable[[AsyncSession], Awaitable[T]],
        *,
        session: AsyncSession | None = None,
        timeout: float | None = None,
    ) -> T:
        deadline = timeout if timeout is not None else self._default_timeout

        if session is not None:
            # The session's owner retries and translates errors for the whole unit
            return await run_with_deadline(operation(session), deadline, name)

        async def attempt() -> T:
            async with self._session_factory() as own_session:
                return await operation(own_session)

        return await run_with_deadline(
            call_with_retry(attempt, name=name, attempts=self._retry_attempts),
            deadline,
            name,
        )

    async def _insert_session(
        self, session: AsyncSession, session_id: str, title: str | None = None
    ) -> bool:
        """Insert the session row unless it already exists.

        Concurrent first writes for the same id all succeed: the insert
        ignores a conflicting id instead of failing the transaction.

        Returns:
            True if this call created the row.
        """
        values = {"id": session_id, "title": title, "created_at": self._clock()}
        conflict_insert = _CONFLICT_INSERTS.get(session.get_bind().dialect.name)
        if conflict_insert is not None:
            stmt = (
                conflict_insert(SessionModel)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["id"])
            )
            result = await session.execute(stmt)
            return result.rowcount > 0

        try:
            async with session.begin_nested():
                session.add(SessionModel(**values))
        except IntegrityError:
            return False
        return True

    async def _ensure_session(self, session: AsyncSession, session_id: str) -> None:
        """Make sure the owning session row exists before a memory write."""
        if self._require_existing_session:
            if await session.get(SessionModel, session_id) is None:
                raise NotFoundError("Session", session_id)
            return
        if await self._insert_session(session, session_id):
            logger.debug("memory_store.session_created", session_id=session_id)


# ── Sessions ────────────────────────────────────────────────────────────────


class SessionRepository(_Repository):
    """Session rows. Deleting one cascades to every memory row it owns."""

    async def create(
        self,
        session_id: str | None = None,
        title: str | None = None,
        *,
        timeout: float | None = None,
    ) -> SessionRead:
        """Create a session, or return the existing one with the same id."""
        session_id = clean_session_id(session_id) if session_id is not None else str(uuid.uuid4())

        async def op(session: AsyncSession) -> SessionRead:
            created = await self._insert_session(session, session_id, title)
            await session.commit()
            if created:
                logger.info("session_store.created", session_id=session_id)
            model = await session.get(SessionModel, session_id)
            return _model_to_session(model)

        return await self._run("sessions.create", op, timeout=timeout)

    async def get(self, session_id: str, *, timeout: float | None = None) -> SessionRead | None:
        session_id = clean_session_id(session_id)

        async def op(session: AsyncSession) -> SessionRead | None:
            model = await session.get(SessionModel, session_id)
            return _model_to_session(model) if model is not None else None

        return await self._run("sessions.get", op, timeout=timeout)

    async def exists(self, session_id: str, *, timeout: float | None = None) -> bool:
        return await self.get(session_id, timeout=timeout) is not None

    async def delete(self, session_id: str, *, timeout: float | None = None) -> bool:
        """Delete a session and, by cascade, all of its memory.

        Returns:
            True if a session row was removed.
        """
        session_id = clean_session_id(session_id)

        async def op(session: AsyncSession) -> bool:
            result = await session.execute(
                delete(SessionModel).where(SessionModel.id == session_id)
            )
            await session.commit()
            return result.rowcount > 0

        deleted = await self._run("sessions.delete", op, timeout=timeout)
        if deleted:
            logger.info("session_store.deleted", session_id=session_id)
        return deleted


# ── Messages ────────────────────────────────────────────────────────────────


class MessageRepository(_Repository):
    """Transcript turns with importance scores."""

    async def create(
        self,
        session_id: str,
        role: str,
        text: str,
        importance_score: float = DEFAULT_MESSAGE_IMPORTANCE,
        *,
        timeout: float | None = None,
    ) -> MessageRead:
        """Record one transcript turn.

        Raises:
            ValidationError: Empty session id, unknown role, or a score
                outside [0, 1].
            NotFoundError: Unknown session in strict mode.
        """
        payload = validate_payload(
            MessageCreate,
            session_id=session_id,
            role=role,
            text=text,
            importance_score=importance_score,
        )

        async def op(session: AsyncSession) -> MessageRead:
            await self._ensure_session(session, payload.session_id)
            model = MessageModel(
                session_id=payload.session_id,
                role=payload.role.value,
                text=payload.text,
                importance_score=payload.importance_score,
                created_at=self._clock(),
            )
            session.add(model)
            await session.commit()
            return _model_to_message(model)

        return await self._run("messages.create", op, timeout=timeout)

    async def get(self, message_id: int, *, timeout: float | None = None) -> MessageRead | None:
        async def op(session: AsyncSession) -> MessageRead | None:
            model = await session.get(MessageModel, message_id)
            return _model_to_message(model) if model is not None else None

        return await self._run("messages.get", op, timeout=timeout)

    async def list_recent(
        self,
        session_id: str,
        limit: int = 50,
        *,
        session: AsyncSession | None = None,
        timeout: float | None = None,
    ) -> list[MessageRead]:
        """Up to ``limit`` most recent messages, newest first."""
        session_id = clean_session_id(session_id)

        async def op(db: AsyncSession) -> list[MessageRead]:
            stmt = (
                select(MessageModel)
                .where(MessageModel.session_id == session_id)
                .order_by(MessageModel.created_at.desc(), MessageModel.id.desc())
                .limit(max(limit, 0))
            )
            result = await db.execute(stmt)
            return [_model_to_message(m) for m in result.scalars().all()]

        return await self._run("messages.list_recent", op, session=session, timeout=timeout)

    async def list_range(
        self,
        session_id: str,
        start_id: int,
        end_id: int,
        *,
        timeout: float | None = None,
    ) -> list[MessageRead]:
        """Messages with ids in the closed range, oldest first."""
        session_id = clean_session_id(session_id)

        async def op(db: AsyncSession) -> list[MessageRead]:
            stmt = (
                select(MessageModel)
                .where(
                    MessageModel.session_id == session_id,
                    MessageModel.id.between(start_id, end_id),
                )
                .order_by(MessageModel.created_at.asc(), MessageModel.id.asc())
            )
            result = await db.execute(stmt)
            return [_model_to_message(m) for m in result.scalars().all()]

        return await self._run("messages.list_range", op, timeout=timeout)

    async def list_after(
        self,
        session_id: str,
        after_id: int | None = None,
        *,
        timeout: float | None = None,
    ) -> list[MessageRead]:
        """Messages with ids greater than ``after_id`` (all when None), oldest first."""
        session_id = clean_session_id(session_id)

        async def op(db: AsyncSession) -> list[MessageRead]:
            stmt = select(MessageModel).where(MessageModel.session_id == session_id)
            if after_id is not None:
                stmt = stmt.where(MessageModel.id > after_id)
            stmt = stmt.order_by(MessageModel.created_at.asc(), MessageModel.id.asc())
            result = await db.execute(stmt)
            return [_model_to_message(m) for m in result.scalars().all()]

        return await self._run("messages.list_after", op, timeout=timeout)

    async def count(self, session_id: str, *, timeout: float | None = None) -> int:
        return await self.count_after(session_id, None, timeout=timeout)

    async def count_after(
        self,
        session_id: str,
        after_id: int | None,
        *,
        timeout: float | None = None,
    ) -> int:
        """Number of messages with ids greater than ``after_id`` (all when None)."""
        session_id = clean_session_id(session_id)

        async def op(db: AsyncSession) -> int:
            stmt = select(func.count(MessageModel.id)).where(
                MessageModel.session_id == session_id
            )
            if after_id is not None:
                stmt = stmt.where(MessageModel.id > after_id)
            return int((await db.execute(stmt)).scalar_one())

        return await self._run("messages.count", op, timeout=timeout)

    async def update_importance(
        self,
        message_id: int,
        importance_score: float,
        *,
        timeout: float | None = None,
    ) -> MessageRead:
        """Rewrite a message's importance score.

        Raises:
            ValidationError: Score outside [0, 1].
            NotFoundError: No message with that id.
        """
        payload = validate_payload(
            ImportanceUpdate, message_id=message_id, importance_score=importance_score
        )

        async def op(session: AsyncSession) -> MessageRead:
            model = await session.get(MessageModel, payload.message_id)
            if model is None:
                raise NotFoundError("Message", payload.message_id)
            model.importance_score = payload.importance_score
            await session.commit()
            return _model_to_message(model)

        return await self._run("messages.update_importance", op, timeout=timeout)

    async def stats(
        self, session_id: str, *, timeout: float | None = None
    ) -> tuple[int, float, datetime | None, datetime | None]:
        """(count, average importance, oldest created_at, newest created_at)."""
        session_id = clean_session_id(session_id)

        async def op(db: AsyncSession) -> tuple[int, float, datetime | None, datetime | None]:
            stmt = select(
                func.count(MessageModel.id),
                func.avg(MessageModel.importance_score),
                func.min(MessageModel.created_at),
                func.max(MessageModel.created_at),
            ).where(MessageModel.session_id == session_id)
            total, average, oldest, newest = (await db.execute(stmt)).one()
            return (
                int(total or 0),
                float(average or 0.0),
                _as_utc(oldest) if oldest is not None else None,
                _as_utc(newest) if newest is not None else None,
            )

        return await self._run("messages.stats", op, timeout=timeout)


# ── Summaries ───────────────────────────────────────────────────────────────


class SummaryRepository(_Repository):
    """Condensed segments of older history. Never deletes messages."""

    async def create(
        self,
        session_id: str,
        text: str,
        message_count: int,
        start_message_id: int,
        end_message_id: int,
        importance_score: float = DEFAULT_SUMMARY_IMPORTANCE,
        *,
        timeout: float | None = None,
    ) -> SummaryRead:
        """Persist one summary row.

        Overlap with earlier summaries is not checked.

        Raises:
            ValidationError: Empty text, inverted range, non-positive
                message_count, or a score outside [0, 1].
            NotFoundError: Unknown session in strict mode.
        """
        payload = validate_payload(
            SummaryCreate,
            session_id=session_id,
            text=text,
            message_count=message_count,
            start_message_id=start_message_id,
            end_message_id=end_message_id,
            importance_score=importance_score,
        )

        async def op(session: AsyncSession) -> SummaryRead:
            await self._ensure_session(session, payload.session_id)
            model = SummaryModel(
                session_id=payload.session_id,
                summary=payload.text,
                message_count=payload.message_count,
                start_message_id=payload.start_message_id,
                end_message_id=payload.end_message_id,
                importance_score=payload.importance_score,
                created_at=self._clock(),
            )
            session.add(model)
            await session.commit()
            return _model_to_summary(model)

        summary = await self._run("summaries.create", op, timeout=timeout)
        logger.info(
            "summary_store.created",
            session_id=summary.session_id,
            summary_id=summary.id,
            start_message_id=summary.start_message_id,
            end_message_id=summary.end_message_id,
        )
        return summary

    async def list_top(
        self,
        session_id: str,
        limit: int = 5,
        *,
        session: AsyncSession | None = None,
        timeout: float | None = None,
    ) -> list[SummaryRead]:
        """Highest-importance summaries; ties go to the older summary."""
        session_id = clean_session_id(session_id)

        async def op(db: AsyncSession) -> list[SummaryRead]:
            stmt = (
                select(SummaryModel)
                .where(SummaryModel.session_id == session_id)
                .order_by(
                    SummaryModel.importance_score.desc(),
                    SummaryModel.created_at.asc(),
                    SummaryModel.id.asc(),
                )
                .limit(max(limit, 0))
            )
            result = await db.execute(stmt)
            return [_model_to_summary(m) for m in result.scalars().all()]

        return await self._run("summaries.list_top", op, session=session, timeout=timeout)

    async def latest(self, session_id: str, *, timeout: float | None = None) -> SummaryRead | None:
        """The summary reaching furthest into the transcript."""
        session_id = clean_session_id(session_id)

        async def op(db: AsyncSession) -> SummaryRead | None:
            stmt = (
                select(SummaryModel)
                .where(SummaryModel.session_id == session_id)
                .order_by(SummaryModel.end_message_id.desc(), SummaryModel.id.desc())
                .limit(1)
            )
            model = (await db.execute(stmt)).scalar_one_or_none()
            return _model_to_summary(model) if model is not None else None

        return await self._run("summaries.latest", op, timeout=timeout)

    async def count(self, session_id: str, *, timeout: float | None = None) -> int:
        session_id = clean_session_id(session_id)

        async def op(db: AsyncSession) -> int:
            stmt = select(func.count(SummaryModel.id)).where(
                SummaryModel.session_id == session_id
            )
            return int((await db.execute(stmt)).scalar_one())

        return await self._run("summaries.count", op, timeout=timeout)


# ── Pins ────────────────────────────────────────────────────────────────────


class PinRepository(_Repository):
    """Always-recalled facts. Append-only: there is no update path."""

    async def create(
        self,
        session_id: str,
        content: str,
        source_message_id: int | None = None,
        importance_score: float = DEFAULT_PIN_IMPORTANCE,
        pin_type: str = PinType.USER.value,
        *,
        timeout: float | None = None,
    ) -> PinRead:
        """Create a pin.

        Raises:
            ValidationError: Empty content, unknown pin_type, or a score
                outside [0, 1].
            NotFoundError: Unknown session in strict mode.
        """
        payload = validate_payload(
            PinCreate,
            session_id=session_id,
            content=content,
            source_message_id=source_message_id,
            importance_score=importance_score,
            pin_type=pin_type,
        )

        async def op(session: AsyncSession) -> PinRead:
            await self._ensure_session(session, payload.session_id)
            model = PinModel(
                session_id=payload.session_id,
                content=payload.content,
                source_message_id=payload.source_message_id,
                importance_score=payload.importance_score,
                pin_type=payload.pin_type.value,
                created_at=self._clock(),
            )
            session.add(model)
            await session.commit()
            return _model_to_pin(model)

        pin = await self._run("pins.create", op, timeout=timeout)
        logger.info(
            "pin_store.created",
            session_id=pin.session_id,
            pin_id=pin.id,
            pin_type=pin.pin_type.value,
        )
        return pin

    async def list(
        self,
        session_id: str,
        pin_type: str | None = None,
        *,
        session: AsyncSession | None = None,
        timeout: float | None = None,
    ) -> list[PinRead]:
        """All pins for the session, highest importance first, newest first on ties."""
        session_id = clean_session_id(session_id)
        if pin_type is not None:
            try:
                pin_type = PinType(pin_type).value
            except ValueError as exc:
                raise ValidationError(f"Unknown pin_type: {pin_type!r}") from exc

        async def op(db: AsyncSession) -> list[PinRead]:
            stmt = select(PinModel).where(PinModel.session_id == session_id)
            if pin_type is not None:
                stmt = stmt.where(PinModel.pin_type == pin_type)
            stmt = stmt.order_by(
                PinModel.importance_score.desc(),
                PinModel.created_at.desc(),
                PinModel.id.desc(),
            )
            result = await db.execute(stmt)
            return [_model_to_pin(m) for m in result.scalars().all()]

        return await self._run("pins.list", op, session=session, timeout=timeout)

    async def delete(self, pin_id: int, *, timeout: float | None = None) -> bool:
        """Delete a pin by id. Returns True if a row was removed."""

        async def op(session: AsyncSession) -> bool:
            result = await session.execute(delete(PinModel).where(PinModel.id == pin_id))
            await session.commit()
            return result.rowcount > 0

        deleted = await self._run("pins.delete", op, timeout=timeout)
        if deleted:
            logger.info("pin_store.deleted", pin_id=pin_id)
        return deleted

    async def count(self, session_id: str, *, timeout: float | None = None) -> int:
        session_id = clean_session_id(session_id)

        async def op(db: AsyncSession) -> int:
            stmt = select(func.count(PinModel.id)).where(PinModel.session_id == session_id)
            return int((await db.execute(stmt)).scalar_one())

        return await self._run("pins.count", op, timeout=timeout)
