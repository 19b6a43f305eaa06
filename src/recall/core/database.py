"""Async SQLAlchemy engine, session factory, and storage call helpers.

Provides:
- Base: Declarative base for the memory tables
- build_engine() / get_engine(): Engine creation (PostgreSQL or SQLite)
- get_session_factory(): async_sessionmaker bound to the shared engine
- read_snapshot(): One transaction spanning several reads
- run_in_snapshot(): read_snapshot wrapped in the retry policy
- run_with_deadline(): Deadline enforcement for a single awaitable
- call_with_retry(): Transient-failure retry policy for store calls
- Connect event that enables SQLite foreign keys so cascades fire
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog
from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.recall.config import get_settings
from src.recall.core.errors import (
    DeadlineExceededError,
    MemoryEngineError,
    StorageError,
)
from src.recall.core.monitoring import storage_retries_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SessionFactory = async_sessionmaker[AsyncSession]

# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all memory engine tables."""


# ── Engine ──────────────────────────────────────────────────────────────────

_engine: AsyncEngine | None = None


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL.

    SQLite URLs get a foreign-key pragma on every new connection (cascade
    deletes depend on it). In-memory SQLite uses a StaticPool so every
    session sees the same database.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url.rstrip("/").endswith(":"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_size"] = 20
        kwargs["max_overflow"] = 10

    engine = create_async_engine(database_url, **kwargs)

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def enable_sqlite_foreign_keys(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    return _engine


def get_session_factory(engine: AsyncEngine | None = None) -> SessionFactory:
    """Return an async_sessionmaker for the given (or shared) engine."""
    return async_sessionmaker(engine or get_engine(), expire_on_commit=False)


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the memory tables if they don't exist."""
    # Register the mapped tables on Base.metadata
    import src.recall.models.memory  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None


# ── Read Snapshot ───────────────────────────────────────────────────────────


@asynccontextmanager
async def read_snapshot(session_factory: SessionFactory) -> AsyncIterator[AsyncSession]:
    """Yield one session whose reads all run inside a single transaction.

    On PostgreSQL the transaction is REPEATABLE READ, so every query sees
    the same committed state. SQLite serializes readers within one
    transaction already.
    """
    async with session_factory() as session:
        async with session.begin():
            if session.get_bind().dialect.name == "postgresql":
                await session.connection(
                    execution_options={"isolation_level": "REPEATABLE READ"}
                )
            yield session


# ── Deadlines ───────────────────────────────────────────────────────────────


async def run_with_deadline(
    awaitable: Awaitable[T], timeout: float | None, operation: str
) -> T:
    """Await with an optional deadline.

    Raises:
        DeadlineExceededError: If the deadline passes first. Cancellation
            of the calling task is propagated untouched.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except DeadlineExceededError:
        raise
    except asyncio.TimeoutError as exc:
        logger.warning("storage.deadline_exceeded", operation=operation, timeout=timeout)
        raise DeadlineExceededError(operation, timeout) from exc


# ── Retry Policy ────────────────────────────────────────────────────────────


def is_transient_error(exc: BaseException) -> bool:
    """Whether a storage failure is worth one more attempt."""
    if isinstance(exc, MemoryEngineError):
        return False
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (OperationalError, ConnectionError, OSError))


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        storage_retries_total.labels(operation=operation).inc()
        logger.warning(
            "storage.retrying",
            operation=operation,
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    return before_sleep


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    attempts: int = 2,
) -> T:
    """Run a storage operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        name: Operation name for logs and metrics.
        attempts: Total attempts (2 means at most one retry).

    Returns:
        Whatever the operation returns.

    Raises:
        StorageError: When the operation fails with a database or I/O
            error that is not retried, or still fails after the last
            attempt. Memory engine errors pass through unchanged.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception(is_transient_error),
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        before_sleep=_log_retry(name),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                result = await operation()
    except MemoryEngineError:
        raise
    except (SQLAlchemyError, ConnectionError, OSError) as exc:
        logger.error("storage.failed", operation=name, error=str(exc))
        raise StorageError(f"{name} failed: {exc}") from exc
    return result


async def run_in_snapshot(
    session_factory: SessionFactory,
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    name: str = "context.snapshot",
    attempts: int = 2,
) -> T:
    """Run several reads in one snapshot, retrying the snapshot as a unit.

    Opening the transaction, every read, and the final commit all happen
    inside one attempt, so a transient failure at any step starts a fresh
    snapshot and any other database error surfaces as StorageError.
    """

    async def attempt() -> T:
        async with read_snapshot(session_factory) as session:
            return await operation(session)

    return await call_with_retry(attempt, name=name, attempts=attempts)
