"""Test fixtures for the memory engine.

Provides:
- In-memory SQLite engine (aiosqlite, StaticPool) with the memory tables created
- Session factory bound to that engine
- FixedClock: deterministic, strictly increasing timestamps
- Repository fixtures sharing one clock
- MemoryService wired against the test database
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from src.recall.config import Settings
from src.recall.core.database import SessionFactory, build_engine, get_session_factory, init_db
from src.recall.memory.repository import (
    MessageRepository,
    PinRepository,
    SessionRepository,
    SummaryRepository,
)
from src.recall.memory.service import MemoryService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FixedClock:
    """Returns a fixed start time, advancing one second per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    engine = build_engine(TEST_DATABASE_URL)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return get_session_factory(engine)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def session_repo(session_factory, clock) -> SessionRepository:
    return SessionRepository(session_factory, clock=clock)


@pytest.fixture
def message_repo(session_factory, clock) -> MessageRepository:
    return MessageRepository(session_factory, clock=clock)


@pytest.fixture
def summary_repo(session_factory, clock) -> SummaryRepository:
    return SummaryRepository(session_factory, clock=clock)


@pytest.fixture
def pin_repo(session_factory, clock) -> PinRepository:
    return PinRepository(session_factory, clock=clock)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        REQUIRE_EXISTING_SESSION=False,
        STORAGE_TIMEOUT_SECONDS=None,
        ANTHROPIC_API_KEY="",
        OPENAI_API_KEY="",
    )


@pytest.fixture
def memory_service(session_factory, test_settings) -> MemoryService:
    return MemoryService.from_session_factory(session_factory, settings=test_settings)
