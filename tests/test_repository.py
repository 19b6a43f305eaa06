"""Tests for the memory stores against in-memory SQLite.

Tests cover:
- Create defaults and validation for messages, summaries, and pins
- Ordering of list_recent, list_top, pin listing, and latest
- Session auto-creation (including concurrent first writes) and strict mode
- Cascade delete
- Importance updates and statistics
- Retry and StorageError surfacing
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from src.recall.core.database import build_engine, get_session_factory, init_db
from src.recall.core.errors import NotFoundError, StorageError, ValidationError
from src.recall.memory.repository import (
    MessageRepository,
    PinRepository,
    SessionRepository,
    SummaryRepository,
)
from src.recall.memory.schemas import MessageRole, PinType
from src.recall.models.memory import MessageModel, PinModel, SummaryModel


# ── Messages ────────────────────────────────────────────────────────────────


class TestMessageRepository:
    @pytest.mark.asyncio
    async def test_create_defaults(self, message_repo):
        message = await message_repo.create("s-1", "user", "Where are the deploy docs?")

        assert message.id > 0
        assert message.session_id == "s-1"
        assert message.role == MessageRole.USER
        assert message.importance_score == 0.5
        assert message.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_session_id_is_stripped(self, message_repo):
        message = await message_repo.create("  s-1 ", "assistant", "hi")
        assert message.session_id == "s-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score", [-0.01, 1.01, float("nan")])
    async def test_rejects_out_of_range_importance(self, message_repo, score):
        with pytest.raises(ValidationError) as exc_info:
            await message_repo.create("s-1", "user", "text", importance_score=score)
        assert exc_info.value.errors

    @pytest.mark.asyncio
    async def test_boundary_importance_accepted(self, message_repo):
        low = await message_repo.create("s-1", "user", "a", importance_score=0.0)
        high = await message_repo.create("s-1", "user", "b", importance_score=1.0)
        assert (low.importance_score, high.importance_score) == (0.0, 1.0)

    @pytest.mark.asyncio
    async def test_rejects_unknown_role_and_empty_session(self, message_repo):
        with pytest.raises(ValidationError):
            await message_repo.create("s-1", "narrator", "text")
        with pytest.raises(ValidationError):
            await message_repo.create("", "user", "text")

    @pytest.mark.asyncio
    async def test_list_recent_newest_first_with_limit(self, message_repo):
        created = [await message_repo.create("s-1", "user", f"m{i}") for i in range(5)]
        await message_repo.create("s-2", "user", "elsewhere")

        recent = await message_repo.list_recent("s-1", limit=3)

        assert [m.id for m in recent] == [created[4].id, created[3].id, created[2].id]

    @pytest.mark.asyncio
    async def test_list_range_and_after_are_chronological(self, message_repo):
        created = [await message_repo.create("s-1", "user", f"m{i}") for i in range(5)]

        in_range = await message_repo.list_range("s-1", created[1].id, created[3].id)
        after = await message_repo.list_after("s-1", created[2].id)

        assert [m.text for m in in_range] == ["m1", "m2", "m3"]
        assert [m.text for m in after] == ["m3", "m4"]
        assert await message_repo.count("s-1") == 5
        assert await message_repo.count_after("s-1", created[2].id) == 2

    @pytest.mark.asyncio
    async def test_update_importance(self, message_repo):
        message = await message_repo.create("s-1", "user", "important")

        updated = await message_repo.update_importance(message.id, 0.95)

        assert updated.importance_score == 0.95
        assert (await message_repo.get(message.id)).importance_score == 0.95

    @pytest.mark.asyncio
    async def test_update_importance_errors(self, message_repo):
        message = await message_repo.create("s-1", "user", "text")
        with pytest.raises(ValidationError):
            await message_repo.update_importance(message.id, 2.0)
        with pytest.raises(NotFoundError):
            await message_repo.update_importance(9999, 0.5)

    @pytest.mark.asyncio
    async def test_stats(self, message_repo):
        assert await message_repo.stats("s-1") == (0, 0.0, None, None)

        first = await message_repo.create("s-1", "user", "a", importance_score=0.2)
        last = await message_repo.create("s-1", "assistant", "b", importance_score=0.6)

        total, average, oldest, newest = await message_repo.stats("s-1")
        assert total == 2
        assert average == pytest.approx(0.4)
        assert oldest == first.created_at
        assert newest == last.created_at


# ── Summaries ───────────────────────────────────────────────────────────────


class TestSummaryRepository:
    @pytest.mark.asyncio
    async def test_create_defaults(self, summary_repo):
        summary = await summary_repo.create("s-1", "Agreed on a Friday deploy.", 4, 1, 4)
        assert summary.importance_score == 0.7
        assert summary.text == "Agreed on a Friday deploy."
        assert (summary.start_message_id, summary.end_message_id) == (1, 4)

    @pytest.mark.asyncio
    async def test_rejects_invalid_payloads(self, summary_repo):
        with pytest.raises(ValidationError):
            await summary_repo.create("s-1", "text", 3, 5, 2)
        with pytest.raises(ValidationError):
            await summary_repo.create("s-1", "", 1, 1, 1)
        with pytest.raises(ValidationError):
            await summary_repo.create("s-1", "text", 1, 1, 1, importance_score=1.5)

    @pytest.mark.asyncio
    async def test_list_top_orders_by_importance_then_age(self, summary_repo):
        older = await summary_repo.create("s-1", "older tie", 1, 1, 1, importance_score=0.7)
        newer = await summary_repo.create("s-1", "newer tie", 1, 2, 2, importance_score=0.7)
        best = await summary_repo.create("s-1", "best", 1, 3, 3, importance_score=0.9)

        top = await summary_repo.list_top("s-1", limit=5)

        assert [s.id for s in top] == [best.id, older.id, newer.id]

    @pytest.mark.asyncio
    async def test_list_top_limit(self, summary_repo):
        for i in range(7):
            await summary_repo.create("s-1", f"summary {i}", 1, i + 1, i + 1)
        assert len(await summary_repo.list_top("s-1")) == 5
        assert await summary_repo.count("s-1") == 7

    @pytest.mark.asyncio
    async def test_latest_reaches_furthest(self, summary_repo):
        assert await summary_repo.latest("s-1") is None
        await summary_repo.create("s-1", "late range", 5, 10, 14)
        await summary_repo.create("s-1", "early range", 5, 1, 5)

        latest = await summary_repo.latest("s-1")

        assert latest.end_message_id == 14
        assert await summary_repo.count("s-1") == 2


# ── Pins ────────────────────────────────────────────────────────────────────


class TestPinRepository:
    @pytest.mark.asyncio
    async def test_create_defaults(self, pin_repo):
        pin = await pin_repo.create("s-1", "Staging runs on port 8443")
        assert pin.importance_score == 0.8
        assert pin.pin_type == PinType.USER
        assert pin.source_message_id is None

    @pytest.mark.asyncio
    async def test_rejects_invalid_payloads(self, pin_repo):
        with pytest.raises(ValidationError):
            await pin_repo.create("s-1", "content", pin_type="manual")
        with pytest.raises(ValidationError):
            await pin_repo.create("s-1", "")
        with pytest.raises(ValidationError):
            await pin_repo.list("s-1", pin_type="bogus")

    @pytest.mark.asyncio
    async def test_list_order_and_filter(self, pin_repo):
        old_default = await pin_repo.create("s-1", "old")
        new_default = await pin_repo.create("s-1", "new", pin_type="code")
        top = await pin_repo.create("s-1", "top", importance_score=0.99, pin_type="concept")

        pins = await pin_repo.list("s-1")
        code_pins = await pin_repo.list("s-1", pin_type="code")

        assert [p.id for p in pins] == [top.id, new_default.id, old_default.id]
        assert [p.id for p in code_pins] == [new_default.id]

    @pytest.mark.asyncio
    async def test_delete(self, pin_repo):
        pin = await pin_repo.create("s-1", "temporary")
        assert await pin_repo.delete(pin.id) is True
        assert await pin_repo.delete(pin.id) is False
        assert await pin_repo.count("s-1") == 0


# ── Sessions ────────────────────────────────────────────────────────────────


class TestSessions:
    @pytest.mark.asyncio
    async def test_writes_create_session_row(self, message_repo, session_repo):
        await message_repo.create("fresh", "user", "first")
        assert await session_repo.exists("fresh")

    @pytest.mark.asyncio
    async def test_create_is_idempotent_and_generates_ids(self, session_repo):
        first = await session_repo.create("s-1", title="Planning")
        again = await session_repo.create("s-1", title="Ignored")
        generated = await session_repo.create()

        assert again.title == "Planning"
        assert first.created_at == again.created_at
        assert len(generated.id) == 36

    @pytest.mark.asyncio
    async def test_strict_mode_requires_existing_session(self, session_factory, session_repo, clock):
        strict = MessageRepository(session_factory, clock=clock, require_existing_session=True)

        with pytest.raises(NotFoundError) as exc_info:
            await strict.create("unknown", "user", "hello")
        assert exc_info.value.entity == "Session"

        await session_repo.create("known")
        message = await strict.create("known", "user", "hello")
        assert message.session_id == "known"

    @pytest.mark.asyncio
    async def test_delete_cascades_to_all_memory(
        self, session_factory, session_repo, message_repo, summary_repo, pin_repo
    ):
        first = await message_repo.create("doomed", "user", "one")
        await message_repo.create("doomed", "assistant", "two")
        await summary_repo.create("doomed", "short talk", 2, first.id, first.id + 1)
        await pin_repo.create("doomed", "fact")
        await message_repo.create("survivor", "user", "stays")

        assert await session_repo.delete("doomed") is True

        async with session_factory() as session:
            for model in (MessageModel, SummaryModel, PinModel):
                remaining = await session.scalar(
                    select(func.count()).select_from(model).where(model.session_id == "doomed")
                )
                assert remaining == 0
        assert await message_repo.count("survivor") == 1
        assert await session_repo.delete("doomed") is False

    @pytest.mark.asyncio
    async def test_concurrent_first_writes_share_one_session(self, tmp_path, clock):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'memory.db'}")
        await init_db(engine)
        factory = get_session_factory(engine)
        messages = MessageRepository(factory, clock=clock)
        sessions = SessionRepository(factory, clock=clock)
        try:
            results = await asyncio.gather(
                *(messages.create("brand-new", "user", f"turn {i}") for i in range(4)),
                return_exceptions=True,
            )
            created = await asyncio.gather(
                *(sessions.create("also-new", title=f"t{i}") for i in range(3)),
                return_exceptions=True,
            )

            assert [r for r in results + created if isinstance(r, BaseException)] == []
            assert await messages.count("brand-new") == 4
            assert await sessions.exists("brand-new")
            assert len({s.created_at for s in created}) == 1
        finally:
            await engine.dispose()


# ── Failure Handling ────────────────────────────────────────────────────────


def _operational_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection reset"))


class TestStorageFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_retried_once_then_surfaced(self):
        factory = MagicMock(side_effect=_operational_error())
        repo = PinRepository(factory)

        with pytest.raises(StorageError):
            await repo.list("s-1")
        assert factory.call_count == 2

    @pytest.mark.asyncio
    async def test_retry_recovers(self, session_factory):
        calls = {"n": 0}

        def flaky_factory():
            calls["n"] += 1
            if calls["n"] == 1:
                raise _operational_error()
            return session_factory()

        repo = SummaryRepository(flaky_factory)
        assert await repo.list_top("s-1") == []
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_retry_attempts_configurable(self):
        factory = MagicMock(side_effect=_operational_error())
        repo = MessageRepository(factory, retry_attempts=1)

        with pytest.raises(StorageError):
            await repo.count("s-1")
        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_validation_errors_not_retried(self):
        factory = MagicMock()
        repo = MessageRepository(factory)

        with pytest.raises(ValidationError):
            await repo.create("s-1", "user", "x", importance_score=3)
        factory.assert_not_called()
