"""Tests for the MemoryService facade.

Tests cover:
- Exposed write operations and build_context end to end
- context_for_turn degradation (storage, validation, deadline) and cancellation
- Snapshot reads retried as a unit, then surfaced as StorageError
- Summarization entry points
- Memory statistics
- Session deletion cascade through the facade
- from_settings wiring
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from src.recall.core.errors import StorageError, ValidationError
from src.recall.memory.assembler import ContextAssembler
from src.recall.memory.schemas import MemoryContext, PinType
from src.recall.memory.service import MemoryService
from src.recall.memory.summarization import LLMSummaryGenerator, RuleBasedSummaryGenerator


def _operational_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection reset"))


def _service_with_assembler(assembler) -> MemoryService:
    return MemoryService(
        sessions=MagicMock(),
        messages=MagicMock(),
        summaries=MagicMock(),
        pins=MagicMock(),
        assembler=assembler,
        trigger=MagicMock(),
    )


class TestMemoryServiceOperations:
    @pytest.mark.asyncio
    async def test_write_and_build(self, memory_service):
        await memory_service.create_pin("s-1", "Staging uses port 8443", pin_type="concept")
        first = await memory_service.create_message("s-1", "user", "How do I reach staging?")
        second = await memory_service.create_message("s-1", "assistant", "Use port 8443.", 0.9)
        summary = await memory_service.create_summary(
            "s-1", "Asked about staging access.", 2, first.id, second.id
        )

        context = await memory_service.build_context("s-1")

        assert [p.pin_type for p in context.pins] == [PinType.CONCEPT]
        assert [s.id for s in context.summaries] == [summary.id]
        assert [m.id for m in context.recent_messages] == [first.id, second.id]
        assert summary.message_count == 2

    @pytest.mark.asyncio
    async def test_pin_listing_and_delete(self, memory_service):
        pin = await memory_service.create_pin("s-1", "Use pnpm")
        await memory_service.create_pin("s-1", "Node 20", pin_type="system")

        assert len(await memory_service.list_pins("s-1")) == 2
        assert [p.content for p in await memory_service.list_pins("s-1", "system")] == ["Node 20"]
        assert await memory_service.delete_pin(pin.id) is True
        assert len(await memory_service.list_pins("s-1")) == 1

    @pytest.mark.asyncio
    async def test_update_message_importance(self, memory_service):
        message = await memory_service.create_message("s-1", "user", "remember this")
        updated = await memory_service.update_message_importance(message.id, 1.0)
        assert updated.importance_score == 1.0

    @pytest.mark.asyncio
    async def test_delete_session_clears_context(self, memory_service):
        await memory_service.create_session("s-1", title="Release planning")
        await memory_service.create_message("s-1", "user", "hello")
        await memory_service.create_pin("s-1", "fact")

        assert await memory_service.delete_session("s-1") is True

        assert await memory_service.build_context("s-1") == MemoryContext()
        stats = await memory_service.memory_stats("s-1")
        assert stats.total_messages == stats.total_pins == 0

    @pytest.mark.asyncio
    async def test_summarization_entry_points(self, memory_service):
        for i in range(8):
            await memory_service.create_message("s-1", "user", f"turn {i}")

        assert await memory_service.needs_summarization("s-1") is True
        summary = await memory_service.auto_summarize("s-1")

        assert summary.message_count == 8
        assert await memory_service.needs_summarization("s-1") is False
        context = await memory_service.build_context("s-1")
        assert context.summaries[0].id == summary.id


class TestMemoryStats:
    @pytest.mark.asyncio
    async def test_empty_session(self, memory_service):
        stats = await memory_service.memory_stats("empty")
        assert stats.total_messages == 0
        assert stats.total_summaries == 0
        assert stats.total_pins == 0
        assert stats.oldest_message is None
        assert stats.newest_message is None
        assert stats.average_importance_score == 0.0

    @pytest.mark.asyncio
    async def test_populated_session(self, memory_service):
        first = await memory_service.create_message("s-1", "user", "a", 0.1)
        last = await memory_service.create_message("s-1", "assistant", "b", 0.5)
        await memory_service.create_summary("s-1", "a then b", 2, first.id, last.id)
        await memory_service.create_pin("s-1", "fact")

        stats = await memory_service.memory_stats("s-1")

        assert stats.total_messages == 2
        assert stats.total_summaries == 1
        assert stats.total_pins == 1
        assert stats.average_importance_score == pytest.approx(0.3)
        assert stats.oldest_message <= stats.newest_message

    @pytest.mark.asyncio
    async def test_rejects_empty_session_id(self, memory_service):
        with pytest.raises(ValidationError):
            await memory_service.memory_stats(" ")


class TestContextForTurn:
    @pytest.mark.asyncio
    async def test_returns_context_when_healthy(self, memory_service):
        await memory_service.create_message("s-1", "user", "hello")
        context = await memory_service.context_for_turn("s-1")
        assert [m.text for m in context.recent_messages] == ["hello"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "failure",
        [StorageError("database unavailable"), ValidationError("bad session"), RuntimeError("bug")],
    )
    async def test_degrades_to_empty_context(self, failure):
        assembler = AsyncMock(spec=ContextAssembler)
        assembler.build_context.side_effect = failure
        service = _service_with_assembler(assembler)

        context = await service.context_for_turn("s-1")

        assert context == MemoryContext()

    @pytest.mark.asyncio
    async def test_degrades_on_deadline(self):
        async def slow_build(*args, **kwargs):
            await asyncio.sleep(5)

        pins = AsyncMock()
        pins.list.side_effect = slow_build
        assembler = ContextAssembler(AsyncMock(), AsyncMock(), pins)
        service = _service_with_assembler(assembler)

        context = await service.context_for_turn("s-1", timeout=0.01)

        assert context == MemoryContext()

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        started = asyncio.Event()

        async def hang(*args, **kwargs):
            started.set()
            await asyncio.sleep(5)

        assembler = AsyncMock(spec=ContextAssembler)
        assembler.build_context.side_effect = hang
        service = _service_with_assembler(assembler)

        task = asyncio.create_task(service.context_for_turn("s-1"))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestSnapshotFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_retries_whole_snapshot(self, memory_service, monkeypatch):
        await memory_service.create_message("s-1", "user", "hello")
        original_execute = AsyncSession.execute
        calls = {"n": 0}

        async def flaky_execute(self, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise _operational_error()
            return await original_execute(self, *args, **kwargs)

        monkeypatch.setattr(AsyncSession, "execute", flaky_execute)

        context = await memory_service.build_context("s-1")

        assert [m.text for m in context.recent_messages] == ["hello"]
        assert calls["n"] > 1

    @pytest.mark.asyncio
    async def test_persistent_failure_surfaces_storage_error(self, memory_service, monkeypatch):
        async def failing_execute(self, *args, **kwargs):
            raise _operational_error()

        monkeypatch.setattr(AsyncSession, "execute", failing_execute)

        with pytest.raises(StorageError):
            await memory_service.build_context("s-1")
        assert await memory_service.context_for_turn("s-1") == MemoryContext()


class TestWiring:
    def test_from_settings_builds_rule_based_trigger(self, test_settings):
        service = MemoryService.from_settings(test_settings)
        assert isinstance(service._trigger._generator, RuleBasedSummaryGenerator)
        assert service._trigger.threshold == test_settings.SUMMARY_THRESHOLD

    def test_llm_service_selects_llm_generator(self, session_factory, test_settings):
        service = MemoryService.from_session_factory(
            session_factory, settings=test_settings, llm_service=AsyncMock()
        )
        assert isinstance(service._trigger._generator, LLMSummaryGenerator)
