"""Memory service orchestrating the stores, assembler, and summarization.

The single entry point the conversation orchestrator talks to:
- Record transcript turns, summaries, and pins
- Build the token-bounded context for a request
- Decide on and run summarization
- Report per-session memory statistics

``context_for_turn`` is the call to use inside a chat turn: it returns an
empty context instead of raising when memory is unavailable, so a memory
failure never blocks the response.
"""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from src.recall.config import Settings, get_settings
from src.recall.core.database import (
    SessionFactory,
    build_engine,
    get_session_factory,
    run_in_snapshot,
)
from src.recall.core.monitoring import context_degraded_total
from src.recall.memory.assembler import ContextAssembler
from src.recall.memory.repository import (
    MessageRepository,
    PinRepository,
    SessionRepository,
    SummaryRepository,
)
from src.recall.memory.schemas import (
    DEFAULT_MESSAGE_IMPORTANCE,
    DEFAULT_PIN_IMPORTANCE,
    DEFAULT_SUMMARY_IMPORTANCE,
    MemoryContext,
    MemoryStats,
    MessageRead,
    PinRead,
    PinType,
    SessionRead,
    SummaryRead,
    clean_session_id,
)
from src.recall.memory.summarization import (
    LLMServiceProtocol,
    LLMSummaryGenerator,
    RuleBasedSummaryGenerator,
    SummarizationTrigger,
)

logger = structlog.get_logger(__name__)


class MemoryService:
    """Facade over the memory stores for the conversation orchestrator.

    Usage:
        service = MemoryService.from_settings()
        await service.create_message("s-1", "user", "Deploy on Friday?")
        context = await service.context_for_turn("s-1")
    """

    def __init__(
        self,
        sessions: SessionRepository,
        messages: MessageRepository,
        summaries: SummaryRepository,
        pins: PinRepository,
        assembler: ContextAssembler,
        trigger: SummarizationTrigger,
    ) -> None:
        self._sessions = sessions
        self._messages = messages
        self._summaries = summaries
        self._pins = pins
        self._assembler = assembler
        self._trigger = trigger

    @classmethod
    def from_session_factory(
        cls,
        session_factory: SessionFactory,
        settings: Settings | None = None,
        llm_service: LLMServiceProtocol | None = None,
    ) -> MemoryService:
        """Wire every component against one session factory."""
        settings = settings or get_settings()
        store_options = {
            "retry_attempts": settings.STORAGE_RETRY_ATTEMPTS,
            "default_timeout": settings.STORAGE_TIMEOUT_SECONDS,
            "require_existing_session": settings.REQUIRE_EXISTING_SESSION,
        }
        sessions = SessionRepository(session_factory, **store_options)
        messages = MessageRepository(session_factory, **store_options)
        summaries = SummaryRepository(session_factory, **store_options)
        pins = PinRepository(session_factory, **store_options)

        assembler = ContextAssembler(
            messages,
            summaries,
            pins,
            snapshot=lambda operation: run_in_snapshot(
                session_factory, operation, attempts=settings.STORAGE_RETRY_ATTEMPTS
            ),
            token_limit=settings.CONTEXT_TOKEN_LIMIT,
            max_summaries=settings.CONTEXT_MAX_SUMMARIES,
            recent_window=settings.CONTEXT_RECENT_MESSAGE_WINDOW,
        )

        if llm_service is not None:
            generator = LLMSummaryGenerator(
                llm_service, max_tokens=settings.SUMMARY_MAX_TOKENS
            )
        else:
            generator = RuleBasedSummaryGenerator()

        trigger = SummarizationTrigger(
            messages,
            summaries,
            generator=generator,
            threshold=settings.SUMMARY_THRESHOLD,
        )
        return cls(sessions, messages, summaries, pins, assembler, trigger)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        engine: AsyncEngine | None = None,
        llm_service: LLMServiceProtocol | None = None,
    ) -> MemoryService:
        """Build the service from configuration.

        Args:
            settings: Settings to use (defaults to ``get_settings()``).
            engine: Existing engine; one is built from DATABASE_URL otherwise.
            llm_service: Optional LLM adapter for summary text.
        """
        settings = settings or get_settings()
        engine = engine or build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        return cls.from_session_factory(
            get_session_factory(engine), settings=settings, llm_service=llm_service
        )

    # ── Sessions ────────────────────────────────────────────────────────────

    async def create_session(
        self, session_id: str | None = None, title: str | None = None
    ) -> SessionRead:
        return await self._sessions.create(session_id, title)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and every message, summary, and pin it owns."""
        return await self._sessions.delete(session_id)

    # ── Writes ──────────────────────────────────────────────────────────────

    async def create_message(
        self,
        session_id: str,
        role: str,
        text: str,
        importance_score: float = DEFAULT_MESSAGE_IMPORTANCE,
        *,
        timeout: float | None = None,
    ) -> MessageRead:
        return await self._messages.create(
            session_id, role, text, importance_score, timeout=timeout
        )

    async def update_message_importance(
        self, message_id: int, importance_score: float
    ) -> MessageRead:
        return await self._messages.update_importance(message_id, importance_score)

    async def create_summary(
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
        """Persist a summary produced outside the engine."""
        return await self._trigger.record_summary(
            session_id,
            text,
            start_message_id,
            end_message_id,
            importance_score,
            message_count=message_count,
            timeout=timeout,
        )

    async def create_pin(
        self,
        session_id: str,
        content: str,
        source_message_id: int | None = None,
        importance_score: float = DEFAULT_PIN_IMPORTANCE,
        pin_type: str = PinType.USER.value,
        *,
        timeout: float | None = None,
    ) -> PinRead:
        return await self._pins.create(
            session_id,
            content,
            source_message_id,
            importance_score,
            pin_type,
            timeout=timeout,
        )

    async def list_pins(self, session_id: str, pin_type: str | None = None) -> list[PinRead]:
        return await self._pins.list(session_id, pin_type)

    async def delete_pin(self, pin_id: int) -> bool:
        return await self._pins.delete(pin_id)

    # ── Context ─────────────────────────────────────────────────────────────

    async def build_context(
        self,
        session_id: str,
        token_limit: int | None = None,
        *,
        timeout: float | None = None,
    ) -> MemoryContext:
        return await self._assembler.build_context(session_id, token_limit, timeout=timeout)

    async def context_for_turn(
        self,
        session_id: str,
        token_limit: int | None = None,
        *,
        timeout: float | None = None,
    ) -> MemoryContext:
        """Build context for a chat turn, degrading to an empty context.

        Any failure is logged and counted, and an empty MemoryContext is
        returned so the turn proceeds without memory. Task cancellation is
        not caught.
        """
        try:
            return await self.build_context(session_id, token_limit, timeout=timeout)
        except Exception as exc:
            context_degraded_total.inc()
            logger.warning(
                "memory_service.context_degraded",
                session_id=session_id,
                error_type=type(exc).__name__,
                exc_info=True,
            )
            return MemoryContext()

    # ── Summarization ───────────────────────────────────────────────────────

    async def needs_summarization(self, session_id: str) -> bool:
        return await self._trigger.needs_summarization(session_id)

    async def auto_summarize(self, session_id: str) -> SummaryRead | None:
        return await self._trigger.auto_summarize(session_id)

    # ── Statistics ──────────────────────────────────────────────────────────

    async def memory_stats(self, session_id: str) -> MemoryStats:
        """Counts, time span, and average message importance for a session."""
        session_id = clean_session_id(session_id)
        total, average, oldest, newest = await self._messages.stats(session_id)
        stats = MemoryStats(
            total_messages=total,
            total_summaries=await self._summaries.count(session_id),
            total_pins=await self._pins.count(session_id),
            oldest_message=oldest,
            newest_message=newest,
            average_importance_score=average,
        )
        logger.debug("memory_service.stats", session_id=session_id, **stats.model_dump(mode="json"))
        return stats
