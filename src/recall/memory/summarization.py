"""Summarization trigger and summary text generation.

The trigger persists one Summary per closed message id range and decides
when a session has enough uncompressed history to be worth summarizing.
Messages are never deleted; a summary only adds a condensed view of them.

"Uncompressed" means messages whose id is greater than the ``end_message_id``
of the session's latest summary (or every message when there is none). A
summary is due once SUMMARY_THRESHOLD of them have accumulated.

Text generation is delegated to a SummaryGenerator. LLMSummaryGenerator uses
the LLM adapter and falls back to a deterministic rule-based summary when the
call fails or the output looks like new content rather than a summary.
"""

from __future__ import annotations

import re
from typing import Any, Protocol

import structlog

from src.recall.core.monitoring import summaries_created_total
from src.recall.memory.repository import MessageRepository, SummaryRepository
from src.recall.memory.schemas import (
    DEFAULT_SUMMARY_IMPORTANCE,
    MessageRead,
    MessageRole,
    SummaryRead,
    clean_session_id,
)

logger = structlog.get_logger(__name__)


# ── Generator Protocols ─────────────────────────────────────────────────────


class LLMServiceProtocol(Protocol):
    """Minimal interface for LLM summarization calls."""

    async def completion(
        self, *, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> dict[str, Any]: ...


class SummaryGenerator(Protocol):
    """Turns a chronological run of messages into summary text."""

    name: str

    async def generate(self, messages: list[MessageRead]) -> str: ...


# ── Rule-based Summary ──────────────────────────────────────────────────────

_SAMPLE_CHARS = 30


def rule_based_summary(messages: list[MessageRead]) -> str:
    """Deterministic summary built from counts and user message samples."""
    if not messages:
        return "No messages to summarize"

    user_messages = [m for m in messages if m.role == MessageRole.USER]
    assistant_count = sum(1 for m in messages if m.role == MessageRole.ASSISTANT)

    first = user_messages[0].text[:_SAMPLE_CHARS] if user_messages else "N/A"
    last = user_messages[-1].text[:_SAMPLE_CHARS] if user_messages else "N/A"

    return (
        f"Conversation with {len(messages)} messages "
        f"({len(user_messages)} user, {assistant_count} assistant). "
        f'Started with: "{first}..." Recent topic: "{last}..."'
    )


class RuleBasedSummaryGenerator:
    """SummaryGenerator that never calls out; used when no LLM is configured."""

    name = "rule_based"

    async def generate(self, messages: list[MessageRead]) -> str:
        return rule_based_summary(messages)


# ── LLM Summary ─────────────────────────────────────────────────────────────


class LLMSummaryGenerator:
    """Summary generation through the LLM adapter with a rule-based fallback.

    Args:
        llm_service: Adapter exposing ``completion()`` returning a dict with
            a ``content`` key.
        model: Model group to request (default "fast").
        max_tokens: Cap on the generated summary.
    """

    name = "llm"

    MAX_SUMMARY_CHARS: int = 500
    MAX_CONVERSATION_RATIO: float = 0.5

    SYSTEM_PROMPT = (
        "Create a brief summary of the conversation below. Describe only what "
        "was discussed: key topics, decisions, and open questions, in one or "
        "two sentences. Do not create new content."
    )

    _GENERATED_PATTERNS: tuple[re.Pattern, ...] = (
        re.compile(r"^(Here's|Certainly|Let me|I'll create|I can)", re.IGNORECASE),
        re.compile(r"```"),
        re.compile(r"^(Chapter|Scene|Act [IVX]+)", re.IGNORECASE),
    )

    def __init__(
        self,
        llm_service: LLMServiceProtocol,
        *,
        model: str = "fast",
        max_tokens: int = 300,
    ) -> None:
        self._llm_service = llm_service
        self._model = model
        self._max_tokens = max_tokens

    async def generate(self, messages: list[MessageRead]) -> str:
        if not messages:
            return rule_based_summary(messages)

        conversation = "\n".join(f"{m.role.value}: {m.text}" for m in messages)
        try:
            result = await self._llm_service.completion(
                messages=[
                    {"role": "system", "content": self.SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": f"Conversation to summarize:\n{conversation}\n\nProvide only the summary:",
                    },
                ],
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=0.1,
            )
            summary = (result.get("content") or "").strip()
        except Exception:
            logger.warning(
                "summarizer.llm_failed",
                session_id=messages[0].session_id,
                exc_info=True,
            )
            return rule_based_summary(messages)

        if self.is_invalid_summary(summary, messages):
            logger.warning(
                "summarizer.output_rejected",
                session_id=messages[0].session_id,
                preview=summary[:100],
            )
            return rule_based_summary(messages)

        return summary

    def is_invalid_summary(self, summary: str, messages: list[MessageRead]) -> bool:
        """Whether LLM output looks like generated content instead of a summary."""
        if not summary:
            return True
        if len(summary) > self.MAX_SUMMARY_CHARS:
            return True

        conversation_length = sum(len(m.text) for m in messages)
        if conversation_length and len(summary) / conversation_length > self.MAX_CONVERSATION_RATIO:
            return True

        return any(pattern.search(summary) for pattern in self._GENERATED_PATTERNS)


# ── SummarizationTrigger ────────────────────────────────────────────────────


class SummarizationTrigger:
    """Decides when to summarize and persists the resulting Summary rows.

    Args:
        messages: Message store (reads only).
        summaries: Summary store.
        generator: Summary text generator used by ``auto_summarize``.
        threshold: Uncompressed messages needed before a summary is due.
    """

    SUMMARY_THRESHOLD: int = 8

    def __init__(
        self,
        messages: MessageRepository,
        summaries: SummaryRepository,
        *,
        generator: SummaryGenerator | None = None,
        threshold: int = SUMMARY_THRESHOLD,
    ) -> None:
        self._messages = messages
        self._summaries = summaries
        self._generator = generator or RuleBasedSummaryGenerator()
        self._threshold = threshold

    @property
    def threshold(self) -> int:
        return self._threshold

    async def record_summary(
        self,
        session_id: str,
        text: str,
        start_message_id: int,
        end_message_id: int,
        importance_score: float = DEFAULT_SUMMARY_IMPORTANCE,
        *,
        message_count: int | None = None,
        generator: str = "manual",
        timeout: float | None = None,
    ) -> SummaryRead:
        """Persist exactly one summary for ``[start_message_id, end_message_id]``.

        ``message_count`` defaults to ``end - start + 1``.

        Raises:
            ValidationError: Inverted range, empty text, or bad score.
        """
        if message_count is None:
            message_count = end_message_id - start_message_id + 1

        summary = await self._summaries.create(
            session_id,
            text,
            message_count,
            start_message_id,
            end_message_id,
            importance_score,
            timeout=timeout,
        )
        summaries_created_total.labels(generator=generator).inc()
        return summary

    async def uncompressed_messages(
        self, session_id: str, *, timeout: float | None = None
    ) -> list[MessageRead]:
        """Messages after the latest summary's range, oldest first."""
        latest = await self._summaries.latest(session_id, timeout=timeout)
        after_id = latest.end_message_id if latest is not None else None
        return await self._messages.list_after(session_id, after_id, timeout=timeout)

    async def needs_summarization(
        self, session_id: str, *, timeout: float | None = None
    ) -> bool:
        session_id = clean_session_id(session_id)
        latest = await self._summaries.latest(session_id, timeout=timeout)
        after_id = latest.end_message_id if latest is not None else None
        pending = await self._messages.count_after(session_id, after_id, timeout=timeout)
        return pending >= self._threshold

    async def auto_summarize(
        self, session_id: str, *, timeout: float | None = None
    ) -> SummaryRead | None:
        """Summarize every uncompressed message once the threshold is reached.

        Returns:
            The new summary, or None when fewer than ``threshold`` messages
            are pending.
        """
        session_id = clean_session_id(session_id)
        pending = await self.uncompressed_messages(session_id, timeout=timeout)
        if len(pending) < self._threshold:
            logger.debug(
                "summarizer.below_threshold",
                session_id=session_id,
                pending=len(pending),
                threshold=self._threshold,
            )
            return None

        text = await self._generator.generate(pending)
        summary = await self.record_summary(
            session_id,
            text,
            pending[0].id,
            pending[-1].id,
            message_count=len(pending),
            generator=self._generator.name,
            timeout=timeout,
        )
        logger.info(
            "summarizer.auto_summarized",
            session_id=session_id,
            summary_id=summary.id,
            message_count=summary.message_count,
            generator=self._generator.name,
        )
        return summary
