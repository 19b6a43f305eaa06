"""Context assembler with token budget enforcement.

Builds the bounded memory context for one request from three stores:

1. Pins: all of them, importance descending. Never budget-limited, so a
   session's pins are returned in full even when they alone exceed the
   budget.
2. Summaries: the top MAX_SUMMARIES by importance, older first on ties.
3. Recent messages: the newest RECENT_MESSAGE_WINDOW messages, filtered by
   the selection policy against whatever budget pins and summaries left,
   then returned oldest first.

``total_tokens`` is the estimate over everything returned. The assembler is
a pure read path: it never writes and never retries itself.

When constructed with a ``snapshot`` runner the three reads share one
transaction, and the runner retries or translates failures for the whole
set of reads (see core.database.run_in_snapshot). Without one they are
independent reads, each retried by its store, so a context built while
another task writes may mix state from slightly different instants.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.recall.core.database import run_with_deadline
from src.recall.core.errors import ValidationError
from src.recall.core.monitoring import track_context_build
from src.recall.memory.schemas import (
    MemoryContext,
    MessageRead,
    PinRead,
    SummaryRead,
    clean_session_id,
)
from src.recall.memory.selection import GreedyRecencyPolicy, SelectionPolicy
from src.recall.memory.tokens import estimate_tokens

logger = structlog.get_logger(__name__)

# Runs a read operation against one shared session and returns its result
SnapshotRunner = Callable[[Callable[[AsyncSession], Awaitable[Any]]], Awaitable[Any]]


# ── Store Interfaces ────────────────────────────────────────────────────────


class PinReader(Protocol):
    async def list(
        self,
        session_id: str,
        pin_type: str | None = None,
        *,
        session: AsyncSession | None = None,
        timeout: float | None = None,
    ) -> list[PinRead]: ...


class SummaryReader(Protocol):
    async def list_top(
        self,
        session_id: str,
        limit: int = 5,
        *,
        session: AsyncSession | None = None,
        timeout: float | None = None,
    ) -> list[SummaryRead]: ...


class MessageReader(Protocol):
    async def list_recent(
        self,
        session_id: str,
        limit: int = 50,
        *,
        session: AsyncSession | None = None,
        timeout: float | None = None,
    ) -> list[MessageRead]: ...


# ── ContextAssembler ────────────────────────────────────────────────────────


class ContextAssembler:
    """Token-budgeted merge of pins, summaries, and recent messages.

    Usage:
        assembler = ContextAssembler(messages=message_repo, summaries=summary_repo, pins=pin_repo)
        context = await assembler.build_context("session-1", token_limit=2000)
        print(context.total_tokens)

    Args:
        messages: Store providing ``list_recent`` (newest first).
        summaries: Store providing ``list_top``.
        pins: Store providing ``list``.
        policy: Recent-message selection policy. Defaults to the greedy
            newest-first policy.
        snapshot: Optional runner that calls a read operation with one
            shared session.
        token_limit: Default budget when a call passes none.
        max_summaries: Summaries fetched per context.
        recent_window: Most recent messages considered for selection.
    """

    DEFAULT_TOKEN_LIMIT: int = 4_000
    MAX_SUMMARIES: int = 5
    RECENT_MESSAGE_WINDOW: int = 50

    def __init__(
        self,
        messages: MessageReader,
        summaries: SummaryReader,
        pins: PinReader,
        *,
        policy: SelectionPolicy | None = None,
        snapshot: SnapshotRunner | None = None,
        token_limit: int = DEFAULT_TOKEN_LIMIT,
        max_summaries: int = MAX_SUMMARIES,
        recent_window: int = RECENT_MESSAGE_WINDOW,
    ) -> None:
        self._messages = messages
        self._summaries = summaries
        self._pins = pins
        self._policy = policy or GreedyRecencyPolicy()
        self._snapshot = snapshot
        self._token_limit = token_limit
        self._max_summaries = max_summaries
        self._recent_window = recent_window

    @property
    def policy(self) -> SelectionPolicy:
        return self._policy

    async def build_context(
        self,
        session_id: str,
        token_limit: int | None = None,
        *,
        timeout: float | None = None,
    ) -> MemoryContext:
        """Assemble the memory context for a session.

        Args:
            session_id: Session to read.
            token_limit: Budget in estimated tokens. Zero or negative is
                valid and selects no recent messages.
            timeout: Optional deadline in seconds for the whole build.

        Returns:
            MemoryContext. An empty session yields an empty context with
            ``total_tokens == 0``.

        Raises:
            ValidationError: Empty session id or a non-integer limit.
            StorageError: A store read failed.
            DeadlineExceededError: The deadline passed first.
        """
        session_id = clean_session_id(session_id)
        if token_limit is None:
            token_limit = self._token_limit
        if isinstance(token_limit, bool) or not isinstance(token_limit, int):
            raise ValidationError(f"token_limit must be an integer, got {token_limit!r}")

        async with track_context_build() as tracker:
            context = await run_with_deadline(
                self._assemble(session_id, token_limit), timeout, "context.build"
            )
            tracker["total_tokens"] = context.total_tokens
            tracker["recent_messages"] = len(context.recent_messages)

        logger.info(
            "context.built",
            session_id=session_id,
            token_limit=token_limit,
            pins=len(context.pins),
            summaries=len(context.summaries),
            recent_messages=len(context.recent_messages),
            total_tokens=context.total_tokens,
            policy=self._policy.name,
        )
        return context

    async def _assemble(self, session_id: str, token_limit: int) -> MemoryContext:
        if self._snapshot is None:
            pins, summaries, candidates = await self._fetch(session_id)
        else:
            pins, summaries, candidates = await self._snapshot(
                lambda session: self._fetch(session_id, session)
            )

        pin_tokens = sum(estimate_tokens(p.content) for p in pins)
        summary_tokens = sum(estimate_tokens(s.text) for s in summaries)
        tokens_used = pin_tokens + summary_tokens
        remaining = token_limit - tokens_used

        selected = self._policy.select(candidates, remaining)
        message_tokens = sum(estimate_tokens(m.text) for m in selected)

        logger.debug(
            "context.budget",
            session_id=session_id,
            pin_tokens=pin_tokens,
            summary_tokens=summary_tokens,
            remaining=remaining,
            candidates=len(candidates),
            selected=len(selected),
        )

        return MemoryContext(
            pins=pins,
            summaries=summaries,
            recent_messages=list(reversed(selected)),
            total_tokens=tokens_used + message_tokens,
        )

    async def _fetch(
        self, session_id: str, session: AsyncSession | None = None
    ) -> tuple[list[PinRead], list[SummaryRead], list[MessageRead]]:
        # One session cannot run queries concurrently, so reads stay sequential
        pins = await self._pins.list(session_id, session=session)
        summaries = await self._summaries.list_top(
            session_id, self._max_summaries, session=session
        )
        candidates = await self._messages.list_recent(
            session_id, self._recent_window, session=session
        )
        return pins, summaries, candidates
