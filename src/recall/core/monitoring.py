"""Prometheus metrics for context assembly, summarization, and storage.

Provides:
- Context build counters and histograms (duration, tokens, section sizes)
- Storage retry counter
- Summary creation counter
- track_context_build(): Context manager recording one build
- render_metrics(): Prometheus exposition text for an external scraper
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

# ── Context Assembly Metrics ────────────────────────────────────────────────

context_builds_total = Counter(
    "memory_context_builds_total",
    "Total context assembly calls",
    ["status"],
)

context_build_duration_seconds = Histogram(
    "memory_context_build_duration_seconds",
    "Context assembly duration in seconds",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

context_tokens = Histogram(
    "memory_context_tokens",
    "Estimated tokens in assembled contexts",
    buckets=(0, 250, 500, 1000, 2000, 4000, 8000, 16000, 32000),
)

context_recent_messages = Histogram(
    "memory_context_recent_messages",
    "Recent messages selected per assembled context",
    buckets=(0, 1, 2, 5, 10, 20, 50),
)

context_degraded_total = Counter(
    "memory_context_degraded_total",
    "Conversation turns that proceeded with an empty memory context",
)

# ── Storage Metrics ─────────────────────────────────────────────────────────

storage_retries_total = Counter(
    "memory_storage_retries_total",
    "Store calls retried after a transient failure",
    ["operation"],
)

# ── Summarization Metrics ───────────────────────────────────────────────────

summaries_created_total = Counter(
    "memory_summaries_created_total",
    "Summaries persisted",
    ["generator"],
)


@asynccontextmanager
async def track_context_build() -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that records one context build.

    Usage:
        async with track_context_build() as tracker:
            context = await assemble(...)
            tracker["total_tokens"] = context.total_tokens
            tracker["recent_messages"] = len(context.recent_messages)
    """
    tracker: dict[str, Any] = {"total_tokens": None, "recent_messages": None}
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except BaseException:
        status = "error"
        raise
    finally:
        context_builds_total.labels(status=status).inc()
        context_build_duration_seconds.observe(time.perf_counter() - start_time)
        if tracker["total_tokens"] is not None:
            context_tokens.observe(tracker["total_tokens"])
        if tracker["recent_messages"] is not None:
            context_recent_messages.observe(tracker["recent_messages"])


def render_metrics() -> bytes:
    """Prometheus exposition format for the default registry."""
    return generate_latest(REGISTRY)
