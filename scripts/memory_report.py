#!/usr/bin/env python3
"""Memory report for one conversation session.

Usage:
    uv run python scripts/memory_report.py --session s-123
    uv run python scripts/memory_report.py --session s-123 --token-limit 2000 --json
    uv run python scripts/memory_report.py --session s-123 --summarize

Prints memory statistics and the context that would be assembled for the
session's next request. With --summarize, runs automatic summarization
first (rule-based text unless LLM API keys are configured).

Reads DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

from src.recall.config import get_settings  # noqa: E402
from src.recall.core.database import close_db, get_engine  # noqa: E402
from src.recall.core.logging import configure_structlog  # noqa: E402
from src.recall.memory import MemoryContext, MemoryService, MemoryStats  # noqa: E402
from src.recall.services.llm import LLMService  # noqa: E402

logger = structlog.get_logger(__name__)


def print_report(session_id: str, stats: MemoryStats, context: MemoryContext) -> None:
    print(f"\nSession {session_id}")
    print(f"  messages:   {stats.total_messages}")
    print(f"  summaries:  {stats.total_summaries}")
    print(f"  pins:       {stats.total_pins}")
    print(f"  span:       {stats.oldest_message} -> {stats.newest_message}")
    print(f"  importance: {stats.average_importance_score:.2f} avg")

    print(f"\nContext ({context.total_tokens} estimated tokens)")
    for pin in context.pins:
        print(f"  [pin {pin.pin_type.value} {pin.importance_score:.2f}] {pin.content}")
    for summary in context.summaries:
        print(
            f"  [summary {summary.start_message_id}-{summary.end_message_id} "
            f"{summary.importance_score:.2f}] {summary.text}"
        )
    for message in context.recent_messages:
        print(f"  [{message.role.value}] {message.text}")


async def main_async(args: argparse.Namespace) -> None:
    settings = get_settings()
    llm_service = LLMService(settings)
    service = MemoryService.from_settings(
        settings,
        engine=get_engine(),
        llm_service=llm_service if llm_service.available else None,
    )

    try:
        if args.summarize:
            summary = await service.auto_summarize(args.session)
            if summary is None:
                logger.info("memory_report.summarize_skipped", session_id=args.session)
            else:
                print(f"Created summary {summary.id} over {summary.message_count} messages")

        stats = await service.memory_stats(args.session)
        context = await service.build_context(args.session, args.token_limit)
    finally:
        await close_db()

    if args.json:
        print(json.dumps(
            {"stats": stats.model_dump(mode="json"), "context": context.model_dump(mode="json")},
            indent=2,
        ))
    else:
        print_report(args.session, stats, context)


def main() -> None:
    parser = argparse.ArgumentParser(description="Report memory for a conversation session")
    parser.add_argument("--session", required=True, help="Session id")
    parser.add_argument("--token-limit", type=int, default=None, help="Context token budget")
    parser.add_argument("--summarize", action="store_true", help="Run auto-summarization first")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    args = parser.parse_args()

    configure_structlog()
    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
