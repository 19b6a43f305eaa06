"""Conversation memory and context assembly.

Provides:
- MessageRepository, SummaryRepository, PinRepository, SessionRepository:
  Async stores for the memory tables
- ContextAssembler: Token-budgeted merge of pins, summaries, and recent messages
- GreedyRecencyPolicy, FirstFitRecencyPolicy: Recent-message selection policies
- SummarizationTrigger: Summary persistence and threshold decisions
- LLMSummaryGenerator, RuleBasedSummaryGenerator: Summary text generation
- MemoryService: Facade used by the conversation orchestrator
- estimate_tokens: Shared ~4 chars/token length heuristic
"""

from src.recall.memory.tokens import estimate_tokens
from src.recall.memory.schemas import (
    MemoryContext,
    MemoryStats,
    MessageRead,
    MessageRole,
    PinRead,
    PinType,
    SessionRead,
    SummaryRead,
)
from src.recall.memory.repository import (
    MessageRepository,
    PinRepository,
    SessionRepository,
    SummaryRepository,
)
from src.recall.memory.selection import (
    FirstFitRecencyPolicy,
    GreedyRecencyPolicy,
    SelectionPolicy,
)
from src.recall.memory.assembler import ContextAssembler
from src.recall.memory.summarization import (
    LLMSummaryGenerator,
    RuleBasedSummaryGenerator,
    SummarizationTrigger,
)
from src.recall.memory.service import MemoryService

__all__ = [
    "estimate_tokens",
    "MemoryContext",
    "MemoryStats",
    "MessageRead",
    "MessageRole",
    "PinRead",
    "PinType",
    "SessionRead",
    "SummaryRead",
    "MessageRepository",
    "PinRepository",
    "SessionRepository",
    "SummaryRepository",
    "SelectionPolicy",
    "GreedyRecencyPolicy",
    "FirstFitRecencyPolicy",
    "ContextAssembler",
    "LLMSummaryGenerator",
    "RuleBasedSummaryGenerator",
    "SummarizationTrigger",
    "MemoryService",
]
