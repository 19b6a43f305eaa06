"""Typed failures surfaced by the memory engine.

Validation and not-found errors are raised straight to the caller.
Storage errors are raised only after the store layer's retry policy
has given up. Callers on the conversation path should go through
MemoryService.context_for_turn, which turns all of these into an
empty context instead of aborting the turn.
"""

from __future__ import annotations

from typing import Any


class MemoryEngineError(Exception):
    """Base class for every error raised by the memory engine."""


class ValidationError(MemoryEngineError, ValueError):
    """Raised when an input violates a memory invariant.

    Attributes:
        errors: Structured error details (pydantic error dicts when the
            failure came from payload validation).
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class NotFoundError(MemoryEngineError, LookupError):
    """Raised when a referenced session or memory row does not exist."""

    def __init__(self, entity: str, key: Any) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class StorageError(MemoryEngineError):
    """Raised when the persistence layer fails after retries."""


class DeadlineExceededError(StorageError, TimeoutError):
    """Raised when a store call or context build runs past its deadline."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} exceeded deadline of {timeout:.3f}s")
