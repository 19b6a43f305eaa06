"""Character-based token estimation shared by every budget computation.

Approximately 4 characters per token. The estimate is deterministic and
monotonic in string length, so assembled contexts are reproducible.
"""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Estimated token count: ``ceil(len(text) / 4)``. ``None`` counts as 0."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
