"""Recent-message selection policies for context assembly.

The assembler hands a policy the candidate messages newest first together
with the token budget left after pins and summaries. The policy returns the
messages it keeps, still newest first; the assembler restores chronological
order afterwards.

- GreedyRecencyPolicy: take messages newest to oldest and stop at the first
  one that does not fit. This is the default and is not a knapsack optimum:
  one large recent message blocks every older message behind it.
- FirstFitRecencyPolicy: same walk, but skip a message that does not fit and
  keep looking at older ones.
"""

from __future__ import annotations

from typing import Protocol

from src.recall.memory.schemas import MessageRead
from src.recall.memory.tokens import estimate_tokens


class SelectionPolicy(Protocol):
    """Chooses which recent messages fit in the remaining budget."""

    name: str

    def select(self, candidates: list[MessageRead], budget: int) -> list[MessageRead]: ...


class GreedyRecencyPolicy:
    """Newest-first greedy packing that stops at the first overflow."""

    name = "greedy_recency"

    def select(self, candidates: list[MessageRead], budget: int) -> list[MessageRead]:
        if budget <= 0:
            return []

        selected: list[MessageRead] = []
        used = 0
        for message in candidates:
            cost = estimate_tokens(message.text)
            if used + cost > budget:
                break
            selected.append(message)
            used += cost
        return selected


class FirstFitRecencyPolicy:
    """Newest-first packing that skips oversize messages instead of stopping.

    Still prefers recency: a newer message is always considered before an
    older one, so the result is a subsequence of the candidates.
    """

    name = "first_fit_recency"

    def select(self, candidates: list[MessageRead], budget: int) -> list[MessageRead]:
        if budget <= 0:
            return []

        selected: list[MessageRead] = []
        used = 0
        for message in candidates:
            cost = estimate_tokens(message.text)
            if used + cost <= budget:
                selected.append(message)
                used += cost
        return selected
