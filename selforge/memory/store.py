"""Memory Store — append-only lessons learned from every action.

There is no weight update anywhere in the agent: this log, fed verbatim
into each actor prompt, is its only long-term learning.
"""

from __future__ import annotations

import logging
from typing import Iterable

from selforge.types import LearnedMemory, MemoryType

logger = logging.getLogger(__name__)


class MemoryStore:
    """Append-only log of LearnedMemory records."""

    def __init__(self, memories: Iterable[LearnedMemory] | None = None) -> None:
        self._memories: list[LearnedMemory] = list(memories or [])

    def __len__(self) -> int:
        return len(self._memories)

    @property
    def memories(self) -> list[LearnedMemory]:
        return list(self._memories)

    def record(
        self,
        type: MemoryType,
        context: str,
        outcome: str,
        learning: str,
        agent_version: int,
    ) -> LearnedMemory:
        memory = LearnedMemory(
            type=type,
            context=context,
            outcome=outcome,
            learning=learning,
            agent_version=agent_version,
        )
        self._memories.append(memory)
        logger.debug("Recorded %s memory: %s", type.value, context)
        return memory

    def query(
        self,
        type: MemoryType | None = None,
        newest_first: bool = False,
    ) -> list[LearnedMemory]:
        """Filter by type and sort by timestamp. Never mutates the store."""
        results = [m for m in self._memories if type is None or m.type == type]
        return sorted(results, key=lambda m: m.timestamp, reverse=newest_first)

    def has_learning(self, fragment: str) -> bool:
        return any(fragment in m.learning for m in self._memories)

    def merge(self, memories: Iterable[LearnedMemory]) -> int:
        """Add shared learnings whose ids are not already present. Returns count added."""
        known = {m.id for m in self._memories}
        added = 0
        for memory in memories:
            if memory.id in known:
                continue
            self._memories.append(memory)
            known.add(memory.id)
            added += 1
        return added

    def format_for_prompt(self) -> str:
        if not self._memories:
            return "No learnings recorded yet."
        return "\n".join(
            f"- [{m.type.value}] CONTEXT: {m.context} | OUTCOME: {m.outcome} | LEARNING: {m.learning}"
            for m in self._memories
        )

    def reset(self) -> None:
        self._memories.clear()

    def replace_all(self, memories: Iterable[LearnedMemory]) -> None:
        self._memories = list(memories)
