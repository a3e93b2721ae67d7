"""Activity log — the human-readable record of what the agent thought and did."""

from __future__ import annotations

from typing import Any, Callable, Iterable

from selforge.types import LogAuthor, LogEntry

LogListener = Callable[[LogEntry], None]


class ActivityLog:
    """Newest-first list of LogEntry records.

    Listeners are called synchronously for each new entry; the runtime uses
    one to forward entries onto the event bus.
    """

    def __init__(self, entries: Iterable[LogEntry] | None = None) -> None:
        self._entries: list[LogEntry] = list(entries or [])
        self._listeners: list[LogListener] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def add(self, author: LogAuthor, content: str, metadata: dict[str, Any] | None = None) -> LogEntry:
        entry = LogEntry(author=author, content=content, metadata=metadata)
        self._entries.insert(0, entry)
        for listener in self._listeners:
            listener(entry)
        return entry

    def system(self, content: str) -> LogEntry:
        return self.add(LogAuthor.SYSTEM, content)

    def on_entry(self, listener: LogListener) -> None:
        self._listeners.append(listener)

    def recent(self, limit: int = 100) -> list[LogEntry]:
        return self._entries[:limit]

    def format_history(self, limit: int = 100) -> str:
        recent = self.recent(limit)
        if not recent:
            return "No history yet."
        return "\n".join(f"[{e.author.value}] {e.content}" for e in recent)

    def reset(self) -> None:
        self._entries.clear()

    def replace_all(self, entries: Iterable[LogEntry]) -> None:
        self._entries = list(entries)
