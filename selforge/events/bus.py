"""Event Bus — notifications about the agent's own state.

The orchestrator announces status changes and log entries; the executor
announces VFS, ledger and memory mutations. Observers (the preview
sandbox, autosave, the CLI) subscribe by topic pattern, so "vfs.*"
matches "vfs.changed" and "*" matches everything.
"""

from __future__ import annotations

import fnmatch
import logging
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from selforge.types import new_id, utcnow

AGENT_STATUS = "agent.status"
LOG_ENTRY = "log.entry"
VFS_CHANGED = "vfs.changed"
LEDGER_APPENDED = "ledger.appended"
MEMORY_RECORDED = "memory.recorded"

TOPICS = frozenset({AGENT_STATUS, LOG_ENTRY, VFS_CHANGED, LEDGER_APPENDED, MEMORY_RECORDED})

EventHandler = Callable[["Event"], Awaitable[None]]

logger = logging.getLogger(__name__)


class Event(BaseModel):
    """One notification. `data` is the JSON form of whatever changed."""

    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class EventBus:
    """Delivers agent events to subscribers in the order they subscribed.

    A subscriber that raises is logged and skipped; the emitter and the
    remaining subscribers are unaffected.
    """

    def __init__(self, history_limit: int = 500) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._history: deque[Event] = deque(maxlen=history_limit)

    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """Register `handler` for topics matching `pattern`; returns an unsubscriber."""
        self._subscriptions.append((pattern, handler))
        return lambda: self.unsubscribe(pattern, handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        if (pattern, handler) in self._subscriptions:
            self._subscriptions.remove((pattern, handler))

    async def emit(self, topic: str, data: dict[str, Any] | None = None, source: str = "") -> Event:
        if topic not in TOPICS:
            raise ValueError(f"Unknown event topic: {topic}")
        event = Event(topic=topic, data=data or {}, source=source)
        self._history.append(event)

        for pattern, handler in list(self._subscriptions):
            if not fnmatch.fnmatch(topic, pattern):
                continue
            try:
                await handler(event)
            except Exception as e:
                logger.warning("Subscriber %r for %s failed: %s", pattern, topic, e)
        return event

    def history(self, pattern: str = "*", limit: int = 50) -> list[Event]:
        """Most recent events first, optionally filtered by topic pattern."""
        matching = [e for e in reversed(self._history) if fnmatch.fnmatch(e.topic, pattern)]
        return matching[:limit]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
