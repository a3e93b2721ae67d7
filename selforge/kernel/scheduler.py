"""Tick scheduler — the only place the orchestrator's timers live.

The orchestrator never sleeps or re-enters itself. It asks the scheduler
for one future tick at a time; pausing drops that tick.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None]]


@runtime_checkable
class Scheduler(Protocol):
    """Holds at most one pending tick for the orchestrator."""

    def schedule(self, delay: float, callback: TickCallback) -> None: ...

    def cancel(self) -> None: ...


class TickScheduler:
    """Holds at most one pending tick on the running event loop."""

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self.delays: list[float] = []

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay: float, callback: TickCallback) -> None:
        """Replace any pending tick with ``callback`` after ``delay`` seconds."""
        self.cancel()
        self.delays.append(delay)
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, callback)

    def _fire(self, callback: TickCallback) -> None:
        self._handle = None
        self._task = asyncio.ensure_future(callback())
        self._task.add_done_callback(self._on_done)

    @staticmethod
    def _on_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled tick failed: %s", exc)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class ManualScheduler:
    """Records requested ticks without running them. Used to step the cycle by hand."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._callback: TickCallback | None = None

    @property
    def pending(self) -> bool:
        return self._callback is not None

    def schedule(self, delay: float, callback: TickCallback) -> None:
        self.delays.append(delay)
        self._callback = callback

    def cancel(self) -> None:
        self._callback = None

    async def run_pending(self) -> bool:
        """Run the pending tick now. Returns False if nothing was scheduled."""
        callback, self._callback = self._callback, None
        if callback is None:
            return False
        await callback()
        return True
