"""Preview sandbox boundary.

Whatever actually runs the agent's current code (a browser preview, a
subprocess, a container) receives every VFS snapshot through the
``vfs.changed`` event and reports crashes back with
``report_runtime_error``. CHECK_PREVIEW_HEALTH then consumes that flag.
"""

from __future__ import annotations

import logging

from selforge.events.bus import VFS_CHANGED, Event, EventBus
from selforge.types import FilePath

logger = logging.getLogger(__name__)


class PreviewMonitor:
    def __init__(self) -> None:
        self._snapshot: dict[FilePath, str] = {}
        self._runtime_error: str | None = None
        self.loads = 0

    @property
    def snapshot(self) -> dict[FilePath, str]:
        return dict(self._snapshot)

    @property
    def has_error(self) -> bool:
        return self._runtime_error is not None

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(VFS_CHANGED, self._on_vfs_changed)

    async def _on_vfs_changed(self, event: Event) -> None:
        self.load(event.data.get("files", {}))

    def load(self, files: dict[FilePath, str]) -> None:
        """Take a fresh snapshot. A new load clears nothing: crashes stay reported until consumed."""
        self._snapshot = dict(files)
        self.loads += 1

    def report_runtime_error(self, message: str) -> None:
        logger.warning("Preview reported a runtime error: %s", message)
        self._runtime_error = message

    def consume_error(self) -> str | None:
        error, self._runtime_error = self._runtime_error, None
        return error
