"""State persistence — the four named slots as JSON files under the workspace.

    .selforge/log.json        activity log entries (newest first)
    .selforge/ledger.json     upgrade nodes
    .selforge/memories.json   learned memories
    .selforge/vfs.json        path -> content map

Each slot loads and resets independently. An export bundle holds all four
and is validated in full before anything is replaced.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, TypeAdapter, ValidationError

from selforge.activity import ActivityLog
from selforge.exceptions import LedgerOrderError, StateFileError
from selforge.ledger.ledger import VersionLedger
from selforge.memory.store import MemoryStore
from selforge.types import LearnedMemory, LogEntry, UpgradeNode
from selforge.vfs.filesystem import VirtualFileSystem

logger = logging.getLogger(__name__)

SLOTS = ("log", "ledger", "memories", "vfs")

_LOG = TypeAdapter(list[LogEntry])
_LEDGER = TypeAdapter(list[UpgradeNode])
_MEMORIES = TypeAdapter(list[LearnedMemory])
_VFS = TypeAdapter(dict[str, str])


class StateBundle(BaseModel):
    """Full-state export. Every key is required."""

    log: list[LogEntry]
    ledger: list[UpgradeNode]
    memories: list[LearnedMemory]
    vfs: dict[str, str]


class StateStore:
    def __init__(
        self,
        workspace_dir: Path | str,
        log: ActivityLog,
        ledger: VersionLedger,
        memory: MemoryStore,
        vfs: VirtualFileSystem,
    ) -> None:
        self._dir = Path(workspace_dir)
        self.log = log
        self.ledger = ledger
        self.memory = memory
        self.vfs = vfs

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, slot: str) -> Path:
        if slot not in SLOTS:
            raise StateFileError(f"Unknown state slot '{slot}'. Expected one of: {', '.join(SLOTS)}")
        return self._dir / f"{slot}.json"

    # ── Save / Load ─────────────────────────────────────────────

    def save_all(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        self._write("log", _LOG.dump_json(self.log.entries, indent=2))
        self._write("ledger", _LEDGER.dump_json(self.ledger.nodes, indent=2))
        self._write("memories", _MEMORIES.dump_json(self.memory.memories, indent=2))
        self._write("vfs", _VFS.dump_json(self.vfs.snapshot(), indent=2))
        logger.debug("State saved to %s", self._dir)

    def load_all(self) -> list[str]:
        """Load whichever slots exist on disk. Returns the names of the slots loaded."""
        loaded = []
        for slot in SLOTS:
            raw = self._read(slot)
            if raw is None:
                continue
            try:
                self._apply(slot, raw)
            except (ValidationError, LedgerOrderError) as e:
                raise StateFileError(f"{self.path_for(slot)} is unreadable: {e}") from e
            loaded.append(slot)
        if loaded:
            logger.info("Loaded state slots %s from %s", ", ".join(loaded), self._dir)
        return loaded

    def reset(self, slot: str) -> None:
        """Clear one slot in memory and on disk."""
        path = self.path_for(slot)
        if slot == "log":
            self.log.reset()
        elif slot == "ledger":
            self.ledger.reset()
        elif slot == "memories":
            self.memory.reset()
        else:
            self.vfs.replace_all({})
        if path.exists():
            path.unlink()
        logger.info("Reset state slot %s", slot)

    # ── Export / Import ─────────────────────────────────────────

    def bundle(self) -> StateBundle:
        return StateBundle(
            log=self.log.entries,
            ledger=self.ledger.nodes,
            memories=self.memory.memories,
            vfs=self.vfs.snapshot(),
        )

    def export_bundle(self, path: Path | str) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.bundle().model_dump_json(indent=2), encoding="utf-8")
        logger.info("Exported state to %s", path)
        return path

    def import_bundle(self, path: Path | str) -> StateBundle:
        path = Path(path)
        try:
            bundle = StateBundle.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateFileError(f"Cannot read {path}: {e}") from e
        except ValidationError as e:
            raise StateFileError(f"Invalid state file {path}: {e}") from e

        # Ledger ordering is checked before any slot is touched.
        try:
            VersionLedger(bundle.ledger)
        except LedgerOrderError as e:
            raise StateFileError(f"Invalid ledger in {path}: {e}") from e

        self.log.replace_all(bundle.log)
        self.ledger.replace_all(bundle.ledger)
        self.memory.replace_all(bundle.memories)
        self.vfs.replace_all(bundle.vfs)
        self.save_all()
        logger.info("Imported state from %s", path)
        return bundle

    def merge_memories(self, path: Path | str) -> int:
        """Merge a shared-learnings JSON list into the memory store."""
        path = Path(path)
        try:
            memories = _MEMORIES.validate_json(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateFileError(f"Cannot read {path}: {e}") from e
        except ValidationError as e:
            raise StateFileError(f"Invalid learnings file {path}: {e}") from e
        added = self.memory.merge(memories)
        logger.info("Merged %d shared learnings from %s", added, path)
        return added

    # ── Internals ───────────────────────────────────────────────

    def _write(self, slot: str, data: bytes) -> None:
        self.path_for(slot).write_bytes(data)

    def _read(self, slot: str) -> str | None:
        path = self.path_for(slot)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _apply(self, slot: str, raw: str) -> None:
        if slot == "log":
            self.log.replace_all(_LOG.validate_json(raw))
        elif slot == "ledger":
            self.ledger.replace_all(_LEDGER.validate_json(raw))
        elif slot == "memories":
            self.memory.replace_all(_MEMORIES.validate_json(raw))
        else:
            self.vfs.replace_all(_VFS.validate_json(raw))
