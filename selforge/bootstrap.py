"""First-boot seeding of the agent's workspace."""

from __future__ import annotations

import logging
from pathlib import Path

from selforge.activity import ActivityLog
from selforge.actors.prompts import INITIAL_PLAN, PLAN_PATH
from selforge.ledger.ledger import VersionLedger
from selforge.types import UpgradeNode
from selforge.vfs.filesystem import VirtualFileSystem

logger = logging.getLogger(__name__)

DEFAULT_ENTRY_FILE = "/kernel/orchestrator.py"
SEED_SUFFIXES = frozenset({".py", ".md", ".toml", ".txt", ".json", ".ts", ".tsx", ".js", ".jsx"})
_SKIP_DIRS = frozenset({"__pycache__", ".git", ".pytest_cache", "node_modules"})


def load_seed_files(seed_dir: Path) -> dict[str, str]:
    """Read every text source file under ``seed_dir`` keyed as ``/relative/path``."""
    if not seed_dir.is_dir():
        raise FileNotFoundError(f"Seed directory not found: {seed_dir}")
    files: dict[str, str] = {}
    for path in sorted(seed_dir.rglob("*")):
        rel = path.relative_to(seed_dir)
        if any(part in _SKIP_DIRS for part in rel.parts):
            continue
        if path.is_file() and path.suffix in SEED_SUFFIXES:
            files["/" + rel.as_posix()] = path.read_text(encoding="utf-8")
    return files


def seed_workspace(
    vfs: VirtualFileSystem,
    ledger: VersionLedger,
    log: ActivityLog,
    seed_dir: Path,
    entry_file: str = DEFAULT_ENTRY_FILE,
) -> bool:
    """Fill an empty workspace with the seed sources, the initial plan and ledger v1.

    Does nothing (and returns False) when the VFS or the ledger already
    hold anything.
    """
    if len(vfs) or len(ledger):
        return False

    log.system("Initializing virtual filesystem for the first time...")
    try:
        files = load_seed_files(seed_dir)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not load seed files from %s: %s", seed_dir, e)
        log.system(f"Agent initialized. Could not load source files: {e}. Operation may be impaired.")
        return False

    files[PLAN_PATH] = INITIAL_PLAN
    vfs.replace_all(files)
    log.system(f"Created initial agent plan at {PLAN_PATH}")

    entry = entry_file if entry_file in files else next(
        (p for p in sorted(files) if vfs.is_code(p)), None
    )
    if entry is not None:
        ledger.append(
            UpgradeNode(
                id="v1",
                version=1,
                file_path=entry,
                code=files[entry],
                thought="Initial version loaded from files.",
                action="INITIALIZE",
            )
        )
    log.system(f"Agent initialized. Loaded {len(files)} files into the virtual filesystem.")
    logger.info("Seeded workspace with %d files from %s", len(files), seed_dir)
    return True
