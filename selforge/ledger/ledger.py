"""Version Ledger — every accepted code mutation, in order, forever.

Versions start at 1 and are gapless. Nodes are frozen once appended; the
only way to remove anything is a hard reset of the whole ledger.
"""

from __future__ import annotations

import logging
from typing import Iterator

from selforge.exceptions import CrossPathDiffError, LedgerOrderError
from selforge.ledger.diff import DiffLine, generate_diff
from selforge.types import FilePath, UpgradeNode

logger = logging.getLogger(__name__)


class VersionLedger:
    """Append-only sequence of UpgradeNodes."""

    def __init__(self, nodes: list[UpgradeNode] | None = None) -> None:
        self._nodes: list[UpgradeNode] = []
        for node in nodes or []:
            self.append(node)

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[UpgradeNode]:
        return iter(list(self._nodes))

    @property
    def nodes(self) -> list[UpgradeNode]:
        return list(self._nodes)

    @property
    def latest(self) -> UpgradeNode | None:
        return self._nodes[-1] if self._nodes else None

    @property
    def next_version(self) -> int:
        return len(self._nodes) + 1

    def get(self, version: int) -> UpgradeNode | None:
        if 1 <= version <= len(self._nodes):
            return self._nodes[version - 1]
        return None

    def append(self, node: UpgradeNode) -> UpgradeNode:
        if node.version != self.next_version:
            raise LedgerOrderError(
                f"Expected version {self.next_version}, got {node.version}"
            )
        self._nodes.append(node)
        logger.info("Ledger v%d recorded for %s", node.version, node.file_path)
        return node

    def record(self, file_path: FilePath, code: str, thought: str, action: str) -> UpgradeNode:
        """Build the next node and append it."""
        version = self.next_version
        return self.append(
            UpgradeNode(
                id=f"v{version}",
                version=version,
                file_path=file_path,
                code=code,
                thought=thought,
                action=action,
            )
        )

    def diff(self, base: UpgradeNode, compare: UpgradeNode) -> list[DiffLine]:
        if base.file_path != compare.file_path:
            raise CrossPathDiffError(
                "Cannot compare versions that modify different files.\n"
                f"Base (v{base.version}) modified: {base.file_path}\n"
                f"Compare (v{compare.version}) modified: {compare.file_path}"
            )
        return generate_diff(base.code, compare.code)

    def latest_prior_version(self, path: FilePath, before_version: int) -> UpgradeNode | None:
        for node in reversed(self._nodes[: max(before_version - 1, 0)]):
            if node.file_path == path:
                return node
        return None

    def diff_with_prior(self, node: UpgradeNode) -> list[DiffLine] | None:
        """Diff a node against the previous snapshot of its file, or None if there is none."""
        prior = self.latest_prior_version(node.file_path, node.version)
        if prior is None:
            return None
        return self.diff(prior, node)

    def reset(self) -> None:
        """Hard reset — drops the whole history."""
        self._nodes.clear()

    def replace_all(self, nodes: list[UpgradeNode]) -> None:
        """Load a complete history, validating its ordering before swapping it in."""
        staged = VersionLedger(nodes)
        self._nodes = staged._nodes
