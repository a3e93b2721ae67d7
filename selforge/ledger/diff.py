"""Line diff between two full-content snapshots.

Longest-common-subsequence alignment. When two alignments are equally
long the new-side line is consumed first while walking back from the end,
which only changes how interleaved add/remove runs are ordered.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class DiffKind(str, Enum):
    UNCHANGED = "unchanged"
    ADDED = "added"
    REMOVED = "removed"


class DiffLine(BaseModel):
    kind: DiffKind
    content: str
    old_line: int | None = None  # None where the line has no old-side counterpart
    new_line: int | None = None

    @property
    def symbol(self) -> str:
        return {DiffKind.ADDED: "+", DiffKind.REMOVED: "-"}.get(self.kind, " ")


def generate_diff(old_code: str, new_code: str) -> list[DiffLine]:
    old = old_code.split("\n")
    new = new_code.split("\n")
    n_old, n_new = len(old), len(new)

    lcs = [[0] * (n_new + 1) for _ in range(n_old + 1)]
    for i in range(1, n_old + 1):
        for j in range(1, n_new + 1):
            if old[i - 1] == new[j - 1]:
                lcs[i][j] = lcs[i - 1][j - 1] + 1
            else:
                lcs[i][j] = max(lcs[i - 1][j], lcs[i][j - 1])

    reversed_parts: list[tuple[DiffKind, str]] = []
    i, j = n_old, n_new
    while i > 0 or j > 0:
        if i > 0 and j > 0 and old[i - 1] == new[j - 1]:
            reversed_parts.append((DiffKind.UNCHANGED, old[i - 1]))
            i -= 1
            j -= 1
        elif j > 0 and (i == 0 or lcs[i][j - 1] >= lcs[i - 1][j]):
            reversed_parts.append((DiffKind.ADDED, new[j - 1]))
            j -= 1
        else:
            reversed_parts.append((DiffKind.REMOVED, old[i - 1]))
            i -= 1

    result: list[DiffLine] = []
    old_no = new_no = 1
    for kind, content in reversed(reversed_parts):
        line = DiffLine(kind=kind, content=content)
        if kind != DiffKind.ADDED:
            line.old_line = old_no
            old_no += 1
        if kind != DiffKind.REMOVED:
            line.new_line = new_no
            new_no += 1
        result.append(line)
    return result


def apply_diff(diff: list[DiffLine]) -> str:
    """Rebuild the new-side text from a diff."""
    return "\n".join(line.content for line in diff if line.kind != DiffKind.REMOVED)


def render_unified(diff: list[DiffLine]) -> str:
    return "\n".join(f"{line.symbol} {line.content}" for line in diff)
