"""Virtual File System — the agent's own source tree, held in memory.

Every mutation is all-or-nothing: existence rules are checked and code
content is passed through the syntax gate before the map is touched, so a
rejected operation leaves the entry exactly as it was.
"""

from __future__ import annotations

from collections import Counter

from pydantic import BaseModel, Field

from selforge.exceptions import SyntaxGateError
from selforge.types import FilePath
from selforge.vfs.syntax import SyntaxGate


class VFSResult(BaseModel):
    """Outcome of one VFS operation, with a message suitable for the log."""

    success: bool
    message: str
    path: FilePath = ""
    content: str | None = None
    paths: list[FilePath] = Field(default_factory=list)
    syntax_error: str | None = None
    is_code: bool = False


class VirtualFileSystem:
    """Path -> content map with gated, atomic mutations."""

    def __init__(self, files: dict[FilePath, str] | None = None, gate: SyntaxGate | None = None):
        self._files: dict[FilePath, str] = dict(files or {})
        self.gate = gate or SyntaxGate()
        self._mutations: Counter[FilePath] = Counter()

    # ── Queries ──────────────────────────────────────────────────

    def __contains__(self, path: object) -> bool:
        return path in self._files

    def __len__(self) -> int:
        return len(self._files)

    def get(self, path: FilePath) -> str | None:
        return self._files.get(path)

    def snapshot(self) -> dict[FilePath, str]:
        return dict(self._files)

    def is_code(self, path: FilePath) -> bool:
        return self.gate.classifier.is_code(path)

    def mutation_count(self, path: FilePath) -> int:
        return self._mutations[path]

    def read(self, path: FilePath) -> VFSResult:
        if path not in self._files:
            return VFSResult(
                success=False,
                path=path,
                message=f'Could not read file "{path}". It does not exist.',
            )
        return VFSResult(
            success=True, path=path, content=self._files[path], message=f"Read {path}."
        )

    def list_files(self) -> VFSResult:
        paths = sorted(self._files)
        if not paths:
            return VFSResult(
                success=True,
                message="The virtual filesystem is empty. This may indicate an initialization error.",
            )
        return VFSResult(success=True, paths=paths, message="File list:\n" + "\n".join(paths))

    # ── Mutations ────────────────────────────────────────────────

    def rewrite(self, path: FilePath, content: str) -> VFSResult:
        if path not in self._files:
            return VFSResult(
                success=False,
                path=path,
                is_code=self.is_code(path),
                message=f'File "{path}" does not exist in the virtual filesystem.',
            )
        return self._commit(path, content, verb="rewrote")

    def save(self, path: FilePath, content: str) -> VFSResult:
        if path in self._files:
            return VFSResult(
                success=False,
                path=path,
                is_code=self.is_code(path),
                message=f'File "{path}" already exists. Use REWRITE_CODE to modify it.',
            )
        return self._commit(path, content, verb="created")

    def append(self, path: FilePath, content: str) -> VFSResult:
        if path not in self._files:
            return VFSResult(
                success=False,
                path=path,
                is_code=self.is_code(path),
                message=f'File "{path}" does not exist. Use SAVE_FILE to create it first.',
            )
        return self._commit(path, self._files[path] + "\n" + content, verb="appended to")

    def delete(self, path: FilePath) -> VFSResult:
        if path not in self._files:
            return VFSResult(
                success=False, path=path, message=f'File "{path}" does not exist.'
            )
        del self._files[path]
        self._mutations[path] += 1
        return VFSResult(success=True, path=path, message=f"Successfully deleted file: {path}")

    def move(self, source: FilePath, dest: FilePath) -> VFSResult:
        if source not in self._files:
            return VFSResult(
                success=False,
                path=source,
                message=f'Source file "{source}" does not exist.',
            )
        if dest in self._files:
            return VFSResult(
                success=False,
                path=dest,
                message=f'Destination file "{dest}" already exists. Delete it first.',
            )
        self._files[dest] = self._files.pop(source)
        self._mutations[source] += 1
        self._mutations[dest] += 1
        return VFSResult(
            success=True,
            path=dest,
            message=f"Successfully moved file from {source} to {dest}",
        )

    def replace_all(self, files: dict[FilePath, str]) -> None:
        """Swap the whole tree, used when importing saved state."""
        self._files = dict(files)
        self._mutations.clear()

    def _commit(self, path: FilePath, content: str, verb: str) -> VFSResult:
        is_code = self.is_code(path)
        try:
            self.gate.check(path, content)
        except SyntaxGateError as e:
            return VFSResult(
                success=False,
                path=path,
                is_code=is_code,
                syntax_error=e.detail,
                message=f'Code for "{path}" is syntactically invalid and was rejected. Error: {e.detail}',
            )
        self._files[path] = content
        self._mutations[path] += 1
        return VFSResult(
            success=True,
            path=path,
            content=content,
            is_code=is_code,
            message=f"Successfully {verb} {path}.",
        )
