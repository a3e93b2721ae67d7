"""Syntax Gate — refuses code that would not parse before it reaches the VFS.

Paths are classified by extension into code files and document files.
Code files are parsed with the grammar for their language: Python through
the stdlib ``ast`` module, TypeScript / TSX / JavaScript / JSX through
tree-sitter grammars. Document files (plans, markdown, json) pass through
unchecked.
"""

from __future__ import annotations

import ast
from functools import lru_cache
from pathlib import PurePosixPath
from typing import Callable

import tree_sitter_javascript
import tree_sitter_typescript
from tree_sitter import Language, Node, Parser

from selforge.exceptions import SyntaxGateError
from selforge.types import FileKind

# Returns None when the source parses, otherwise a human-readable error.
SyntaxChecker = Callable[[str, str], "str | None"]

DEFAULT_CODE_EXTENSIONS = frozenset({".ts", ".tsx", ".js", ".jsx", ".py"})


class FileClassifier:
    """Maps a path to CODE or DOCUMENT by its extension."""

    def __init__(self, code_extensions: frozenset[str] | set[str] = DEFAULT_CODE_EXTENSIONS):
        self._code_extensions = frozenset(e.lower() for e in code_extensions)

    @property
    def code_extensions(self) -> frozenset[str]:
        return self._code_extensions

    def classify(self, path: str) -> FileKind:
        if self.extension(path) in self._code_extensions:
            return FileKind.CODE
        return FileKind.DOCUMENT

    def is_code(self, path: str) -> bool:
        return self.classify(path) == FileKind.CODE

    @staticmethod
    def extension(path: str) -> str:
        return PurePosixPath(path).suffix.lower()


# ── Checkers ─────────────────────────────────────────────────────────────────


def check_python(source: str, path: str) -> str | None:
    try:
        ast.parse(source, filename=path)
    except SyntaxError as e:
        return f"{e.msg} (line {e.lineno}, column {e.offset})"
    except ValueError as e:
        return str(e)
    return None


@lru_cache(maxsize=None)
def _language(name: str) -> Language:
    if name == "typescript":
        return Language(tree_sitter_typescript.language_typescript())
    if name == "tsx":
        return Language(tree_sitter_typescript.language_tsx())
    return Language(tree_sitter_javascript.language())


def _first_error(root: Node) -> Node | None:
    stack = [root]
    while stack:
        node = stack.pop()
        if node.is_error or node.is_missing:
            return node
        if node.has_error:
            # Depth-first, left to right
            stack.extend(reversed(node.children))
    return None


def _tree_sitter_checker(language_name: str) -> SyntaxChecker:
    def check(source: str, path: str) -> str | None:
        data = source.encode("utf-8")
        tree = Parser(_language(language_name)).parse(data)
        if not tree.root_node.has_error:
            return None
        node = _first_error(tree.root_node)
        if node is None:
            return "Unexpected syntax error"
        row, column = node.start_point[0] + 1, node.start_point[1] + 1
        if node.is_missing:
            return f"Missing '{node.type}' ({row}:{column})"
        snippet = data[node.start_byte:node.end_byte].decode("utf-8", errors="replace")
        snippet = snippet.strip().splitlines()[0][:40] if snippet.strip() else ""
        return f"Unexpected token {snippet!r} ({row}:{column})"

    return check


DEFAULT_CHECKERS: dict[str, SyntaxChecker] = {
    ".py": check_python,
    ".ts": _tree_sitter_checker("typescript"),
    ".tsx": _tree_sitter_checker("tsx"),
    ".js": _tree_sitter_checker("javascript"),
    ".jsx": _tree_sitter_checker("javascript"),
}


class SyntaxGate:
    """Parses code-file content and raises SyntaxGateError if it is invalid."""

    def __init__(
        self,
        classifier: FileClassifier | None = None,
        checkers: dict[str, SyntaxChecker] | None = None,
    ) -> None:
        self.classifier = classifier or FileClassifier()
        self._checkers = dict(DEFAULT_CHECKERS if checkers is None else checkers)

    def register(self, extension: str, checker: SyntaxChecker) -> None:
        self._checkers[extension.lower()] = checker

    def check(self, path: str, content: str) -> None:
        if not self.classifier.is_code(path):
            return
        checker = self._checkers.get(self.classifier.extension(path))
        if checker is None:
            return
        error = checker(content, path)
        if error is not None:
            raise SyntaxGateError(path, error)
