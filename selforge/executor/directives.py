"""Action directive grammar.

An action is decoded in two steps: the leading keyword picks the variant,
then that variant's payload (quoted paths, fenced content) is decoded.
Text that does not start with a known keyword becomes UnknownDirective; a
known keyword with the wrong argument shape becomes MalformedDirective.
Neither raises, so the executor can report them like any other outcome.
"""

from __future__ import annotations

import re
from typing import Annotated, Callable, Literal, Union

from pydantic import BaseModel, Field

_KEYWORD = re.compile(r"^([A-Z][A-Z_]*)\b")
_QUOTED = r'"([^"]+)"'
# Greedy up to the last fence so markdown payloads may contain their own fences.
_FENCED = re.compile(r'^"([^"]+)"\s*```[\w+.#-]*[ \t]*\n([\s\S]*)\n```')
_FENCED_EMPTY = re.compile(r'^"([^"]+)"\s*```[\w+.#-]*[ \t]*\n```')


class RewriteCode(BaseModel):
    kind: Literal["REWRITE_CODE"] = "REWRITE_CODE"
    path: str
    content: str


class SaveFile(BaseModel):
    kind: Literal["SAVE_FILE"] = "SAVE_FILE"
    path: str
    content: str


class AppendToFile(BaseModel):
    kind: Literal["APPEND_TO_FILE"] = "APPEND_TO_FILE"
    path: str
    content: str


class ReadFile(BaseModel):
    kind: Literal["READ_FILE"] = "READ_FILE"
    path: str


class DeleteFile(BaseModel):
    kind: Literal["DELETE_FILE"] = "DELETE_FILE"
    path: str


class MoveFile(BaseModel):
    kind: Literal["MOVE_FILE"] = "MOVE_FILE"
    source: str
    dest: str


class ListFiles(BaseModel):
    kind: Literal["LIST_FILES"] = "LIST_FILES"


class GoogleSearch(BaseModel):
    kind: Literal["GOOGLE_SEARCH"] = "GOOGLE_SEARCH"
    query: str | None = None


class ReadUrlContent(BaseModel):
    kind: Literal["READ_URL_CONTENT"] = "READ_URL_CONTENT"
    url: str


class CheckPreviewHealth(BaseModel):
    kind: Literal["CHECK_PREVIEW_HEALTH"] = "CHECK_PREVIEW_HEALTH"


class SuggestTask(BaseModel):
    kind: Literal["SUGGEST_TASK"] = "SUGGEST_TASK"
    text: str


class TaskCompleted(BaseModel):
    """The Researcher's end-of-research sentinel. Not an executable action."""

    kind: Literal["TASK_COMPLETED"] = "TASK_COMPLETED"


class UnknownDirective(BaseModel):
    kind: Literal["UNKNOWN"] = "UNKNOWN"
    raw: str


class MalformedDirective(BaseModel):
    kind: Literal["MALFORMED"] = "MALFORMED"
    keyword: str
    raw: str
    expected: str


Directive = Annotated[
    Union[
        RewriteCode,
        SaveFile,
        AppendToFile,
        ReadFile,
        DeleteFile,
        MoveFile,
        ListFiles,
        GoogleSearch,
        ReadUrlContent,
        CheckPreviewHealth,
        SuggestTask,
        TaskCompleted,
        UnknownDirective,
        MalformedDirective,
    ],
    Field(discriminator="kind"),
]

CODE_MUTATIONS = frozenset({"REWRITE_CODE", "SAVE_FILE", "APPEND_TO_FILE"})
RESEARCH_ACTIONS = frozenset({"GOOGLE_SEARCH", "READ_URL_CONTENT"})


def _fenced(rest: str, strip: bool) -> tuple[str, str] | None:
    match = _FENCED.match(rest)
    if match:
        content = match.group(2)
        return match.group(1), content.strip() if strip else content
    match = _FENCED_EMPTY.match(rest)
    if match:
        return match.group(1), ""
    return None


def _decode_rewrite(rest: str):
    decoded = _fenced(rest, strip=True)
    return RewriteCode(path=decoded[0], content=decoded[1]) if decoded else None


def _decode_save(rest: str):
    decoded = _fenced(rest, strip=True)
    return SaveFile(path=decoded[0], content=decoded[1]) if decoded else None


def _decode_append(rest: str):
    # Appended text keeps its own leading/trailing whitespace.
    decoded = _fenced(rest, strip=False)
    return AppendToFile(path=decoded[0], content=decoded[1]) if decoded else None


def _single_quoted(rest: str) -> str | None:
    match = re.match(_QUOTED, rest)
    return match.group(1) if match else None


def _decode_read(rest: str):
    path = _single_quoted(rest)
    return ReadFile(path=path) if path else None


def _decode_delete(rest: str):
    path = _single_quoted(rest)
    return DeleteFile(path=path) if path else None


def _decode_move(rest: str):
    match = re.match(_QUOTED + r"\s+" + _QUOTED, rest)
    return MoveFile(source=match.group(1), dest=match.group(2)) if match else None


def _decode_search(rest: str):
    return GoogleSearch(query=_single_quoted(rest))


def _decode_url(rest: str):
    url = _single_quoted(rest)
    return ReadUrlContent(url=url) if url else None


def _decode_suggest(rest: str):
    text = _single_quoted(rest)
    return SuggestTask(text=text.strip()) if text and text.strip() else None


_DECODERS: dict[str, tuple[Callable[[str], object], str]] = {
    "REWRITE_CODE": (_decode_rewrite, 'REWRITE_CODE "<path>" ```lang\\n<content>\\n```'),
    "SAVE_FILE": (_decode_save, 'SAVE_FILE "<path>" ```lang\\n<content>\\n```'),
    "APPEND_TO_FILE": (_decode_append, 'APPEND_TO_FILE "<path>" ```\\n<content>\\n```'),
    "READ_FILE": (_decode_read, 'READ_FILE "<path>"'),
    "DELETE_FILE": (_decode_delete, 'DELETE_FILE "<path>"'),
    "MOVE_FILE": (_decode_move, 'MOVE_FILE "<source>" "<destination>"'),
    "LIST_FILES": (lambda rest: ListFiles(), "LIST_FILES"),
    "GOOGLE_SEARCH": (_decode_search, 'GOOGLE_SEARCH "<query>"'),
    "READ_URL_CONTENT": (_decode_url, 'READ_URL_CONTENT "<url>"'),
    "CHECK_PREVIEW_HEALTH": (lambda rest: CheckPreviewHealth(), "CHECK_PREVIEW_HEALTH"),
    "SUGGEST_TASK": (_decode_suggest, 'SUGGEST_TASK "<task>"'),
    "TASK_COMPLETED": (lambda rest: TaskCompleted(), "TASK_COMPLETED"),
}

KEYWORDS = frozenset(_DECODERS)


def parse_directive(action: str) -> Directive:
    text = action.strip()
    match = _KEYWORD.match(text)
    if not match or match.group(1) not in _DECODERS:
        return UnknownDirective(raw=action)

    keyword = match.group(1)
    decoder, expected = _DECODERS[keyword]
    directive = decoder(text[match.end():].lstrip())
    if directive is None:
        return MalformedDirective(keyword=keyword, raw=action, expected=expected)
    return directive
