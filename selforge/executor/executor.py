"""Action Executor — the only writer of the VFS, the ledger and the memory store.

``execute`` decodes one directive and carries it out. Validation failures
(missing paths, syntax gate rejections, fetch errors) are logged and
recorded as ERROR learnings but never raised: the caller just gets an
outcome telling it whether to keep going and how long to wait.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from selforge.activity import ActivityLog
from selforge.actors.prompts import PLAN_PATH, search_constraint
from selforge.events.bus import LEDGER_APPENDED, MEMORY_RECORDED, VFS_CHANGED, EventBus
from selforge.exceptions import FetchError
from selforge.executor.directives import (
    AppendToFile,
    CheckPreviewHealth,
    DeleteFile,
    Directive,
    GoogleSearch,
    ListFiles,
    MalformedDirective,
    MoveFile,
    ReadFile,
    ReadUrlContent,
    RewriteCode,
    SaveFile,
    SuggestTask,
    TaskCompleted,
    parse_directive,
)
from selforge.executor.fetch import FetchProxyClient
from selforge.executor.preview import PreviewMonitor
from selforge.ledger.ledger import VersionLedger
from selforge.memory.store import MemoryStore
from selforge.types import LearnedMemory, MemoryType, UpgradeNode
from selforge.vfs.filesystem import VFSResult, VirtualFileSystem

logger = logging.getLogger(__name__)


class ExecutionOutcome(BaseModel):
    should_continue: bool
    long_pause: bool = False
    kind: str = ""
    success: bool = True


class ActionExecutor:
    def __init__(
        self,
        vfs: VirtualFileSystem,
        ledger: VersionLedger,
        memory: MemoryStore,
        log: ActivityLog,
        event_bus: EventBus | None = None,
        fetcher: FetchProxyClient | None = None,
        preview: PreviewMonitor | None = None,
        search_limit: int = 3,
        plan_path: str = PLAN_PATH,
    ) -> None:
        self.vfs = vfs
        self.ledger = ledger
        self.memory = memory
        self.log = log
        self._bus = event_bus
        self._fetcher = fetcher or FetchProxyClient()
        self.preview = preview or PreviewMonitor()
        self.search_limit = search_limit
        self.plan_path = plan_path
        self.consecutive_searches = 0

    def search_constraint(self) -> str:
        return search_constraint(self.consecutive_searches, self.search_limit)

    def reset_search_budget(self) -> None:
        self.consecutive_searches = 0

    async def execute(self, action: str, thought: str = "") -> ExecutionOutcome:
        directive = parse_directive(action)
        logger.debug("Executing %s", directive.kind)
        return await self.dispatch(directive, action, thought)

    async def dispatch(self, directive: Directive, action: str, thought: str = "") -> ExecutionOutcome:
        if isinstance(directive, RewriteCode):
            return await self._mutate(
                "REWRITE_CODE", self.vfs.rewrite(directive.path, directive.content),
                action, thought, failure_prefix="Upgrade failed",
            )
        if isinstance(directive, SaveFile):
            return await self._mutate(
                "SAVE_FILE", self.vfs.save(directive.path, directive.content),
                action, thought, failure_prefix="Save failed",
            )
        if isinstance(directive, AppendToFile):
            return await self._mutate(
                "APPEND_TO_FILE", self.vfs.append(directive.path, directive.content),
                action, thought, failure_prefix="Append failed",
            )
        if isinstance(directive, ReadFile):
            return self._read(directive)
        if isinstance(directive, DeleteFile):
            return await self._delete(directive)
        if isinstance(directive, MoveFile):
            return await self._move(directive)
        if isinstance(directive, ListFiles):
            return self._list()
        if isinstance(directive, GoogleSearch):
            return self._search(directive)
        if isinstance(directive, ReadUrlContent):
            return await self._read_url(directive)
        if isinstance(directive, CheckPreviewHealth):
            return await self._check_preview()
        if isinstance(directive, SuggestTask):
            return await self._suggest(directive)
        if isinstance(directive, TaskCompleted):
            self.log.system("Research task marked as completed.")
            return ExecutionOutcome(should_continue=True, kind=directive.kind)
        if isinstance(directive, MalformedDirective):
            self.log.system(
                f"Malformed {directive.keyword} action. Expected: {directive.expected}\n"
                f"Got: {directive.raw}"
            )
            return ExecutionOutcome(should_continue=False, kind=directive.kind, success=False)
        self.log.system(f"Unknown or malformed action: {directive.raw}")
        return ExecutionOutcome(should_continue=False, kind=directive.kind, success=False)

    # ── Mutations ────────────────────────────────────────────────

    async def _mutate(
        self, kind: str, result: VFSResult, action: str, thought: str, failure_prefix: str
    ) -> ExecutionOutcome:
        context = f'{kind} on "{result.path}"'
        if not result.success:
            self.log.system(f"{failure_prefix}: {result.message}")
            if result.syntax_error is not None:
                await self.remember(
                    MemoryType.ERROR, context, "Health check failed.",
                    "The generated code had a syntax error. Code must parse before it is "
                    f"applied. Error details: {result.syntax_error}",
                )
            else:
                await self.remember(
                    MemoryType.ERROR, context, "Action failed.", _existence_lesson(kind),
                )
            return ExecutionOutcome(should_continue=True, kind=kind, success=False)

        if result.is_code:
            self.log.system(f"Code health check passed for {result.path}.")
        self.log.system(result.message)
        self.reset_search_budget()
        await self._vfs_changed()

        if result.is_code:
            node = self.ledger.record(result.path, result.content or "", thought, action)
            self.log.system(
                f"Upgrade successful. System automatically updated to v{node.version}."
            )
            await self._ledger_appended(node)
            await self.remember(
                MemoryType.SUCCESS, context,
                f"File successfully updated to version {node.version}.",
                f"{kind} is effective for applying planned code changes after a "
                "successful health check.",
            )
        elif kind == "SAVE_FILE":
            await self.remember(
                MemoryType.SUCCESS, context, "New file successfully created.",
                "SAVE_FILE is effective for creating new files in the VFS.",
            )
        return ExecutionOutcome(
            should_continue=True, long_pause=result.is_code, kind=kind
        )

    async def _delete(self, directive: DeleteFile) -> ExecutionOutcome:
        result = self.vfs.delete(directive.path)
        context = f'DELETE_FILE on "{directive.path}"'
        if not result.success:
            self.log.system(f"Delete failed: {result.message}")
            await self.remember(
                MemoryType.ERROR, context, "Action failed.",
                "Cannot delete a file that does not exist. Use LIST_FILES to confirm file paths.",
            )
            return ExecutionOutcome(should_continue=True, kind=directive.kind, success=False)
        self.log.system(result.message)
        await self.remember(
            MemoryType.SUCCESS, context, "File was successfully deleted.",
            "DELETE_FILE is effective for removing files from the VFS.",
        )
        self.reset_search_budget()
        await self._vfs_changed()
        return ExecutionOutcome(should_continue=True, kind=directive.kind)

    async def _move(self, directive: MoveFile) -> ExecutionOutcome:
        result = self.vfs.move(directive.source, directive.dest)
        if not result.success:
            self.log.system(f"Move failed: {result.message}")
            if directive.source not in self.vfs:
                context = f'MOVE_FILE from "{directive.source}"'
                lesson = "Cannot move a file that does not exist."
            else:
                context = f'MOVE_FILE to "{directive.dest}"'
                lesson = "Cannot move a file to a path that is already occupied."
            await self.remember(MemoryType.ERROR, context, "Action failed.", lesson)
            return ExecutionOutcome(should_continue=True, kind=directive.kind, success=False)
        self.log.system(result.message)
        await self.remember(
            MemoryType.SUCCESS,
            f'MOVE_FILE from "{directive.source}" to "{directive.dest}"',
            "File was successfully moved.",
            "MOVE_FILE can be used to reorganize the file structure.",
        )
        self.reset_search_budget()
        await self._vfs_changed()
        return ExecutionOutcome(should_continue=True, kind=directive.kind)

    async def _suggest(self, directive: SuggestTask) -> ExecutionOutcome:
        line = f"- [ ] {directive.text} (Suggested by Nudger)"
        if self.plan_path in self.vfs:
            result = self.vfs.append(self.plan_path, line)
        else:
            result = self.vfs.save(self.plan_path, line)
        if not result.success:
            self.log.system(f"Could not add suggested task: {result.message}")
            return ExecutionOutcome(should_continue=True, kind=directive.kind, success=False)
        self.log.system(f"New task suggested and added to plan: {directive.text}")
        await self._vfs_changed()
        return ExecutionOutcome(should_continue=True, kind=directive.kind)

    # ── Reads and research ───────────────────────────────────────

    def _read(self, directive: ReadFile) -> ExecutionOutcome:
        result = self.vfs.read(directive.path)
        self.reset_search_budget()
        if not result.success:
            self.log.system(f"Error: {result.message}")
            return ExecutionOutcome(should_continue=True, kind=directive.kind, success=False)
        header = "Current plan" if directive.path == self.plan_path else f"Contents of {directive.path}"
        self.log.system(f"{header}:\n```\n{result.content}\n```")
        return ExecutionOutcome(should_continue=True, kind=directive.kind)

    def _list(self) -> ExecutionOutcome:
        result = self.vfs.list_files()
        self.reset_search_budget()
        if not result.paths:
            self.log.system(f"Action [LIST_FILES] executed, but {result.message[0].lower()}{result.message[1:]}")
        else:
            self.log.system(result.message)
        return ExecutionOutcome(should_continue=True, kind="LIST_FILES")

    def _search(self, directive: GoogleSearch) -> ExecutionOutcome:
        # The search itself already ran inside the model call.
        self.consecutive_searches += 1
        suffix = f' for "{directive.query}"' if directive.query else ""
        self.log.system(
            f"Search action acknowledged{suffix}. The thought process was informed by search results."
        )
        return ExecutionOutcome(should_continue=True, kind=directive.kind)

    async def _read_url(self, directive: ReadUrlContent) -> ExecutionOutcome:
        self.consecutive_searches += 1
        try:
            text = await self._fetcher.fetch(directive.url)
        except FetchError as e:
            self.log.system(f"Failed to read URL {directive.url}: {e}")
            await self.remember(
                MemoryType.ERROR, f'READ_URL_CONTENT on "{directive.url}"', "Fetch failed.",
                f"The page could not be retrieved through the fetch proxy. Error: {e}",
            )
            return ExecutionOutcome(should_continue=True, kind=directive.kind, success=False)
        self.log.system(f"Content of {directive.url}:\n{text}")
        return ExecutionOutcome(should_continue=True, kind=directive.kind)

    async def _check_preview(self) -> ExecutionOutcome:
        error = self.preview.consume_error()
        if error:
            self.log.system(f"Preview health check failed. Runtime error: {error}")
            await self.remember(
                MemoryType.ERROR, "CHECK_PREVIEW_HEALTH", "The running preview crashed.",
                f"The latest code parses but fails at runtime. Error: {error}",
            )
            return ExecutionOutcome(should_continue=True, kind="CHECK_PREVIEW_HEALTH", success=False)
        self.log.system("Preview health check passed. No runtime errors reported.")
        await self.remember(
            MemoryType.SUCCESS, "CHECK_PREVIEW_HEALTH", "No runtime errors reported.",
            "The current code runs in the preview without crashing.",
        )
        return ExecutionOutcome(should_continue=True, kind="CHECK_PREVIEW_HEALTH")

    # ── Bookkeeping ──────────────────────────────────────────────

    async def remember(
        self, type: MemoryType, context: str, outcome: str, learning: str
    ) -> LearnedMemory:
        memory = self.memory.record(type, context, outcome, learning, agent_version=len(self.ledger))
        if self._bus:
            await self._bus.emit(MEMORY_RECORDED, memory.model_dump(mode="json"), source="executor")
        return memory

    async def _vfs_changed(self) -> None:
        snapshot = self.vfs.snapshot()
        if self._bus:
            await self._bus.emit(VFS_CHANGED, {"files": snapshot}, source="executor")
        else:
            self.preview.load(snapshot)

    async def _ledger_appended(self, node: UpgradeNode) -> None:
        if self._bus:
            await self._bus.emit(
                LEDGER_APPENDED,
                {"version": node.version, "file_path": node.file_path},
                source="executor",
            )


def _existence_lesson(kind: str) -> str:
    if kind == "REWRITE_CODE":
        return "Must verify a file exists with LIST_FILES before attempting to rewrite it."
    if kind == "SAVE_FILE":
        return "SAVE_FILE can only be used for new files. Use REWRITE_CODE to modify existing files."
    return "Cannot append to a non-existent file. Must use SAVE_FILE first."
