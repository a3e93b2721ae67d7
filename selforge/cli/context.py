"""CLI runtime context — builds every subsystem once and bridges sync CLI to async code."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from selforge.activity import ActivityLog
from selforge.actors.prompts import DEFAULT_CORE_DIRECTIVE
from selforge.bootstrap import seed_workspace
from selforge.config import SelforgeSettings, settings as default_settings
from selforge.events.bus import AGENT_STATUS, LEDGER_APPENDED, Event, EventBus
from selforge.executor.executor import ActionExecutor
from selforge.executor.fetch import FetchProxyClient
from selforge.executor.preview import PreviewMonitor
from selforge.kernel.orchestrator import Orchestrator, OrchestratorConfig
from selforge.ledger.ledger import VersionLedger
from selforge.llm.anthropic import AnthropicProvider
from selforge.llm.base import BaseLLMProvider
from selforge.memory.store import MemoryStore
from selforge.persistence import StateStore
from selforge.quota.controller import QuotaController
from selforge.vfs.filesystem import VirtualFileSystem

logger = logging.getLogger(__name__)


def load_core_directive(cfg: SelforgeSettings) -> str:
    if cfg.core_directive_path is None:
        return DEFAULT_CORE_DIRECTIVE
    return cfg.core_directive_path.read_text(encoding="utf-8")


class SelforgeContext:
    """Singleton runtime context that holds all subsystem instances."""

    _instance: SelforgeContext | None = None

    def __init__(
        self,
        cfg: SelforgeSettings | None = None,
        llm: BaseLLMProvider | None = None,
    ) -> None:
        self.settings = cfg or default_settings
        logging.getLogger("selforge").setLevel(self.settings.log_level.upper())

        self.event_bus = EventBus()
        self.log = ActivityLog()
        self.ledger = VersionLedger()
        self.memory = MemoryStore()
        self.vfs = VirtualFileSystem()
        self.store = StateStore(
            self.settings.workspace_dir, self.log, self.ledger, self.memory, self.vfs
        )

        self.preview = PreviewMonitor()
        self.preview.attach(self.event_bus)
        self.quota = QuotaController.from_settings(self.settings)
        self.executor = ActionExecutor(
            vfs=self.vfs,
            ledger=self.ledger,
            memory=self.memory,
            log=self.log,
            event_bus=self.event_bus,
            fetcher=FetchProxyClient.from_settings(self.settings),
            preview=self.preview,
            search_limit=self.settings.search_limit,
        )
        self.llm = llm or AnthropicProvider.for_mode(
            self.settings.ai_mode, self.settings.anthropic_api_key, self.settings
        )
        self.orchestrator = Orchestrator(
            llm=self.llm,
            executor=self.executor,
            quota=self.quota,
            config=OrchestratorConfig.from_settings(self.settings),
            api_key=self.settings.anthropic_api_key,
            core_directive=load_core_directive(self.settings),
            event_bus=self.event_bus,
        )
        self.event_bus.subscribe(AGENT_STATUS, self._autosave)
        self.event_bus.subscribe(LEDGER_APPENDED, self._autosave)
        self._loaded = False

    def ensure_loaded(self) -> list[str]:
        """Load persisted slots, seeding the workspace on first boot."""
        if self._loaded:
            return []
        loaded = self.store.load_all()
        if seed_workspace(self.vfs, self.ledger, self.log, self.settings.seed_dir):
            self.store.save_all()
        self._loaded = True
        return loaded

    async def _autosave(self, event: Event) -> None:
        self.store.save_all()

    @classmethod
    def get(cls) -> SelforgeContext:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)
