"""Shared test fixtures — MockLLMProvider and friends for testing without API calls."""

from __future__ import annotations

from typing import Callable

import pytest

from selforge.activity import ActivityLog
from selforge.executor.executor import ActionExecutor
from selforge.executor.preview import PreviewMonitor
from selforge.kernel.orchestrator import Orchestrator, OrchestratorConfig
from selforge.kernel.scheduler import ManualScheduler
from selforge.ledger.ledger import VersionLedger
from selforge.llm.base import BaseLLMProvider, LLMResponse
from selforge.memory.store import MemoryStore
from selforge.quota.controller import QuotaController, QuotaLimits
from selforge.vfs.filesystem import VirtualFileSystem

Reply = str | LLMResponse | Exception


class MockLLMProvider(BaseLLMProvider):
    """LLM provider that returns canned responses. No API calls.

    Replies are taken from ``responses`` in order. A ``router`` may pick a
    reply from the prompt text instead (used where calls run concurrently).
    Exceptions in either are raised instead of returned.
    """

    def __init__(
        self,
        responses: list[Reply] | None = None,
        router: Callable[[str], Reply] | None = None,
    ):
        self._responses = list(responses or [])
        self._router = router
        self.calls: list[dict] = []

    @property
    def model(self) -> str:
        return "mock-model"

    @property
    def prompts(self) -> list[str]:
        return [c["messages"][0].content for c in self.calls]

    async def complete(self, messages, system=None, tools=None, max_tokens=None):
        self.calls.append({
            "messages": messages,
            "system": system,
            "tools": tools,
            "max_tokens": max_tokens,
        })
        if self._router is not None:
            reply = self._router(messages[0].content)
        elif self._responses:
            reply = self._responses.pop(0)
        else:
            reply = "[THOUGHT]Nothing to do.[/THOUGHT]"
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, LLMResponse):
            return reply
        return LLMResponse(content=reply, stop_reason="end_turn", input_tokens=10, output_tokens=5)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_llm():
    return MockLLMProvider()


@pytest.fixture
def vfs():
    return VirtualFileSystem()


@pytest.fixture
def executor(vfs):
    return ActionExecutor(
        vfs=vfs,
        ledger=VersionLedger(),
        memory=MemoryStore(),
        log=ActivityLog(),
        preview=PreviewMonitor(),
    )


@pytest.fixture
def roomy_quota(clock):
    limits = QuotaLimits(rpm=1000, rpd=None, tpm=None)
    return QuotaController(free_limits=limits, paid_limits=limits, clock=clock)


@pytest.fixture
def make_orchestrator(executor, roomy_quota):
    """Build an Orchestrator stepped by hand through a ManualScheduler."""

    def _factory(llm: BaseLLMProvider, quota: QuotaController | None = None, **config) -> Orchestrator:
        return Orchestrator(
            llm=llm,
            executor=executor,
            quota=quota or roomy_quota,
            config=OrchestratorConfig(**config),
            scheduler=ManualScheduler(),
        )

    return _factory
