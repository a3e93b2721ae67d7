"""Tests for the orchestrator cycle, stepped by hand through a ManualScheduler."""

import asyncio

import pytest

from selforge.events.bus import EventBus
from selforge.exceptions import LLMBackendError, QuotaExceededError
from selforge.kernel.orchestrator import Orchestrator, OrchestratorConfig, pending_research_tasks
from selforge.kernel.scheduler import ManualScheduler
from selforge.llm.base import WEB_SEARCH_TOOL, LLMResponse
from selforge.quota.controller import QuotaController, QuotaLimits
from selforge.types import AgentStatus, AIMode, LogAuthor, MemoryType

from tests.conftest import MockLLMProvider

PLAN = "/agent/plan.md"

PREFIXES = {
    "planner": 'You are the "Planner"',
    "researcher": 'You are the "Researcher"',
    "proposer": 'You are the "Proposer"',
    "synthesizer": 'You are the "Synthesizer"',
    "nudger": 'You are the "Nudger"',
    "Security": "**Your Role: Security Critic**",
    "Efficiency": "**Your Role: Efficiency Critic**",
    "Clarity": "**Your Role: Clarity Critic**",
}


def scripted(**replies):
    """Route each prompt to its actor's reply. A list is consumed one reply per call."""

    def route(prompt: str):
        for name, prefix in PREFIXES.items():
            if prompt.startswith(prefix):
                reply = replies[name]
                return reply.pop(0) if isinstance(reply, list) else reply
        raise AssertionError(f"Unexpected prompt: {prompt[:80]}")

    return MockLLMProvider(router=route)


def turn(action: str | None, thought: str = "Thinking.") -> str:
    text = f"[THOUGHT]{thought}[/THOUGHT]"
    if action is not None:
        text += f"\n[ACTION]\n{action}\n[/ACTION]"
    return text


def critique(score: int, feedback: str) -> str:
    return f"[SCORE]{score}[/SCORE]\n[FEEDBACK]{feedback}[/FEEDBACK]"


def verdict(decision: str, reason: str) -> str:
    return f"[DECISION]{decision}[/DECISION]\n[REASON]{reason}[/REASON]"


SAVE_A = 'SAVE_FILE "/a.ts" ```typescript\nconst x = 1;\n```'


def rewrite_plan(plan: str) -> str:
    return f'REWRITE_CODE "{PLAN}" ```markdown\n{plan}\n```'


async def tick(orch: Orchestrator) -> None:
    assert await orch.scheduler.run_pending(), "no tick was scheduled"


def messages(orch: Orchestrator, author: LogAuthor = LogAuthor.SYSTEM) -> list[str]:
    return [e.content for e in reversed(orch.log.entries) if e.author == author]


def test_pending_research_tasks():
    plan = "- [x] [NEEDS_RESEARCH] done\n- [ ] plain task\n  - [ ] [NEEDS_RESEARCH] find an LCS library"
    assert pending_research_tasks(plan) == ["[NEEDS_RESEARCH] find an LCS library"]


@pytest.mark.asyncio
async def test_full_approved_cycle(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] create /a.ts"})
    llm = scripted(
        planner=turn(rewrite_plan("- [ ] create /a.ts")),
        proposer=turn(SAVE_A),
        Security=critique(9, "Safe."),
        Efficiency=critique(8, "Fine."),
        Clarity=critique(9, "Clear."),
        synthesizer=verdict("APPROVE", "All good."),
    )
    orch = make_orchestrator(llm)
    await orch.start()
    assert orch.status == AgentStatus.PLANNING

    await tick(orch)
    assert orch.status == AgentStatus.PROPOSING
    await tick(orch)
    assert orch.status == AgentStatus.CRITICIZING
    assert orch.proposal.file_path == "/a.ts"
    assert orch.proposal.new_code == "const x = 1;"
    await tick(orch)
    assert orch.status == AgentStatus.SYNTHESIZING
    assert [f.score for f in orch.feedback] == [9, 8, 9]
    await tick(orch)
    assert orch.status == AgentStatus.EXECUTING
    await tick(orch)

    assert orch.status == AgentStatus.PLANNING
    assert orch.cycle == 1
    assert orch.proposal is None
    assert executor.vfs.get("/a.ts") == "const x = 1;"
    assert len(orch.ledger) == 1
    assert orch.scheduler.delays == [0, 5.0, 5.0, 5.0, 5.0, 15.0]
    assert messages(orch, LogAuthor.SYNTHESIZER) == ["Decision: APPROVE\nReason: All good."]


@pytest.mark.asyncio
async def test_low_efficiency_score_is_rejected(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] create /a.ts"})
    llm = scripted(
        planner=turn(rewrite_plan("- [ ] create /a.ts")),
        proposer=[turn(SAVE_A), turn("LIST_FILES")],
        Security=critique(9, "Safe."),
        Clarity=critique(8, "Readable."),
        Efficiency=critique(3, "The loop is quadratic."),
        synthesizer=verdict("REJECT", "Efficiency is too low: the loop is quadratic."),
    )
    orch = make_orchestrator(llm)
    await orch.start()
    for _ in range(4):
        await tick(orch)

    assert orch.status == AgentStatus.PROPOSING
    assert "efficiency" in orch.rejection_reason.lower()
    assert orch.proposal is None
    assert orch.feedback == []
    assert "/a.ts" not in executor.vfs
    assert messages(orch, LogAuthor.CRITIC_EFFICIENCY) == ["Score: 3/10\nThe loop is quadratic."]

    await tick(orch)
    retry_prompt = llm.prompts[-1]
    assert retry_prompt.startswith(PREFIXES["proposer"])
    assert "REJECTED" in retry_prompt
    assert "the loop is quadratic" in retry_prompt


@pytest.mark.asyncio
async def test_no_research_task_goes_straight_to_proposing(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] build a clock"})
    llm = scripted(planner=turn(rewrite_plan("- [ ] build a clock")))
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)

    assert orch.status == AgentStatus.PROPOSING
    assert orch.research_task is None
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_research_loop(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] [NEEDS_RESEARCH] pick a diff algorithm\n- [ ] build it"})
    llm = scripted(
        planner=turn(rewrite_plan("- [ ] [NEEDS_RESEARCH] pick a diff algorithm\n- [ ] build it")),
        researcher=[turn('GOOGLE_SEARCH "lcs diff"'), turn("TASK_COMPLETED")],
    )
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)
    assert orch.status == AgentStatus.RESEARCHING
    assert orch.research_task == "[NEEDS_RESEARCH] pick a diff algorithm"

    await tick(orch)
    assert orch.status == AgentStatus.RESEARCHING
    assert executor.consecutive_searches == 1
    assert llm.calls[-1]["tools"] == [WEB_SEARCH_TOOL]
    assert "pick a diff algorithm" in llm.prompts[-1]

    await tick(orch)
    assert orch.status == AgentStatus.PROPOSING
    assert orch.research_task is None
    assert "Research complete for task: [NEEDS_RESEARCH] pick a diff algorithm" in messages(orch)


@pytest.mark.asyncio
async def test_researched_task_is_not_repeated(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] [NEEDS_RESEARCH] pick a diff algorithm"})
    llm = scripted(
        planner=turn(rewrite_plan("- [ ] [NEEDS_RESEARCH] pick a diff algorithm")),
        researcher=turn("TASK_COMPLETED"),
    )
    orch = make_orchestrator(llm, critics_enabled=False)
    await orch.start()
    await tick(orch)
    await tick(orch)
    assert orch.status == AgentStatus.PROPOSING

    await orch.pause()
    await orch.start()
    await tick(orch)
    assert orch.status == AgentStatus.PROPOSING


@pytest.mark.asyncio
async def test_research_step_cap(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] [NEEDS_RESEARCH] endless"})
    llm = scripted(
        planner=turn(rewrite_plan("- [ ] [NEEDS_RESEARCH] endless")),
        researcher=turn('GOOGLE_SEARCH "more"'),
    )
    orch = make_orchestrator(llm, max_research_steps=2)
    await orch.start()
    await tick(orch)
    await tick(orch)
    await tick(orch)
    assert orch.status == AgentStatus.RESEARCHING
    await tick(orch)

    assert orch.status == AgentStatus.PROPOSING
    assert len(llm.calls) == 3
    assert any("Research step limit of 2 reached" in m for m in messages(orch))


@pytest.mark.asyncio
async def test_researcher_cannot_write_files(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] [NEEDS_RESEARCH] look around"})
    llm = scripted(
        planner=turn(rewrite_plan("- [ ] [NEEDS_RESEARCH] look around")),
        researcher=turn(SAVE_A),
    )
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)
    await tick(orch)

    assert "/a.ts" not in executor.vfs
    assert orch.status == AgentStatus.RESEARCHING
    assert any("may only search or read URLs" in m for m in messages(orch))


@pytest.mark.asyncio
async def test_pause_during_executing_stops_ticks(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] create /a.ts"})
    llm = scripted(planner=turn(rewrite_plan("- [ ] create /a.ts")), proposer=turn(SAVE_A))
    orch = make_orchestrator(llm, critics_enabled=False)
    await orch.start()
    await tick(orch)
    await tick(orch)
    assert orch.status == AgentStatus.EXECUTING
    assert orch.scheduler.pending

    await orch.pause()
    assert orch.status == AgentStatus.PAUSED
    assert not orch.scheduler.pending
    await asyncio.sleep(0.01)
    assert not await orch.scheduler.run_pending()
    await orch.step()
    assert orch.status == AgentStatus.PAUSED
    assert "/a.ts" not in executor.vfs

    await orch.resume()
    assert orch.status == AgentStatus.PLANNING
    assert orch.scheduler.pending


class GatedLLM(MockLLMProvider):
    """Blocks inside ``complete`` until released."""

    def __init__(self, responses):
        super().__init__(responses)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def complete(self, messages, system=None, tools=None, max_tokens=None):
        self.entered.set()
        await self.release.wait()
        return await super().complete(messages, system, tools, max_tokens)


@pytest.mark.asyncio
async def test_result_arriving_after_pause_is_discarded(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] old"})
    llm = GatedLLM([turn(rewrite_plan("- [ ] new"))])
    orch = make_orchestrator(llm)
    await orch.start()
    running = asyncio.create_task(orch.scheduler.run_pending())
    await llm.entered.wait()
    await orch.pause()
    llm.release.set()
    await running

    assert orch.status == AgentStatus.PAUSED
    assert not orch.scheduler.pending
    assert executor.vfs.get(PLAN) == "- [ ] old"
    assert orch.quota.get_usage_stats(orch.identity).rpm == 1


@pytest.mark.asyncio
async def test_missing_action_pauses(make_orchestrator):
    llm = scripted(planner=turn(None, "I am not sure."))
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)

    assert orch.status == AgentStatus.PAUSED
    assert not orch.scheduler.pending
    assert "The Planner did not return an [ACTION]. Pausing the agent." in messages(orch)


@pytest.mark.asyncio
@pytest.mark.parametrize("action", [
    'REWRITE_CODE "/core.ts" ```typescript\nconst a = 2;\n```',
    'SAVE_FILE "/extra.ts" ```typescript\nexport const b = 1;\n```',
    'DELETE_FILE "/core.ts"',
    'MOVE_FILE "/core.ts" "/lib/core.ts"',
    "LIST_FILES",
])
async def test_planner_cannot_touch_code(make_orchestrator, executor, action):
    executor.vfs.replace_all({PLAN: "- [ ] x", "/core.ts": "const a = 1;"})
    before = executor.vfs.snapshot()
    llm = scripted(
        planner=turn(action),
        Security=critique(1, "Unreviewed."),
        Efficiency=critique(1, "Unreviewed."),
        Clarity=critique(1, "Unreviewed."),
    )
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)

    assert orch.status == AgentStatus.PAUSED
    assert not orch.scheduler.pending
    assert executor.vfs.snapshot() == before
    assert len(orch.ledger) == 0
    assert len(llm.calls) == 1
    assert any(m.startswith(f"The Planner may only rewrite {PLAN}.") for m in messages(orch))


@pytest.mark.asyncio
async def test_planner_may_create_a_missing_plan(make_orchestrator, executor):
    executor.vfs.replace_all({"/core.ts": "const a = 1;"})
    llm = scripted(planner=turn(f'SAVE_FILE "{PLAN}" ```markdown\n- [ ] start\n```'))
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)

    assert orch.status == AgentStatus.PROPOSING
    assert executor.vfs.get(PLAN) == "- [ ] start"


@pytest.mark.asyncio
async def test_unknown_proposal_pauses(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] x"})
    llm = scripted(planner=turn(rewrite_plan("- [ ] x")), proposer=turn("FORMAT_DISK"))
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)
    await tick(orch)
    assert orch.status == AgentStatus.PAUSED
    assert "Unknown or malformed action: FORMAT_DISK" in messages(orch)


@pytest.mark.asyncio
async def test_quota_denial_backs_off_and_retries(clock, executor):
    executor.vfs.replace_all({PLAN: "- [ ] x"})
    quota = QuotaController(free_limits=QuotaLimits(rpm=1), paid_limits=QuotaLimits(rpm=1), clock=clock)
    llm = scripted(planner=turn(rewrite_plan("- [ ] x")), proposer=turn("LIST_FILES"))
    orch = Orchestrator(llm, executor, quota, scheduler=ManualScheduler())
    await orch.start()
    await tick(orch)
    assert orch.status == AgentStatus.PROPOSING

    await tick(orch)
    assert orch.status == AgentStatus.PROPOSING
    assert orch.waiting_for_quota
    assert orch.scheduler.delays[-1] == 10.0
    assert "Quota limit hit: RPM limit exceeded. Retrying in 10 seconds..." in messages(orch)
    await tick(orch)
    insights = executor.memory.query(type=MemoryType.INSIGHT)
    assert len(insights) == 1
    assert "automatically pause and retry" in insights[0].learning
    assert len(llm.calls) == 1

    clock.advance(61)
    await tick(orch)
    assert not orch.waiting_for_quota
    assert len(llm.calls) == 2


@pytest.mark.asyncio
async def test_critics_wait_until_all_three_calls_fit(clock, executor):
    executor.vfs.replace_all({PLAN: "- [ ] create /a.ts"})
    quota = QuotaController(free_limits=QuotaLimits(rpm=4), paid_limits=QuotaLimits(rpm=4), clock=clock)
    llm = scripted(
        planner=turn(rewrite_plan("- [ ] create /a.ts")),
        proposer=turn(SAVE_A),
        Security=critique(9, "Safe."),
        Efficiency=critique(8, "Fine."),
        Clarity=critique(9, "Clear."),
    )
    orch = Orchestrator(llm, executor, quota, scheduler=ManualScheduler())
    await orch.start()
    await tick(orch)
    await tick(orch)
    assert orch.status == AgentStatus.CRITICIZING

    await tick(orch)
    assert orch.status == AgentStatus.CRITICIZING
    assert orch.waiting_for_quota
    assert not any(p.startswith(PREFIXES["Security"]) for p in llm.prompts)
    assert quota.get_usage_stats(orch.identity).rpm == 2

    clock.advance(61)
    await tick(orch)
    assert orch.status == AgentStatus.SYNTHESIZING
    assert not orch.waiting_for_quota
    assert quota.get_usage_stats(orch.identity).rpm == 3


@pytest.mark.asyncio
async def test_one_failing_critic_fails_the_review(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] create /a.ts"})
    llm = scripted(
        planner=turn(rewrite_plan("- [ ] create /a.ts")),
        proposer=turn(SAVE_A),
        Security=critique(9, "Safe."),
        Efficiency=LLMBackendError("upstream connection reset"),
        Clarity=critique(9, "Clear."),
    )
    orch = make_orchestrator(llm)
    await orch.start()
    for _ in range(3):
        await tick(orch)

    assert orch.status == AgentStatus.ERROR
    assert not orch.scheduler.pending
    assert orch.feedback == []
    assert "/a.ts" not in executor.vfs
    [error] = executor.memory.query(type=MemoryType.ERROR)
    assert "upstream connection reset" in error.learning
    assert not any(p.startswith(PREFIXES["synthesizer"]) for p in llm.prompts)
    assert "An error occurred during criticizing: upstream connection reset" in messages(orch)


@pytest.mark.asyncio
async def test_backend_quota_error_backs_off(make_orchestrator):
    llm = MockLLMProvider([QuotaExceededError("429 Too Many Requests")])
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)

    assert orch.status == AgentStatus.PLANNING
    assert orch.waiting_for_quota
    assert orch.scheduler.pending
    assert "An error occurred during planning: 429 Too Many Requests" in messages(orch)


@pytest.mark.asyncio
async def test_backend_failure_sets_error_until_configured(make_orchestrator, executor):
    llm = MockLLMProvider([LLMBackendError("invalid x-api-key")])
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)

    assert orch.status == AgentStatus.ERROR
    assert not orch.scheduler.pending
    [memory] = executor.memory.memories
    assert memory.type == MemoryType.ERROR
    assert "invalid x-api-key" in memory.learning

    await orch.configure(mode=AIMode.PAID, api_key="sk-test")
    assert orch.status == AgentStatus.PAUSED
    assert orch.identity == "sk-test"
    assert "Configuration changed. Now using mock-model in PAID mode." in messages(orch)
    await orch.start()
    assert orch.status == AgentStatus.PLANNING


@pytest.mark.asyncio
async def test_paid_mode_without_key_backs_off(make_orchestrator):
    llm = scripted(planner=turn(rewrite_plan("- [ ] x")))
    orch = make_orchestrator(llm, ai_mode=AIMode.PAID)
    await orch.start()
    await tick(orch)
    assert orch.waiting_for_quota
    assert llm.calls == []
    assert any("API key is missing" in m for m in messages(orch))


@pytest.mark.asyncio
async def test_nudger_runs_every_fifth_cycle(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] one"})
    llm = scripted(
        nudger=turn('SUGGEST_TASK "Add a clock"', "Something new."),
        planner=turn(rewrite_plan("- [ ] one\n- [ ] Add a clock (Suggested by Nudger)")),
    )
    orch = make_orchestrator(llm)
    orch.cycle = 5
    await orch.start()
    await tick(orch)

    assert llm.prompts[0].startswith(PREFIXES["nudger"])
    assert llm.prompts[1].startswith(PREFIXES["planner"])
    assert executor.vfs.get(PLAN) == "- [ ] one\n- [ ] Add a clock (Suggested by Nudger)"
    assert messages(orch, LogAuthor.NUDGER) == ["Something new."]

    await orch.pause()
    await orch.start()
    await tick(orch)
    assert sum(p.startswith(PREFIXES["nudger"]) for p in llm.prompts) == 1


@pytest.mark.asyncio
async def test_no_nudge_off_cycle(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] x"})
    llm = scripted(planner=turn(rewrite_plan("- [ ] x")))
    orch = make_orchestrator(llm)
    orch.cycle = 4
    await orch.start()
    await tick(orch)
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_veto_threshold_skips_synthesizer(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] x"})
    llm = scripted(
        planner=turn(rewrite_plan("- [ ] x")),
        proposer=turn(SAVE_A),
        Security=critique(2, "Leaks the key."),
        Efficiency=critique(9, "Fine."),
        Clarity=critique(9, "Fine."),
    )
    orch = make_orchestrator(llm, critic_veto_threshold=5)
    await orch.start()
    for _ in range(4):
        await tick(orch)

    assert orch.status == AgentStatus.PROPOSING
    assert orch.rejection_reason.startswith("Automatic veto: Security score 2/10")
    assert not any(p.startswith(PREFIXES["synthesizer"]) for p in llm.prompts)


@pytest.mark.asyncio
async def test_failed_execution_still_finishes_cycle(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] x"})
    bad = 'SAVE_FILE "/bad.ts" ```ts\nconst x = (;\n```'
    llm = scripted(planner=turn(rewrite_plan("- [ ] x")), proposer=turn(bad))
    orch = make_orchestrator(llm, critics_enabled=False)
    await orch.start()
    for _ in range(3):
        await tick(orch)

    assert orch.status == AgentStatus.PLANNING
    assert orch.cycle == 1
    assert len(orch.ledger) == 0
    assert executor.memory.query(type=MemoryType.ERROR)
    assert orch.scheduler.delays[-1] == 15.0


@pytest.mark.asyncio
async def test_token_accounting(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] x"})
    llm = MockLLMProvider([
        LLMResponse(content=turn(rewrite_plan("- [ ] x")), input_tokens=120, output_tokens=30,
                    search_queries=["lcs", "myers diff"]),
    ])
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)
    log = messages(orch)
    assert "Token Usage: 150 (Prompt: 120, Response: 30)" in log
    assert "Searched the web for: lcs; myers diff" in log
    assert orch.quota.get_usage_stats(orch.identity).tpm == 150


@pytest.mark.asyncio
async def test_missing_usage_metadata_charges_fallback(make_orchestrator, executor):
    executor.vfs.replace_all({PLAN: "- [ ] x"})
    llm = MockLLMProvider([LLMResponse(content=turn(rewrite_plan("- [ ] x")))])
    orch = make_orchestrator(llm)
    await orch.start()
    await tick(orch)
    assert "Token usage metadata not available." in messages(orch)
    assert orch.quota.get_usage_stats(orch.identity).tpm == 1000


@pytest.mark.asyncio
async def test_intervene_logs_user_message_and_restarts(make_orchestrator, executor):
    orch = make_orchestrator(MockLLMProvider())
    await orch.start()
    executor.consecutive_searches = 3
    await orch.intervene("Focus on the diff view.")

    assert orch.status == AgentStatus.PLANNING
    assert messages(orch, LogAuthor.USER) == ["Focus on the diff view."]
    assert executor.consecutive_searches == 0


@pytest.mark.asyncio
async def test_status_and_log_events(executor):
    bus = EventBus()
    orch = Orchestrator(
        MockLLMProvider(), executor,
        QuotaController(QuotaLimits(rpm=100), QuotaLimits(rpm=100)),
        scheduler=ManualScheduler(), event_bus=bus,
    )
    await orch.start()
    await asyncio.sleep(0)

    [status_event] = bus.history("agent.status")
    assert status_event.data == {"status": "PLANNING", "previous": "IDLE", "cycle": 0}
    assert any(e.data["content"] == "Agent started." for e in bus.history("log.entry"))


def test_config_from_settings():
    from selforge.config import SelforgeSettings

    cfg = OrchestratorConfig.from_settings(SelforgeSettings(long_delay_seconds=30, nudge_every=0))
    assert cfg.long_delay == 30
    assert cfg.nudge_every == 0
