"""Orchestrator — drives Planner → Researcher → Proposer → Critics → Synthesizer → Executor.

Each call to ``step`` runs exactly one phase for the current status and
then asks the scheduler for the next tick. Nothing here sleeps: delays,
quota back-off and cancellation all go through the scheduler.

A generation counter guards every await. ``pause`` bumps it, so a model
call that resolves after the user paused is accounted for but otherwise
ignored.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from pydantic import BaseModel

from selforge.actors import cognitive
from selforge.actors.parser import ActorTurn, Verdict
from selforge.actors.prompts import DEFAULT_CORE_DIRECTIVE, PLAN_PATH, RESEARCH_TAG
from selforge.events.bus import AGENT_STATUS, LOG_ENTRY, EventBus
from selforge.exceptions import ProtocolError, QuotaExceededError
from selforge.executor.directives import (
    CODE_MUTATIONS,
    RESEARCH_ACTIONS,
    MalformedDirective,
    RewriteCode,
    SaveFile,
    SuggestTask,
    TaskCompleted,
    UnknownDirective,
    parse_directive,
)
from selforge.executor.executor import ActionExecutor
from selforge.kernel.scheduler import Scheduler, TickScheduler
from selforge.kernel.state_machine import StatusMachine
from selforge.llm.base import BaseLLMProvider, LLMResponse
from selforge.quota.controller import QuotaController
from selforge.types import (
    AgentStatus,
    AIMode,
    CriticFeedback,
    CriticRole,
    LogAuthor,
    LogEntry,
    MemoryType,
    ProposedChange,
)

logger = structlog.get_logger()

QUOTA_MARKERS = ("quota", "rate limit", "429", "resource_exhausted")
QUOTA_INSIGHT_MARKER = "automatically pause and retry"
FALLBACK_TOKEN_COST = 1000


class OrchestratorConfig(BaseModel):
    ai_mode: AIMode = AIMode.FREE
    short_delay: float = 5.0
    long_delay: float = 15.0
    quota_backoff: float = 10.0
    critics_enabled: bool = True
    researcher_enabled: bool = True
    nudger_enabled: bool = True
    nudge_every: int = 5
    history_limit: int = 100
    web_search: bool = True
    critic_veto_threshold: int | None = None
    max_research_steps: int | None = None

    @classmethod
    def from_settings(cls, settings) -> OrchestratorConfig:
        return cls(
            ai_mode=settings.ai_mode,
            short_delay=settings.short_delay_seconds,
            long_delay=settings.long_delay_seconds,
            quota_backoff=settings.quota_backoff_seconds,
            critics_enabled=settings.critics_enabled,
            researcher_enabled=settings.researcher_enabled,
            nudger_enabled=settings.nudger_enabled,
            nudge_every=settings.nudge_every,
            history_limit=settings.history_limit,
            web_search=settings.web_search,
            critic_veto_threshold=settings.critic_veto_threshold,
            max_research_steps=settings.max_research_steps,
        )


def is_quota_error(error: BaseException) -> bool:
    if isinstance(error, QuotaExceededError):
        return True
    text = str(error).lower()
    return any(marker in text for marker in QUOTA_MARKERS)


def pending_research_tasks(plan: str) -> list[str]:
    """Unchecked plan items that carry the research tag, in plan order."""
    tasks = []
    for line in plan.splitlines():
        stripped = line.strip()
        if stripped.startswith("- [ ]") and RESEARCH_TAG in stripped:
            tasks.append(stripped[len("- [ ]"):].strip())
    return tasks


class Orchestrator:
    """The single owner of status, the pending proposal and critic feedback."""

    def __init__(
        self,
        llm: BaseLLMProvider,
        executor: ActionExecutor,
        quota: QuotaController,
        config: OrchestratorConfig | None = None,
        api_key: str = "",
        core_directive: str = DEFAULT_CORE_DIRECTIVE,
        scheduler: Scheduler | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.llm = llm
        self.executor = executor
        self.quota = quota
        self.config = config or OrchestratorConfig()
        self.api_key = api_key
        self.core_directive = core_directive
        self.scheduler: Scheduler = scheduler or TickScheduler()
        self._bus = event_bus
        self._machine = StatusMachine(AgentStatus.IDLE)

        self.cycle = 0
        self.proposal: ProposedChange | None = None
        self.feedback: list[CriticFeedback] = []
        self.rejection_reason: str | None = None
        self.current_task = "Idle"
        self.waiting_for_quota = False

        self._generation = 0
        self._research_task: str | None = None
        self._research_steps = 0
        self._researched: set[str] = set()
        self._nudged_cycle: int | None = None
        self._emits: set[asyncio.Task] = set()

        self.log.on_entry(self._forward_log)

    # ── Shared state shortcuts ───────────────────────────────────

    @property
    def log(self):
        return self.executor.log

    @property
    def vfs(self):
        return self.executor.vfs

    @property
    def memory(self):
        return self.executor.memory

    @property
    def ledger(self):
        return self.executor.ledger

    @property
    def status(self) -> AgentStatus:
        return self._machine.status

    @property
    def identity(self) -> str | None:
        return QuotaController.identity_for(self.config.ai_mode, self.api_key)

    @property
    def research_task(self) -> str | None:
        return self._research_task

    # ── User controls ────────────────────────────────────────────

    async def start(self) -> None:
        """Begin (or resume) the cycle from PLANNING."""
        if self.status.is_active:
            return
        self._generation += 1
        self.waiting_for_quota = False
        await self._set_status(AgentStatus.PLANNING)
        self.log.system("Agent started.")
        logger.info("orchestrator_started", cycle=self.cycle, mode=self.config.ai_mode.value)
        self._schedule(0, self._generation)

    resume = start

    async def pause(self, reason: str = "Agent paused by user.") -> None:
        self._generation += 1
        self.scheduler.cancel()
        self.waiting_for_quota = False
        if self.status != AgentStatus.PAUSED:
            await self._set_status(AgentStatus.PAUSED)
        self.current_task = "Paused"
        self.log.system(reason)
        logger.info("orchestrator_paused", cycle=self.cycle)

    async def intervene(self, message: str) -> None:
        """Pause, hand the agent a user message, then resume."""
        await self.pause("Agent paused for user intervention.")
        self.log.add(LogAuthor.USER, message)
        self.executor.reset_search_budget()
        await self.start()

    async def configure(
        self,
        mode: AIMode | None = None,
        api_key: str | None = None,
        llm: BaseLLMProvider | None = None,
    ) -> None:
        """Switch mode or credentials. Clears ERROR so the agent can be resumed."""
        if mode is not None:
            self.config.ai_mode = mode
        if api_key is not None:
            self.api_key = api_key
        if llm is not None:
            self.llm = llm
        if self.status == AgentStatus.ERROR:
            await self._set_status(AgentStatus.PAUSED)
            self.current_task = "Paused"
        self.log.system(
            f"Configuration changed. Now using {self.llm.model} in {self.config.ai_mode.value} mode."
        )

    async def run_for(self, cycles: int | None = None, poll: float = 0.5) -> None:
        """Start and wait until the agent halts or ``cycles`` more cycles complete."""
        target = self.cycle + cycles if cycles is not None else None
        await self.start()
        while self.status.is_active:
            if target is not None and self.cycle >= target:
                await self.pause(f"Completed {cycles} cycle(s).")
                break
            await asyncio.sleep(poll)

    # ── Tick ─────────────────────────────────────────────────────

    async def step(self) -> None:
        """Run the phase for the current status once."""
        gen = self._generation
        status = self.status
        if not status.is_active:
            return
        logger.debug("orchestrator_tick", status=status.value, cycle=self.cycle)
        try:
            if status == AgentStatus.PLANNING:
                await self._plan(gen)
            elif status == AgentStatus.RESEARCHING:
                await self._research(gen)
            elif status == AgentStatus.PROPOSING:
                await self._propose(gen)
            elif status == AgentStatus.CRITICIZING:
                await self._criticize(gen)
            elif status == AgentStatus.SYNTHESIZING:
                await self._synthesize(gen)
            elif status == AgentStatus.EXECUTING:
                await self._execute(gen)
        except ProtocolError as e:
            if gen != self._generation:
                return
            self.log.system(f"{e} Pausing the agent.")
            logger.warning("orchestrator_protocol_error", status=status.value, error=str(e))
            await self._halt(AgentStatus.PAUSED)
        except Exception as e:
            if gen != self._generation:
                return
            await self._fail(gen, status, e)

    async def _fail(self, gen: int, status: AgentStatus, error: Exception) -> None:
        role = status.value.lower()
        self.log.system(f"An error occurred during {role}: {error}")
        if is_quota_error(error):
            await self._back_off(gen, str(error))
            return
        logger.error("orchestrator_phase_failed", status=status.value, error=str(error))
        await self.executor.remember(
            MemoryType.ERROR,
            f"API call during {status.value}",
            "The call failed and the agent stopped.",
            f"The model call failed with an error: {error}. Check the API key, "
            "configuration and network before resuming.",
        )
        await self._halt(AgentStatus.ERROR)

    # ── Phases ───────────────────────────────────────────────────

    async def _plan(self, gen: int) -> None:
        if self._should_nudge():
            if not await self._nudge(gen):
                return

        self.current_task = "Planning next steps..."
        reply = await self._call(
            gen, cognitive.run_planner(
                self.llm,
                self.core_directive,
                self._plan_text(),
                self._history(),
                self.memory.format_for_prompt(),
            ),
        )
        if reply is None:
            return
        turn: ActorTurn = reply
        self._log_turn(LogAuthor.PLANNER, turn)
        action = self._require_action(turn, "Planner")
        directive = parse_directive(action)
        # The Planner only maintains the plan; code changes must go through review.
        plan_path = self.executor.plan_path
        if not isinstance(directive, (RewriteCode, SaveFile)) or directive.path != plan_path:
            raise ProtocolError(f"The Planner may only rewrite {plan_path}. Got: {action}")
        outcome = await self.executor.dispatch(directive, action, turn.thought)
        if gen != self._generation:
            return
        if not outcome.should_continue:
            await self._halt(AgentStatus.PAUSED)
            return

        task = self._next_research_task()
        if self.config.researcher_enabled and task:
            self._research_task = task
            self._research_steps = 0
            self.current_task = f"Researching: {task}"
            await self._set_status(AgentStatus.RESEARCHING)
        else:
            await self._set_status(AgentStatus.PROPOSING)
        self._schedule(self.config.short_delay, gen)

    async def _nudge(self, gen: int) -> bool:
        self.current_task = "Nudger is looking for a fresh idea..."
        reply = await self._call(gen, cognitive.run_nudger(self.llm, self._plan_text()))
        if reply is None:
            return False
        self._nudged_cycle = self.cycle
        turn: ActorTurn = reply
        self.log.add(LogAuthor.NUDGER, turn.thought)
        if turn.action and isinstance(parse_directive(turn.action), SuggestTask):
            await self.executor.execute(turn.action, turn.thought)
        else:
            self.log.system("Nudger did not suggest a task.")
        return True

    async def _research(self, gen: int) -> None:
        task = self._research_task
        cap = self.config.max_research_steps
        if task is None:
            await self._finish_research(gen)
            return
        if cap is not None and self._research_steps >= cap:
            self.log.system(
                f"Research step limit of {cap} reached for task: {task}. Moving on to proposing."
            )
            await self._finish_research(gen)
            return

        reply = await self._call(
            gen, cognitive.run_researcher(
                self.llm, task, self._history(), web_search=self.config.web_search
            ),
        )
        if reply is None:
            return
        turn: ActorTurn = reply
        self._log_turn(LogAuthor.RESEARCHER, turn)
        self._research_steps += 1

        directive = parse_directive(turn.action) if turn.action else TaskCompleted()
        if isinstance(directive, TaskCompleted):
            self.log.system(f"Research complete for task: {task}")
            await self._finish_research(gen)
            return
        if directive.kind in RESEARCH_ACTIONS:
            self.log.add(LogAuthor.ACTION, turn.action)
            await self.executor.dispatch(directive, turn.action, turn.thought)
        else:
            self.log.system(
                f"The Researcher may only search or read URLs. Ignoring action: {turn.action}"
            )
        self._schedule(self.config.short_delay, gen)

    async def _finish_research(self, gen: int) -> None:
        if self._research_task:
            self._researched.add(self._research_task)
        self._research_task = None
        self._research_steps = 0
        await self._set_status(AgentStatus.PROPOSING)
        self._schedule(self.config.short_delay, gen)

    async def _propose(self, gen: int) -> None:
        self.current_task = "Proposer is working on the current task..."
        reply = await self._call(
            gen, cognitive.run_proposer(
                self.llm,
                self._plan_text(),
                self.executor.search_constraint(),
                self.rejection_reason,
                self.memory.format_for_prompt(),
                self._history(),
                web_search=self.config.web_search,
            ),
        )
        if reply is None:
            return
        turn: ActorTurn = reply
        self._log_turn(LogAuthor.PROPOSER, turn)
        action = self._require_action(turn, "Proposer")
        directive = parse_directive(action)

        if isinstance(directive, (UnknownDirective, MalformedDirective)):
            await self.executor.dispatch(directive, action, turn.thought)
            await self._halt(AgentStatus.PAUSED)
            return

        if directive.kind in CODE_MUTATIONS:
            self.proposal = ProposedChange(
                thought=turn.thought,
                action=action,
                file_path=directive.path,
                new_code=directive.content,
            )
            self.log.add(LogAuthor.ACTION, f"Proposed change to {directive.path}:\n{action}")
            nxt = AgentStatus.CRITICIZING if self.config.critics_enabled else AgentStatus.EXECUTING
            await self._set_status(nxt)
            self._schedule(self.config.short_delay, gen)
            return

        # Information-gathering actions run right away and the Proposer goes again.
        self.log.add(LogAuthor.ACTION, action)
        outcome = await self.executor.dispatch(directive, action, turn.thought)
        if gen != self._generation:
            return
        if not outcome.should_continue:
            await self._halt(AgentStatus.PAUSED)
            return
        self._schedule(
            self.config.long_delay if outcome.long_pause else self.config.short_delay, gen
        )

    async def _criticize(self, gen: int) -> None:
        proposal = self._require_proposal()
        self.current_task = "Critics are reviewing the proposed change..."
        if not await self._admit(gen, calls=len(CriticRole)):
            return
        # All three reviews or none: one failure fails the whole phase.
        results = await asyncio.gather(
            *(cognitive.run_critic(self.llm, role, proposal.action) for role in CriticRole)
        )
        for _, response in results:
            self._account(response)
        if gen != self._generation:
            return
        self.feedback = [feedback for feedback, _ in results]
        for feedback in self.feedback:
            self.log.add(
                feedback.role.log_author,
                f"Score: {feedback.score}/10\n{feedback.feedback}",
            )
        await self._set_status(AgentStatus.SYNTHESIZING)
        self._schedule(self.config.short_delay, gen)

    async def _synthesize(self, gen: int) -> None:
        proposal = self._require_proposal()
        self.current_task = "Synthesizer is making the final decision..."
        verdict = self._veto()
        if verdict is None:
            reply = await self._call(
                gen, cognitive.run_synthesizer(self.llm, proposal.action, self.feedback)
            )
            if reply is None:
                return
            verdict = reply
        decision = "APPROVE" if verdict.approved else "REJECT"
        self.log.add(LogAuthor.SYNTHESIZER, f"Decision: {decision}\nReason: {verdict.reason}")
        logger.info("orchestrator_verdict", decision=decision, cycle=self.cycle)

        if verdict.approved:
            await self._set_status(AgentStatus.EXECUTING)
        else:
            self.rejection_reason = verdict.reason
            self.proposal = None
            self.feedback = []
            await self._set_status(AgentStatus.PROPOSING)
        self._schedule(self.config.short_delay, gen)

    def _veto(self) -> Verdict | None:
        threshold = self.config.critic_veto_threshold
        if threshold is None:
            return None
        for feedback in self.feedback:
            if feedback.role in (CriticRole.SECURITY, CriticRole.EFFICIENCY) and feedback.score < threshold:
                return Verdict(
                    approved=False,
                    reason=(
                        f"Automatic veto: {feedback.role.value} score {feedback.score}/10 is below "
                        f"the threshold of {threshold}. {feedback.feedback}"
                    ),
                )
        return None

    async def _execute(self, gen: int) -> None:
        proposal = self._require_proposal()
        self.current_task = f"Applying change to {proposal.file_path}..."
        self.log.add(LogAuthor.ACTION, proposal.action)
        outcome = await self.executor.execute(proposal.action, proposal.thought)
        if gen != self._generation:
            return
        self.cycle += 1
        self.proposal = None
        self.feedback = []
        self.rejection_reason = None
        logger.info("orchestrator_cycle_complete", cycle=self.cycle, success=outcome.success)
        if not outcome.should_continue:
            await self._halt(AgentStatus.PAUSED)
            return
        await self._set_status(AgentStatus.PLANNING)
        self._schedule(self.config.long_delay, gen)

    # ── Helpers ──────────────────────────────────────────────────

    async def _call(self, gen: int, call) -> Any:
        """Admit, await one actor call, account for it. None means do not proceed."""
        if not await self._admit(gen):
            call.close()
            return None
        result, response = await call
        self._account(response)
        if gen != self._generation:
            logger.info("orchestrator_result_discarded", cycle=self.cycle)
            return None
        return result

    async def _admit(self, gen: int, calls: int = 1) -> bool:
        decision = self.quota.check_quota(self.identity, calls=calls)
        if decision.allowed:
            self.waiting_for_quota = False
            return True
        await self._back_off(gen, decision.reason or "quota exceeded")
        return False

    async def _back_off(self, gen: int, reason: str) -> None:
        backoff = self.config.quota_backoff
        message = f"Quota limit hit: {reason.rstrip('.')}. Retrying in {backoff:g} seconds..."
        self.log.system(message)
        self.current_task = message
        self.waiting_for_quota = True
        logger.warning("orchestrator_quota_backoff", reason=reason, status=self.status.value)
        if not self.memory.has_learning(QUOTA_INSIGHT_MARKER):
            await self.executor.remember(
                MemoryType.INSIGHT,
                f"API call in {self.config.ai_mode.value} mode hit a quota limit.",
                f"The system automatically paused and initiated a {backoff:g}-second retry loop.",
                f"When a quota limit is reached, the system will {QUOTA_INSIGHT_MARKER} every "
                f"{backoff:g} seconds. This allows waiting for the quota to reset without "
                "manual intervention.",
            )
        self._schedule(backoff, gen)

    def _account(self, response: LLMResponse) -> None:
        identity = self.identity
        if response.total_tokens:
            cost = response.total_tokens
            self.log.system(
                f"Token Usage: {cost} (Prompt: {response.input_tokens}, "
                f"Response: {response.output_tokens})"
            )
        else:
            cost = FALLBACK_TOKEN_COST
            self.log.system("Token usage metadata not available.")
        if identity:
            self.quota.record_call(identity, cost)
        queries = response.search_queries
        if queries:
            self.log.system("Searched the web for: " + "; ".join(queries))

    def _schedule(self, delay: float, gen: int) -> None:
        if gen != self._generation or not self.status.is_active:
            return
        self.scheduler.schedule(delay, self.step)

    async def _halt(self, status: AgentStatus) -> None:
        self.scheduler.cancel()
        self.current_task = status.value.capitalize()
        await self._set_status(status)

    async def _set_status(self, status: AgentStatus) -> None:
        previous = self.status
        self._machine.transition(status)
        if previous == status:
            return
        logger.info("orchestrator_status", previous=previous.value, status=status.value)
        if self._bus:
            await self._bus.emit(
                AGENT_STATUS,
                {"status": status.value, "previous": previous.value, "cycle": self.cycle},
                source="orchestrator",
            )

    def _should_nudge(self) -> bool:
        every = self.config.nudge_every
        return (
            self.config.nudger_enabled
            and every > 0
            and self.cycle > 0
            and self.cycle % every == 0
            and self._nudged_cycle != self.cycle
        )

    def _next_research_task(self) -> str | None:
        for task in pending_research_tasks(self._plan_text()):
            if task not in self._researched:
                return task
        return None

    def _require_action(self, turn: ActorTurn, actor: str) -> str:
        if not turn.action:
            raise ProtocolError(f"The {actor} did not return an [ACTION].")
        return turn.action

    def _require_proposal(self) -> ProposedChange:
        if self.proposal is None:
            raise ProtocolError(f"No proposed change is pending in {self.status.value}.")
        return self.proposal

    def _log_turn(self, author: LogAuthor, turn: ActorTurn) -> None:
        self.log.add(author, turn.thought)
        if turn.task_list:
            self.log.add(author, f"Prioritized Tasks:\n{turn.task_list}")

    def _plan_text(self) -> str:
        return self.vfs.get(PLAN_PATH) or "No plan found."

    def _history(self) -> str:
        return self.log.format_history(self.config.history_limit)

    def _forward_log(self, entry: LogEntry) -> None:
        if self._bus is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(
            self._bus.emit(LOG_ENTRY, entry.model_dump(mode="json"), source="activity")
        )
        self._emits.add(task)
        task.add_done_callback(self._emits.discard)

    def summary(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "cycle": self.cycle,
            "current_task": self.current_task,
            "waiting_for_quota": self.waiting_for_quota,
            "mode": self.config.ai_mode.value,
            "model": self.llm.model,
            "proposal": self.proposal.file_path if self.proposal else None,
            "rejection_reason": self.rejection_reason,
        }
