"""The six cognitive actors.

Each actor makes exactly one model call and parses the reply. None of
them touch the VFS, ledger or memory store; they return the parsed
result together with the raw LLMResponse so the caller can account for
tokens.
"""

from __future__ import annotations

from selforge.actors import prompts
from selforge.actors.parser import ActorTurn, Verdict, parse_critique, parse_turn, parse_verdict
from selforge.llm.base import WEB_SEARCH_TOOL, BaseLLMProvider, LLMMessage, LLMResponse
from selforge.types import CriticFeedback, CriticRole


async def _invoke(
    llm: BaseLLMProvider, prompt: str, web_search: bool = False
) -> LLMResponse:
    return await llm.complete(
        messages=[LLMMessage(role="user", content=prompt)],
        tools=[WEB_SEARCH_TOOL] if web_search else None,
    )


async def run_planner(
    llm: BaseLLMProvider,
    core_directive: str,
    current_plan: str,
    history: str,
    memories: str,
) -> tuple[ActorTurn, LLMResponse]:
    response = await _invoke(
        llm, prompts.planner_prompt(core_directive, current_plan, history, memories)
    )
    return parse_turn(response.text), response


async def run_researcher(
    llm: BaseLLMProvider,
    task: str,
    history: str,
    web_search: bool = True,
) -> tuple[ActorTurn, LLMResponse]:
    response = await _invoke(llm, prompts.researcher_prompt(task, history), web_search)
    return parse_turn(response.text), response


async def run_proposer(
    llm: BaseLLMProvider,
    current_plan: str,
    search_constraint: str,
    rejection_reason: str | None,
    memories: str,
    history: str,
    web_search: bool = True,
) -> tuple[ActorTurn, LLMResponse]:
    prompt = prompts.proposer_prompt(
        current_plan, search_constraint, rejection_reason, memories, history
    )
    response = await _invoke(llm, prompt, web_search)
    return parse_turn(response.text), response


async def run_critic(
    llm: BaseLLMProvider, role: CriticRole, proposed_action: str
) -> tuple[CriticFeedback, LLMResponse]:
    response = await _invoke(llm, prompts.critic_prompt(role.value, proposed_action))
    return parse_critique(role, response.text), response


def format_criticisms(feedback: list[CriticFeedback]) -> str:
    return "\n\n".join(
        f"**{f.role.value} Critic (Score: {f.score}/10):**\n{f.feedback}" for f in feedback
    )


async def run_synthesizer(
    llm: BaseLLMProvider, proposed_action: str, feedback: list[CriticFeedback]
) -> tuple[Verdict, LLMResponse]:
    response = await _invoke(
        llm, prompts.synthesizer_prompt(proposed_action, format_criticisms(feedback))
    )
    return parse_verdict(response.text), response


async def run_nudger(llm: BaseLLMProvider, plan: str) -> tuple[ActorTurn, LLMResponse]:
    response = await _invoke(llm, prompts.nudger_prompt(plan))
    return parse_turn(response.text), response
