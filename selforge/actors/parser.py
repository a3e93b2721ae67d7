"""Bracket-tag parser — the only place that reads raw model text.

Actors answer with sections like ``[THOUGHT]...[/THOUGHT]``. Each parse
function turns that text into a typed result. A missing optional section
becomes a placeholder; a missing ``[ACTION]`` is left as ``None`` so the
orchestrator can decide whether that is fatal for the actor in question.
"""

from __future__ import annotations

import re

from pydantic import BaseModel

from selforge.types import CriticFeedback, CriticRole

NO_THOUGHT = "No thought found."
NO_FEEDBACK = "No feedback found."
NO_REASON = "No reason found."
DEFAULT_SCORE = 5


def extract_tag(text: str, tag: str) -> str | None:
    match = re.search(rf"\[{tag}\]\s*([\s\S]*?)\s*\[/{tag}\]", text)
    return match.group(1).strip() if match else None


def extract_action(text: str) -> str | None:
    # The closing tag is optional; models often stop right after the action.
    match = re.search(r"\[ACTION\]\s*([\s\S]*?)(?:\[/ACTION\]|$)", text)
    if not match:
        return None
    action = match.group(1).strip()
    return action or None


class ActorTurn(BaseModel):
    """Thought + action, as produced by Planner, Researcher, Proposer and Nudger."""

    thought: str = NO_THOUGHT
    action: str | None = None
    task_list: str | None = None


class Verdict(BaseModel):
    approved: bool
    reason: str = NO_REASON
    decision_found: bool = True


def parse_turn(text: str) -> ActorTurn:
    return ActorTurn(
        thought=extract_tag(text, "THOUGHT") or NO_THOUGHT,
        action=extract_action(text),
        task_list=extract_tag(text, "TASK_LIST"),
    )


def parse_critique(role: CriticRole, text: str) -> CriticFeedback:
    raw_score = extract_tag(text, "SCORE")
    score = DEFAULT_SCORE
    if raw_score:
        match = re.search(r"\d+", raw_score)
        if match:
            score = min(max(int(match.group()), 1), 10)
    return CriticFeedback(
        role=role,
        score=score,
        feedback=extract_tag(text, "FEEDBACK") or NO_FEEDBACK,
    )


def parse_verdict(text: str) -> Verdict:
    decision = extract_tag(text, "DECISION")
    reason = extract_tag(text, "REASON") or NO_REASON
    if decision is None:
        # Without an explicit approval nothing gets applied.
        return Verdict(approved=False, reason=reason, decision_found=False)
    return Verdict(approved=decision.strip().upper().startswith("APPROVE"), reason=reason)
