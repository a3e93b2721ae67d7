"""Orchestrator status machine — enforces valid status transitions."""

from __future__ import annotations

from typing import Callable

from selforge.exceptions import StatusTransitionError
from selforge.types import AgentStatus

TransitionCallback = Callable[[AgentStatus, AgentStatus], None]

_HALTED = {AgentStatus.PAUSED, AgentStatus.ERROR}

# Valid status transitions — the shape of one cycle
VALID_TRANSITIONS: dict[AgentStatus, set[AgentStatus]] = {
    AgentStatus.IDLE: {AgentStatus.PLANNING, AgentStatus.PAUSED, AgentStatus.ERROR},
    AgentStatus.PAUSED: {AgentStatus.PLANNING},
    AgentStatus.ERROR: {AgentStatus.PLANNING, AgentStatus.PAUSED},
    AgentStatus.PLANNING: {AgentStatus.RESEARCHING, AgentStatus.PROPOSING} | _HALTED,
    AgentStatus.RESEARCHING: {AgentStatus.PROPOSING} | _HALTED,
    AgentStatus.PROPOSING: {
        AgentStatus.CRITICIZING,
        AgentStatus.EXECUTING,
    } | _HALTED,
    AgentStatus.CRITICIZING: {AgentStatus.SYNTHESIZING} | _HALTED,
    AgentStatus.SYNTHESIZING: {AgentStatus.EXECUTING, AgentStatus.PROPOSING} | _HALTED,
    AgentStatus.EXECUTING: {AgentStatus.PLANNING} | _HALTED,
}


class StatusMachine:
    """Holds the single current AgentStatus.

    Self-loops (RESEARCHING -> RESEARCHING, PROPOSING -> PROPOSING) are
    always allowed and do not notify listeners.
    """

    def __init__(self, initial: AgentStatus = AgentStatus.IDLE) -> None:
        self._status = initial
        self._listeners: list[TransitionCallback] = []

    @property
    def status(self) -> AgentStatus:
        return self._status

    def can_transition(self, target: AgentStatus) -> bool:
        return target == self._status or target in VALID_TRANSITIONS.get(self._status, set())

    def transition(self, target: AgentStatus) -> None:
        if target == self._status:
            return
        if target not in VALID_TRANSITIONS.get(self._status, set()):
            raise StatusTransitionError(
                f"Cannot transition from {self._status.value} to {target.value}"
            )
        old = self._status
        self._status = target
        for listener in self._listeners:
            listener(old, target)

    def on_transition(self, callback: TransitionCallback) -> None:
        self._listeners.append(callback)
