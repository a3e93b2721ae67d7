"""Core types shared across all selforge subsystems."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

# ── ID Types ──────────────────────────────────────────────────────────────────

FilePath: TypeAlias = str
QuotaIdentity: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Agent Status ──────────────────────────────────────────────────────────────


class AgentStatus(str, Enum):
    IDLE = "IDLE"
    PAUSED = "PAUSED"
    ERROR = "ERROR"
    PLANNING = "PLANNING"
    RESEARCHING = "RESEARCHING"
    PROPOSING = "PROPOSING"
    CRITICIZING = "CRITICIZING"
    SYNTHESIZING = "SYNTHESIZING"
    EXECUTING = "EXECUTING"

    @property
    def is_active(self) -> bool:
        return self not in (AgentStatus.IDLE, AgentStatus.PAUSED, AgentStatus.ERROR)


class AIMode(str, Enum):
    FREE = "FREE"
    PAID = "PAID"


# ── Activity Log ─────────────────────────────────────────────────────────────


class LogAuthor(str, Enum):
    THOUGHT = "THOUGHT"
    ACTION = "ACTION"
    SYSTEM = "SYSTEM"
    USER = "USER"
    PLANNER = "PLANNER"
    RESEARCHER = "RESEARCHER"
    PROPOSER = "PROPOSER"
    CRITIC_SECURITY = "CRITIC_SECURITY"
    CRITIC_EFFICIENCY = "CRITIC_EFFICIENCY"
    CRITIC_CLARITY = "CRITIC_CLARITY"
    SYNTHESIZER = "SYNTHESIZER"
    NUDGER = "NUDGER"


class LogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    author: LogAuthor
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] | None = None


# ── Version Ledger ───────────────────────────────────────────────────────────


class UpgradeNode(BaseModel):
    """An immutable snapshot of one accepted code mutation."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: int
    timestamp: datetime = Field(default_factory=utcnow)
    file_path: FilePath
    code: str
    thought: str = ""
    action: str = ""


# ── Learned Memory ───────────────────────────────────────────────────────────


class MemoryType(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    INSIGHT = "INSIGHT"


class LearnedMemory(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"mem-{new_id()}")
    timestamp: datetime = Field(default_factory=utcnow)
    type: MemoryType
    context: str
    outcome: str
    learning: str
    agent_version: int = 0


# ── Multi-agent cycle state ──────────────────────────────────────────────────


class ProposedChange(BaseModel):
    thought: str
    action: str
    file_path: FilePath
    new_code: str


class CriticRole(str, Enum):
    SECURITY = "Security"
    EFFICIENCY = "Efficiency"
    CLARITY = "Clarity"

    @property
    def log_author(self) -> LogAuthor:
        return LogAuthor[f"CRITIC_{self.name}"]


class CriticFeedback(BaseModel):
    role: CriticRole
    score: int = Field(ge=1, le=10)
    feedback: str


class FileKind(str, Enum):
    CODE = "code"
    DOCUMENT = "document"
