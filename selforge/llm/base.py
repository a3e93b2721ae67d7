"""Abstract base for LLM providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field


class LLMMessage(BaseModel):
    role: str  # "user", "assistant"
    content: str


class LLMResponse(BaseModel):
    """Text of one actor turn plus the usage figures the quota is charged with.

    Zero tokens on both sides means the backend reported no usage.
    """

    content: str | None = None
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    search_queries: list[str] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return self.content or ""

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# Server-side search tool offered to actors that may emit GOOGLE_SEARCH.
WEB_SEARCH_TOOL: dict[str, Any] = {
    "type": "web_search_20250305",
    "name": "web_search",
    "max_uses": 3,
}


class BaseLLMProvider(ABC):
    """A model backend the actors talk to, one prompt per call."""

    @property
    @abstractmethod
    def model(self) -> str: ...

    @abstractmethod
    async def complete(
        self,
        messages: list[LLMMessage],
        system: str | None = None,
        tools: list[dict] | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse: ...
