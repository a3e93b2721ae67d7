"""Anthropic Claude LLM provider."""

from __future__ import annotations

import anthropic

from selforge.exceptions import LLMBackendError, QuotaExceededError
from selforge.llm.base import BaseLLMProvider, LLMMessage, LLMResponse
from selforge.types import AIMode


class AnthropicProvider(BaseLLMProvider):
    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 8192,
        thinking_budget: int = 0,
    ):
        self._api_key = api_key
        self._client: anthropic.AsyncAnthropic | None = None
        self._model = model
        self._max_tokens = max_tokens
        self._thinking_budget = thinking_budget

    @classmethod
    def for_mode(cls, mode: AIMode, api_key: str, settings) -> AnthropicProvider:
        """Pick the reasoning tier: the heavier model and thinking budget in PAID mode."""
        if mode == AIMode.PAID:
            return cls(
                api_key=api_key,
                model=settings.paid_model,
                max_tokens=settings.paid_max_tokens,
                thinking_budget=settings.paid_thinking_budget,
            )
        return cls(api_key=api_key, model=settings.free_model, max_tokens=settings.free_max_tokens)

    @property
    def model(self) -> str:
        return self._model

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        # Built on first use so a missing key only fails when a call is made.
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key or None)
        return self._client

    async def complete(
        self,
        messages: list[LLMMessage],
        system: str | None = None,
        tools: list[dict] | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        api_messages = [{"role": m.role, "content": m.content} for m in messages]

        kwargs: dict = {
            "model": self._model,
            "max_tokens": max_tokens or self._max_tokens,
            "messages": api_messages,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools
        if self._thinking_budget:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": self._thinking_budget}
            kwargs["max_tokens"] = max(kwargs["max_tokens"], self._thinking_budget + 4096)

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.RateLimitError as e:
            raise QuotaExceededError(str(e)) from e
        except anthropic.AnthropicError as e:
            raise LLMBackendError(str(e)) from e

        content_text = ""
        search_queries: list[str] = []
        for block in response.content:
            if block.type == "text":
                content_text += block.text
            elif block.type == "server_tool_use":
                query = block.input.get("query") if isinstance(block.input, dict) else None
                if query:
                    search_queries.append(query)

        return LLMResponse(
            content=content_text or None,
            stop_reason=response.stop_reason or "",
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            search_queries=search_queries,
        )


async def validate_api_key(api_key: str, model: str) -> tuple[bool, str | None]:
    """Make one minimal call to check the key. Returns (valid, error message)."""
    if not api_key:
        return False, "API key cannot be empty."
    client = anthropic.AsyncAnthropic(api_key=api_key)
    try:
        await client.messages.create(
            model=model,
            max_tokens=1,
            messages=[{"role": "user", "content": "hello"}],
        )
    except anthropic.AuthenticationError:
        return False, "The provided API key is not valid. Please check the key and try again."
    except anthropic.APIError as e:
        message = str(e)
        if "billing" in message.lower() or "credit" in message.lower():
            return False, "Your account is missing billing information or credits."
        return False, message
    return True, None
