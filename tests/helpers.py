"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off client subclasses as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
from typing import Any

from procureflow.providers.base import Provider
from procureflow.providers.models import AIResponse, ChatRequest, TokenUsage, ToolCall

OPENAI_MODEL = "gpt-4o-mini"
GEMINI_MODEL = "gemini-2.0-flash"


class WordEncoding:
    """Tokenizer stand-in: one token per whitespace-separated word."""

    def encode(self, text: str, **_kwargs: Any) -> list[str]:
        return text.split()


@dataclass
class FakeClock:
    """Manually advanced monotonic clock."""

    now: float = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def text_response(text: str, *, input_tokens: int = 10, output_tokens: int = 5) -> AIResponse:
    return AIResponse(
        text=text,
        usage=TokenUsage(input_tokens, output_tokens, input_tokens + output_tokens),
        provider=Provider.OPENAI,
        finish_reason="stop",
    )


def tool_response(
    name: str,
    arguments: dict[str, Any] | str,
    *,
    call_id: str = "call_1",
    text: str = "",
) -> AIResponse:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return AIResponse(
        text=text,
        tool_calls=(ToolCall(id=call_id, name=name, arguments=raw),),
        usage=TokenUsage(12, 8, 20),
        provider=Provider.OPENAI,
        finish_reason="tool_calls",
    )


@dataclass
class ScriptedClient:
    """ChatClient that returns a scripted sequence of responses/exceptions.

    Records every request so tests can assert on what was sent.
    """

    provider: Provider = Provider.OPENAI
    script: list[AIResponse | BaseException] = field(default_factory=list)
    requests: list[ChatRequest] = field(default_factory=list)
    closed: bool = False

    @property
    def generate_calls(self) -> int:
        return len(self.requests)

    async def generate(self, request: ChatRequest) -> AIResponse:
        self.requests.append(request)
        if not self.script:
            return text_response("ok")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class GateClient(ScriptedClient):
    """ScriptedClient that blocks every call until released."""

    release: asyncio.Event = field(default_factory=asyncio.Event)
    active: int = 0
    peak: int = 0

    async def generate(self, request: ChatRequest) -> AIResponse:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.release.wait()
            return await super().generate(request)
        finally:
            self.active -= 1


def clients_for(client: ScriptedClient) -> dict[Provider, ScriptedClient]:
    return {client.provider: client}
