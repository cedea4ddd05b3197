"""Domain models for the provider transport layer."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import TYPE_CHECKING, Any, Literal

from procureflow.errors import ToolExecutionError

if TYPE_CHECKING:
    from procureflow.providers.base import Provider

Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True)
class ToolDefinition:
    """A callable capability exposed to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    mutating: bool = False

    def to_schema(self) -> dict[str, Any]:
        """Return the provider-neutral function schema."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model.

    ``arguments`` is always a JSON-encoded string, whatever the provider's
    native representation was.
    """

    id: str
    name: str
    arguments: str

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments`` into a dict or raise ToolExecutionError."""
        raw = self.arguments.strip() if self.arguments else ""
        if not raw:
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ToolExecutionError(
                f"Arguments for {self.name} are not valid JSON: {e.msg}",
                tool_name=self.name,
                error_type="InvalidArguments",
            ) from e
        if not isinstance(value, dict):
            raise ToolExecutionError(
                f"Arguments for {self.name} must be a JSON object",
                tool_name=self.name,
                error_type="InvalidArguments",
            )
        return value


@dataclass(frozen=True)
class Message:
    """A standard conversational message turn."""

    role: Role
    content: str = ""
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class TokenUsage:
    """Token usage as reported by the provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return (self.input_tokens + self.output_tokens + self.total_tokens) == 0


@dataclass(frozen=True)
class ChatRequest:
    """A unified request payload for a provider chat call."""

    model: str
    messages: tuple[Message, ...]
    temperature: float | None = None
    max_tokens: int | None = None
    tools: tuple[ToolDefinition, ...] = ()


@dataclass(frozen=True)
class AIResponse:
    """A normalized response from a provider chat call."""

    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    usage: TokenUsage = field(default_factory=TokenUsage)
    provider: Provider | None = None
    model: str | None = None
    finish_reason: str | None = None
    cost_usd: float | None = None

    @property
    def is_empty(self) -> bool:
        """True when the model produced neither text nor tool calls."""
        return not self.text.strip() and not self.tool_calls
