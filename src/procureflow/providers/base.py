"""Provider protocol: the capability-uniform chat client interface."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from procureflow.providers.models import AIResponse, ChatRequest


class Provider(str, Enum):
    """Supported LLM backends."""

    OPENAI = "openai"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: str | Provider) -> Provider:
        """Return the member for *value*, accepting a few common aliases."""
        if isinstance(value, Provider):
            return value
        normalized = value.strip().lower()
        if normalized == "google":
            normalized = cls.GEMINI.value
        return cls(normalized)


@runtime_checkable
class ChatClient(Protocol):
    """Minimal provider protocol: one normalized chat generation call."""

    @property
    def provider(self) -> Provider:
        """Which backend this client talks to."""
        ...

    async def generate(self, request: ChatRequest) -> AIResponse:
        """Send *request* and return the normalized response."""
        ...

    async def aclose(self) -> None:
        """Release underlying SDK resources."""
        ...
