"""Factory mapping the closed Provider enum to concrete chat clients."""

from __future__ import annotations

from typing import TYPE_CHECKING

from procureflow.errors import ConfigurationError
from procureflow.providers.base import Provider
from procureflow.providers.gemini import GeminiClient
from procureflow.providers.openai import OpenAIClient

if TYPE_CHECKING:
    from procureflow.providers.base import ChatClient


def create_provider_client(provider: Provider, api_key: str | None) -> ChatClient:
    """Return a capability-uniform client for *provider*."""
    if not api_key:
        raise ConfigurationError(
            f"API key required for {provider.value}",
            hint="Credentials are read once at startup from the environment.",
        )
    match provider:
        case Provider.OPENAI:
            return OpenAIClient(api_key)
        case Provider.GEMINI:
            return GeminiClient(api_key)
    raise ConfigurationError(f"Unsupported provider: {provider!r}")
