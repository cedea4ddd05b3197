"""Provider implementations."""

from .base import ChatClient, Provider
from .factory import create_provider_client
from .gemini import GeminiClient
from .models import AIResponse, ChatRequest, Message, TokenUsage, ToolCall, ToolDefinition
from .openai import OpenAIClient

__all__ = [
    "AIResponse",
    "ChatClient",
    "ChatRequest",
    "GeminiClient",
    "Message",
    "OpenAIClient",
    "Provider",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "create_provider_client",
]
