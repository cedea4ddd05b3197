"""Procureflow: a reliable LLM provider layer and tool-calling procurement agent.

Public API:
    - create_agent(): Build an AgentOrchestrator from Settings
    - AgentOrchestrator.handle_message(): Run one conversational turn
    - ProviderAdapter.invoke_chat(): One reliable, cost-accounted chat call
    - Settings: Environment-driven configuration
"""

from __future__ import annotations

import logging

from procureflow.adapter import ProviderAdapter
from procureflow.agent import AgentOrchestrator, AgentReply, create_agent
from procureflow.config import ProviderConfig, Settings, resolve_provider
from procureflow.errors import (
    APIError,
    ConfigurationError,
    ConversationPersistenceError,
    ProcureflowError,
    ProviderCallFailed,
    ProviderUnavailable,
    RateLimitError,
    ToolExecutionError,
)
from procureflow.providers import AIResponse, Message, Provider
from procureflow.telemetry import configure_logging

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("procureflow-agent")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("procureflow").addHandler(logging.NullHandler())

__all__ = [
    "AIResponse",
    "APIError",
    "AgentOrchestrator",
    "AgentReply",
    "ConfigurationError",
    "ConversationPersistenceError",
    "Message",
    "ProcureflowError",
    "Provider",
    "ProviderAdapter",
    "ProviderCallFailed",
    "ProviderConfig",
    "ProviderUnavailable",
    "RateLimitError",
    "Settings",
    "ToolExecutionError",
    "configure_logging",
    "create_agent",
    "resolve_provider",
]
