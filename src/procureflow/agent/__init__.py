"""Tool-calling procurement agent."""

from .backend import (
    CartEmptyError,
    DomainError,
    InMemoryProcurementBackend,
    ItemNotFoundError,
    ProcurementBackend,
    ValidationFailedError,
)
from .conversation_store import (
    ConversationStore,
    InMemoryConversationStore,
    JSONConversationStore,
)
from .conversation_types import ActionRecord, ConversationState, ConversationStatus, StoredMessage
from .orchestrator import AgentOrchestrator, AgentReply, TurnPhase, create_agent
from .tools import MUTATING_TOOLS, TOOL_SPECS, ToolExecutor

__all__ = [
    "MUTATING_TOOLS",
    "TOOL_SPECS",
    "ActionRecord",
    "AgentOrchestrator",
    "AgentReply",
    "CartEmptyError",
    "ConversationState",
    "ConversationStatus",
    "ConversationStore",
    "DomainError",
    "InMemoryConversationStore",
    "InMemoryProcurementBackend",
    "ItemNotFoundError",
    "JSONConversationStore",
    "ProcurementBackend",
    "StoredMessage",
    "ToolExecutor",
    "TurnPhase",
    "ValidationFailedError",
    "create_agent",
]
