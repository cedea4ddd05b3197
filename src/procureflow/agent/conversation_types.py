"""Typed, immutable data structures for agent conversations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

StoredRole = Literal["system", "user", "assistant"]


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ConversationStatus(str, Enum):
    """Lifecycle of a conversation."""

    ACTIVE = "active"
    COMPLETE = "complete"
    ABORTED = "aborted"


@dataclass(frozen=True)
class StoredMessage:
    """One persisted conversation message.

    Tool-call plumbing is not persisted; only what the user saw and said.
    """

    role: StoredRole
    content: str
    created_at: str = field(default_factory=_now)


@dataclass(frozen=True)
class ActionRecord:
    """Audit entry for one executed (or refused) tool call."""

    tool_name: str
    tool_call_id: str
    arguments: dict[str, Any]
    success: bool
    result: Any = None
    error: str | None = None
    error_type: str | None = None
    duration_s: float = 0.0
    created_at: str = field(default_factory=_now)


@dataclass(frozen=True)
class ConversationState:
    """Immutable snapshot of a conversation and its action log."""

    id: str
    messages: tuple[StoredMessage, ...] = ()
    actions: tuple[ActionRecord, ...] = ()
    status: ConversationStatus = ConversationStatus.ACTIVE
    user_id: str | None = None
    title: str | None = None
    version: int = 0
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def last_assistant_message(self) -> StoredMessage | None:
        for message in reversed(self.messages):
            if message.role == "assistant":
                return message
        return None
