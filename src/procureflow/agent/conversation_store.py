"""Conversation store interfaces with in-memory and JSON implementations.

Defines the `ConversationStore` protocol plus two stores. States are
immutable snapshots; every write returns the new snapshot with its version
bumped.
"""

from __future__ import annotations

from dataclasses import asdict, replace
from datetime import UTC, datetime
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
import uuid

from procureflow.errors import ConversationPersistenceError

from .conversation_types import (
    ActionRecord,
    ConversationState,
    ConversationStatus,
    StoredMessage,
)

if TYPE_CHECKING:
    import os


@runtime_checkable
class ConversationStore(Protocol):
    """Protocol for loading and appending conversation state."""

    async def create(
        self,
        *,
        user_id: str | None = None,
        title: str | None = None,
        conversation_id: str | None = None,
    ) -> ConversationState:
        """Create and persist an empty conversation."""
        ...

    async def load(self, conversation_id: str) -> ConversationState | None:
        """Load a conversation, or None when it does not exist."""
        ...

    async def append_message(
        self, conversation_id: str, message: StoredMessage
    ) -> ConversationState:
        """Append a message and return the updated state."""
        ...

    async def append_action(
        self, conversation_id: str, action: ActionRecord
    ) -> ConversationState:
        """Append an action-log entry and return the updated state."""
        ...

    async def set_status(
        self, conversation_id: str, status: ConversationStatus
    ) -> ConversationState:
        """Change the conversation status and return the updated state."""
        ...

    async def list_conversations(self, *, user_id: str | None = None) -> list[ConversationState]:
        """Return conversations, newest first, optionally for one user."""
        ...


def _touch(state: ConversationState, **changes: Any) -> ConversationState:
    return replace(
        state,
        version=state.version + 1,
        updated_at=datetime.now(UTC).isoformat(),
        **changes,
    )


def _new_state(
    conversation_id: str | None, user_id: str | None, title: str | None
) -> ConversationState:
    return ConversationState(
        id=conversation_id or uuid.uuid4().hex,
        user_id=user_id,
        title=title,
    )


class InMemoryConversationStore:
    """Process-local store keyed by conversation id."""

    def __init__(self) -> None:
        self._states: dict[str, ConversationState] = {}

    def _get(self, conversation_id: str) -> ConversationState:
        state = self._states.get(conversation_id)
        if state is None:
            raise ConversationPersistenceError(f"Unknown conversation: {conversation_id}")
        return state

    async def create(
        self,
        *,
        user_id: str | None = None,
        title: str | None = None,
        conversation_id: str | None = None,
    ) -> ConversationState:
        state = _new_state(conversation_id, user_id, title)
        self._states[state.id] = state
        return state

    async def load(self, conversation_id: str) -> ConversationState | None:
        return self._states.get(conversation_id)

    async def append_message(
        self, conversation_id: str, message: StoredMessage
    ) -> ConversationState:
        state = self._get(conversation_id)
        updated = _touch(state, messages=(*state.messages, message))
        self._states[conversation_id] = updated
        return updated

    async def append_action(
        self, conversation_id: str, action: ActionRecord
    ) -> ConversationState:
        state = self._get(conversation_id)
        updated = _touch(state, actions=(*state.actions, action))
        self._states[conversation_id] = updated
        return updated

    async def set_status(
        self, conversation_id: str, status: ConversationStatus
    ) -> ConversationState:
        updated = _touch(self._get(conversation_id), status=status)
        self._states[conversation_id] = updated
        return updated

    async def list_conversations(self, *, user_id: str | None = None) -> list[ConversationState]:
        states = [s for s in self._states.values() if user_id is None or s.user_id == user_id]
        return sorted(states, key=lambda s: s.updated_at, reverse=True)


class JSONConversationStore:
    """Single JSON file mapping conversation id -> state.

    Uses copy-on-write: write to a temp file and rename for atomicity.
    Shape saved per conversation id:
      {
        "id": ..., "user_id": ..., "title": ..., "status": "active",
        "messages": [{"role":..., "content":..., "created_at":...}, ...],
        "actions": [{"tool_name":..., "success":..., ...}, ...],
        "version": int, "created_at": ..., "updated_at": ...
      }
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        """Initialize the store pointing at a JSON file path."""
        self._path = Path(path)

    async def create(
        self,
        *,
        user_id: str | None = None,
        title: str | None = None,
        conversation_id: str | None = None,
    ) -> ConversationState:
        state = _new_state(conversation_id, user_id, title)
        data = self._read_all()
        data[state.id] = _state_to_dict(state)
        self._write_all(data)
        return state

    async def load(self, conversation_id: str) -> ConversationState | None:
        entry = self._read_all().get(conversation_id)
        if not isinstance(entry, dict):
            return None
        return _state_from_dict(conversation_id, entry)

    async def append_message(
        self, conversation_id: str, message: StoredMessage
    ) -> ConversationState:
        return self._update(
            conversation_id, lambda s: _touch(s, messages=(*s.messages, message))
        )

    async def append_action(
        self, conversation_id: str, action: ActionRecord
    ) -> ConversationState:
        return self._update(conversation_id, lambda s: _touch(s, actions=(*s.actions, action)))

    async def set_status(
        self, conversation_id: str, status: ConversationStatus
    ) -> ConversationState:
        return self._update(conversation_id, lambda s: _touch(s, status=status))

    async def list_conversations(self, *, user_id: str | None = None) -> list[ConversationState]:
        states = [
            _state_from_dict(cid, entry)
            for cid, entry in self._read_all().items()
            if isinstance(entry, dict)
        ]
        if user_id is not None:
            states = [s for s in states if s.user_id == user_id]
        return sorted(states, key=lambda s: s.updated_at, reverse=True)

    def _update(self, conversation_id: str, change: Any) -> ConversationState:
        data = self._read_all()
        entry = data.get(conversation_id)
        if not isinstance(entry, dict):
            raise ConversationPersistenceError(f"Unknown conversation: {conversation_id}")
        updated = change(_state_from_dict(conversation_id, entry))
        data[conversation_id] = _state_to_dict(updated)
        self._write_all(data)
        return updated

    def _read_all(self) -> dict[str, Any]:
        """Read and deserialize the entire JSON file into a mapping."""
        if not self._path.exists():
            return {}
        try:
            result = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConversationPersistenceError(
                f"Conversation file {self._path} is corrupt",
                hint="Restore it from backup or move it aside to start fresh.",
            ) from e
        except OSError as e:
            raise ConversationPersistenceError(f"Cannot read {self._path}: {e}") from e
        return result if isinstance(result, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        """Persist data atomically via temp file rename."""
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as e:
            raise ConversationPersistenceError(f"Cannot write {self._path}: {e}") from e


def _state_to_dict(state: ConversationState) -> dict[str, Any]:
    data = asdict(state)
    data["status"] = state.status.value
    return data


def _state_from_dict(conversation_id: str, entry: dict[str, Any]) -> ConversationState:
    messages = tuple(
        StoredMessage(
            role=m.get("role", "user"),
            content=str(m.get("content", "")),
            created_at=str(m.get("created_at", "")),
        )
        for m in entry.get("messages", ())
        if isinstance(m, dict)
    )
    actions = tuple(
        ActionRecord(
            tool_name=str(a.get("tool_name", "")),
            tool_call_id=str(a.get("tool_call_id", "")),
            arguments=dict(a.get("arguments") or {}),
            success=bool(a.get("success", False)),
            result=a.get("result"),
            error=a.get("error"),
            error_type=a.get("error_type"),
            duration_s=float(a.get("duration_s", 0.0)),
            created_at=str(a.get("created_at", "")),
        )
        for a in entry.get("actions", ())
        if isinstance(a, dict)
    )
    try:
        status = ConversationStatus(entry.get("status", "active"))
    except ValueError:
        status = ConversationStatus.ACTIVE
    version_raw = entry.get("version", 0)
    return ConversationState(
        id=str(entry.get("id", conversation_id)),
        messages=messages,
        actions=actions,
        status=status,
        user_id=entry.get("user_id"),
        title=entry.get("title"),
        version=int(version_raw) if isinstance(version_raw, int | float | str) else 0,
        created_at=str(entry.get("created_at", "")),
        updated_at=str(entry.get("updated_at", "")),
    )
