"""Tool-calling agent loop.

One user message drives one bounded turn:

    AWAITING_USER_INPUT -> MODEL_INVOKED -> RESPOND_TO_USER
                                         -> TOOL_CALL_REQUESTED
                                            -> CONFIRMATION_REQUIRED -> AWAITING_USER_INPUT
                                            -> EXECUTING -> RESULT_APPENDED -> MODEL_INVOKED

The loop stops at the first text-only response, after ``max_iterations``
model calls, or once ``max_tool_calls_per_turn`` is exceeded. Only user and
assistant text is persisted; tool traffic lives in the action log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import logging
import time
from typing import TYPE_CHECKING

from procureflow.adapter import ProviderAdapter
from procureflow.config import AgentSettings, Settings
from procureflow.errors import (
    ConversationPersistenceError,
    ProviderCallFailed,
    ProviderUnavailable,
    ToolExecutionError,
)
from procureflow.metrics import AgentMetrics
from procureflow.providers.models import Message
from procureflow.reliability.registry import ProviderRegistry
from procureflow.tokens import default_accountant
from procureflow.usage import InMemoryUsageStore

from . import confirmation
from .conversation_store import InMemoryConversationStore
from .conversation_types import (
    ActionRecord,
    ConversationState,
    ConversationStatus,
    StoredMessage,
)
from .history import build_context, format_cart_context
from .tools import ToolExecutor

if TYPE_CHECKING:
    from collections.abc import Mapping

    from procureflow.errors import ProcureflowWarning
    from procureflow.providers.base import ChatClient, Provider
    from procureflow.providers.models import ToolCall
    from procureflow.tokens import TokenAccountant
    from procureflow.usage import UsageStore

    from .backend import ProcurementBackend
    from .conversation_store import ConversationStore
    from .tools import ToolOutcome

logger = logging.getLogger(__name__)

PROVIDER_FAILURE_MESSAGE = (
    "I'm sorry, the assistant is temporarily unavailable. Please try again in a "
    "moment. In the meantime you can browse the catalog or review your cart "
    "directly from their pages."
)
TOO_MANY_TOOL_CALLS_MESSAGE = (
    "I'm sorry, that request needed too many steps to finish. Could you try a "
    "simpler or more specific request?"
)
MAX_ITERATIONS_MESSAGE = (
    "I'm sorry, I need more time to complete that request. Please try breaking "
    "it into smaller steps."
)
EMPTY_RESPONSE_MESSAGE = "I have completed processing your request."
_TITLE_LENGTH = 50


class TurnPhase(str, Enum):
    """Phases of a single agent turn."""

    AWAITING_USER_INPUT = "awaiting_user_input"
    MODEL_INVOKED = "model_invoked"
    TOOL_CALL_REQUESTED = "tool_call_requested"
    CONFIRMATION_REQUIRED = "confirmation_required"
    EXECUTING = "executing"
    RESULT_APPENDED = "result_appended"
    RESPOND_TO_USER = "respond_to_user"


@dataclass(frozen=True)
class AgentReply:
    """What the caller shows the user after one turn."""

    assistant_text: str
    conversation_id: str
    tool_actions_taken: tuple[ActionRecord, ...] = ()
    warnings: tuple[ProcureflowWarning, ...] = ()
    phase: TurnPhase = TurnPhase.RESPOND_TO_USER
    iterations: int = 0
    pending_confirmation: str | None = None

    @property
    def awaiting_confirmation(self) -> bool:
        """True when the turn stopped to ask the user to confirm an action."""
        return self.pending_confirmation is not None


@dataclass
class _Turn:
    """Mutable bookkeeping for one turn."""

    conversation_id: str
    user_id: str | None
    user_message: str
    previous_assistant: str | None
    messages: list[Message]
    phase: TurnPhase = TurnPhase.AWAITING_USER_INPUT
    iterations: int = 0
    tool_calls: int = 0
    executed_mutations: set[str] = field(default_factory=set)
    actions: list[ActionRecord] = field(default_factory=list)
    last_text: str = ""
    status: str = "success"
    pending_tool: str | None = None

    def advance(self, phase: TurnPhase) -> None:
        logger.debug(
            "Turn phase",
            extra={
                "conversation_id": self.conversation_id,
                "from_phase": self.phase.value,
                "to_phase": phase.value,
                "iteration": self.iterations,
            },
        )
        self.phase = phase


class AgentOrchestrator:
    """Drives the tool-calling loop for procurement conversations."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        executor: ToolExecutor,
        store: ConversationStore,
        *,
        settings: AgentSettings | None = None,
        metrics: AgentMetrics | None = None,
        accountant: TokenAccountant | None = None,
    ) -> None:
        self.adapter = adapter
        self.executor = executor
        self.store = store
        self.settings = settings or AgentSettings()
        self.metrics = metrics
        self.accountant = accountant or adapter.accountant
        self.tools = executor.definitions()

    @property
    def backend(self) -> ProcurementBackend:
        return self.executor.backend

    async def handle_message(
        self,
        user_message: str,
        conversation_id: str | None = None,
        *,
        user_id: str | None = None,
    ) -> AgentReply:
        """Run one turn for *user_message* and return the assistant reply.

        Raises:
            ConversationPersistenceError: the user or assistant message could
                not be stored.
        """
        start = time.monotonic()
        status = "error"
        try:
            state = await self._open_conversation(conversation_id, user_id, user_message)
            previous = state.last_assistant_message
            history = state.messages
            await self._append_message(state.id, StoredMessage(role="user", content=user_message))

            model = self.adapter.default_config().model
            window = build_context(
                history,
                user_message,
                model=model,
                accountant=self.accountant,
                tools=self.tools,
                cart_context=await self._cart_context(user_id, state.id),
                token_budget=self.settings.history_token_budget,
                max_history_messages=self.settings.max_history_messages,
                metrics=self.metrics,
                conversation_id=state.id,
            )
            for warning in window.warnings:
                logger.warning(
                    str(warning),
                    extra={
                        "conversation_id": state.id,
                        "warning_type": type(warning).__name__,
                    },
                )

            turn = _Turn(
                conversation_id=state.id,
                user_id=user_id,
                user_message=user_message,
                previous_assistant=previous.content if previous is not None else None,
                messages=list(window.messages),
            )
            text = await self._run(turn)
            await self._append_message(state.id, StoredMessage(role="assistant", content=text))
            status = turn.status

            logger.info(
                "Agent turn complete",
                extra={
                    "conversation_id": state.id,
                    "user_id": user_id,
                    "iterations": turn.iterations,
                    "tool_call_count": turn.tool_calls,
                    "phase": turn.phase.value,
                    "duration_s": round(time.monotonic() - start, 4),
                },
            )
            return AgentReply(
                assistant_text=text,
                conversation_id=state.id,
                tool_actions_taken=tuple(turn.actions),
                warnings=window.warnings,
                phase=turn.phase,
                iterations=turn.iterations,
                pending_confirmation=turn.pending_tool,
            )
        finally:
            if self.metrics is not None:
                self.metrics.record_agent_request(
                    status=status, duration_s=time.monotonic() - start
                )

    async def _run(self, turn: _Turn) -> str:
        while turn.iterations < self.settings.max_iterations:
            turn.iterations += 1
            turn.advance(TurnPhase.MODEL_INVOKED)
            try:
                response = await self.adapter.invoke_chat(
                    turn.messages,
                    tools=self.tools,
                    conversation_id=turn.conversation_id,
                    user_id=turn.user_id,
                )
            except (ProviderUnavailable, ProviderCallFailed) as e:
                logger.warning(
                    "Provider failure surfaced to user as apology",
                    extra={
                        "conversation_id": turn.conversation_id,
                        "error_type": type(e).__name__,
                        "provider": e.provider,
                        "iteration": turn.iterations,
                    },
                )
                turn.status = "degraded"
                turn.advance(TurnPhase.RESPOND_TO_USER)
                return PROVIDER_FAILURE_MESSAGE

            if not response.tool_calls:
                turn.advance(TurnPhase.RESPOND_TO_USER)
                return response.text.strip() or EMPTY_RESPONSE_MESSAGE

            turn.advance(TurnPhase.TOOL_CALL_REQUESTED)
            turn.tool_calls += len(response.tool_calls)
            if turn.tool_calls > self.settings.max_tool_calls_per_turn:
                logger.warning(
                    "Max tool calls per turn exceeded",
                    extra={
                        "conversation_id": turn.conversation_id,
                        "tool_call_count": turn.tool_calls,
                        "max_allowed": self.settings.max_tool_calls_per_turn,
                    },
                )
                turn.advance(TurnPhase.RESPOND_TO_USER)
                return TOO_MANY_TOOL_CALLS_MESSAGE
            if response.text.strip():
                turn.last_text = response.text.strip()
            turn.messages.append(
                Message(role="assistant", content=response.text, tool_calls=response.tool_calls)
            )

            for call in response.tool_calls:
                stop = await self._gate(turn, call)
                if stop is not None:
                    return stop
            turn.advance(TurnPhase.RESULT_APPENDED)

        logger.warning(
            "Max iterations reached",
            extra={
                "conversation_id": turn.conversation_id,
                "iterations": turn.iterations,
                "tool_call_count": turn.tool_calls,
            },
        )
        turn.advance(TurnPhase.RESPOND_TO_USER)
        return turn.last_text or MAX_ITERATIONS_MESSAGE

    async def _gate(self, turn: _Turn, call: ToolCall) -> str | None:
        """Handle one tool call; return text when the turn must stop."""
        if not self.executor.is_mutating(call.name):
            await self._execute(turn, call)
            return None

        if call.name in turn.executed_mutations:
            self._feed_back_refusal(
                turn,
                call,
                f"{call.name} already ran this turn; ask the user to confirm again",
            )
            return None

        decision = confirmation.evaluate(
            previous_assistant=turn.previous_assistant,
            user_message=turn.user_message,
            keywords=self.executor.spec(call.name).action_keywords,
        )
        if decision is confirmation.ConfirmationDecision.CONFIRMED:
            turn.executed_mutations.add(call.name)
            await self._execute(turn, call)
            return None

        turn.advance(TurnPhase.CONFIRMATION_REQUIRED)
        logger.info(
            "Mutating tool call held for confirmation",
            extra={
                "conversation_id": turn.conversation_id,
                "tool": call.name,
                "decision": decision.value,
            },
        )
        if decision is confirmation.ConfirmationDecision.DECLINED:
            turn.advance(TurnPhase.AWAITING_USER_INPUT)
            return confirmation.DECLINED_MESSAGE
        try:
            spec, args = self.executor.parse(call)
        except ToolExecutionError as e:
            self._feed_back_refusal(turn, call, str(e), error_type=e.error_type)
            turn.advance(TurnPhase.TOOL_CALL_REQUESTED)
            return None
        turn.pending_tool = call.name
        turn.advance(TurnPhase.AWAITING_USER_INPUT)
        return confirmation.confirmation_prompt(spec.describe_action(args))

    async def _execute(self, turn: _Turn, call: ToolCall) -> ToolOutcome:
        turn.advance(TurnPhase.EXECUTING)
        outcome = await self.executor.execute(
            call, user_id=turn.user_id, conversation_id=turn.conversation_id
        )
        record = ActionRecord(
            tool_name=call.name,
            tool_call_id=call.id,
            arguments=outcome.arguments,
            success=outcome.success,
            result=outcome.payload if outcome.success else None,
            error=outcome.error,
            error_type=outcome.error_type,
            duration_s=outcome.duration_s,
        )
        turn.actions.append(record)
        await self._append_action(turn.conversation_id, record)
        turn.messages.append(
            Message(role="tool", content=outcome.content, name=call.name, tool_call_id=call.id)
        )
        return outcome

    def _feed_back_refusal(
        self,
        turn: _Turn,
        call: ToolCall,
        message: str,
        *,
        error_type: str = "ConfirmationRequired",
    ) -> None:
        content = json.dumps({"error": message, "error_type": error_type, "tool": call.name})
        turn.messages.append(
            Message(role="tool", content=content, name=call.name, tool_call_id=call.id)
        )

    async def _open_conversation(
        self, conversation_id: str | None, user_id: str | None, user_message: str
    ) -> ConversationState:
        try:
            if conversation_id is not None:
                state = await self.store.load(conversation_id)
                if state is not None:
                    return state
            return await self.store.create(
                user_id=user_id,
                title=user_message.strip()[:_TITLE_LENGTH] or None,
                conversation_id=conversation_id,
            )
        except ConversationPersistenceError:
            raise
        except Exception as e:
            raise ConversationPersistenceError(
                f"Could not open conversation {conversation_id or '(new)'}"
            ) from e

    async def _append_message(self, conversation_id: str, message: StoredMessage) -> None:
        try:
            await self.store.append_message(conversation_id, message)
        except ConversationPersistenceError:
            raise
        except Exception as e:
            raise ConversationPersistenceError(
                f"Could not save {message.role} message for conversation {conversation_id}"
            ) from e

    async def _append_action(self, conversation_id: str, action: ActionRecord) -> None:
        try:
            await self.store.append_action(conversation_id, action)
        except Exception:
            logger.exception(
                "Failed to persist action log entry",
                extra={
                    "conversation_id": conversation_id,
                    "tool": action.tool_name,
                    "tool_call_id": action.tool_call_id,
                },
            )

    async def _cart_context(self, user_id: str | None, conversation_id: str) -> str | None:
        if not user_id:
            return None
        try:
            cart = await self.backend.get_cart(user_id)
        except Exception as e:
            logger.warning(
                "Failed to fetch cart for context",
                extra={
                    "conversation_id": conversation_id,
                    "user_id": user_id,
                    "error_type": type(e).__name__,
                },
            )
            return None
        return format_cart_context(cart)

    async def end_conversation(
        self, conversation_id: str, *, aborted: bool = False
    ) -> ConversationState:
        """Mark a conversation complete (or aborted)."""
        status = ConversationStatus.ABORTED if aborted else ConversationStatus.COMPLETE
        try:
            state = await self.store.set_status(conversation_id, status)
        except ConversationPersistenceError:
            raise
        except Exception as e:
            raise ConversationPersistenceError(
                f"Could not update status of conversation {conversation_id}"
            ) from e
        logger.info(
            "Conversation ended",
            extra={"conversation_id": conversation_id, "status": status.value},
        )
        return state

    async def aclose(self) -> None:
        await self.adapter.aclose()


def create_agent(
    backend: ProcurementBackend,
    settings: Settings | None = None,
    *,
    store: ConversationStore | None = None,
    usage_store: UsageStore | None = None,
    metrics: AgentMetrics | None = None,
    provider: str | Provider | None = None,
    clients: Mapping[Provider, ChatClient] | None = None,
    accountant: TokenAccountant | None = None,
) -> AgentOrchestrator:
    """Build the full object graph: registry, adapter, tools and stores.

    Conversations and token usage are kept in memory unless stores are given.

    Raises:
        ConfigurationError: no usable provider credentials.
    """
    settings = settings or Settings.from_env()
    metrics = metrics or AgentMetrics()
    accountant = accountant or default_accountant
    registry = ProviderRegistry.from_settings(settings, metrics=metrics)
    adapter = ProviderAdapter(
        settings,
        registry,
        provider=provider,
        clients=clients,
        accountant=accountant,
        metrics=metrics,
        usage_store=usage_store if usage_store is not None else InMemoryUsageStore(),
    )
    executor = ToolExecutor(backend, timeout_s=settings.agent.tool_timeout_s, metrics=metrics)
    return AgentOrchestrator(
        adapter,
        executor,
        store or InMemoryConversationStore(),
        settings=settings.agent,
        metrics=metrics,
        accountant=accountant,
    )
