"""Context window construction for one agent turn.

Order of the message list: system instruction, optional cart context, the
newest prior turns that fit the token and message-count budgets, then the
current user message.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any

from procureflow.errors import TokenAccountingDegraded, TruncationWarning
from procureflow.providers.models import Message

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from procureflow.errors import ProcureflowWarning
    from procureflow.metrics import AgentMetrics
    from procureflow.providers.models import ToolDefinition
    from procureflow.tokens import TokenAccountant

    from .conversation_types import StoredMessage

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_TOKEN_BUDGET = 3000
DEFAULT_MAX_HISTORY_MESSAGES = 50

SYSTEM_PROMPT = """\
You are a helpful procurement assistant. You help users:

1. Search and discover items in the catalog
2. Manage their shopping cart (add, update quantities, remove)
3. Create purchase requests from their cart
4. Register new catalog items

Guidelines:
- Be concise and friendly.
- Before adding to the cart, changing quantities, removing items, checking out
  or registering an item, describe exactly what you are about to do and ask the
  user to confirm. Only call the tool after the user says yes.
- Ask clarifying questions for ambiguous requests.
- Mention price and availability when suggesting items.
- If an item is already in the cart, use update_cart_quantity instead of
  add_to_cart. The cart context lists item IDs and current quantities.
- If a tool returns an error, explain it plainly or try again with corrected
  arguments."""


@dataclass(frozen=True)
class ContextWindow:
    """Messages for one provider call plus how they were assembled."""

    messages: tuple[Message, ...]
    total_tokens: int
    included_history: int
    truncated_messages: int = 0
    truncation_reason: str | None = None
    warnings: tuple[ProcureflowWarning, ...] = ()

    @property
    def was_truncated(self) -> bool:
        return self.truncated_messages > 0


def build_system_prompt(tools: Sequence[ToolDefinition] = ()) -> str:
    """System instruction describing the agent's role and its tools."""
    if not tools:
        return SYSTEM_PROMPT
    listing = "\n".join(
        f"- {t.name}: {t.description}{' (requires confirmation)' if t.mutating else ''}"
        for t in tools
    )
    return f"{SYSTEM_PROMPT}\n\nAvailable tools:\n{listing}"


def format_cart_context(cart: Mapping[str, Any] | None) -> str | None:
    """Render the cart as a system message, or None when it is empty."""
    if not cart:
        return None
    lines = cart.get("items") or []
    if not lines:
        return None
    entries = ", ".join(
        f'{{item_id: "{line.get("item_id")}", item_name: "{line.get("item_name")}", '
        f"quantity: {line.get('quantity')}}}"
        for line in lines
    )
    total = cart.get("total_cost")
    suffix = f" Total cost: ${float(total):.2f}." if isinstance(total, int | float) else ""
    return f"Current cart: [{entries}].{suffix}"


def build_context(
    history: Iterable[StoredMessage],
    user_message: str,
    *,
    model: str,
    accountant: TokenAccountant,
    tools: Sequence[ToolDefinition] = (),
    cart_context: str | None = None,
    token_budget: int = DEFAULT_HISTORY_TOKEN_BUDGET,
    max_history_messages: int = DEFAULT_MAX_HISTORY_MESSAGES,
    metrics: AgentMetrics | None = None,
    conversation_id: str | None = None,
) -> ContextWindow:
    """Assemble the messages for a turn, dropping the oldest history first.

    The token budget covers the system prompt, cart context and the current
    user message; history fills whatever remains.
    """
    degraded = False

    def count(text: str) -> int:
        nonlocal degraded
        result = accountant.count_tokens_detailed(text, model)
        degraded = degraded or result.degraded
        return result.count

    system_text = build_system_prompt(tools)
    head: list[Message] = [Message(role="system", content=system_text)]
    reserved = count(system_text)
    if cart_context:
        head.append(Message(role="system", content=cart_context))
        reserved += count(cart_context)
    user_tokens = count(user_message)
    reserved += user_tokens
    history_budget = max(0, token_budget - reserved)

    prior = list(history)
    included: list[Message] = []
    history_tokens = 0
    truncated = 0
    reason: str | None = None
    for index in range(len(prior) - 1, -1, -1):
        if len(included) >= max_history_messages:
            truncated, reason = index + 1, "message_count"
            break
        stored = prior[index]
        tokens = count(stored.content)
        if history_tokens + tokens > history_budget:
            truncated, reason = index + 1, "token_budget"
            break
        history_tokens += tokens
        included.append(Message(role=stored.role, content=stored.content))
    included.reverse()

    messages = (*head, *included, Message(role="user", content=user_message))
    total_tokens = accountant.count_message_tokens(messages, model)

    warnings: list[ProcureflowWarning] = []
    if reason is not None:
        if metrics is not None:
            metrics.record_truncation(reason=reason)
        logger.info(
            "Conversation history truncated",
            extra={
                "conversation_id": conversation_id,
                "reason": reason,
                "total_messages": len(prior),
                "included_messages": len(included),
                "truncated_messages": truncated,
                "history_budget": history_budget,
                "history_tokens": history_tokens,
            },
        )
        warnings.append(
            TruncationWarning(
                f"Dropped {truncated} older message(s) from context ({reason})"
            )
        )
    if degraded:
        warnings.append(
            TokenAccountingDegraded(f"Token counts for {model} are approximate")
        )
    if metrics is not None:
        metrics.record_context(message_count=len(messages), token_count=total_tokens)

    return ContextWindow(
        messages=messages,
        total_tokens=total_tokens,
        included_history=len(included),
        truncated_messages=truncated,
        truncation_reason=reason,
        warnings=tuple(warnings),
    )
