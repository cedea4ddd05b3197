"""Context window assembly and history truncation."""

from __future__ import annotations

import pytest

from procureflow.agent.conversation_types import StoredMessage
from procureflow.agent.history import (
    SYSTEM_PROMPT,
    build_context,
    build_system_prompt,
    format_cart_context,
)
from procureflow.errors import TokenAccountingDegraded, TruncationWarning
from procureflow.metrics import AgentMetrics
from procureflow.providers.models import ToolDefinition
from procureflow.tokens import TokenAccountant
from tests.helpers import OPENAI_MODEL

pytestmark = pytest.mark.unit


def _history(n: int, words: int = 5) -> list[StoredMessage]:
    return [
        StoredMessage(
            role="user" if i % 2 == 0 else "assistant",
            content=" ".join([f"m{i}"] * words),
        )
        for i in range(n)
    ]


def _reserved(accountant: TokenAccountant, user_message: str) -> int:
    return accountant.count_tokens(SYSTEM_PROMPT, OPENAI_MODEL) + accountant.count_tokens(
        user_message, OPENAI_MODEL
    )


def test_message_order_is_system_cart_history_user(accountant: TokenAccountant) -> None:
    window = build_context(
        _history(2),
        "find cables",
        model=OPENAI_MODEL,
        accountant=accountant,
        cart_context="Current cart: [].",
    )

    roles = [m.role for m in window.messages]
    assert roles == ["system", "system", "user", "assistant", "user"]
    assert window.messages[0].content == SYSTEM_PROMPT
    assert window.messages[1].content == "Current cart: []."
    assert window.messages[-1].content == "find cables"
    assert window.included_history == 2
    assert not window.was_truncated
    assert window.warnings == ()


def test_token_budget_keeps_the_newest_history(
    accountant: TokenAccountant, metrics: AgentMetrics
) -> None:
    history = _history(10)
    budget = _reserved(accountant, "hello") + 12

    window = build_context(
        history,
        "hello",
        model=OPENAI_MODEL,
        accountant=accountant,
        token_budget=budget,
        metrics=metrics,
        conversation_id="conv-1",
    )

    kept = [m.content for m in window.messages[1:-1]]
    assert kept == [history[8].content, history[9].content]
    assert window.truncated_messages == 8
    assert window.truncation_reason == "token_budget"
    assert any(isinstance(w, TruncationWarning) for w in window.warnings)
    assert metrics.conversation_truncations.get(reason="token_budget") == 1
    assert metrics.conversation_message_count.count() == 1


def test_message_count_cap(accountant: TokenAccountant, metrics: AgentMetrics) -> None:
    window = build_context(
        _history(10),
        "hello",
        model=OPENAI_MODEL,
        accountant=accountant,
        token_budget=100_000,
        max_history_messages=3,
        metrics=metrics,
    )

    assert window.included_history == 3
    assert window.truncated_messages == 7
    assert window.truncation_reason == "message_count"
    assert metrics.conversation_truncations.get(reason="message_count") == 1


def test_budget_smaller_than_reserved_drops_all_history(accountant: TokenAccountant) -> None:
    window = build_context(
        _history(4), "hello", model=OPENAI_MODEL, accountant=accountant, token_budget=10
    )

    assert [m.role for m in window.messages] == ["system", "user"]
    assert window.truncated_messages == 4


def test_total_tokens_include_framing(accountant: TokenAccountant) -> None:
    window = build_context([], "hello", model=OPENAI_MODEL, accountant=accountant)

    assert window.total_tokens == accountant.count_message_tokens(window.messages, OPENAI_MODEL)


def test_degraded_counting_is_reported() -> None:
    def broken(_model: str, _default: str):
        raise RuntimeError("offline")

    window = build_context(
        _history(2),
        "hello",
        model=OPENAI_MODEL,
        accountant=TokenAccountant(encoding_loader=broken),
    )

    assert any(isinstance(w, TokenAccountingDegraded) for w in window.warnings)


def test_system_prompt_lists_tools_and_flags_mutations() -> None:
    prompt = build_system_prompt(
        [
            ToolDefinition(name="get_cart", description="Show the cart"),
            ToolDefinition(name="checkout", description="Submit the cart", mutating=True),
        ]
    )

    assert prompt.startswith(SYSTEM_PROMPT)
    assert "- get_cart: Show the cart\n" in prompt
    assert "- checkout: Submit the cart (requires confirmation)" in prompt


def test_format_cart_context() -> None:
    cart = {
        "items": [
            {"item_id": "item-1", "item_name": "USB-C Cable 1m", "item_price": 9.99, "quantity": 2}
        ],
        "total_cost": 19.98,
        "item_count": 1,
    }

    assert format_cart_context(cart) == (
        'Current cart: [{item_id: "item-1", item_name: "USB-C Cable 1m", quantity: 2}]. '
        "Total cost: $19.98."
    )


@pytest.mark.parametrize("cart", [None, {}, {"items": [], "total_cost": 0}])
def test_empty_cart_has_no_context(cart) -> None:
    assert format_cart_context(cart) is None
