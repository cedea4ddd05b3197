"""Token counting and cost estimation."""

from __future__ import annotations

import logging

from hypothesis import given
from hypothesis import strategies as st
import pytest

from procureflow.providers.base import Provider
from procureflow.providers.models import Message
from procureflow.tokens import (
    FRAMINGS,
    PRICING,
    MessageFraming,
    TokenAccountant,
    format_cost,
    provider_family,
)
from tests.helpers import WordEncoding

pytestmark = pytest.mark.unit

_accountant = TokenAccountant(encoding_loader=lambda _m, _d: WordEncoding())
_models = st.sampled_from(sorted(PRICING))


# =============================================================================
# Counting
# =============================================================================


def test_empty_text_counts_zero_tokens() -> None:
    assert _accountant.count_tokens("", "gpt-4o-mini") == 0


@given(text=st.text(max_size=200), model=_models)
def test_token_count_is_deterministic_and_non_negative(text: str, model: str) -> None:
    first = _accountant.count_tokens(text, model)
    second = _accountant.count_tokens(text, model)

    assert first == second
    assert first >= 0


def test_tokenizer_failure_degrades_to_character_heuristic(caplog) -> None:
    def broken_loader(_model: str, _default: str):
        raise RuntimeError("no tokenizer files")

    accountant = TokenAccountant(encoding_loader=broken_loader)

    with caplog.at_level(logging.WARNING, logger="procureflow.tokens"):
        result = accountant.count_tokens_detailed("abcdefghij", "gpt-4o-mini")

    assert result.count == 3  # ceil(10 / 4)
    assert result.degraded is True
    assert any(
        getattr(r, "event", None) == "token_accounting_degraded" for r in caplog.records
    )


def test_failed_encoding_load_is_cached() -> None:
    calls: list[str] = []

    def loader(model: str, _default: str):
        calls.append(model)
        raise RuntimeError("offline")

    accountant = TokenAccountant(encoding_loader=loader)
    accountant.count_tokens("one two", "gpt-4o")
    accountant.count_tokens("three four", "gpt-4o")

    assert calls == ["gpt-4o"]


def test_message_tokens_include_framing_overhead() -> None:
    messages = [Message(role="user", content="hello world")]

    # 4 per message + "user" (1) + content (2) + reply priming (2)
    assert _accountant.count_message_tokens(messages, "gpt-4o-mini") == 9


def test_message_tokens_accept_mappings_and_names() -> None:
    messages = [{"role": "tool", "content": "ok", "name": "get_cart"}]

    # 4 + "tool" (1) + "ok" (1) + name (1) + tokens_per_name (1) + priming (2)
    assert _accountant.count_message_tokens(messages, "gpt-4o-mini") == 10


def test_framing_is_configurable_per_provider_family() -> None:
    accountant = TokenAccountant(
        encoding_loader=lambda _m, _d: WordEncoding(),
        framings={**FRAMINGS, Provider.GEMINI: MessageFraming(0, 0, 0)},
    )
    messages = [Message(role="user", content="hi")]

    assert accountant.count_message_tokens(messages, "gemini-1.5-pro") == 2
    assert accountant.count_message_tokens(messages, "gpt-4o") == 8


def test_provider_family_from_model_name() -> None:
    assert provider_family("gemini-2.0-flash") is Provider.GEMINI
    assert provider_family("gpt-4o-mini") is Provider.OPENAI


# =============================================================================
# Cost
# =============================================================================


def test_estimate_cost_uses_per_million_pricing() -> None:
    cost = _accountant.estimate_cost("gpt-4o-mini", 1_000_000, 1_000_000)
    assert cost == pytest.approx(0.15 + 0.60)


@given(
    model=_models,
    input_tokens=st.integers(min_value=0, max_value=5_000_000),
    output_tokens=st.integers(min_value=0, max_value=5_000_000),
)
def test_estimate_cost_is_linear(model: str, input_tokens: int, output_tokens: int) -> None:
    single = _accountant.estimate_cost(model, input_tokens, output_tokens)
    double = _accountant.estimate_cost(model, 2 * input_tokens, 2 * output_tokens)

    assert double == pytest.approx(2 * single)


def test_dated_snapshot_uses_longest_matching_prefix() -> None:
    pricing = _accountant.get_model_pricing("gpt-4o-mini-2024-07-18")
    assert pricing == PRICING["gpt-4o-mini"]


def test_unknown_model_costs_zero_and_warns_once(caplog) -> None:
    accountant = TokenAccountant(encoding_loader=lambda _m, _d: WordEncoding())

    with caplog.at_level(logging.WARNING, logger="procureflow.tokens"):
        assert accountant.estimate_cost("mystery-model", 100, 100) == 0.0
        assert accountant.estimate_cost("mystery-model", 100, 100) == 0.0

    warnings = [r for r in caplog.records if getattr(r, "event", None) == "unknown_model_pricing"]
    assert len(warnings) == 1


def test_negative_token_counts_are_rejected() -> None:
    with pytest.raises(ValueError, match=">= 0"):
        _accountant.estimate_cost("gpt-4o", -1, 0)


def test_calculate_savings() -> None:
    comparison = _accountant.calculate_savings("gpt-4o", "gpt-4o-mini", 1_000_000, 0)

    assert comparison.savings_usd == pytest.approx(2.35)
    assert comparison.savings_pct == pytest.approx(94.0)


@pytest.mark.parametrize(
    ("cost", "expected"),
    [(0, "$0.00"), (0.000123, "$0.000123"), (0.25, "$0.2500"), (12.345, "$12.35")],
)
def test_format_cost(cost: float, expected: str) -> None:
    assert format_cost(cost) == expected
