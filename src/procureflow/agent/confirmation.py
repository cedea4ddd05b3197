"""Confirmation gate for state-mutating tool calls.

A mutating call runs only when the previous assistant message proposed the
action and the user's reply reads as a yes. Anything else stops the turn:
a clear "no" is acknowledged, and an unclear reply gets a confirmation
question.
"""

from __future__ import annotations

from enum import Enum
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

AFFIRMATIVE_PHRASES: tuple[str, ...] = (
    "yes",
    "yeah",
    "yep",
    "yup",
    "y",
    "sure",
    "ok",
    "okay",
    "confirm",
    "confirmed",
    "correct",
    "proceed",
    "go ahead",
    "do it",
    "please do",
    "absolutely",
    "definitely",
    "sounds good",
    "that's right",
    "right",
)

NEGATIVE_PHRASES: tuple[str, ...] = (
    "no",
    "nope",
    "nah",
    "n",
    "don't",
    "do not",
    "dont",
    "cancel",
    "stop",
    "wait",
    "hold on",
    "not now",
    "never mind",
    "nevermind",
    "abort",
)

DECLINED_MESSAGE = (
    "No problem, I haven't made any changes. Let me know if there's anything else "
    "I can help with."
)


class ConfirmationDecision(str, Enum):
    """Outcome of checking a mutating call against the conversation."""

    CONFIRMED = "confirmed"
    DECLINED = "declined"
    NEEDS_CONFIRMATION = "needs_confirmation"


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower().replace("’", "'")).strip()


def _phrase_pattern(phrases: Iterable[str]) -> re.Pattern[str]:
    alternatives = sorted((re.escape(p) for p in phrases), key=len, reverse=True)
    return re.compile(r"(?<![\w'])(?:" + "|".join(alternatives) + r")(?![\w'])")


_AFFIRMATIVE = _phrase_pattern(AFFIRMATIVE_PHRASES)
_NEGATIVE = _phrase_pattern(NEGATIVE_PHRASES)


def is_affirmative(text: str) -> bool:
    """True when *text* contains a yes-like phrase."""
    return bool(_AFFIRMATIVE.search(_normalize(text)))


def is_negative(text: str) -> bool:
    """True when *text* contains a no-like phrase."""
    return bool(_NEGATIVE.search(_normalize(text)))


def proposes_action(assistant_text: str | None, keywords: Iterable[str]) -> bool:
    """True when the assistant message mentions one of the action *keywords*."""
    if not assistant_text:
        return False
    keywords = tuple(keywords)
    if not keywords:
        return False
    return bool(_phrase_pattern(keywords).search(_normalize(assistant_text)))


def evaluate(
    *,
    previous_assistant: str | None,
    user_message: str,
    keywords: Iterable[str],
) -> ConfirmationDecision:
    """Decide whether a mutating call may run in this turn."""
    if is_negative(user_message):
        return ConfirmationDecision.DECLINED
    if proposes_action(previous_assistant, keywords) and is_affirmative(user_message):
        return ConfirmationDecision.CONFIRMED
    return ConfirmationDecision.NEEDS_CONFIRMATION


def confirmation_prompt(action: str) -> str:
    """Question asking the user to approve *action*."""
    return f"Just to confirm: should I {action}? Reply yes to proceed or no to cancel."
