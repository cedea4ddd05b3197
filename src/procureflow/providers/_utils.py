"""Shared normalization helpers for provider implementations."""

from __future__ import annotations

from typing import Any

from procureflow.providers.models import Message, TokenUsage

_TEXT_SEGMENT_TYPES = frozenset({"text", "output_text"})


def join_text_segments(content: Any) -> str:
    """Return plain text from a string or a list of typed content segments.

    Only text-typed segments contribute; images, function calls and other
    structured parts are skipped.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if not isinstance(content, (list, tuple)):
        return ""

    pieces: list[str] = []
    for segment in content:
        if isinstance(segment, str):
            pieces.append(segment)
            continue
        if isinstance(segment, dict):
            seg_type = segment.get("type")
            text = segment.get("text")
        else:
            seg_type = getattr(segment, "type", None)
            text = getattr(segment, "text", None)
        if seg_type in _TEXT_SEGMENT_TYPES and isinstance(text, str):
            pieces.append(text)
    return "".join(pieces)


def build_usage(input_tokens: Any, output_tokens: Any, total_tokens: Any = None) -> TokenUsage:
    """Coerce provider usage numbers into TokenUsage, deriving a missing total."""
    inp = _as_int(input_tokens)
    out = _as_int(output_tokens)
    total = _as_int(total_tokens) or inp + out
    return TokenUsage(input_tokens=inp, output_tokens=out, total_tokens=total)


def split_system(messages: tuple[Message, ...]) -> tuple[str | None, list[Message]]:
    """Separate system messages (joined) from the conversational turns."""
    system = [m.content for m in messages if m.role == "system" and m.content]
    turns = [m for m in messages if m.role != "system"]
    return ("\n\n".join(system) if system else None), turns


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    return 0


# Provider-specific stop reasons, folded into one vocabulary.
_FINISH_REASONS: dict[str, str] = {
    "completed": "stop",
    "stop": "stop",
    "end_turn": "stop",
    "max_output_tokens": "length",
    "max_tokens": "length",
    "content_filter": "content_filter",
    "safety": "content_filter",
    "recitation": "content_filter",
    "blocklist": "content_filter",
    "prohibited_content": "content_filter",
}


def normalize_finish_reason(raw: str | None, *, has_tool_calls: bool = False) -> str | None:
    """Map a provider stop reason onto ``stop``, ``tool_calls``, ``length`` or ``content_filter``.

    Unknown reasons pass through lowercased.
    """
    if raw is None:
        return "tool_calls" if has_tool_calls else None
    reason = _FINISH_REASONS.get(raw.lower(), raw.lower())
    if reason == "stop" and has_tool_calls:
        return "tool_calls"
    return reason
