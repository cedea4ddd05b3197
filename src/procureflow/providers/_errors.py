"""Map provider SDK exceptions onto APIError.

One pass over the exception chain collects what the reliability pipeline
needs (HTTP status, server-suggested delay, transport failure, provider
error code). Classification is then a pure function of those facts.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import re
from typing import Any

import httpx

from procureflow.errors import (
    RETRYABLE_STATUS_CODES,
    APIError,
    RateLimitError,
    _walk_exception_chain,
)

_CREDENTIAL_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY (or GOOGLE_API_KEY)",
}

# Provider error codes that must never be retried, whatever the HTTP status.
_TERMINAL_CODES: dict[str, str] = {
    "insufficient_quota": "The account is out of credit; check billing for this provider.",
    "context_length_exceeded": (
        "The prompt is too long for the model; lower AGENT_HISTORY_TOKEN_BUDGET."
    ),
}

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


@dataclass(frozen=True)
class _ErrorFacts:
    status_code: int | None = None
    retry_after_s: float | None = None
    transport_failure: bool = False
    error_code: str | None = None


def _http_status(e: BaseException) -> int | None:
    candidates = [getattr(e, attr, None) for attr in ("status_code", "code", "status")]
    candidates.append(getattr(getattr(e, "response", None), "status_code", None))
    for value in candidates:
        if isinstance(value, int) and not isinstance(value, bool) and 100 <= value <= 599:
            return value
    return None


def _header_delay(e: BaseException) -> float | None:
    headers: Any = getattr(getattr(e, "response", None), "headers", None)
    if headers is None or not hasattr(headers, "get"):
        return None
    # OpenAI sends a millisecond variant alongside the standard header.
    for name, scale in (("retry-after-ms", 1000.0), ("Retry-After", 1.0)):
        raw = headers.get(name)
        if not isinstance(raw, str) or not raw.strip():
            continue
        try:
            seconds = float(raw) / scale
        except ValueError:
            continue
        if seconds >= 0:
            return seconds
    return None


def _retry_info_delay(e: BaseException) -> float | None:
    """Read a google.rpc.RetryInfo delay from a Gemini ``ClientError.details`` body.

    Shape::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    details: Any = getattr(e, "details", None)
    error: Any = details.get("error") if isinstance(details, dict) else None
    entries: Any = error.get("details") if isinstance(error, dict) else None
    if not isinstance(entries, list):
        return None
    for entry in entries:
        if not isinstance(entry, dict) or "RetryInfo" not in str(entry.get("@type", "")):
            continue
        match = _DURATION_RE.match(str(entry.get("retryDelay", "")))
        if match:
            return float(match.group(1))
    return None


def _delay(e: BaseException) -> float | None:
    value = getattr(e, "retry_after", None)
    if isinstance(value, (int, float)) and value >= 0:
        return float(value)
    header = _header_delay(e)
    return header if header is not None else _retry_info_delay(e)


def _error_code(e: BaseException) -> str | None:
    code = getattr(e, "code", None)
    if isinstance(code, str) and code:
        return code
    body: Any = getattr(e, "body", None)
    if isinstance(body, dict):
        nested = body.get("error", body)
        if isinstance(nested, dict) and isinstance(nested.get("code"), str):
            return nested["code"]
    return None


def _collect(exc: BaseException) -> _ErrorFacts:
    status = delay = code = None
    transport = False
    for e in _walk_exception_chain(exc):
        status = status if status is not None else _http_status(e)
        delay = delay if delay is not None else _delay(e)
        code = code or _error_code(e)
        transport = transport or isinstance(e, (TimeoutError, httpx.TransportError))
    return _ErrorFacts(
        status_code=status,
        retry_after_s=delay,
        transport_failure=transport,
        error_code=code,
    )


def extract_status_code(exc: BaseException) -> int | None:
    """First HTTP status found along the exception chain."""
    return _collect(exc).status_code


def extract_retry_after_s(exc: BaseException) -> float | None:
    """First server-suggested retry delay (seconds) along the exception chain."""
    return _collect(exc).retry_after_s


def _is_retryable(facts: _ErrorFacts) -> bool:
    if facts.error_code in _TERMINAL_CODES:
        return False
    if facts.status_code is None:
        return facts.transport_failure or facts.retry_after_s is not None
    return (
        facts.status_code in RETRYABLE_STATUS_CODES
        or facts.status_code >= 500
        or facts.retry_after_s is not None
    )


def _derive_hint(provider: str, facts: _ErrorFacts, cause: str) -> str | None:
    if facts.error_code in _TERMINAL_CODES:
        return _TERMINAL_CODES[facts.error_code]
    lowered = cause.lower()
    mentions_key = "api key" in lowered or "api_key" in lowered
    if facts.status_code in {401, 403} or (facts.status_code == 400 and mentions_key):
        env_var = _CREDENTIAL_VARS.get(provider, "the provider API key")
        return f"Check credentials/permissions (try setting {env_var})."
    return None


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str = "generate",
    message: str | None = None,
    hint: str | None = None,
) -> APIError:
    """Return *exc* as an APIError carrying retry metadata.

    An APIError passes through with only its missing context filled in.
    Cancellation is never wrapped.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    if isinstance(exc, APIError):
        exc.provider = exc.provider or provider
        exc.phase = exc.phase or phase
        if exc.hint is None:
            exc.hint = hint
        return exc

    facts = _collect(exc)
    cause = str(exc)
    summary = message or f"{provider} {phase} failed"
    if facts.status_code is not None:
        summary = f"{summary} (status={facts.status_code})"
    is_rate_limit = facts.status_code == 429 and facts.error_code not in _TERMINAL_CODES
    err_cls: type[APIError] = RateLimitError if is_rate_limit else APIError
    return err_cls(
        f"{summary}: {cause}" if cause else summary,
        hint=hint if hint is not None else _derive_hint(provider, facts, cause),
        retryable=_is_retryable(facts),
        status_code=facts.status_code,
        retry_after_s=facts.retry_after_s,
        provider=provider,
        phase=phase,
    )
