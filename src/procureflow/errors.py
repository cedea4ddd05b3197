"""Exception hierarchy for procureflow."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

# HTTP statuses worth another attempt (provider mapping and retry agree on these).
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})


class ProcureflowError(Exception):
    """Base exception for all procureflow errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(ProcureflowError):
    """Configuration validation or resolution failed."""


class APIError(ProcureflowError):
    """Provider call failed.

    Providers attach retry metadata so the reliability pipeline can perform
    bounded retries without brittle substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
        attempt: int | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase
        self.attempt = attempt


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""


class ProviderUnavailable(APIError):
    """Provider is failing fast (circuit open or admission queue full)."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        retry_after_s: float | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(
            message,
            hint=hint,
            retryable=False,
            retry_after_s=retry_after_s,
            provider=provider,
            phase="admission",
        )


class ProviderCallFailed(APIError):
    """A provider call failed after the retry budget was spent.

    The last underlying error is available as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        attempts: int,
        status_code: int | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(
            message,
            hint=hint,
            retryable=False,
            status_code=status_code,
            provider=provider,
            phase="generate",
            attempt=attempts,
        )
        self.attempts = attempts


class ToolExecutionError(ProcureflowError):
    """A tool call could not be executed (bad arguments or a domain failure)."""

    def __init__(
        self,
        message: str,
        *,
        tool_name: str,
        error_type: str = "ToolExecutionError",
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.tool_name = tool_name
        self.error_type = error_type


class ConversationPersistenceError(ProcureflowError):
    """Conversation history could not be persisted."""


class ProcureflowWarning(UserWarning):
    """Base category for non-fatal conditions surfaced to callers."""


class TruncationWarning(ProcureflowWarning):
    """Conversation history was trimmed to fit the context budget."""


class TokenAccountingDegraded(ProcureflowWarning):
    """Token counts (and therefore cost figures) are approximate."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* then everything reachable via ``__cause__``/``__context__``, once each."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
