"""Structured, secret-redacting log output.

Every record is rendered as a single JSON object with a common envelope
(timestamp, level, logger, message, service, version, environment) plus the
free-form metadata passed through ``extra=``. Before rendering, the record is
run through a :class:`Redactor` that masks denylisted keys and PII patterns.

Library modules never configure handlers; applications call
:func:`configure_logging` once at startup.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
import json
import logging
import re
import sys
from typing import TYPE_CHECKING, Any, Final

if TYPE_CHECKING:
    from collections.abc import Iterable

    from procureflow.config import Settings

REDACTION_MARKER: Final[str] = "[REDACTED]"
TRUNCATION_MARKER: Final[str] = "[TRUNCATED]"
CIRCULAR_MARKER: Final[str] = "[CIRCULAR]"

DEFAULT_SENSITIVE_KEYS: Final[tuple[str, ...]] = (
    "password",
    "token",
    "secret",
    "authorization",
    "cookie",
    "api_key",
    "session_id",
    "jwt",
    "bearer",
)

# Applied in order: card numbers and SSNs before the looser phone pattern.
PII_PATTERNS: Final[tuple[tuple[str, re.Pattern[str]], ...]] = (
    ("EMAIL", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("CREDIT_CARD", re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")),
    ("SSN", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("IP", re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")),
    ("PHONE", re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")),
)

# Attributes every LogRecord carries; anything else came from ``extra=``.
_STANDARD_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


def _normalize_key(key: str) -> str:
    return re.sub(r"[\s_\-]", "", key.lower())


def _is_count(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class Redactor:
    """Masks sensitive keys and PII in arbitrarily nested log payloads."""

    sensitive_keys: tuple[str, ...] = DEFAULT_SENSITIVE_KEYS
    max_depth: int = 6
    marker: str = REDACTION_MARKER
    _needles: tuple[str, ...] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "_needles", tuple(_normalize_key(k) for k in self.sensitive_keys)
        )

    def is_sensitive_key(self, key: str) -> bool:
        normalized = _normalize_key(key)
        return any(needle in normalized for needle in self._needles)

    def _masks(self, key: str, value: Any) -> bool:
        # Numeric usage counters such as ``input_tokens`` carry no credential.
        if _normalize_key(key).endswith("tokens") and _is_count(value):
            return False
        return self.is_sensitive_key(key)

    def redact_text(self, text: str) -> str:
        """Replace PII found in free text with type-tagged markers."""
        for label, pattern in PII_PATTERNS:
            text = pattern.sub(f"[REDACTED_{label}]", text)
        return text

    def redact(self, value: Any) -> Any:
        """Return a redacted, JSON-friendly copy of *value*."""
        return self._redact(value, depth=0, seen=set())

    def _redact(self, value: Any, *, depth: int, seen: set[int]) -> Any:
        if isinstance(value, str):
            return self.redact_text(value)
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if depth >= self.max_depth:
            return TRUNCATION_MARKER

        if isinstance(value, Mapping):
            if id(value) in seen:
                return CIRCULAR_MARKER
            seen = seen | {id(value)}
            out: dict[str, Any] = {}
            for k, v in value.items():
                key = str(k)
                if self._masks(key, v):
                    out[key] = self.marker
                else:
                    out[key] = self._redact(v, depth=depth + 1, seen=seen)
            return out

        if isinstance(value, (list, tuple, set, frozenset)):
            if id(value) in seen:
                return CIRCULAR_MARKER
            seen = seen | {id(value)}
            return [self._redact(v, depth=depth + 1, seen=seen) for v in value]

        if isinstance(value, BaseException):
            return self.redact_text(f"{type(value).__name__}: {value}")

        return self.redact_text(str(value))


class JSONFormatter(logging.Formatter):
    """Render log records as redacted single-line JSON objects."""

    def __init__(
        self,
        *,
        service: str = "procureflow-agent",
        version: str = "0.0.0",
        environment: str = "development",
        redactor: Redactor | None = None,
    ) -> None:
        super().__init__()
        self.service = service
        self.version = version
        self.environment = environment
        self.redactor = redactor or Redactor()

    def format(self, record: logging.LogRecord) -> str:
        envelope: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": self.redactor.redact_text(record.getMessage()),
            "service": self.service,
            "version": self.version,
            "environment": self.environment,
        }
        metadata = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_")
        }
        for key, value in self.redactor.redact(metadata).items():
            envelope.setdefault(key, value)
        if record.exc_info:
            envelope["error"] = self.redactor.redact_text(
                self.formatException(record.exc_info)
            )
        return json.dumps(envelope, default=str)


_HANDLER_NAME: Final[str] = "procureflow-json"


def configure_logging(
    settings: Settings | None = None,
    *,
    stream: Any = None,
    extra_sensitive_keys: Iterable[str] = (),
) -> logging.Handler:
    """Attach a JSON handler to the ``procureflow`` logger (idempotent)."""
    from procureflow import __version__

    service = settings.service_name if settings else "procureflow-agent"
    environment = settings.environment if settings else "development"
    level = settings.log_level.upper() if settings else "INFO"

    root = logging.getLogger("procureflow")
    for existing in list(root.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root.removeHandler(existing)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        JSONFormatter(
            service=service,
            version=__version__,
            environment=environment,
            redactor=Redactor(
                sensitive_keys=DEFAULT_SENSITIVE_KEYS + tuple(extra_sensitive_keys)
            ),
        )
    )
    root.addHandler(handler)
    root.setLevel(level)
    return handler
