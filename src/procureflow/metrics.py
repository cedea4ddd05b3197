"""In-process metrics with Prometheus text exposition.

Instruments are plain objects mutated from the event loop thread. Each
instrument declares its label names up front; observations with a label set
that does not match are rejected so exported series stay well-formed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

LabelKey = tuple[tuple[str, str], ...]

LATENCY_BUCKETS_S: Final[tuple[float, ...]] = (0.5, 1, 2, 5, 10, 20, 30)
REQUEST_BUCKETS_S: Final[tuple[float, ...]] = (0.1, 0.5, 1, 2, 5, 10, 20, 30)
TOOL_BUCKETS_S: Final[tuple[float, ...]] = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5)
COUNT_BUCKETS: Final[tuple[float, ...]] = (1, 5, 10, 20, 50, 100)
TOKEN_BUCKETS: Final[tuple[float, ...]] = (100, 500, 1000, 2000, 3000, 4000, 8000)

# Numeric encoding of circuit states for the breaker gauge.
CIRCUIT_STATE_VALUES: Final[dict[str, float]] = {
    "closed": 0.0,
    "open": 1.0,
    "half_open": 0.5,
}


class _Metric:
    kind: str = "untyped"

    def __init__(self, name: str, description: str, label_names: Sequence[str] = ()) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)

    def _key(self, labels: dict[str, str]) -> LabelKey:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"{self.name} expects labels {self.label_names}, got {tuple(labels)}"
            )
        return tuple((name, str(labels[name])) for name in self.label_names)

    def _header(self) -> list[str]:
        return [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} {self.kind}",
        ]


def _format_labels(key: LabelKey, extra: tuple[tuple[str, str], ...] = ()) -> str:
    pairs = key + extra
    if not pairs:
        return ""
    body = ",".join(f'{k}="{_escape(v)}"' for k, v in pairs)
    return "{" + body + "}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return repr(float(value))


class Counter(_Metric):
    """Monotonically increasing counter."""

    kind = "counter"

    def __init__(self, name: str, description: str, label_names: Sequence[str] = ()) -> None:
        super().__init__(name, description, label_names)
        self._values: dict[LabelKey, float] = {}

    def inc(self, value: float = 1.0, **labels: str) -> None:
        if value < 0:
            raise ValueError("Counter can only be incremented")
        key = self._key(labels)
        self._values[key] = self._values.get(key, 0.0) + value

    def get(self, **labels: str) -> float:
        return self._values.get(self._key(labels), 0.0)

    def render(self) -> list[str]:
        lines = self._header()
        for key, value in sorted(self._values.items()):
            lines.append(f"{self.name}{_format_labels(key)} {_format_value(value)}")
        return lines


class Gauge(_Metric):
    """Metric that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, description: str, label_names: Sequence[str] = ()) -> None:
        super().__init__(name, description, label_names)
        self._values: dict[LabelKey, float] = {}

    def set(self, value: float, **labels: str) -> None:
        self._values[self._key(labels)] = float(value)

    def get(self, **labels: str) -> float:
        return self._values.get(self._key(labels), 0.0)

    def render(self) -> list[str]:
        lines = self._header()
        for key, value in sorted(self._values.items()):
            lines.append(f"{self.name}{_format_labels(key)} {_format_value(value)}")
        return lines


@dataclass
class _HistogramSeries:
    bucket_counts: list[int]
    total: float = 0.0
    count: int = 0


class Histogram(_Metric):
    """Cumulative-bucket histogram."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str,
        label_names: Sequence[str] = (),
        *,
        buckets: Sequence[float] = LATENCY_BUCKETS_S,
    ) -> None:
        super().__init__(name, description, label_names)
        self.buckets = tuple(sorted(float(b) for b in buckets))
        self._series: dict[LabelKey, _HistogramSeries] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        series = self._series.get(key)
        if series is None:
            series = _HistogramSeries(bucket_counts=[0] * len(self.buckets))
            self._series[key] = series
        series.total += value
        series.count += 1
        for i, bound in enumerate(self.buckets):
            if value <= bound:
                series.bucket_counts[i] += 1

    def count(self, **labels: str) -> int:
        series = self._series.get(self._key(labels))
        return series.count if series else 0

    def sum(self, **labels: str) -> float:
        series = self._series.get(self._key(labels))
        return series.total if series else 0.0

    def render(self) -> list[str]:
        lines = self._header()
        for key, series in sorted(self._series.items()):
            for bound, hits in zip(self.buckets, series.bucket_counts, strict=True):
                le = (("le", _format_value(bound)),)
                lines.append(f"{self.name}_bucket{_format_labels(key, le)} {hits}")
            inf = (("le", "+Inf"),)
            lines.append(f"{self.name}_bucket{_format_labels(key, inf)} {series.count}")
            lines.append(f"{self.name}_sum{_format_labels(key)} {_format_value(series.total)}")
            lines.append(f"{self.name}_count{_format_labels(key)} {series.count}")
        return lines


@dataclass
class MetricsRegistry:
    """Owns instruments and renders them in Prometheus text format."""

    _metrics: dict[str, Counter | Gauge | Histogram] = field(default_factory=dict)

    def register(self, metric: Counter | Gauge | Histogram) -> None:
        if metric.name in self._metrics:
            raise ValueError(f"Metric already registered: {metric.name}")
        self._metrics[metric.name] = metric

    def get(self, name: str) -> Counter | Gauge | Histogram | None:
        return self._metrics.get(name)

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


class AgentMetrics:
    """The named instruments emitted by the reliability layer and the agent.

    Recording helpers never raise: a metrics failure is logged and dropped so
    it cannot affect the user-facing response.
    """

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        self.registry = registry or MetricsRegistry()
        r = self.registry

        self.agent_requests = Counter(
            "agent_requests_total", "Agent turns handled", ("status",)
        )
        self.agent_request_duration = Histogram(
            "agent_request_duration_seconds",
            "Agent turn latency",
            buckets=REQUEST_BUCKETS_S,
        )
        self.llm_calls = Counter(
            "llm_calls_total", "LLM provider calls", ("provider", "model", "status")
        )
        self.llm_call_duration = Histogram(
            "llm_call_duration_seconds",
            "LLM provider call latency",
            ("provider", "model"),
            buckets=LATENCY_BUCKETS_S,
        )
        self.llm_tokens = Counter(
            "llm_tokens_total", "Tokens consumed", ("provider", "model", "type")
        )
        self.llm_cost = Counter(
            "llm_cost_usd_total", "Estimated LLM spend in USD", ("provider", "model")
        )
        self.tool_executions = Counter(
            "tool_executions_total", "Agent tool executions", ("tool", "status")
        )
        self.tool_execution_duration = Histogram(
            "tool_execution_duration_seconds",
            "Agent tool execution latency",
            ("tool",),
            buckets=TOOL_BUCKETS_S,
        )
        self.circuit_breaker_state = Gauge(
            "circuit_breaker_state",
            "Circuit state per provider (0 closed, 0.5 half-open, 1 open)",
            ("provider",),
        )
        self.rate_limiter_queue_size = Gauge(
            "rate_limiter_queue_size", "Callers waiting for a provider slot", ("provider",)
        )
        self.conversation_truncations = Counter(
            "conversation_truncations_total",
            "Conversation history truncation events",
            ("reason",),
        )
        self.conversation_message_count = Histogram(
            "conversation_message_count",
            "Messages sent to the model per turn",
            buckets=COUNT_BUCKETS,
        )
        self.conversation_token_count = Histogram(
            "conversation_token_count",
            "Context tokens sent to the model per turn",
            buckets=TOKEN_BUCKETS,
        )

        for metric in (
            self.agent_requests,
            self.agent_request_duration,
            self.llm_calls,
            self.llm_call_duration,
            self.llm_tokens,
            self.llm_cost,
            self.tool_executions,
            self.tool_execution_duration,
            self.circuit_breaker_state,
            self.rate_limiter_queue_size,
            self.conversation_truncations,
            self.conversation_message_count,
            self.conversation_token_count,
        ):
            r.register(metric)

    def record_llm_call(
        self, *, provider: str, model: str, status: str, duration_s: float
    ) -> None:
        try:
            self.llm_calls.inc(provider=provider, model=model, status=status)
            self.llm_call_duration.observe(duration_s, provider=provider, model=model)
        except Exception:
            logger.exception("Failed to record LLM call metrics")

    def record_usage(
        self,
        *,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost_usd: float,
    ) -> None:
        try:
            self.llm_tokens.inc(input_tokens, provider=provider, model=model, type="input")
            self.llm_tokens.inc(output_tokens, provider=provider, model=model, type="output")
            self.llm_cost.inc(cost_usd, provider=provider, model=model)
        except Exception:
            logger.exception("Failed to record token usage metrics")

    def record_tool(self, *, tool: str, status: str, duration_s: float) -> None:
        try:
            self.tool_executions.inc(tool=tool, status=status)
            self.tool_execution_duration.observe(duration_s, tool=tool)
        except Exception:
            logger.exception("Failed to record tool metrics")

    def record_circuit_state(self, *, provider: str, state: str) -> None:
        try:
            self.circuit_breaker_state.set(CIRCUIT_STATE_VALUES[state], provider=provider)
        except Exception:
            logger.exception("Failed to record circuit breaker state")

    def record_queue_depth(self, *, provider: str, depth: int) -> None:
        try:
            self.rate_limiter_queue_size.set(depth, provider=provider)
        except Exception:
            logger.exception("Failed to record rate limiter queue depth")

    def record_truncation(self, *, reason: str) -> None:
        try:
            self.conversation_truncations.inc(reason=reason)
        except Exception:
            logger.exception("Failed to record truncation metric")

    def record_context(self, *, message_count: int, token_count: int) -> None:
        try:
            self.conversation_message_count.observe(message_count)
            self.conversation_token_count.observe(token_count)
        except Exception:
            logger.exception("Failed to record conversation size metrics")

    def record_agent_request(self, *, status: str, duration_s: float) -> None:
        try:
            self.agent_requests.inc(status=status)
            self.agent_request_duration.observe(duration_s)
        except Exception:
            logger.exception("Failed to record agent request metrics")

    def render(self) -> str:
        """Prometheus text exposition of every instrument."""
        return self.registry.render()
