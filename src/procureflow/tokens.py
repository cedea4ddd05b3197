"""Token counting and cost estimation.

Counting uses tiktoken byte-pair encodings. Unknown models fall back to a
default encoding; when no encoding can be loaded at all, counts degrade to a
``ceil(len / 4)`` heuristic and the degradation is logged, never raised.

Costs are recomputed from a static per-million-token price table and are
never taken from the provider.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import math
from typing import TYPE_CHECKING, Any, Final

from procureflow.providers.base import Provider

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from procureflow.providers.models import Message

logger = logging.getLogger(__name__)

DEFAULT_ENCODING: Final[str] = "cl100k_base"
_CHARS_PER_TOKEN: Final[int] = 4


@dataclass(frozen=True)
class ModelPricing:
    """USD price per one million tokens."""

    input_per_million: float
    output_per_million: float


PRICING: Final[dict[str, ModelPricing]] = {
    "gpt-4o": ModelPricing(2.50, 10.00),
    "gpt-4o-mini": ModelPricing(0.15, 0.60),
    "gpt-4o-2024-11-20": ModelPricing(2.50, 10.00),
    "gpt-4-turbo": ModelPricing(10.00, 30.00),
    "gpt-4-turbo-preview": ModelPricing(10.00, 30.00),
    "gpt-3.5-turbo": ModelPricing(0.50, 1.50),
    "gpt-3.5-turbo-16k": ModelPricing(3.00, 4.00),
    "gemini-2.0-flash": ModelPricing(0.0, 0.0),
    "gemini-1.5-flash": ModelPricing(0.075, 0.30),
    "gemini-1.5-pro": ModelPricing(1.25, 5.00),
}


@dataclass(frozen=True)
class MessageFraming:
    """Per-message and per-conversation framing overhead, in tokens."""

    tokens_per_message: int
    tokens_per_name: int
    reply_priming: int


# OpenAI documents 4/1/2 for its chat format. Gemini publishes no framing
# cost; it starts from the same figures and is tuned independently.
FRAMINGS: Final[dict[Provider, MessageFraming]] = {
    Provider.OPENAI: MessageFraming(tokens_per_message=4, tokens_per_name=1, reply_priming=2),
    Provider.GEMINI: MessageFraming(tokens_per_message=4, tokens_per_name=1, reply_priming=2),
}


@dataclass(frozen=True)
class TokenCount:
    """A token count and whether it came from the heuristic fallback."""

    count: int
    degraded: bool = False


@dataclass(frozen=True)
class CostComparison:
    """Cost of one workload on a baseline model versus a candidate model."""

    baseline_model: str
    candidate_model: str
    baseline_cost_usd: float
    candidate_cost_usd: float

    @property
    def savings_usd(self) -> float:
        return self.baseline_cost_usd - self.candidate_cost_usd

    @property
    def savings_pct(self) -> float:
        if self.baseline_cost_usd == 0:
            return 0.0
        return self.savings_usd / self.baseline_cost_usd * 100.0


def provider_family(model: str) -> Provider:
    """Infer the provider family from a model id."""
    return Provider.GEMINI if model.lower().startswith("gemini") else Provider.OPENAI


def _load_tiktoken_encoding(model: str, default_encoding: str) -> Any:
    import tiktoken

    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(default_encoding)


class TokenAccountant:
    """Counts tokens and estimates cost for a set of models.

    Encodings are loaded lazily and cached per model; a failed load is cached
    too, so repeated calls stay deterministic and cheap.
    """

    def __init__(
        self,
        *,
        pricing: Mapping[str, ModelPricing] | None = None,
        framings: Mapping[Provider, MessageFraming] | None = None,
        default_encoding: str = DEFAULT_ENCODING,
        encoding_loader: Callable[[str, str], Any] = _load_tiktoken_encoding,
    ) -> None:
        self._pricing = dict(PRICING if pricing is None else pricing)
        self._framings = dict(FRAMINGS if framings is None else framings)
        self._default_encoding = default_encoding
        self._load = encoding_loader
        self._encodings: dict[str, Any] = {}
        self._unpriced_models: set[str] = set()

    def _encoding(self, model: str) -> Any | None:
        if model in self._encodings:
            return self._encodings[model]
        try:
            encoding = self._load(model, self._default_encoding)
        except Exception as e:
            logger.warning(
                "Tokenizer unavailable; token counts are approximate",
                extra={
                    "event": "token_accounting_degraded",
                    "model": model,
                    "error": str(e),
                },
            )
            encoding = None
        self._encodings[model] = encoding
        return encoding

    def count_tokens_detailed(self, text: str, model: str) -> TokenCount:
        """Count tokens in *text*, reporting whether the heuristic was used."""
        if not text:
            return TokenCount(0)
        encoding = self._encoding(model)
        if encoding is not None:
            try:
                return TokenCount(len(encoding.encode(text, disallowed_special=())))
            except Exception as e:
                logger.warning(
                    "Tokenizer failed; falling back to character heuristic",
                    extra={
                        "event": "token_accounting_degraded",
                        "model": model,
                        "error": str(e),
                    },
                )
        return TokenCount(math.ceil(len(text) / _CHARS_PER_TOKEN), degraded=True)

    def count_tokens(self, text: str, model: str) -> int:
        """Return the number of tokens in *text* for *model*."""
        return self.count_tokens_detailed(text, model).count

    def framing(self, model: str) -> MessageFraming:
        return self._framings[provider_family(model)]

    def count_message_tokens(
        self, messages: Iterable[Message | Mapping[str, Any]], model: str
    ) -> int:
        """Count tokens for a chat transcript including framing overhead."""
        framing = self.framing(model)
        total = 0
        for message in messages:
            role, content, name = _message_fields(message)
            total += framing.tokens_per_message
            total += self.count_tokens(role, model)
            total += self.count_tokens(content, model)
            if name:
                total += self.count_tokens(name, model) + framing.tokens_per_name
        return total + framing.reply_priming

    def get_model_pricing(self, model: str) -> ModelPricing | None:
        """Return pricing for *model*, matching dated snapshots by prefix."""
        pricing = self._pricing.get(model)
        if pricing is not None:
            return pricing
        prefixes = [key for key in self._pricing if model.startswith(f"{key}-")]
        if not prefixes:
            return None
        return self._pricing[max(prefixes, key=len)]

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        """Estimate USD cost for a call; unknown models cost 0."""
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("token counts must be >= 0")
        pricing = self.get_model_pricing(model)
        if pricing is None:
            if model not in self._unpriced_models:
                self._unpriced_models.add(model)
                logger.warning(
                    "No pricing for model; cost recorded as 0",
                    extra={"event": "unknown_model_pricing", "model": model},
                )
            return 0.0
        return (input_tokens / 1_000_000) * pricing.input_per_million + (
            output_tokens / 1_000_000
        ) * pricing.output_per_million

    def calculate_savings(
        self,
        baseline_model: str,
        candidate_model: str,
        input_tokens: int,
        output_tokens: int,
    ) -> CostComparison:
        """Compare the cost of the same workload on two models."""
        return CostComparison(
            baseline_model=baseline_model,
            candidate_model=candidate_model,
            baseline_cost_usd=self.estimate_cost(baseline_model, input_tokens, output_tokens),
            candidate_cost_usd=self.estimate_cost(
                candidate_model, input_tokens, output_tokens
            ),
        )


def format_cost(cost_usd: float) -> str:
    """Format a USD amount with precision suited to its magnitude."""
    if cost_usd == 0:
        return "$0.00"
    if abs(cost_usd) < 0.01:
        return f"${cost_usd:.6f}"
    if abs(cost_usd) < 1:
        return f"${cost_usd:.4f}"
    return f"${cost_usd:.2f}"


def _message_fields(message: Message | Mapping[str, Any]) -> tuple[str, str, str | None]:
    if isinstance(message, Mapping):
        name = message.get("name")
        return (
            str(message.get("role", "")),
            str(message.get("content") or ""),
            str(name) if name else None,
        )
    return message.role, message.content, message.name


default_accountant = TokenAccountant()


def count_tokens(text: str, model: str) -> int:
    """Count tokens with the process-wide default accountant."""
    return default_accountant.count_tokens(text, model)


def count_message_tokens(messages: Iterable[Message | Mapping[str, Any]], model: str) -> int:
    """Count transcript tokens with the process-wide default accountant."""
    return default_accountant.count_message_tokens(messages, model)


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimate cost with the process-wide default accountant."""
    return default_accountant.estimate_cost(model, input_tokens, output_tokens)
