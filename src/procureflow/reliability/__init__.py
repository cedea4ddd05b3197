"""Reliability components: circuit breaker, rate limiter, retry, pipeline."""

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .pipeline import ReliabilityPipeline
from .rate_limiter import RateLimiter
from .registry import ProviderRegistry
from .retry import RetryPolicy, is_transient_error, retry_async

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "ProviderRegistry",
    "RateLimiter",
    "ReliabilityPipeline",
    "RetryPolicy",
    "is_transient_error",
    "retry_async",
]
