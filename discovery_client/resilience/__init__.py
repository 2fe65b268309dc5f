"""
Resilience Patterns

Retry with backoff and per-service circuit breaking for registry calls.
"""

from discovery_client.resilience.retry import (
    RetryPolicy,
    exponential_backoff,
    exponential_with_jitter,
)
from discovery_client.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStatus,
)

__all__ = [
    "RetryPolicy",
    "exponential_backoff",
    "exponential_with_jitter",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStatus",
]
