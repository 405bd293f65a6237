"""Fault-tolerance primitives: circuit breaker and retry-with-backoff."""

from gatekeeper.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerStats,
)
from gatekeeper.resilience.retry import RetryConfig, calculate_delay, retry_with_backoff

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerStats",
    "RetryConfig",
    "calculate_delay",
    "retry_with_backoff",
]
