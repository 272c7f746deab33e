"""Resilience primitives: circuit breaker and retry manager."""

from delivery_worker.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitHealth,
    CircuitMetrics,
    CircuitResult,
    CircuitState,
)
from delivery_worker.resilience.retry import (
    AttemptDetail,
    RetryConfig,
    RetryManager,
    RetryResult,
)

__all__ = [
    "AttemptDetail",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitHealth",
    "CircuitMetrics",
    "CircuitResult",
    "CircuitState",
    "RetryConfig",
    "RetryManager",
    "RetryResult",
]
