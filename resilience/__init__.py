"""
Resilience patterns for the tracking engine.

Exponential backoff (pipeline cooldown, session persistence retries) and
a circuit breaker for the remote location sink.
"""

from resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenException,
    CircuitState,
)
from resilience.retry import (
    RetryConfig,
    RetryExhaustedException,
    calculate_delay,
    retry_async,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenException",
    "CircuitState",
    "RetryConfig",
    "RetryExhaustedException",
    "calculate_delay",
    "retry_async",
]
