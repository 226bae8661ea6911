"""
Circuit breaker protecting calls to the remote location sink.

States:
- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls are rejected with CircuitOpenException until the recovery
  timeout elapses
- HALF_OPEN: a limited number of trial calls decide between CLOSED and OPEN

The sync pipeline treats CircuitOpenException as a transient delivery
failure, so an open circuit feeds the normal retry/cooldown path.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """
    Configuration for a circuit breaker.

    Attributes:
        failure_threshold: Consecutive failures before the circuit opens.
        recovery_timeout: Seconds to wait in OPEN before probing.
        half_open_max_calls: Trial calls allowed while HALF_OPEN.
    """
    failure_threshold: int = 3
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 1


class CircuitOpenException(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, circuit_name: str, time_until_retry: Optional[float] = None):
        self.circuit_name = circuit_name
        self.time_until_retry = time_until_retry

        message = f"Circuit breaker '{circuit_name}' is open"
        if time_until_retry is not None:
            message += f", retry in {int(time_until_retry)} seconds"

        super().__init__(message)


class CircuitBreaker:
    """
    Circuit breaker for async calls.

    Example:
        breaker = CircuitBreaker("elasticsearch")
        outcome = await breaker.execute(transmitter.send_bulk, actions)

    Args:
        name: A descriptive name for this circuit breaker
        config: Configuration options. Uses defaults if not provided.
        clock: Monotonic time source in seconds
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _time_until_retry(self) -> Optional[float]:
        if self._opened_at is None:
            return None
        remaining = self.config.recovery_timeout - (self._clock() - self._opened_at)
        return remaining if remaining > 0 else None

    def _on_success(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_calls = 0
        self._opened_at = None

    def _on_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._half_open_calls = 0
            self._opened_at = self._clock()
            return

        self._failure_count += 1
        if self._failure_count >= self.config.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any
    ) -> T:
        """
        Execute ``func`` with circuit breaker protection.

        Raises:
            CircuitOpenException: If the circuit is open and the recovery
                timeout has not elapsed, or the trial budget is used up
            Exception: Any exception raised by the underlying function
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if self._time_until_retry() is None:
                    self._state = CircuitState.HALF_OPEN
                    self._half_open_calls = 0
                else:
                    raise CircuitOpenException(self.name, self._time_until_retry())

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    raise CircuitOpenException(self.name, self._time_until_retry())
                self._half_open_calls += 1

        try:
            result = await func(*args, **kwargs)
        except Exception:
            async with self._lock:
                self._on_failure()
            raise

        async with self._lock:
            self._on_success()
        return result

    def reset(self) -> None:
        """Force the circuit back to CLOSED."""
        self._on_success()

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failure_count={self._failure_count})"
        )
