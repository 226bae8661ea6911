"""
Unit tests for the circuit breaker implementation.

These tests verify the circuit breaker state machine behavior:
- CLOSED -> OPEN after failure threshold
- OPEN -> HALF_OPEN after recovery timeout
- HALF_OPEN -> CLOSED on success
- HALF_OPEN -> OPEN on failure
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenException,
    CircuitState,
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


async def trip(breaker, times):
    failing = AsyncMock(side_effect=ConnectionError("sink down"))
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)


class TestCircuitBreakerConfig:
    """Tests for CircuitBreakerConfig defaults and customization."""

    def test_default_config(self):
        config = CircuitBreakerConfig()

        assert config.failure_threshold == 3
        assert config.recovery_timeout == 30.0
        assert config.half_open_max_calls == 1

    def test_custom_config(self):
        config = CircuitBreakerConfig(
            failure_threshold=5,
            recovery_timeout=60.0,
            half_open_max_calls=2
        )

        assert config.failure_threshold == 5
        assert config.recovery_timeout == 60.0
        assert config.half_open_max_calls == 2


class TestCircuitBreakerClosedState:

    def test_initial_state_is_closed(self):
        breaker = CircuitBreaker("elasticsearch")

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.name == "elasticsearch"

    @pytest.mark.asyncio
    async def test_successful_call_in_closed_state(self):
        breaker = CircuitBreaker("test")
        mock_func = AsyncMock(return_value="success")

        result = await breaker.execute(mock_func, "arg", key="value")

        assert result == "success"
        mock_func.assert_called_once_with("arg", key="value")

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("test")
        await trip(breaker, 2)
        assert breaker.failure_count == 2

        await breaker.execute(AsyncMock(return_value=True))

        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_threshold_failures(self, clock):
        breaker = CircuitBreaker("test", clock=clock)

        await trip(breaker, 3)

        assert breaker.state == CircuitState.OPEN


class TestCircuitBreakerOpenState:

    @pytest.mark.asyncio
    async def test_rejects_calls_when_open(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await trip(breaker, 3)
        mock_func = AsyncMock()

        with pytest.raises(CircuitOpenException) as exc_info:
            await breaker.execute(mock_func)

        mock_func.assert_not_called()
        assert exc_info.value.circuit_name == "test"

    @pytest.mark.asyncio
    async def test_circuit_open_exception_includes_retry_time(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await trip(breaker, 3)
        clock.now += 10.0

        with pytest.raises(CircuitOpenException) as exc_info:
            await breaker.execute(AsyncMock())

        assert exc_info.value.time_until_retry == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_transitions_to_half_open_after_timeout(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await trip(breaker, 3)
        clock.now += 30.0

        result = await breaker.execute(AsyncMock(return_value="trial"))

        assert result == "trial"
        assert breaker.state == CircuitState.CLOSED


class TestCircuitBreakerHalfOpenState:

    @pytest.mark.asyncio
    async def test_allows_single_trial_request(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await trip(breaker, 3)
        clock.now += 31.0

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.execute(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenException):
            await breaker.execute(AsyncMock())

        release.set()
        assert await trial == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reopens_on_failed_trial(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await trip(breaker, 3)
        clock.now += 31.0

        await trip(breaker, 1)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenException):
            await breaker.execute(AsyncMock())


class TestCircuitBreakerReset:

    @pytest.mark.asyncio
    async def test_manual_reset_closes_circuit(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        await trip(breaker, 3)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert await breaker.execute(AsyncMock(return_value=1)) == 1


class TestCircuitOpenException:

    def test_exception_message_includes_circuit_name(self):
        exc = CircuitOpenException("elasticsearch")
        assert "elasticsearch" in str(exc)

    def test_exception_message_includes_retry_time(self):
        exc = CircuitOpenException("elasticsearch", time_until_retry=15.7)
        assert "retry in 15 seconds" in str(exc)

    def test_exception_without_retry_time(self):
        exc = CircuitOpenException("elasticsearch")
        assert exc.time_until_retry is None
        assert "retry in" not in str(exc)


class TestCircuitBreakerRepr:

    def test_repr_includes_name_and_state(self):
        breaker = CircuitBreaker("elasticsearch")
        assert repr(breaker) == "CircuitBreaker(name='elasticsearch', state=closed, failure_count=0)"


class TestCircuitBreakerConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_failures_open_circuit(self, clock):
        breaker = CircuitBreaker("test", clock=clock)
        failing = AsyncMock(side_effect=ConnectionError("down"))

        results = await asyncio.gather(
            *[breaker.execute(failing) for _ in range(5)],
            return_exceptions=True
        )

        assert all(isinstance(r, (ConnectionError, CircuitOpenException)) for r in results)
        assert breaker.state == CircuitState.OPEN
