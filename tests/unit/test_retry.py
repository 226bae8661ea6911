"""
Unit tests for the retry logic implementation.

These tests verify the retry behavior with exponential backoff:
- Successful calls return immediately without retry
- Failed calls are retried up to max_attempts
- Exponential backoff delays are calculated correctly
- RetryExhaustedException is raised when all retries fail
- Only specified exceptions trigger retries
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from resilience.retry import (
    RetryConfig,
    RetryExhaustedException,
    calculate_delay,
    retry_async,
)


@pytest.fixture
def no_sleep():
    """Record requested delays without actually sleeping."""
    delays = []
    original_sleep = asyncio.sleep

    async def mock_sleep(delay):
        delays.append(delay)
        await original_sleep(0)

    with patch("resilience.retry.asyncio.sleep", side_effect=mock_sleep):
        yield delays


class TestRetryConfig:

    def test_default_config(self):
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.initial_delay == 1.0
        assert config.exponential_base == 2.0
        assert config.max_delay is None
        assert config.retryable_exceptions == (Exception,)


class TestCalculateDelay:

    def test_exponential_backoff_default_values(self):
        assert calculate_delay(0, 1.0, 2.0) == 1.0
        assert calculate_delay(1, 1.0, 2.0) == 2.0
        assert calculate_delay(2, 1.0, 2.0) == 4.0

    def test_max_delay_cap(self):
        assert calculate_delay(10, 1.0, 2.0, max_delay=300.0) == 300.0

    def test_max_delay_not_applied_when_below(self):
        assert calculate_delay(2, 1.0, 2.0, max_delay=300.0) == 4.0

    def test_negative_attempt_treated_as_first(self):
        assert calculate_delay(-1, 0.5, 2.0) == 0.5


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_successful_call(self, no_sleep):
        mock_func = AsyncMock(return_value="saved")

        result = await retry_async(mock_func, "session-1", config=RetryConfig())

        assert result == "saved"
        mock_func.assert_called_once_with("session-1")
        assert no_sleep == []

    @pytest.mark.asyncio
    async def test_retry_on_failure(self, no_sleep):
        mock_func = AsyncMock(side_effect=[ConnectionError("down"), "saved"])

        result = await retry_async(mock_func, config=RetryConfig(max_attempts=3))

        assert result == "saved"
        assert mock_func.call_count == 2
        assert no_sleep == [1.0]

    @pytest.mark.asyncio
    async def test_passes_keyword_arguments(self, no_sleep):
        mock_func = AsyncMock(return_value=True)

        await retry_async(mock_func, "a", ttl=30)

        mock_func.assert_called_once_with("a", ttl=30)

    @pytest.mark.asyncio
    async def test_raises_retry_exhausted(self, no_sleep):
        error = ConnectionError("redis unreachable")
        mock_func = AsyncMock(side_effect=error)

        with pytest.raises(RetryExhaustedException) as exc_info:
            await retry_async(
                mock_func,
                config=RetryConfig(max_attempts=3),
                operation_name="persist_driving_session",
            )

        assert mock_func.call_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_exception is error
        assert exc_info.value.operation_name == "persist_driving_session"
        assert "persist_driving_session" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_only_retryable_exceptions_trigger_retry(self, no_sleep):
        mock_func = AsyncMock(side_effect=ValueError("bad session"))
        config = RetryConfig(max_attempts=3, retryable_exceptions=(ConnectionError,))

        with pytest.raises(ValueError):
            await retry_async(mock_func, config=config)

        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_function_name_used_when_no_operation_name(self, no_sleep):
        async def save_session():
            raise ConnectionError("down")

        with pytest.raises(RetryExhaustedException) as exc_info:
            await retry_async(save_session, config=RetryConfig(max_attempts=1))

        assert exc_info.value.operation_name == "save_session"


class TestRetryLogging:

    @pytest.mark.asyncio
    async def test_logs_retries_and_exhaustion(self, no_sleep):
        mock_func = AsyncMock(side_effect=Exception("always fails"))

        with patch("resilience.retry.logger") as mock_logger:
            with pytest.raises(RetryExhaustedException):
                await retry_async(mock_func, config=RetryConfig(max_attempts=3))

            assert mock_logger.warning.call_count == 2
            assert mock_logger.error.call_count == 1


class TestExponentialBackoffTiming:

    @pytest.mark.asyncio
    async def test_delays_increase_exponentially(self, no_sleep):
        mock_func = AsyncMock(side_effect=Exception("fails"))
        config = RetryConfig(max_attempts=4, initial_delay=0.1, exponential_base=2.0)

        with pytest.raises(RetryExhaustedException):
            await retry_async(mock_func, config=config)

        assert no_sleep == [pytest.approx(0.1), pytest.approx(0.2), pytest.approx(0.4)]

    @pytest.mark.asyncio
    async def test_max_delay_caps_backoff(self, no_sleep):
        mock_func = AsyncMock(side_effect=Exception("fails"))
        config = RetryConfig(max_attempts=5, initial_delay=0.1, exponential_base=2.0, max_delay=0.3)

        with pytest.raises(RetryExhaustedException):
            await retry_async(mock_func, config=config)

        assert no_sleep == [
            pytest.approx(0.1),
            pytest.approx(0.2),
            pytest.approx(0.3),
            pytest.approx(0.3),
        ]
