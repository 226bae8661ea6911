"""
Retry logic with exponential backoff.

calculate_delay is the single backoff formula of the engine: the sync
pipeline derives its post-failure cooldown from it, and retry_async
applies it between attempts when persisting finalized driving sessions.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Total number of attempts, including the first call.
        initial_delay: Delay before the first retry in seconds.
        exponential_base: Base for exponential backoff (delays 1s, 2s, 4s
            with the defaults).
        max_delay: Maximum delay between retries in seconds, or None.
        retryable_exceptions: Exception types that trigger a retry.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    exponential_base: float = 2.0
    max_delay: Optional[float] = None
    retryable_exceptions: Tuple[Type[Exception], ...] = field(
        default_factory=lambda: (Exception,)
    )


class RetryExhaustedException(Exception):
    """
    Raised when all retry attempts have been exhausted.

    Wraps the last exception so callers can log the underlying cause.
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        last_exception: Exception,
        operation_name: Optional[str] = None
    ):
        self.attempts = attempts
        self.last_exception = last_exception
        self.operation_name = operation_name
        super().__init__(message)


def calculate_delay(
    attempt: int,
    initial_delay: float,
    exponential_base: float,
    max_delay: Optional[float] = None
) -> float:
    """
    Calculate the delay for a given attempt using exponential backoff.

    The delay is ``initial_delay * exponential_base ** attempt``, capped
    at ``max_delay`` when one is given. Negative attempts are treated as 0.

    Args:
        attempt: The current attempt number (0-indexed)
        initial_delay: The initial delay in seconds
        exponential_base: The base for exponential calculation
        max_delay: Optional maximum delay cap

    Returns:
        The calculated delay in seconds
    """
    delay = initial_delay * (exponential_base ** max(attempt, 0))

    if max_delay is not None:
        delay = min(delay, max_delay)

    return delay


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    operation_name: Optional[str] = None,
    **kwargs: Any
) -> T:
    """
    Execute an async function with retry logic.

    Example usage:
        await retry_async(
            store.save,
            session,
            config=RetryConfig(max_attempts=3, initial_delay=0.5),
            operation_name="persist_driving_session"
        )

    Args:
        func: The async function to execute
        *args: Positional arguments to pass to the function
        config: Optional RetryConfig object with retry settings
        operation_name: Optional name for logging purposes
        **kwargs: Keyword arguments to pass to the function

    Returns:
        The result of the function call

    Raises:
        RetryExhaustedException: When all retry attempts are exhausted
    """
    effective_config = config or RetryConfig()
    op_name = operation_name or getattr(func, "__name__", "operation")
    last_exception: Optional[Exception] = None

    for attempt in range(effective_config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except effective_config.retryable_exceptions as e:
            last_exception = e

            if attempt == effective_config.max_attempts - 1:
                logger.error(
                    "Retry exhausted for operation '%s' after %d attempts",
                    op_name,
                    effective_config.max_attempts,
                    extra={
                        "extra_data": {
                            "operation": op_name,
                            "attempts": effective_config.max_attempts,
                            "last_error": str(e),
                            "error_type": type(e).__name__,
                        }
                    }
                )
                raise RetryExhaustedException(
                    f"Operation '{op_name}' failed after {effective_config.max_attempts} attempts",
                    attempts=effective_config.max_attempts,
                    last_exception=e,
                    operation_name=op_name
                ) from e

            delay = calculate_delay(
                attempt,
                effective_config.initial_delay,
                effective_config.exponential_base,
                effective_config.max_delay
            )

            logger.warning(
                "Retry attempt %d/%d for operation '%s' failed with %s, retrying in %.2fs",
                attempt + 1,
                effective_config.max_attempts,
                op_name,
                type(e).__name__,
                delay,
                extra={
                    "extra_data": {
                        "operation": op_name,
                        "attempt": attempt + 1,
                        "delay_seconds": delay,
                        "error_message": str(e),
                    }
                }
            )

            await asyncio.sleep(delay)

    raise RetryExhaustedException(
        f"Operation '{op_name}' made no attempts",
        attempts=0,
        last_exception=last_exception or ValueError("max_attempts must be positive"),
        operation_name=op_name
    )
