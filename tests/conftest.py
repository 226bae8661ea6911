"""
Shared pytest fixtures and configuration for all tests.
"""
import os
from typing import Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Hypothesis configuration for property-based testing
from hypothesis import settings, Verbosity, Phase

from signals.models import PositionSample
from tests.fakes import ManualScheduler

# Default profile: balanced for local development
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,
    print_blob=True,
)

# CI profile: more thorough testing for continuous integration
settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    derandomize=True,
)

# Debug profile: minimal examples for quick debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],
)

# Fast profile: quick smoke tests
settings.register_profile(
    "fast",
    max_examples=20,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


@pytest.fixture
def scheduler() -> ManualScheduler:
    """Manual clock starting at a fixed POSIX time."""
    return ManualScheduler()


@pytest.fixture
def make_position(scheduler: ManualScheduler) -> Callable[..., PositionSample]:
    """Build position samples stamped with the scheduler's current time."""
    def _make(latitude: float = 37.7749, longitude: float = -122.4194,
              speed: Optional[float] = None, accuracy: Optional[float] = 5.0) -> PositionSample:
        return PositionSample(
            latitude=latitude,
            longitude=longitude,
            timestamp=scheduler.now(),
            speed=speed,
            accuracy=accuracy,
        )
    return _make


@pytest.fixture
def mock_elasticsearch() -> MagicMock:
    """Mock synchronous Elasticsearch client."""
    mock = MagicMock()
    mock.ping = MagicMock(return_value=True)
    mock.indices.exists = MagicMock(return_value=True)
    return mock


@pytest.fixture
def mock_redis() -> MagicMock:
    """Mock async Redis client."""
    mock = MagicMock()
    mock.get = AsyncMock(return_value=None)
    mock.mget = AsyncMock(return_value=[])
    mock.lrange = AsyncMock(return_value=[])
    mock.ping = AsyncMock(return_value=True)
    mock.aclose = AsyncMock()
    return mock
