"""
Integration test configuration and fixtures.

The FastAPI application runs in-process with its lifespan, so a real
TrackingEngine is built and started for every test. Delivery goes to an
in-memory transmitter and sessions to an in-memory store unless a test
swaps in a mock.
"""

import os
from typing import Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from main import create_app
from session.store import InMemoryDrivingSessionStore
from sync.transport import InMemoryTransmitter


@pytest.fixture
def test_settings() -> Settings:
    """Development settings independent of the caller's environment and .env files."""
    with patch.dict(os.environ, {}, clear=True):
        return Settings(_env_file=None, sync_interval=3600.0)


@pytest.fixture
def transmitter() -> InMemoryTransmitter:
    return InMemoryTransmitter()


@pytest.fixture
def session_store() -> InMemoryDrivingSessionStore:
    return InMemoryDrivingSessionStore()


@pytest.fixture
def app(test_settings, transmitter, session_store):
    return create_app(
        test_settings,
        transmitter=transmitter,
        session_store=session_store,
        configure_logging=False,
    )


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Client with the lifespan running; the engine stops when the block exits."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def position_payload():
    return {
        "latitude": 37.7749,
        "longitude": -122.4194,
        "timestamp": "2024-01-01T12:00:00Z",
        "speed": 0.5,
        "accuracy_meters": 5.0,
    }
