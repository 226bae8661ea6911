"""
Storage for finalized driving sessions (in-memory or Redis).
"""

from session.redis_store import DEFAULT_SESSION_TTL, RedisDrivingSessionStore
from session.store import DrivingSessionStore, InMemoryDrivingSessionStore

__all__ = [
    "DEFAULT_SESSION_TTL",
    "DrivingSessionStore",
    "InMemoryDrivingSessionStore",
    "RedisDrivingSessionStore",
]
