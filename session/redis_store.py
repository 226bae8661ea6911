"""
Redis-backed driving session store.

Sessions are stored as JSON strings under ``driving_session:<id>`` with a
TTL, and their ids are pushed onto a per-identity list
``driving_sessions:<user_ref>`` that is trimmed to ``history_limit``.
"""

import json
from datetime import timedelta
from typing import List, Optional

import redis.asyncio as redis

from driving.session import DrivingSession
from session.store import DrivingSessionStore

DEFAULT_SESSION_TTL = timedelta(days=30)


class RedisDrivingSessionStore(DrivingSessionStore):
    """
    Redis implementation of DrivingSessionStore.

    Attributes:
        redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
        default_ttl: Time-to-live for stored sessions
        history_limit: Session ids kept per tracked identity
        client: Redis async client instance (initialized via connect())
    """

    def __init__(
        self,
        redis_url: str,
        default_ttl: timedelta = DEFAULT_SESSION_TTL,
        history_limit: int = 100,
    ):
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.history_limit = history_limit
        self.client = None

    async def connect(self) -> None:
        """Create the async client; must be called before use."""
        self.client = redis.from_url(self.redis_url, decode_responses=True)

    async def disconnect(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    def _require_client(self):
        if not self.client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self.client

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"driving_session:{session_id}"

    @staticmethod
    def _history_key(user_ref: str) -> str:
        return f"driving_sessions:{user_ref}"

    async def save(self, session: DrivingSession) -> None:
        client = self._require_client()
        ttl_seconds = int(self.default_ttl.total_seconds())
        history_key = self._history_key(session.user_ref)

        async with client.pipeline(transaction=True) as pipe:
            pipe.setex(self._session_key(session.id), ttl_seconds, json.dumps(session.to_dict()))
            pipe.lrem(history_key, 0, session.id)
            pipe.lpush(history_key, session.id)
            pipe.ltrim(history_key, 0, self.history_limit - 1)
            pipe.expire(history_key, ttl_seconds)
            await pipe.execute()

    async def get(self, session_id: str) -> Optional[DrivingSession]:
        client = self._require_client()
        data = await client.get(self._session_key(session_id))
        if data is None:
            return None
        return DrivingSession.from_dict(json.loads(data))

    async def list_recent(self, user_ref: str, limit: int = 20) -> List[DrivingSession]:
        client = self._require_client()
        session_ids = await client.lrange(self._history_key(user_ref), 0, max(limit, 1) - 1)
        if not session_ids:
            return []
        raw = await client.mget([self._session_key(session_id) for session_id in session_ids])
        return [DrivingSession.from_dict(json.loads(item)) for item in raw if item is not None]

    async def health_check(self) -> bool:
        if not self.client:
            return False
        try:
            return await self.client.ping() is True
        except redis.RedisError:
            return False
