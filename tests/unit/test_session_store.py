"""
Unit tests for driving session models and stores.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from driving.session import DrivingEventType, DrivingSession
from session.redis_store import RedisDrivingSessionStore
from session.store import InMemoryDrivingSessionStore
from signals.models import PositionSample


def make_session(session_id="s-1", user_ref="driver-1", **overrides):
    start = PositionSample(37.0, -122.0, 1000.0, speed=5.0, accuracy=4.0)
    end = PositionSample(37.01, -122.0, 1600.0, speed=0.0)
    fields = dict(
        id=session_id,
        user_ref=user_ref,
        start_time=1000.0,
        start_location=start,
        end_time=1600.0,
        end_location=end,
        route=[start, end],
        distance=1112.0,
        max_speed=27.0,
        average_speed=12.5,
        duration=600.0,
        is_active=False,
    )
    fields.update(overrides)
    return DrivingSession(**fields)


class TestDrivingSession:

    def test_round_trips_through_dict(self):
        session = make_session()
        session.record_event(DrivingEventType.HARD_BRAKING)

        restored = DrivingSession.from_dict(json.loads(json.dumps(session.to_dict())))

        assert restored == session

    def test_to_dict_without_route(self):
        data = make_session().to_dict(include_route=False)
        assert "route" not in data
        assert data["route_points"] == 2

    def test_driving_score_deductions(self):
        session = make_session(max_speed=27.0)
        session.record_event(DrivingEventType.HARD_BRAKING)
        session.record_event(DrivingEventType.SPEEDING)
        session.record_event(DrivingEventType.RAPID_ACCELERATION)

        # 100 - 10 (max speed) - 5 - 5 - 3
        assert session.driving_score == 77

    def test_driving_score_never_negative(self):
        session = make_session(event_counts={"hard_braking": 50})
        assert session.driving_score == 0

    def test_formatting(self):
        session = make_session(duration=3900.0, distance=850.0, max_speed=10.0)
        assert session.formatted_duration == "1h 5m"
        assert session.formatted_distance == "850m"
        assert session.formatted_max_speed == "36 km/h"
        assert make_session(distance=12345.0).formatted_distance == "12.3km"
        assert make_session(duration=None).formatted_duration == "Unknown"


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_save_and_get(self):
        store = InMemoryDrivingSessionStore()
        await store.save(make_session())

        saved = await store.get("s-1")

        assert saved == make_session()
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_saving_same_id_overwrites(self):
        store = InMemoryDrivingSessionStore()
        await store.save(make_session(distance=1.0))
        await store.save(make_session(distance=2.0))

        assert len(store) == 1
        assert (await store.get("s-1")).distance == 2.0

    @pytest.mark.asyncio
    async def test_list_recent_newest_first_per_identity(self):
        store = InMemoryDrivingSessionStore()
        await store.save(make_session("a"))
        await store.save(make_session("other", user_ref="driver-2"))
        await store.save(make_session("b"))
        await store.save(make_session("c"))

        recent = await store.list_recent("driver-1", limit=2)

        assert [s.id for s in recent] == ["c", "b"]

    @pytest.mark.asyncio
    async def test_bounded_capacity(self):
        store = InMemoryDrivingSessionStore(max_sessions=2)
        for session_id in ("a", "b", "c"):
            await store.save(make_session(session_id))

        assert len(store) == 2
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_stored_copy_is_isolated(self):
        store = InMemoryDrivingSessionStore()
        session = make_session()
        await store.save(session)
        session.route.append(PositionSample(0.0, 0.0, 0.0))

        assert len((await store.get("s-1")).route) == 2


class TestRedisStore:

    @pytest.fixture
    def pipe(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[])
        return pipe

    @pytest.fixture
    def store(self, mock_redis, pipe):
        mock_redis.pipeline = MagicMock()
        mock_redis.pipeline.return_value.__aenter__.return_value = pipe
        store = RedisDrivingSessionStore("redis://localhost:6379/0", default_ttl=timedelta(days=1))
        store.client = mock_redis
        return store

    @pytest.mark.asyncio
    async def test_save_writes_session_and_history(self, store, pipe):
        await store.save(make_session())

        key, ttl, payload = pipe.setex.call_args.args
        assert key == "driving_session:s-1"
        assert ttl == 86400
        assert json.loads(payload)["id"] == "s-1"
        pipe.lpush.assert_called_once_with("driving_sessions:driver-1", "s-1")
        pipe.ltrim.assert_called_once_with("driving_sessions:driver-1", 0, 99)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_decodes_session(self, store, mock_redis):
        mock_redis.get.return_value = json.dumps(make_session().to_dict())

        session = await store.get("s-1")

        mock_redis.get.assert_awaited_once_with("driving_session:s-1")
        assert session == make_session()

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_recent_skips_expired_entries(self, store, mock_redis):
        mock_redis.lrange.return_value = ["b", "a"]
        mock_redis.mget.return_value = [json.dumps(make_session("b").to_dict()), None]

        sessions = await store.list_recent("driver-1", limit=5)

        mock_redis.lrange.assert_awaited_once_with("driving_sessions:driver-1", 0, 4)
        assert [s.id for s in sessions] == ["b"]

    @pytest.mark.asyncio
    async def test_health_check(self, store, mock_redis):
        assert await store.health_check() is True

        mock_redis.ping.side_effect = redis.ConnectionError("refused")
        assert await store.health_check() is False

    @pytest.mark.asyncio
    async def test_requires_connect(self):
        store = RedisDrivingSessionStore("redis://localhost:6379/0")
        with pytest.raises(RuntimeError):
            await store.get("s-1")
        assert await store.health_check() is False

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, store, mock_redis):
        await store.disconnect()
        mock_redis.aclose.assert_awaited_once()
        assert store.client is None
