"""
Driving session lifecycle and discrete driving events.

The tracker is idle until the motion classifier confirms a transition
into driving, and active until it confirms a transition out of it. While
active, every position sample extends the route (haversine distance, max
speed) and runs the speed-delta detectors; sustained gyroscope rotation
emits one turning event per episode. Finalized sessions are handed to the
session store in the background with bounded retries.
"""

import asyncio
import logging
import statistics
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from errors.codes import ErrorCode
from errors.exceptions import require
from resilience.retry import RetryConfig, RetryExhaustedException, retry_async
from driving.session import DrivingEvent, DrivingEventType, DrivingSession, DrivingStateChange
from signals.geo import derive_speed, distance_between
from signals.models import MotionSample, MotionState, PositionSample
from signals.ports import EventStream, SignalSource, Subscription
from signals.scheduler import Scheduler

if TYPE_CHECKING:
    from session.store import DrivingSessionStore

logger = logging.getLogger(__name__)


class AverageSpeedMode(str, Enum):
    ROUTE = "route"
    RECENT_WINDOW = "recent_window"


@dataclass
class DrivingConfig:
    """
    Driving event thresholds and session settings.

    Attributes:
        user_ref: Identity recorded on every session
        hard_braking_threshold: Speed drop between consecutive fixes (m/s)
        rapid_acceleration_threshold: Speed gain between consecutive fixes (m/s)
        speeding_threshold: Speed above which a speeding episode starts (m/s)
        turn_rotation_threshold: Gyroscope magnitude for a turn (rad/s)
        turn_min_duration: Seconds the rotation must be sustained
        average_speed_mode: ROUTE averages every route speed, RECENT_WINDOW
            only the last ``recent_window_size`` speeds
        recent_window_size: Window for RECENT_WINDOW averaging
        persist_max_attempts: Session store attempts per finalized session
        persist_initial_delay: First retry delay for the session store (s)
        shutdown_grace_period: Seconds stop() waits for pending persistence
    """
    user_ref: str = "default"
    hard_braking_threshold: float = 3.0
    rapid_acceleration_threshold: float = 3.0
    speeding_threshold: float = 30.0
    turn_rotation_threshold: float = 0.5
    turn_min_duration: float = 1.0
    average_speed_mode: AverageSpeedMode = AverageSpeedMode.ROUTE
    recent_window_size: int = 20
    persist_max_attempts: int = 3
    persist_initial_delay: float = 1.0
    shutdown_grace_period: float = 5.0

    def __post_init__(self) -> None:
        require(bool(self.user_ref), "user_ref", "must not be empty")
        for name in ("hard_braking_threshold", "rapid_acceleration_threshold",
                     "speeding_threshold", "turn_rotation_threshold"):
            value = getattr(self, name)
            require(value > 0, name, "must be positive", value)
        require(self.turn_min_duration >= 0, "turn_min_duration", "must not be negative",
                self.turn_min_duration)
        require(self.recent_window_size >= 1, "recent_window_size", "must be at least 1",
                self.recent_window_size)
        require(self.persist_max_attempts >= 1, "persist_max_attempts", "must be at least 1",
                self.persist_max_attempts)
        require(self.persist_initial_delay >= 0, "persist_initial_delay", "must not be negative",
                self.persist_initial_delay)
        require(self.shutdown_grace_period >= 0, "shutdown_grace_period", "must not be negative",
                self.shutdown_grace_period)


class DrivingSessionTracker:
    """
    Idle/Active state machine driven by confirmed motion transitions.

    Args:
        scheduler: Clock port for session timestamps
        motion_state_stream: Confirmed motion states (MotionClassifier.on_state_change)
        position_source: Optional position source subscribed on start()
        motion_source: Optional motion sensor source for turn detection
        store: Optional session store for finalized sessions
        config: Thresholds; defaults when omitted
        telemetry: Optional TelemetryService
        id_factory: Session id generator
    """

    def __init__(
        self,
        scheduler: Scheduler,
        motion_state_stream: Optional[EventStream[MotionState]] = None,
        position_source: Optional[SignalSource[PositionSample]] = None,
        motion_source: Optional[SignalSource[MotionSample]] = None,
        store: Optional["DrivingSessionStore"] = None,
        config: Optional[DrivingConfig] = None,
        telemetry: Optional[Any] = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.config = config or DrivingConfig()
        self._scheduler = scheduler
        self._motion_state_stream = motion_state_stream
        self._position_source = position_source
        self._motion_source = motion_source
        self._store = store
        self._telemetry = telemetry
        self._id_factory = id_factory

        self._session: Optional[DrivingSession] = None
        self._speeds: List[float] = []
        self._previous_speed: Optional[float] = None
        self._last_position: Optional[PositionSample] = None
        self._speeding = False
        self._turn_started_at: Optional[float] = None
        self._turn_emitted = False

        self._persist_tasks: Set[asyncio.Task] = set()
        self._subscriptions: List[Subscription] = []
        self._stopped = False

        self._sessions_started = 0
        self._sessions_completed = 0
        self._sessions_persisted = 0
        self._rejected_positions = 0
        self._persistence_failures = 0
        self._events_by_type: Dict[str, int] = {}

        self.on_driving_event: EventStream[DrivingEvent] = EventStream("driving.event")
        self.on_driving_state_changed: EventStream[DrivingStateChange] = EventStream(
            "driving.state_changed"
        )

    # Lifecycle

    def start(self) -> None:
        if self._subscriptions or self._stopped:
            return
        if self._motion_state_stream is not None:
            self._subscriptions.append(self._motion_state_stream.subscribe(self.on_motion_state))
        if self._position_source is not None:
            self._subscriptions.append(self._position_source.subscribe(self.on_position))
        if self._motion_source is not None:
            self._subscriptions.append(self._motion_source.subscribe(self.on_motion_sample))
        logger.info("Driving session tracker started", extra={"extra_data": {
            "user_ref": self.config.user_ref,
        }})

    async def stop(self) -> None:
        """
        Finalize an active session, detach from all streams and give
        pending persistence a short grace period before cancelling it.
        """
        if self._stopped:
            return
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

        if self._session is not None:
            self.end_session()
        self._stopped = True

        pending = set(self._persist_tasks)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.config.shutdown_grace_period)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.wait(still_running)
                logger.warning("Pending session persistence cancelled on shutdown", extra={"extra_data": {
                    "error_code": ErrorCode.PERSISTENCE_FAILURE.value,
                    "cancelled": len(still_running),
                }})

        self.on_driving_event.clear()
        self.on_driving_state_changed.clear()
        logger.info("Driving session tracker stopped")

    # State

    @property
    def is_active(self) -> bool:
        return self._session is not None

    @property
    def current_session(self) -> Optional[DrivingSession]:
        return self._session.snapshot() if self._session else None

    def on_motion_state(self, state: MotionState) -> None:
        if self._stopped:
            return
        if state == MotionState.DRIVING and self._session is None:
            self.start_session()
        elif state != MotionState.DRIVING and self._session is not None:
            self.end_session()

    def start_session(self) -> DrivingSession:
        """Open a session at the latest position; a no-op while one is active."""
        if self._session is not None:
            return self._session.snapshot()

        now = self._scheduler.now()
        start = self._last_position
        self._session = DrivingSession(
            id=self._id_factory(),
            user_ref=self.config.user_ref,
            start_time=now,
            start_location=start,
            route=[start] if start is not None else [],
            max_speed=start.speed if start is not None and start.speed is not None else 0.0,
        )
        self._speeds = [start.speed] if start is not None and start.speed is not None else []
        self._previous_speed = start.speed if start is not None else None
        self._speeding = False
        self._reset_turn()
        self._sessions_started += 1

        snapshot = self._session.snapshot()
        if self._telemetry is not None:
            self._telemetry.log_state_transition("driving", "idle", "active", {"session_id": snapshot.id})
        else:
            logger.info("Driving session started", extra={"extra_data": {"session_id": snapshot.id}})

        self.on_driving_state_changed.emit(DrivingStateChange(True, snapshot))
        self._emit(DrivingEventType.DRIVING_STARTED, start, {})
        return snapshot

    def end_session(self) -> Optional[DrivingSession]:
        """Finalize the active session and hand it to the store."""
        session = self._session
        if session is None:
            return None

        end_time = max(self._scheduler.now(), session.start_time)
        session.end_time = end_time
        session.end_location = session.route[-1] if session.route else self._last_position
        session.duration = end_time - session.start_time
        session.average_speed = self._average_speed()
        session.is_active = False

        snapshot = session.snapshot()
        self._emit(DrivingEventType.DRIVING_STOPPED, session.end_location, {
            "duration": snapshot.duration,
            "distance": snapshot.distance,
            "average_speed": snapshot.average_speed,
            "max_speed": snapshot.max_speed,
        })
        self._session = None
        self._speeds = []
        self._previous_speed = None
        self._sessions_completed += 1

        if self._telemetry is not None:
            self._telemetry.log_state_transition("driving", "active", "idle", {
                "session_id": snapshot.id,
                "distance": snapshot.distance,
                "duration": snapshot.duration,
            })
        else:
            logger.info("Driving session ended", extra={"extra_data": {
                "session_id": snapshot.id,
                "distance": snapshot.distance,
                "duration": snapshot.duration,
            }})

        self.on_driving_state_changed.emit(DrivingStateChange(False, snapshot))
        self._schedule_persist(snapshot)
        return snapshot

    def _average_speed(self) -> float:
        speeds = self._speeds
        if self.config.average_speed_mode == AverageSpeedMode.RECENT_WINDOW:
            speeds = speeds[-self.config.recent_window_size:]
        return statistics.fmean(speeds) if speeds else 0.0

    # Samples

    def on_position(self, sample: PositionSample) -> None:
        if self._stopped:
            return
        if not sample.is_finite:
            self._rejected_positions += 1
            logger.warning("Non-finite position fix ignored", extra={"extra_data": {
                "error_code": ErrorCode.SIGNAL_UNAVAILABLE.value,
                "sample": sample.to_dict(),
            }})
            return
        speed = derive_speed(self._last_position, sample)
        if sample.speed is None and speed is not None:
            sample = replace(sample, speed=speed)
        self._last_position = sample

        session = self._session
        if session is None:
            return

        if session.route:
            session.distance += distance_between(session.route[-1], sample)
        session.route.append(sample)
        if speed is None:
            return

        session.max_speed = max(session.max_speed, speed)
        self._speeds.append(speed)
        self._detect_speed_events(sample, speed)
        self._previous_speed = speed

    def _detect_speed_events(self, sample: PositionSample, speed: float) -> None:
        cfg = self.config
        previous = self._previous_speed
        if previous is not None:
            delta = speed - previous
            if delta <= -cfg.hard_braking_threshold:
                self._emit(DrivingEventType.HARD_BRAKING, sample, {
                    "speed": speed,
                    "previous_speed": previous,
                    "deceleration": abs(delta),
                })
            elif delta >= cfg.rapid_acceleration_threshold:
                self._emit(DrivingEventType.RAPID_ACCELERATION, sample, {
                    "speed": speed,
                    "previous_speed": previous,
                    "acceleration": delta,
                })

        if speed > cfg.speeding_threshold:
            if not self._speeding:
                self._speeding = True
                self._emit(DrivingEventType.SPEEDING, sample, {
                    "speed": speed,
                    "speed_kmh": speed * 3.6,
                })
        else:
            self._speeding = False

    def on_motion_sample(self, sample: MotionSample) -> None:
        if self._stopped or self._session is None:
            return
        if sample.rotation_magnitude <= self.config.turn_rotation_threshold:
            self._reset_turn()
            return
        if self._turn_started_at is None:
            self._turn_started_at = sample.timestamp
        sustained = sample.timestamp - self._turn_started_at
        if not self._turn_emitted and sustained >= self.config.turn_min_duration:
            self._turn_emitted = True
            self._emit(DrivingEventType.TURNING, self._last_position, {
                "rotation": sample.rotation_magnitude,
                "duration": sustained,
            })

    def _reset_turn(self) -> None:
        self._turn_started_at = None
        self._turn_emitted = False

    def _emit(self, event_type: DrivingEventType, location: Optional[PositionSample], metrics: Dict[str, float]) -> None:
        session = self._session
        if session is None:
            return
        if event_type not in (DrivingEventType.DRIVING_STARTED, DrivingEventType.DRIVING_STOPPED):
            session.record_event(event_type)
        self._events_by_type[event_type.value] = self._events_by_type.get(event_type.value, 0) + 1

        event = DrivingEvent(
            event_type=event_type,
            session_id=session.id,
            timestamp=self._scheduler.now(),
            location=location,
            metrics=metrics,
        )
        logger.debug("Driving event: %s", event_type.value, extra={"extra_data": event.to_dict()})
        self.on_driving_event.emit(event)

    # Persistence

    def _schedule_persist(self, session: DrivingSession) -> None:
        if self._store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._persistence_failures += 1
            logger.error("No running event loop, driving session not persisted", extra={"extra_data": {
                "error_code": ErrorCode.PERSISTENCE_FAILURE.value,
                "session_id": session.id,
            }})
            return
        task = loop.create_task(self._persist(session))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _persist(self, session: DrivingSession) -> None:
        retry_config = RetryConfig(
            max_attempts=self.config.persist_max_attempts,
            initial_delay=self.config.persist_initial_delay,
        )
        try:
            await retry_async(
                self._store.save,
                session,
                config=retry_config,
                operation_name="persist_driving_session",
            )
        except RetryExhaustedException as e:
            self._persistence_failures += 1
            logger.error("Driving session could not be persisted", extra={"extra_data": {
                "error_code": ErrorCode.PERSISTENCE_FAILURE.value,
                "session_id": session.id,
                "attempts": e.attempts,
                "error": str(e.last_exception),
            }})
            return
        self._sessions_persisted += 1
        logger.info("Driving session persisted", extra={"extra_data": {"session_id": session.id}})

    async def wait_for_persistence(self) -> None:
        if self._persist_tasks:
            await asyncio.wait(set(self._persist_tasks))

    def statistics(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_active,
            "active_session_id": self._session.id if self._session else None,
            "sessions_started": self._sessions_started,
            "sessions_completed": self._sessions_completed,
            "sessions_persisted": self._sessions_persisted,
            "persistence_failures": self._persistence_failures,
            "rejected_positions": self._rejected_positions,
            "pending_persistence": len(self._persist_tasks),
            "events_by_type": dict(self._events_by_type),
        }
