"""
Motion state classification with hysteresis.

The classifier keeps bounded sliding windows of acceleration magnitude
and instantaneous speed. Every ingested sample recomputes the rolling
averages and a tentative state from a threshold table; a tentative state
that differs from the confirmed one only becomes current after it has
held for the applicable confirmation window:

- entering driving: ``driving_confirmation_window`` (30 s)
- leaving driving: ``stopped_confirmation_window`` (2 min); any
  non-driving tentative keeps the same timer running and the latest one
  wins when it fires
- any other change: ``activity_confirmation_window`` (30 s)

A tentative state that reverts to the confirmed state cancels the pending
timer. Sensor faults never change the state; the classifier holds and
falls back to speed-only classification until a valid motion sample
arrives.
"""

import logging
import math
import statistics
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Union

from errors.codes import ErrorCode
from errors.exceptions import require
from signals.geo import derive_speed
from signals.models import MotionSample, MotionState, PositionSample
from signals.ports import EventStream, SignalSource, Subscription
from signals.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


@dataclass
class MotionClassifierConfig:
    """
    Thresholds and windows for motion classification.

    Speed bands (average m/s): below ``stationary_speed_threshold`` is
    stationary, below ``walking_speed_threshold`` walking (running when the
    acceleration variance exceeds ``walking_acceleration_variance``), below
    ``running_speed_threshold`` running, above that cycling. Driving needs
    an average speed strictly above ``driving_speed_threshold`` and, while
    the motion sensor is available, an average acceleration strictly above
    ``driving_acceleration_threshold``.
    """
    window_size: int = 20
    stationary_speed_threshold: float = 1.0
    walking_speed_threshold: float = 2.5
    running_speed_threshold: float = 4.0
    driving_speed_threshold: float = 5.0
    driving_acceleration_threshold: float = 2.0
    walking_acceleration_variance: float = 1.5
    driving_confirmation_window: float = 30.0
    stopped_confirmation_window: float = 120.0
    activity_confirmation_window: float = 30.0

    def __post_init__(self) -> None:
        require(self.window_size >= 1, "window_size", "must be at least 1", self.window_size)
        require(
            0 < self.stationary_speed_threshold < self.walking_speed_threshold
            < self.running_speed_threshold <= self.driving_speed_threshold,
            "speed thresholds",
            "must be positive and strictly increasing from stationary to running, "
            "with driving at or above running",
        )
        require(self.driving_acceleration_threshold >= 0, "driving_acceleration_threshold",
                "must not be negative", self.driving_acceleration_threshold)
        require(self.walking_acceleration_variance >= 0, "walking_acceleration_variance",
                "must not be negative", self.walking_acceleration_variance)
        for name in ("driving_confirmation_window", "stopped_confirmation_window",
                     "activity_confirmation_window"):
            value = getattr(self, name)
            require(value > 0, name, "must be positive", value)

    @property
    def shortest_window(self) -> float:
        return min(
            self.driving_confirmation_window,
            self.stopped_confirmation_window,
            self.activity_confirmation_window,
        )


class MotionClassifier:
    """
    Turns raw motion and position samples into a stable MotionState.

    Args:
        scheduler: Clock and timer port used for confirmation windows
        config: Classification thresholds; defaults when omitted
        motion_source: Optional motion sensor source subscribed on start()
        position_source: Optional position source subscribed on start()
        telemetry: Optional TelemetryService for transition records
    """

    def __init__(
        self,
        scheduler: Scheduler,
        config: Optional[MotionClassifierConfig] = None,
        motion_source: Optional[SignalSource[MotionSample]] = None,
        position_source: Optional[SignalSource[PositionSample]] = None,
        telemetry: Optional[Any] = None,
    ):
        self.config = config or MotionClassifierConfig()
        self._scheduler = scheduler
        self._motion_source = motion_source
        self._position_source = position_source
        self._telemetry = telemetry

        self._accelerations: Deque[float] = deque(maxlen=self.config.window_size)
        self._speeds: Deque[float] = deque(maxlen=self.config.window_size)
        self._last_position: Optional[PositionSample] = None

        self._state = MotionState.UNKNOWN
        self._pending_state: Optional[MotionState] = None
        self._pending_since: Optional[float] = None
        self._pending_timer: Optional[TimerHandle] = None
        self._generation = 0

        self._sensor_available = False
        self._sensor_faults = 0
        self._transition_count = 0
        self._last_transition_at: Optional[float] = None
        self._subscriptions: list[Subscription] = []
        self._stopped = False

        self.on_state_change: EventStream[MotionState] = EventStream("motion.state_change")

    # Lifecycle

    def start(self) -> None:
        """Subscribe to the configured sources."""
        if self._subscriptions or self._stopped:
            return
        if self._motion_source is not None:
            self._subscriptions.append(
                self._motion_source.subscribe(self.ingest, self.report_sensor_fault)
            )
        if self._position_source is not None:
            self._subscriptions.append(self._position_source.subscribe(self.ingest))
        logger.info("Motion classifier started", extra={"extra_data": {
            "window_size": self.config.window_size,
        }})

    def stop(self) -> None:
        """Cancel the pending timer and all subscriptions; later input is ignored."""
        self._stopped = True
        self._cancel_pending()
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()
        self.on_state_change.clear()
        logger.info("Motion classifier stopped")

    # Input

    @property
    def current_state(self) -> MotionState:
        return self._state

    @property
    def pending_state(self) -> Optional[MotionState]:
        return self._pending_state

    @property
    def sensor_available(self) -> bool:
        return self._sensor_available

    def ingest(self, sample: Union[MotionSample, PositionSample]) -> None:
        """Add a motion or position sample and re-evaluate the tentative state."""
        if self._stopped:
            return

        if isinstance(sample, MotionSample):
            if not (math.isfinite(sample.acceleration_magnitude)
                    and math.isfinite(sample.rotation_magnitude)):
                self.report_sensor_fault(ValueError("non-finite motion sample"))
                return
            if not self._sensor_available:
                logger.info("Motion sensor available, using speed and acceleration")
            self._sensor_available = True
            self._accelerations.append(abs(sample.acceleration_magnitude))
        elif isinstance(sample, PositionSample):
            speed = derive_speed(self._last_position, sample)
            self._last_position = sample
            if speed is None or not math.isfinite(speed):
                return
            self._speeds.append(speed)
        else:
            raise TypeError(f"Unsupported sample type: {type(sample).__name__}")

        self._evaluate()

    def report_sensor_fault(self, error: Exception) -> None:
        """Record a motion sensor failure; the confirmed state is held."""
        if self._stopped:
            return
        self._sensor_faults += 1
        self._sensor_available = False
        self._accelerations.clear()
        logger.warning(
            "Motion sensor unavailable, falling back to speed-only classification",
            extra={"extra_data": {
                "error_code": ErrorCode.SENSOR_UNAVAILABLE.value,
                "error": str(error),
                "held_state": self._state.value,
            }},
        )

    # Classification

    def classify(self) -> Optional[MotionState]:
        """
        Tentative state from the current windows, or None when there is
        no speed information yet.
        """
        if not self._speeds:
            return None

        cfg = self.config
        avg_speed = statistics.fmean(self._speeds)
        use_acceleration = self._sensor_available and bool(self._accelerations)
        avg_accel = statistics.fmean(self._accelerations) if use_acceleration else 0.0

        if avg_speed > cfg.driving_speed_threshold:
            if not use_acceleration or avg_accel > cfg.driving_acceleration_threshold:
                return MotionState.DRIVING
        if avg_speed < cfg.stationary_speed_threshold:
            return MotionState.STATIONARY
        if avg_speed < cfg.walking_speed_threshold:
            if use_acceleration and len(self._accelerations) > 1:
                if statistics.pvariance(self._accelerations) > cfg.walking_acceleration_variance:
                    return MotionState.RUNNING
            return MotionState.WALKING
        if avg_speed < cfg.running_speed_threshold:
            return MotionState.RUNNING
        return MotionState.CYCLING

    def _evaluate(self) -> None:
        tentative = self.classify()
        if tentative is None:
            return

        if tentative == self._state:
            if self._pending_state is not None:
                logger.debug(
                    "Tentative state reverted, pending transition cancelled",
                    extra={"extra_data": {
                        "state": self._state.value,
                        "cancelled": self._pending_state.value,
                    }},
                )
            self._cancel_pending()
            return

        if self._state == MotionState.DRIVING:
            if self._pending_state is None:
                self._start_pending(tentative, self.config.stopped_confirmation_window)
            else:
                self._pending_state = tentative
            return

        if tentative == self._pending_state:
            return

        window = (
            self.config.driving_confirmation_window
            if tentative == MotionState.DRIVING
            else self.config.activity_confirmation_window
        )
        self._start_pending(tentative, window)

    def _start_pending(self, state: MotionState, window: float) -> None:
        self._cancel_pending()
        self._generation += 1
        generation = self._generation
        self._pending_state = state
        self._pending_since = self._scheduler.now()
        self._pending_timer = self._scheduler.call_later(
            window, lambda: self._confirm(generation)
        )

    def _cancel_pending(self) -> None:
        if self._pending_timer is not None:
            self._pending_timer.cancel()
        self._pending_timer = None
        self._pending_state = None
        self._pending_since = None
        self._generation += 1

    def _confirm(self, generation: int) -> None:
        if self._stopped or generation != self._generation or self._pending_state is None:
            return

        previous = self._state
        self._state = self._pending_state
        self._pending_timer = None
        self._pending_state = None
        self._pending_since = None
        self._transition_count += 1
        self._last_transition_at = self._scheduler.now()

        if self._telemetry is not None:
            self._telemetry.log_state_transition("motion", previous.value, self._state.value)
        else:
            logger.info(
                "Motion state confirmed: %s -> %s",
                previous.value,
                self._state.value,
            )
        self.on_state_change.emit(self._state)

    # Introspection

    def metrics(self) -> Dict[str, Any]:
        """Snapshot of the classifier state for diagnostics."""
        return {
            "current_state": self._state.value,
            "pending_state": self._pending_state.value if self._pending_state else None,
            "pending_since": self._pending_since,
            "average_speed": statistics.fmean(self._speeds) if self._speeds else None,
            "average_acceleration": (
                statistics.fmean(self._accelerations) if self._accelerations else None
            ),
            "speed_samples": len(self._speeds),
            "acceleration_samples": len(self._accelerations),
            "sensor_available": self._sensor_available,
            "sensor_faults": self._sensor_faults,
            "transition_count": self._transition_count,
            "last_transition_at": self._last_transition_at,
        }
