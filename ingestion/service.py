"""
Signal ingestion for the tracking engine.

Validated payloads for position fixes, motion sensor readings,
connectivity, battery and app lifecycle changes are converted into signal
models and pushed into the engine's in-process sources. Malformed
payloads are rejected by pydantic before reaching the engine (400 via the
validation handler); a stopped engine rejects every signal with
ENGINE_NOT_RUNNING.
"""

import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from pydantic import BaseModel, Field, FiniteFloat, field_validator, model_validator

from errors.exceptions import engine_not_running
from signals.models import (
    AppState,
    BatteryReading,
    ConnectivityState,
    MotionSample,
    NetworkCost,
    NetworkQuality,
    PositionSample,
    ThermalState,
    TransportType,
)

if TYPE_CHECKING:
    from engine.orchestrator import TrackingEngine


logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 1000


def to_epoch_seconds(value: Optional[datetime]) -> float:
    """POSIX seconds for ``value``; naive datetimes are taken as UTC, None as now."""
    if value is None:
        return time.time()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


class PositionUpdate(BaseModel):
    """
    One location fix.

    Attributes:
        latitude: Degrees (-90 to 90); NaN and infinities are rejected
        longitude: Degrees (-180 to 180)
        timestamp: Time of the fix; defaults to the time of receipt
        speed: Optional reported speed in m/s
        accuracy_meters: Optional horizontal accuracy
    """

    latitude: FiniteFloat
    longitude: FiniteFloat
    timestamp: Optional[datetime] = None
    speed: Optional[FiniteFloat] = None
    accuracy_meters: Optional[FiniteFloat] = None

    @field_validator("latitude")
    @classmethod
    def validate_latitude(cls, v: float) -> float:
        if v < -90 or v > 90:
            raise ValueError(f"latitude must be between -90 and 90, got {v}")
        return v

    @field_validator("longitude")
    @classmethod
    def validate_longitude(cls, v: float) -> float:
        if v < -180 or v > 180:
            raise ValueError(f"longitude must be between -180 and 180, got {v}")
        return v

    @field_validator("speed")
    @classmethod
    def validate_speed(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and (v < 0 or v > 150):
            raise ValueError(f"speed must be between 0 and 150 m/s, got {v}")
        return v

    @field_validator("accuracy_meters")
    @classmethod
    def validate_accuracy(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError(f"accuracy_meters cannot be negative, got {v}")
        return v

    def to_sample(self) -> PositionSample:
        return PositionSample(
            latitude=self.latitude,
            longitude=self.longitude,
            timestamp=to_epoch_seconds(self.timestamp),
            speed=self.speed,
            accuracy=self.accuracy_meters,
        )


class BatchPositionUpdate(BaseModel):
    """Positions in arrival order."""

    updates: List[PositionUpdate]

    @field_validator("updates")
    @classmethod
    def validate_updates(cls, v: List[PositionUpdate]) -> List[PositionUpdate]:
        if not v:
            raise ValueError("updates list cannot be empty")
        if len(v) > MAX_BATCH_SIZE:
            raise ValueError(f"batch cannot exceed {MAX_BATCH_SIZE} updates")
        return v


class MotionUpdate(BaseModel):
    """
    Motion sensor reading, or a report that the sensor failed.

    Either both magnitudes or ``sensor_error`` must be given.
    """

    acceleration_magnitude: Optional[FiniteFloat] = Field(default=None, ge=0)
    rotation_magnitude: Optional[FiniteFloat] = Field(default=None, ge=0)
    timestamp: Optional[datetime] = None
    sensor_error: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_reading_or_error(self) -> "MotionUpdate":
        has_reading = self.acceleration_magnitude is not None and self.rotation_magnitude is not None
        if self.sensor_error is None and not has_reading:
            raise ValueError(
                "acceleration_magnitude and rotation_magnitude are required unless sensor_error is set"
            )
        return self

    def to_sample(self) -> MotionSample:
        return MotionSample(
            acceleration_magnitude=self.acceleration_magnitude,
            rotation_magnitude=self.rotation_magnitude,
            timestamp=to_epoch_seconds(self.timestamp),
        )


class ConnectivityUpdate(BaseModel):
    transport: TransportType
    cost: NetworkCost = NetworkCost.UNKNOWN
    quality: Optional[NetworkQuality] = None
    bandwidth_kbps: Optional[FiniteFloat] = Field(default=None, ge=0)

    def to_state(self) -> ConnectivityState:
        return ConnectivityState(
            transport=self.transport,
            cost=self.cost,
            quality=self.quality,
            bandwidth_kbps=self.bandwidth_kbps,
        )


class BatteryUpdate(BaseModel):
    percentage: FiniteFloat = Field(ge=0, le=100)
    is_charging: bool = False
    thermal: ThermalState = ThermalState.UNKNOWN
    timestamp: Optional[datetime] = None

    def to_reading(self) -> BatteryReading:
        return BatteryReading(
            percentage=self.percentage,
            timestamp=to_epoch_seconds(self.timestamp),
            is_charging=self.is_charging,
            thermal=self.thermal,
        )


class AppStateUpdate(BaseModel):
    state: AppState


class RealtimeRequest(BaseModel):
    """Ask the policy to keep continuous delivery while in the background."""

    requested: bool


class SignalAccepted(BaseModel):
    """Response for an accepted signal."""

    signal: str
    accepted: int = 1
    motion_state: str
    profile_tier: str
    processing_time_ms: float


class SignalIngestionService:
    """
    Pushes validated signals into a TrackingEngine.

    Args:
        engine: The engine whose sources receive the signals
    """

    def __init__(self, engine: "TrackingEngine"):
        self._engine = engine
        self._logger = logger
        self._received = {}

    def _require_running(self, signal: str) -> None:
        if not self._engine.running:
            self._logger.warning(
                "Signal rejected, engine not running",
                extra={"extra_data": {"signal": signal}}
            )
            raise engine_not_running(details={"signal": signal})

    def _accepted(self, signal: str, count: int, started: float) -> SignalAccepted:
        self._received[signal] = self._received.get(signal, 0) + count
        return SignalAccepted(
            signal=signal,
            accepted=count,
            motion_state=self._engine.motion_state.value,
            profile_tier=self._engine.current_profile.tier.value,
            processing_time_ms=round((time.perf_counter() - started) * 1000, 3),
        )

    def process_position(self, update: PositionUpdate) -> SignalAccepted:
        started = time.perf_counter()
        self._require_running("position")
        self._engine.position_source.push(update.to_sample())
        return self._accepted("position", 1, started)

    def process_positions(self, batch: BatchPositionUpdate) -> SignalAccepted:
        started = time.perf_counter()
        self._require_running("position")
        for update in batch.updates:
            self._engine.position_source.push(update.to_sample())
        self._logger.debug(
            "Ingested position batch",
            extra={"extra_data": {"count": len(batch.updates)}}
        )
        return self._accepted("position", len(batch.updates), started)

    def process_motion(self, update: MotionUpdate) -> SignalAccepted:
        started = time.perf_counter()
        self._require_running("motion")
        if update.sensor_error is not None:
            self._engine.motion_source.push_error(RuntimeError(update.sensor_error))
        else:
            self._engine.motion_source.push(update.to_sample())
        return self._accepted("motion", 1, started)

    def process_connectivity(self, update: ConnectivityUpdate) -> SignalAccepted:
        started = time.perf_counter()
        self._require_running("connectivity")
        state = update.to_state()
        self._engine.connectivity_source.push(state)
        self._logger.info(
            "Connectivity update received",
            extra={"extra_data": {
                "transport": state.transport.value,
                "cost": state.cost.value,
                "connected": state.is_connected,
            }}
        )
        return self._accepted("connectivity", 1, started)

    def process_battery(self, update: BatteryUpdate) -> SignalAccepted:
        started = time.perf_counter()
        self._require_running("battery")
        self._engine.battery_source.push(update.to_reading())
        return self._accepted("battery", 1, started)

    def process_app_state(self, update: AppStateUpdate) -> SignalAccepted:
        started = time.perf_counter()
        self._require_running("app_state")
        self._engine.app_state_source.push(update.state)
        return self._accepted("app_state", 1, started)

    def process_realtime(self, update: RealtimeRequest) -> SignalAccepted:
        started = time.perf_counter()
        self._require_running("realtime")
        self._engine.policy.set_realtime_requested(update.requested)
        return self._accepted("realtime", 1, started)

    def statistics(self) -> dict:
        return {"received": dict(self._received)}
