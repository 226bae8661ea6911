"""
Signal value types shared by the tracking engine components.

Samples are immutable snapshots produced by external sources. The small
closed enumerations are the categorical inputs of the policy engine and
the sync pipeline; "unknown" members stand for an unavailable signal.
Timestamps are POSIX seconds.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class MotionState(str, Enum):
    """Confirmed motion state of the tracked user."""
    STATIONARY = "stationary"
    WALKING = "walking"
    RUNNING = "running"
    CYCLING = "cycling"
    DRIVING = "driving"
    UNKNOWN = "unknown"


class BatteryLevel(str, Enum):
    UNKNOWN = "unknown"
    CRITICAL = "critical"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    FULL = "full"


class ThermalState(str, Enum):
    UNKNOWN = "unknown"
    NORMAL = "normal"
    WARM = "warm"
    HOT = "hot"
    CRITICAL = "critical"


class AppState(str, Enum):
    UNKNOWN = "unknown"
    FOREGROUND = "foreground"
    BACKGROUND = "background"
    SUSPENDED = "suspended"


class NetworkQuality(str, Enum):
    UNKNOWN = "unknown"
    NONE = "none"
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


class NetworkCost(str, Enum):
    UNKNOWN = "unknown"
    FREE = "free"
    METERED = "metered"


class TransportType(str, Enum):
    NONE = "none"
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    BLUETOOTH = "bluetooth"
    OTHER = "other"


# Transports billed per byte when the source does not report a cost
_METERED_TRANSPORTS = frozenset({TransportType.CELLULAR, TransportType.BLUETOOTH})


def battery_level_from_percentage(percentage: Optional[float]) -> BatteryLevel:
    """
    Categorise a battery percentage.

    Args:
        percentage: Charge in the 0..100 range, or None when unavailable

    Returns:
        CRITICAL up to 5%, LOW up to 20%, MEDIUM up to 50%, HIGH up to 80%,
        FULL above that; UNKNOWN for None or out-of-range values.
    """
    if percentage is None or percentage < 0 or percentage > 100:
        return BatteryLevel.UNKNOWN
    if percentage <= 5:
        return BatteryLevel.CRITICAL
    if percentage <= 20:
        return BatteryLevel.LOW
    if percentage <= 50:
        return BatteryLevel.MEDIUM
    if percentage <= 80:
        return BatteryLevel.HIGH
    return BatteryLevel.FULL


@dataclass(frozen=True)
class MotionSample:
    """Accelerometer/gyroscope magnitudes (m/s², rad/s) at one instant."""
    acceleration_magnitude: float
    rotation_magnitude: float
    timestamp: float


@dataclass(frozen=True)
class PositionSample:
    """A location fix. ``speed`` (m/s) and ``accuracy`` (m) may be absent."""
    latitude: float
    longitude: float
    timestamp: float
    speed: Optional[float] = None
    accuracy: Optional[float] = None

    @property
    def is_finite(self) -> bool:
        values = [self.latitude, self.longitude, self.timestamp]
        values.extend(v for v in (self.speed, self.accuracy) if v is not None)
        return all(math.isfinite(v) for v in values)

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "speed": self.speed,
            "accuracy": self.accuracy,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ConnectivityState:
    """
    Connectivity snapshot reported by the platform.

    ``quality`` and ``bandwidth_kbps`` are optional measurements; when the
    source does not provide a quality the sync pipeline derives one from
    observed transmit latency.
    """
    transport: TransportType
    cost: NetworkCost = NetworkCost.UNKNOWN
    quality: Optional[NetworkQuality] = None
    bandwidth_kbps: Optional[float] = None

    @property
    def is_connected(self) -> bool:
        return self.transport != TransportType.NONE and self.quality != NetworkQuality.NONE

    @property
    def is_metered(self) -> bool:
        if self.cost == NetworkCost.UNKNOWN:
            return self.transport in _METERED_TRANSPORTS
        return self.cost == NetworkCost.METERED

    @classmethod
    def offline(cls) -> "ConnectivityState":
        return cls(transport=TransportType.NONE, quality=NetworkQuality.NONE)


@dataclass(frozen=True)
class BatteryReading:
    """Battery percentage, charging flag and thermal category."""
    percentage: Optional[float]
    timestamp: float
    is_charging: bool = False
    thermal: ThermalState = ThermalState.UNKNOWN

    @property
    def level(self) -> BatteryLevel:
        return battery_level_from_percentage(self.percentage)
