"""
Driving session and driving event models.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from signals.models import PositionSample


class DrivingEventType(str, Enum):
    DRIVING_STARTED = "driving_started"
    DRIVING_STOPPED = "driving_stopped"
    HARD_BRAKING = "hard_braking"
    RAPID_ACCELERATION = "rapid_acceleration"
    SPEEDING = "speeding"
    TURNING = "turning"


# Score deductions per recorded event
EVENT_SCORE_PENALTIES = {
    DrivingEventType.HARD_BRAKING: 5,
    DrivingEventType.RAPID_ACCELERATION: 3,
    DrivingEventType.SPEEDING: 5,
}

HIGH_SPEED_PENALTY = 10


@dataclass(frozen=True)
class DrivingEvent:
    event_type: DrivingEventType
    session_id: str
    timestamp: float
    location: Optional[PositionSample] = None
    metrics: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "location": self.location.to_dict() if self.location else None,
            "metrics": dict(self.metrics),
        }


def _position_from_dict(data: Optional[Dict[str, Any]]) -> Optional[PositionSample]:
    if data is None:
        return None
    return PositionSample(
        latitude=data["latitude"],
        longitude=data["longitude"],
        timestamp=data["timestamp"],
        speed=data.get("speed"),
        accuracy=data.get("accuracy"),
    )


@dataclass
class DrivingSession:
    """
    One continuous drive, from confirmed driving start to confirmed stop.

    The tracker mutates the active session in place and hands out
    snapshots; a finalized session has ``is_active`` False and an
    ``end_time`` no earlier than ``start_time``.
    """
    id: str
    user_ref: str
    start_time: float
    start_location: Optional[PositionSample] = None
    end_time: Optional[float] = None
    end_location: Optional[PositionSample] = None
    route: List[PositionSample] = field(default_factory=list)
    distance: float = 0.0
    max_speed: float = 0.0
    average_speed: float = 0.0
    duration: Optional[float] = None
    is_active: bool = True
    event_counts: Dict[str, int] = field(default_factory=dict)

    def snapshot(self) -> "DrivingSession":
        return copy.copy(self)._detach()

    def _detach(self) -> "DrivingSession":
        self.route = list(self.route)
        self.event_counts = dict(self.event_counts)
        return self

    def record_event(self, event_type: DrivingEventType) -> None:
        key = event_type.value
        self.event_counts[key] = self.event_counts.get(key, 0) + 1

    @property
    def driving_score(self) -> int:
        """100 minus deductions for events and a max speed above 25 m/s, clamped to 0..100."""
        score = 100
        if self.max_speed > 25:
            score -= HIGH_SPEED_PENALTY
        for event_type, penalty in EVENT_SCORE_PENALTIES.items():
            score -= penalty * self.event_counts.get(event_type.value, 0)
        return max(0, min(100, score))

    @property
    def formatted_duration(self) -> str:
        if self.duration is None:
            return "Unknown"
        hours, remainder = divmod(int(self.duration), 3600)
        minutes = remainder // 60
        return f"{hours}h {minutes}m" if hours > 0 else f"{minutes}m"

    @property
    def formatted_distance(self) -> str:
        if self.distance < 1000:
            return f"{round(self.distance)}m"
        return f"{self.distance / 1000:.1f}km"

    @property
    def formatted_max_speed(self) -> str:
        return f"{round(self.max_speed * 3.6)} km/h"

    @property
    def formatted_average_speed(self) -> str:
        return f"{round(self.average_speed * 3.6)} km/h"

    def to_dict(self, include_route: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "user_ref": self.user_ref,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "start_location": self.start_location.to_dict() if self.start_location else None,
            "end_location": self.end_location.to_dict() if self.end_location else None,
            "distance": self.distance,
            "max_speed": self.max_speed,
            "average_speed": self.average_speed,
            "duration": self.duration,
            "is_active": self.is_active,
            "event_counts": dict(self.event_counts),
            "driving_score": self.driving_score,
            "route_points": len(self.route),
        }
        if include_route:
            data["route"] = [point.to_dict() for point in self.route]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DrivingSession":
        return cls(
            id=data["id"],
            user_ref=data["user_ref"],
            start_time=data["start_time"],
            start_location=_position_from_dict(data.get("start_location")),
            end_time=data.get("end_time"),
            end_location=_position_from_dict(data.get("end_location")),
            route=[_position_from_dict(point) for point in data.get("route", [])],
            distance=data.get("distance", 0.0),
            max_speed=data.get("max_speed", 0.0),
            average_speed=data.get("average_speed", 0.0),
            duration=data.get("duration"),
            is_active=data.get("is_active", False),
            event_counts=dict(data.get("event_counts", {})),
        )

    def __str__(self) -> str:
        return (
            f"DrivingSession(id={self.id}, user_ref={self.user_ref}, "
            f"distance={self.formatted_distance}, max_speed={self.formatted_max_speed}, "
            f"duration={self.formatted_duration}, is_active={self.is_active})"
        )


@dataclass(frozen=True)
class DrivingStateChange:
    is_active: bool
    session: DrivingSession
