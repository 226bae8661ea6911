"""
Driving session tracking and driving event detection.
"""

from driving.session import DrivingEvent, DrivingEventType, DrivingSession, DrivingStateChange
from driving.tracker import AverageSpeedMode, DrivingConfig, DrivingSessionTracker

__all__ = [
    "AverageSpeedMode",
    "DrivingConfig",
    "DrivingEvent",
    "DrivingEventType",
    "DrivingSession",
    "DrivingSessionTracker",
    "DrivingStateChange",
]
