"""
Signal types, event streams, signal source ports and the scheduler port.
"""

from signals.models import (
    AppState,
    BatteryLevel,
    BatteryReading,
    ConnectivityState,
    MotionSample,
    MotionState,
    NetworkCost,
    NetworkQuality,
    PositionSample,
    ThermalState,
    TransportType,
    battery_level_from_percentage,
)
from signals.ports import EventStream, PushSource, SignalSource, Subscription
from signals.scheduler import AsyncioScheduler, PeriodicTimer, Scheduler

__all__ = [
    "AppState",
    "BatteryLevel",
    "BatteryReading",
    "ConnectivityState",
    "MotionSample",
    "MotionState",
    "NetworkCost",
    "NetworkQuality",
    "PositionSample",
    "ThermalState",
    "TransportType",
    "battery_level_from_percentage",
    "EventStream",
    "PushSource",
    "SignalSource",
    "Subscription",
    "AsyncioScheduler",
    "PeriodicTimer",
    "Scheduler",
]
