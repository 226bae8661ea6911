"""
Signal ingestion: validated payloads pushed into the tracking engine.
"""

from ingestion.service import (
    AppStateUpdate,
    BatchPositionUpdate,
    BatteryUpdate,
    ConnectivityUpdate,
    MotionUpdate,
    PositionUpdate,
    RealtimeRequest,
    SignalAccepted,
    SignalIngestionService,
)

__all__ = [
    "AppStateUpdate",
    "BatchPositionUpdate",
    "BatteryUpdate",
    "ConnectivityUpdate",
    "MotionUpdate",
    "PositionUpdate",
    "RealtimeRequest",
    "SignalAccepted",
    "SignalIngestionService",
]
