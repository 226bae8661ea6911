"""
Composition root wiring the tracking components together.
"""

from engine.composite import CompositeBatcher
from engine.orchestrator import EVENT_PRIORITIES, TrackingEngine

__all__ = [
    "CompositeBatcher",
    "EVENT_PRIORITIES",
    "TrackingEngine",
]
