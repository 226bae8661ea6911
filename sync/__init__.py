"""
Queued, network-aware delivery of location samples to a remote sink.
"""

from sync.bandwidth import BandwidthMonitor, quality_from_latency
from sync.models import DeliveryReport, SendOutcome, SyncItem, SyncPriority, SyncResult, SyncStatistics
from sync.pipeline import SyncConfig, SyncPipeline
from sync.shaping import ShapingConfig, shape_batch
from sync.transport import InMemoryTransmitter, PermanentDeliveryError, Transmitter

__all__ = [
    "BandwidthMonitor",
    "DeliveryReport",
    "InMemoryTransmitter",
    "PermanentDeliveryError",
    "SendOutcome",
    "ShapingConfig",
    "SyncConfig",
    "SyncItem",
    "SyncPipeline",
    "SyncPriority",
    "SyncResult",
    "SyncStatistics",
    "Transmitter",
    "quality_from_latency",
    "shape_batch",
]
