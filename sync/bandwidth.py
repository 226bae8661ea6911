"""
Throughput and latency estimation from observed transmits.
"""

from typing import Optional

from errors.exceptions import require
from signals.models import NetworkQuality


def quality_from_latency(latency_ms: float) -> NetworkQuality:
    """Map a round-trip latency to a network quality category."""
    if latency_ms < 100:
        return NetworkQuality.EXCELLENT
    if latency_ms < 300:
        return NetworkQuality.GOOD
    if latency_ms < 1000:
        return NetworkQuality.FAIR
    return NetworkQuality.POOR


class BandwidthMonitor:
    """
    Exponentially weighted estimates of throughput (kbps) and latency (ms).

    A bandwidth reported by the connectivity source takes precedence over
    the measured estimate until it is cleared.
    """

    def __init__(self, smoothing: float = 0.3):
        require(0 < smoothing <= 1, "bandwidth_smoothing", "must be in (0, 1]", smoothing)
        self._alpha = smoothing
        self._kbps: Optional[float] = None
        self._latency_ms: Optional[float] = None
        self._reported_kbps: Optional[float] = None
        self.samples = 0

    def record(self, size_bytes: int, duration_seconds: float) -> None:
        if duration_seconds <= 0:
            return
        latency_ms = duration_seconds * 1000.0
        kbps = (size_bytes * 8 / 1000.0) / duration_seconds
        self._latency_ms = self._smooth(self._latency_ms, latency_ms)
        self._kbps = self._smooth(self._kbps, kbps)
        self.samples += 1

    def report(self, kbps: Optional[float]) -> None:
        self._reported_kbps = kbps

    def _smooth(self, current: Optional[float], value: float) -> float:
        if current is None:
            return value
        return self._alpha * value + (1 - self._alpha) * current

    @property
    def estimated_kbps(self) -> Optional[float]:
        if self._reported_kbps is not None:
            return self._reported_kbps
        return self._kbps

    @property
    def latency_ms(self) -> Optional[float]:
        return self._latency_ms

    def estimated_quality(self) -> NetworkQuality:
        if self._latency_ms is None:
            return NetworkQuality.UNKNOWN
        return quality_from_latency(self._latency_ms)

    def to_dict(self) -> dict:
        return {
            "estimated_kbps": round(self.estimated_kbps, 2) if self.estimated_kbps is not None else None,
            "latency_ms": round(self._latency_ms, 2) if self._latency_ms is not None else None,
            "samples": self.samples,
        }
