"""
Batching of position updates under the composite sampling strategy.

While the active profile uses the composite strategy, routine position
items are held back and released to the sync pipeline in groups: when the
batch is full, when the flush interval elapses, or shortly after the device
leaves the geofence drawn around the last released point. Outside the
composite strategy items pass straight through.
"""

import logging
from typing import Any, Callable, List, Optional

from policy.profiles import CompositeSettings
from signals.geo import is_inside_circle
from signals.models import PositionSample
from signals.scheduler import Scheduler, TimerHandle
from sync.models import SyncItem

logger = logging.getLogger(__name__)


class CompositeBatcher:
    """
    Args:
        scheduler: Clock and timer port
        release: Callback receiving each released item (SyncPipeline.enqueue)
    """

    def __init__(self, scheduler: Scheduler, release: Callable[[SyncItem], Any]):
        self._scheduler = scheduler
        self._release = release
        self._settings: Optional[CompositeSettings] = None
        self._buffer: List[SyncItem] = []
        self._anchor: Optional[PositionSample] = None
        self._last_position: Optional[PositionSample] = None
        self._timer: Optional[TimerHandle] = None
        self._deadline: Optional[float] = None
        self._released_batches = 0
        self._geofence_exits = 0

    @property
    def active(self) -> bool:
        return self._settings is not None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def configure(self, settings: Optional[CompositeSettings]) -> None:
        """Switch composite batching on (settings) or off (None)."""
        if settings == self._settings:
            return
        was_active = self.active
        self._settings = settings
        if settings is None:
            if was_active:
                logger.info("Composite batching disabled, releasing %d buffered items", len(self._buffer))
            self.flush("strategy_changed")
            return
        logger.info("Composite batching enabled", extra={"extra_data": settings.to_dict()})
        if self._buffer:
            self._schedule(self._buffer_started_at() + settings.flush_interval)

    def add(self, item: SyncItem, position: Optional[PositionSample] = None) -> None:
        settings = self._settings
        if settings is None:
            self._release(item)
            return

        if position is not None:
            self._last_position = position
            if self._anchor is None:
                self._anchor = position
        self._buffer.append(item)
        if len(self._buffer) == 1:
            self._schedule(self._scheduler.now() + min(settings.flush_interval, settings.max_wait))

        if len(self._buffer) >= settings.batch_size:
            self.flush("batch_full")
            return

        if position is not None and self._anchor is not None and not is_inside_circle(
            position.latitude, position.longitude,
            self._anchor.latitude, self._anchor.longitude,
            settings.geofence_radius_meters,
        ):
            self._geofence_exits += 1
            self._anchor = position
            self._schedule(self._scheduler.now() + settings.geofence_responsiveness)

    def flush(self, reason: str = "manual") -> int:
        self._cancel_timer()
        items, self._buffer = self._buffer, []
        if self._last_position is not None:
            self._anchor = self._last_position
        if not items:
            return 0
        for item in items:
            self._release(item)
        self._released_batches += 1
        logger.debug("Released composite batch", extra={"extra_data": {
            "reason": reason,
            "items": len(items),
        }})
        return len(items)

    def cancel(self) -> None:
        self._cancel_timer()

    def _buffer_started_at(self) -> float:
        enqueued = [item.enqueued_at for item in self._buffer if item.enqueued_at is not None]
        return min(enqueued) if enqueued else self._scheduler.now()

    def _schedule(self, at: float) -> None:
        # Only ever pull the release time earlier.
        if self._deadline is not None and self._deadline <= at:
            return
        self._cancel_timer()
        self._deadline = at
        self._timer = self._scheduler.call_later(max(at - self._scheduler.now(), 0.0), self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._deadline = None
        self.flush("interval")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._deadline = None

    def statistics(self) -> dict:
        return {
            "active": self.active,
            "buffered": len(self._buffer),
            "released_batches": self._released_batches,
            "geofence_exits": self._geofence_exits,
            "settings": self._settings.to_dict() if self._settings else None,
        }
