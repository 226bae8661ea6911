"""
TrackingEngine: composition root for the tracking components.

The engine owns one instance of each component and wires them together by
event subscription only:

    motion/position sources -> MotionClassifier -> PolicyEngine.update_motion
    MotionClassifier.on_state_change -> DrivingSessionTracker
    position source -> SyncItem -> (CompositeBatcher) -> SyncPipeline
    DrivingSessionTracker.on_driving_event -> SyncItem -> SyncPipeline
    PolicyEngine.on_profile_change -> CompositeBatcher.configure

Signals enter through in-process PushSources exposed as attributes, so the
HTTP host, a platform bridge or a test can feed the same engine.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from driving.session import DrivingEvent, DrivingEventType
from driving.tracker import DrivingConfig, DrivingSessionTracker
from engine.composite import CompositeBatcher
from motion.classifier import MotionClassifier, MotionClassifierConfig
from policy.battery import BatteryMonitor
from policy.engine import PolicyEngine
from policy.profiles import PolicyConfig, SamplingStrategy, TrackingProfile
from session.store import DrivingSessionStore, InMemoryDrivingSessionStore
from signals.models import (
    AppState,
    BatteryReading,
    ConnectivityState,
    MotionSample,
    MotionState,
    PositionSample,
)
from signals.ports import PushSource, Subscription
from signals.scheduler import AsyncioScheduler, Scheduler
from sync.bandwidth import BandwidthMonitor
from sync.models import SyncItem, SyncPriority
from sync.pipeline import SyncConfig, SyncPipeline
from sync.transport import InMemoryTransmitter, Transmitter

logger = logging.getLogger(__name__)


EVENT_PRIORITIES = {
    DrivingEventType.DRIVING_STARTED: SyncPriority.HIGH,
    DrivingEventType.DRIVING_STOPPED: SyncPriority.HIGH,
    DrivingEventType.HARD_BRAKING: SyncPriority.CRITICAL,
    DrivingEventType.RAPID_ACCELERATION: SyncPriority.HIGH,
    DrivingEventType.SPEEDING: SyncPriority.CRITICAL,
    DrivingEventType.TURNING: SyncPriority.NORMAL,
}


class TrackingEngine:
    """
    Builds, wires and runs the motion classifier, policy engine, sync
    pipeline and driving session tracker.

    Args:
        transmitter: Delivery sink; in-memory when omitted
        session_store: Store for finalized sessions; in-memory when omitted
        scheduler: Clock and timers; asyncio-backed when omitted
        motion_config: MotionClassifier thresholds
        policy_config: PolicyEngine tables
        sync_config: SyncPipeline settings
        driving_config: DrivingSessionTracker thresholds
        background_limited: Platform restricts background execution
        telemetry: Optional TelemetryService shared by all components
        id_factory: Sync item id generator
    """

    def __init__(
        self,
        transmitter: Optional[Transmitter] = None,
        session_store: Optional[DrivingSessionStore] = None,
        scheduler: Optional[Scheduler] = None,
        motion_config: Optional[MotionClassifierConfig] = None,
        policy_config: Optional[PolicyConfig] = None,
        sync_config: Optional[SyncConfig] = None,
        driving_config: Optional[DrivingConfig] = None,
        background_limited: bool = False,
        telemetry: Optional[Any] = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.scheduler = scheduler or AsyncioScheduler()
        self.transmitter = transmitter or InMemoryTransmitter()
        self.session_store = session_store or InMemoryDrivingSessionStore()
        self._telemetry = telemetry
        self._id_factory = id_factory

        self.position_source: PushSource[PositionSample] = PushSource("position")
        self.motion_source: PushSource[MotionSample] = PushSource("motion")
        self.connectivity_source: PushSource[ConnectivityState] = PushSource("connectivity")
        self.battery_source: PushSource[BatteryReading] = PushSource("battery")
        self.app_state_source: PushSource[AppState] = PushSource("app_state")

        self.battery_monitor = BatteryMonitor()
        self.bandwidth_monitor = BandwidthMonitor()

        self.classifier = MotionClassifier(
            self.scheduler,
            config=motion_config,
            motion_source=self.motion_source,
            position_source=self.position_source,
            telemetry=telemetry,
        )
        self.policy = PolicyEngine(
            self.scheduler,
            config=policy_config,
            background_limited=background_limited,
            battery_source=self.battery_source,
            app_state_source=self.app_state_source,
            connectivity_source=self.connectivity_source,
            battery_monitor=self.battery_monitor,
            telemetry=telemetry,
        )
        self.pipeline = SyncPipeline(
            self.transmitter,
            self.scheduler,
            config=sync_config,
            connectivity_source=self.connectivity_source,
            bandwidth_monitor=self.bandwidth_monitor,
            telemetry=telemetry,
        )
        self.tracker = DrivingSessionTracker(
            self.scheduler,
            motion_state_stream=self.classifier.on_state_change,
            position_source=self.position_source,
            motion_source=self.motion_source,
            store=self.session_store,
            config=driving_config,
            telemetry=telemetry,
        )
        self.batcher = CompositeBatcher(self.scheduler, self.pipeline.enqueue)

        self._subscriptions: List[Subscription] = []
        self._started = False
        self._stopped = False
        self._positions_captured = 0
        self._events_captured = 0

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    @property
    def on_profile_change(self):
        return self.policy.on_profile_change

    @property
    def on_driving_event(self):
        return self.tracker.on_driving_event

    @property
    def on_driving_state_changed(self):
        return self.tracker.on_driving_state_changed

    @property
    def current_profile(self) -> TrackingProfile:
        return self.policy.current_profile

    @property
    def motion_state(self) -> MotionState:
        return self.classifier.current_state

    def start(self) -> None:
        """Start every component; must run inside the event loop."""
        if self._started or self._stopped:
            return
        self._started = True

        self._subscriptions.extend([
            self.classifier.on_state_change.subscribe(self.policy.update_motion),
            self.policy.on_profile_change.subscribe(self._on_profile_change),
            self.tracker.on_driving_event.subscribe(self._on_driving_event),
        ])
        # The classifier subscribes to positions first so that a fix is
        # classified before it is queued for delivery.
        self.classifier.start()
        self.tracker.start()
        self._subscriptions.append(self.position_source.subscribe(self._on_position))
        self.policy.start()
        self.pipeline.start()
        self._on_profile_change(self.policy.current_profile)

        logger.info("Tracking engine started", extra={"extra_data": {
            "transmitter": self.transmitter.name,
            "session_store": type(self.session_store).__name__,
            "profile": self.policy.current_profile.to_dict(),
        }})

    async def stop(self) -> None:
        """
        Stop every component in reverse dependency order.

        An active driving session is finalized first so that its closing
        event still reaches the sync queue. Items held by the composite
        batcher are released into the queue, and the pipeline gives the
        queue one final flush bounded by ``shutdown_flush_timeout`` before
        it stops. Anything not delivered by then stays queued in memory.
        """
        if self._stopped:
            return
        await self.tracker.stop()
        self._stopped = True
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

        self.batcher.configure(None)
        self.batcher.cancel()
        await self.pipeline.stop()
        self.policy.stop()
        self.classifier.stop()
        logger.info("Tracking engine stopped", extra={"extra_data": {
            "pending_items": self.pipeline.queue_size,
        }})

    # Wiring

    def _on_profile_change(self, profile: TrackingProfile) -> None:
        if profile.strategy == SamplingStrategy.COMPOSITE:
            self.batcher.configure(profile.composite)
        else:
            self.batcher.configure(None)

    def _on_position(self, sample: PositionSample) -> None:
        if self._stopped:
            return
        self._positions_captured += 1
        driving = self.tracker.is_active
        payload: Dict[str, Any] = {
            "type": "position",
            **sample.to_dict(),
            "motion_state": self.classifier.current_state.value,
            "profile_tier": self.policy.current_profile.tier.value,
        }
        if driving:
            payload["session_id"] = self.tracker.current_session.id
        item = SyncItem(
            item_id=f"pos-{self._id_factory()}",
            payload=payload,
            priority=SyncPriority.HIGH if driving else SyncPriority.NORMAL,
            enqueued_at=self.scheduler.now(),
        )
        if item.priority == SyncPriority.NORMAL:
            self.batcher.add(item, sample)
        else:
            self.pipeline.enqueue(item)

    def _on_driving_event(self, event: DrivingEvent) -> None:
        self._events_captured += 1
        item = SyncItem(
            item_id=f"evt-{self._id_factory()}",
            payload={"type": "driving_event", **event.to_dict()},
            priority=EVENT_PRIORITIES.get(event.event_type, SyncPriority.NORMAL),
            enqueued_at=self.scheduler.now(),
        )
        self.pipeline.enqueue(item)

    # Introspection

    def status(self) -> Dict[str, Any]:
        session = self.tracker.current_session
        return {
            "running": self.running,
            "motion_state": self.classifier.current_state.value,
            "profile": self.policy.current_profile.to_dict(),
            "driving_active": session is not None,
            "driving_session_id": session.id if session else None,
            "queue_size": self.pipeline.queue_size,
            "positions_captured": self._positions_captured,
            "events_captured": self._events_captured,
        }

    def statistics(self) -> Dict[str, Any]:
        return {
            "engine": self.status(),
            "motion": self.classifier.metrics(),
            "policy": self.policy.statistics(),
            "sync": self.pipeline.statistics(),
            "driving": self.tracker.statistics(),
            "composite": self.batcher.statistics(),
        }
