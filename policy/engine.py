"""
Stateful policy engine.

PolicyEngine holds the latest value of every policy input, re-runs the
pure evaluation whenever one of them changes and on a periodic tick, and
emits on_profile_change only when the computed profile differs from the
last applied one. The "last applied profile" is the only memory it keeps
beyond the raw inputs.
"""

import logging
from typing import Any, Dict, List, Optional

from errors.codes import ErrorCode
from policy.battery import BatteryMonitor
from policy.profiles import (
    PolicyConfig,
    PolicyInputs,
    TrackingProfile,
    default_profile,
    evaluate_inputs,
    resolve_inputs,
)
from signals.models import (
    AppState,
    BatteryLevel,
    BatteryReading,
    ConnectivityState,
    MotionState,
    NetworkQuality,
    ThermalState,
)
from signals.ports import EventStream, SignalSource, Subscription
from signals.scheduler import PeriodicTimer, Scheduler

logger = logging.getLogger(__name__)


class PolicyEngine:
    """
    Re-evaluates the tracking profile as signals change.

    Args:
        scheduler: Clock and timer port for the periodic tick
        config: Policy tables; defaults when omitted
        background_limited: Platform restricts background execution
        battery_source: Optional battery/thermal source
        app_state_source: Optional app lifecycle source
        connectivity_source: Optional connectivity source
        battery_monitor: Optional BatteryMonitor for consumption statistics
        telemetry: Optional TelemetryService for transition records
    """

    def __init__(
        self,
        scheduler: Scheduler,
        config: Optional[PolicyConfig] = None,
        background_limited: bool = False,
        battery_source: Optional[SignalSource[BatteryReading]] = None,
        app_state_source: Optional[SignalSource[AppState]] = None,
        connectivity_source: Optional[SignalSource[ConnectivityState]] = None,
        battery_monitor: Optional[BatteryMonitor] = None,
        telemetry: Optional[Any] = None,
    ):
        self.config = config or PolicyConfig()
        self._scheduler = scheduler
        self._battery_source = battery_source
        self._app_state_source = app_state_source
        self._connectivity_source = connectivity_source
        self._battery_monitor = battery_monitor or BatteryMonitor()
        self._telemetry = telemetry

        self._motion = MotionState.UNKNOWN
        self._battery = BatteryLevel.UNKNOWN
        self._thermal = ThermalState.UNKNOWN
        self._app = AppState.UNKNOWN
        self._network = NetworkQuality.UNKNOWN
        self._background_limited = background_limited
        self._realtime_requested = False

        self._current = default_profile(self.config)
        self._unavailable: List[str] = []
        self._evaluations = 0
        self._profile_changes = 0
        self._last_change_at: Optional[float] = None

        self._timer = PeriodicTimer(scheduler, self.config.evaluation_interval, self.tick, "policy.tick")
        self._subscriptions: List[Subscription] = []
        self._started = False
        self._stopped = False

        self.on_profile_change: EventStream[TrackingProfile] = EventStream("policy.profile_change")

    # Lifecycle

    def start(self) -> None:
        if self._started or self._stopped:
            return
        self._started = True
        if self._battery_source is not None:
            self._subscriptions.append(self._battery_source.subscribe(
                self.update_battery, lambda error: self._signal_failed("battery", error)
            ))
        if self._app_state_source is not None:
            self._subscriptions.append(self._app_state_source.subscribe(
                self.update_app_state, lambda error: self._signal_failed("app_state", error)
            ))
        if self._connectivity_source is not None:
            self._subscriptions.append(self._connectivity_source.subscribe(
                self.update_connectivity, lambda error: self._signal_failed("network", error)
            ))
        self._timer.start()
        self.reevaluate()
        logger.info("Policy engine started", extra={"extra_data": {
            "profile": self._current.to_dict(),
            "background_limited": self._background_limited,
        }})

    def stop(self) -> None:
        self._stopped = True
        self._timer.cancel()
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()
        self.on_profile_change.clear()
        logger.info("Policy engine stopped")

    # Signal updates

    def update_motion(self, state: MotionState) -> None:
        self._update("_motion", state)

    def update_battery(self, reading: BatteryReading) -> None:
        if self._stopped:
            return
        self._battery_monitor.record(reading, self._current.tier)
        self._battery = reading.level
        if reading.thermal != ThermalState.UNKNOWN:
            self._thermal = reading.thermal
        self.reevaluate()

    def update_battery_level(self, level: BatteryLevel) -> None:
        self._update("_battery", level)

    def update_thermal(self, thermal: ThermalState) -> None:
        self._update("_thermal", thermal)

    def update_app_state(self, state: AppState) -> None:
        self._update("_app", state)

    def update_network(self, quality: NetworkQuality) -> None:
        self._update("_network", quality)

    def update_connectivity(self, state: ConnectivityState) -> None:
        if not state.is_connected:
            quality = NetworkQuality.NONE
        else:
            quality = state.quality or NetworkQuality.UNKNOWN
        self._update("_network", quality)

    def set_background_limited(self, limited: bool) -> None:
        self._update("_background_limited", bool(limited))

    def set_realtime_requested(self, requested: bool) -> None:
        self._update("_realtime_requested", bool(requested))

    def _update(self, attribute: str, value: Any) -> None:
        if self._stopped:
            return
        if getattr(self, attribute) == value:
            return
        setattr(self, attribute, value)
        self.reevaluate()

    def _signal_failed(self, name: str, error: Exception) -> None:
        defaults = {
            "battery": ("_battery", BatteryLevel.UNKNOWN),
            "app_state": ("_app", AppState.UNKNOWN),
            "network": ("_network", NetworkQuality.UNKNOWN),
        }
        attribute, unknown = defaults[name]
        logger.warning(
            "Policy signal '%s' unavailable",
            name,
            extra={"extra_data": {
                "error_code": ErrorCode.SIGNAL_UNAVAILABLE.value,
                "signal": name,
                "error": str(error),
            }},
        )
        self._update(attribute, unknown)

    # Evaluation

    @property
    def current_profile(self) -> TrackingProfile:
        return self._current

    @property
    def inputs(self) -> PolicyInputs:
        return self._resolve()[0]

    def _resolve(self):
        return resolve_inputs(
            self._motion,
            self._battery,
            self._thermal,
            self._app,
            self._network,
            self._background_limited,
            self._realtime_requested,
        )

    def tick(self) -> None:
        """Periodic re-evaluation."""
        if self._stopped:
            return
        self.reevaluate()

    def reevaluate(self) -> TrackingProfile:
        """Evaluate the current inputs and emit if the profile changed."""
        if self._stopped:
            return self._current

        inputs, unavailable = self._resolve()
        if unavailable != self._unavailable:
            newly_missing = [name for name in unavailable if name not in self._unavailable]
            if newly_missing:
                logger.info(
                    "Using defaults for unavailable policy signals",
                    extra={"extra_data": {
                        "error_code": ErrorCode.SIGNAL_UNAVAILABLE.value,
                        "signals": newly_missing,
                    }},
                )
            self._unavailable = unavailable

        profile = evaluate_inputs(inputs, self.config)
        self._evaluations += 1
        if profile == self._current:
            return profile

        previous = self._current
        self._current = profile
        self._profile_changes += 1
        self._last_change_at = self._scheduler.now()

        if self._telemetry is not None:
            self._telemetry.log_state_transition(
                "policy", previous.tier.value, profile.tier.value,
                {"strategy": profile.strategy.value},
            )
        else:
            logger.info(
                "Tracking profile changed: %s -> %s (%s)",
                previous.tier.value,
                profile.tier.value,
                profile.strategy.value,
            )
        self.on_profile_change.emit(profile)
        return profile

    def statistics(self) -> Dict[str, Any]:
        inputs = self.inputs
        return {
            "current_profile": self._current.to_dict(),
            "inputs": {
                "motion": inputs.motion.value,
                "battery": inputs.battery.value,
                "thermal": inputs.thermal.value,
                "app_state": inputs.app.value,
                "network": inputs.network.value,
                "background_limited": inputs.background_limited,
                "realtime_requested": inputs.realtime_requested,
            },
            "unavailable_signals": list(self._unavailable),
            "evaluations": self._evaluations,
            "profile_changes": self._profile_changes,
            "last_change_at": self._last_change_at,
            "battery": self._battery_monitor.statistics(self._current.tier),
        }
