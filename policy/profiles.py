"""
Tracking profiles and the pure policy evaluation.

evaluate() maps (motion, battery, thermal, app state, network quality,
platform background limits, real-time request) to a TrackingProfile.
It has no memory: the same inputs always give an equal profile.

Evaluation order:
1. Base tier from the motion state.
2. Battery adjustment: critical forces ultra power saver, low downgrades
   one tier (never below power saver), high/full upgrades one tier only
   in the foreground with a normal thermal state.
3. Tier settings, with the minimum distance scaled by a per-motion
   multiplier for every tier except ultra power saver.
4. Composite background strategy when the platform limits background
   execution, the app is not in the foreground and real-time delivery
   was not requested.

Unavailable inputs (``unknown`` members or None) fall back to their
lowest-information default before evaluation.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from errors.exceptions import require
from signals.models import AppState, BatteryLevel, MotionState, NetworkQuality, ThermalState


class ProfileTier(str, Enum):
    ULTRA_POWER_SAVER = "ultra_power_saver"
    POWER_SAVER = "power_saver"
    BALANCED = "balanced"
    PERFORMANCE = "performance"
    HIGH_PERFORMANCE = "high_performance"


# Lowest to highest fidelity
TIER_ORDER: Tuple[ProfileTier, ...] = (
    ProfileTier.ULTRA_POWER_SAVER,
    ProfileTier.POWER_SAVER,
    ProfileTier.BALANCED,
    ProfileTier.PERFORMANCE,
    ProfileTier.HIGH_PERFORMANCE,
)


class AccuracyTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BEST = "best"


class SamplingStrategy(str, Enum):
    CONTINUOUS = "continuous"
    COMPOSITE = "composite"


@dataclass(frozen=True)
class TierSettings:
    accuracy: AccuracyTier
    base_min_distance_meters: float
    sampling_interval: float
    scaled_by_motion: bool = True


DEFAULT_TIER_SETTINGS: Dict[ProfileTier, TierSettings] = {
    ProfileTier.ULTRA_POWER_SAVER: TierSettings(AccuracyTier.LOW, 500.0, 30.0, scaled_by_motion=False),
    ProfileTier.POWER_SAVER: TierSettings(AccuracyTier.LOW, 200.0, 20.0),
    ProfileTier.BALANCED: TierSettings(AccuracyTier.MEDIUM, 50.0, 15.0),
    ProfileTier.PERFORMANCE: TierSettings(AccuracyTier.HIGH, 20.0, 10.0),
    ProfileTier.HIGH_PERFORMANCE: TierSettings(AccuracyTier.BEST, 5.0, 5.0),
}

DEFAULT_MOTION_DISTANCE_MULTIPLIERS: Dict[MotionState, float] = {
    MotionState.STATIONARY: 4.0,
    MotionState.WALKING: 2.0,
    MotionState.RUNNING: 1.5,
    MotionState.CYCLING: 1.0,
    MotionState.DRIVING: 0.5,
    MotionState.UNKNOWN: 1.0,
}

BASE_TIER_BY_MOTION: Dict[MotionState, ProfileTier] = {
    MotionState.STATIONARY: ProfileTier.POWER_SAVER,
    MotionState.WALKING: ProfileTier.BALANCED,
    MotionState.RUNNING: ProfileTier.PERFORMANCE,
    MotionState.CYCLING: ProfileTier.PERFORMANCE,
    MotionState.DRIVING: ProfileTier.HIGH_PERFORMANCE,
    MotionState.UNKNOWN: ProfileTier.BALANCED,
}


@dataclass(frozen=True)
class CompositeSettings:
    """Geofence triggers, batched flushes and passive fixes for limited background execution."""
    geofence_radius_meters: float
    geofence_responsiveness: float
    batch_size: int
    flush_interval: float
    max_wait: float
    passive_enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "geofence_radius_meters": self.geofence_radius_meters,
            "geofence_responsiveness": self.geofence_responsiveness,
            "batch_size": self.batch_size,
            "flush_interval": self.flush_interval,
            "max_wait": self.max_wait,
            "passive_enabled": self.passive_enabled,
        }


@dataclass(frozen=True)
class TrackingProfile:
    tier: ProfileTier
    accuracy_tier: AccuracyTier
    min_distance_meters: float
    sampling_interval: float
    strategy: SamplingStrategy = SamplingStrategy.CONTINUOUS
    composite: Optional[CompositeSettings] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "accuracy_tier": self.accuracy_tier.value,
            "min_distance_meters": self.min_distance_meters,
            "sampling_interval": self.sampling_interval,
            "strategy": self.strategy.value,
            "composite": self.composite.to_dict() if self.composite else None,
        }


@dataclass
class PolicyConfig:
    """
    Policy tables and timing.

    Attributes:
        tier_settings: Accuracy, base distance and interval per tier
        motion_distance_multipliers: Minimum distance scaling per motion state
        geofence_radius_meters: Composite proximity trigger radius
        geofence_responsiveness: Composite proximity trigger latency (s)
        composite_batch_size: Fixes accumulated before a batched flush
        composite_flush_interval: Seconds between batched flushes
        composite_max_wait: Upper bound on how long a fix may be held (s)
        passive_enabled: Consume fixes requested by other apps
        degraded_network_flush_factor: Flush interval multiplier on
            none/poor networks, capped at ``composite_max_wait``
        evaluation_interval: Periodic re-evaluation tick (s)
    """
    tier_settings: Dict[ProfileTier, TierSettings] = field(
        default_factory=lambda: dict(DEFAULT_TIER_SETTINGS)
    )
    motion_distance_multipliers: Dict[MotionState, float] = field(
        default_factory=lambda: dict(DEFAULT_MOTION_DISTANCE_MULTIPLIERS)
    )
    geofence_radius_meters: float = 100.0
    geofence_responsiveness: float = 120.0
    composite_batch_size: int = 10
    composite_flush_interval: float = 300.0
    composite_max_wait: float = 600.0
    passive_enabled: bool = True
    degraded_network_flush_factor: float = 2.0
    evaluation_interval: float = 60.0

    def __post_init__(self) -> None:
        missing = [tier.value for tier in ProfileTier if tier not in self.tier_settings]
        require(not missing, "tier_settings", "every tier needs settings", missing)
        for tier, settings in self.tier_settings.items():
            require(settings.base_min_distance_meters >= 0, f"tier_settings.{tier.value}",
                    "min distance must not be negative", settings.base_min_distance_meters)
            require(settings.sampling_interval > 0, f"tier_settings.{tier.value}",
                    "sampling interval must be positive", settings.sampling_interval)
        for state, multiplier in self.motion_distance_multipliers.items():
            require(multiplier > 0, f"motion_distance_multipliers.{state.value}",
                    "must be positive", multiplier)
        require(self.geofence_radius_meters > 0, "geofence_radius_meters", "must be positive",
                self.geofence_radius_meters)
        require(self.geofence_responsiveness > 0, "geofence_responsiveness", "must be positive",
                self.geofence_responsiveness)
        require(self.composite_batch_size >= 1, "composite_batch_size", "must be at least 1",
                self.composite_batch_size)
        require(0 < self.composite_flush_interval <= self.composite_max_wait,
                "composite_flush_interval", "must be positive and not exceed composite_max_wait",
                self.composite_flush_interval)
        require(self.degraded_network_flush_factor >= 1, "degraded_network_flush_factor",
                "must be at least 1", self.degraded_network_flush_factor)
        require(self.evaluation_interval > 0, "evaluation_interval", "must be positive",
                self.evaluation_interval)


@dataclass(frozen=True)
class PolicyInputs:
    """Policy inputs after unavailable signals were replaced by defaults."""
    motion: MotionState
    battery: BatteryLevel
    thermal: ThermalState
    app: AppState
    network: NetworkQuality
    background_limited: bool = False
    realtime_requested: bool = False


def resolve_inputs(
    motion: Optional[MotionState],
    battery: Optional[BatteryLevel],
    thermal: Optional[ThermalState],
    app: Optional[AppState],
    network: Optional[NetworkQuality],
    background_limited: bool = False,
    realtime_requested: bool = False,
) -> Tuple[PolicyInputs, List[str]]:
    """
    Replace unavailable signals with their lowest-information defaults.

    Returns:
        The resolved inputs and the names of the signals that were defaulted
    """
    unavailable: List[str] = []

    def pick(name: str, value, unknown, default):
        if value is None or value == unknown:
            unavailable.append(name)
            return default
        return value

    inputs = PolicyInputs(
        motion=pick("motion", motion, MotionState.UNKNOWN, MotionState.UNKNOWN),
        battery=pick("battery", battery, BatteryLevel.UNKNOWN, BatteryLevel.MEDIUM),
        thermal=pick("thermal", thermal, ThermalState.UNKNOWN, ThermalState.NORMAL),
        app=pick("app_state", app, AppState.UNKNOWN, AppState.BACKGROUND),
        network=pick("network", network, NetworkQuality.UNKNOWN, NetworkQuality.FAIR),
        background_limited=bool(background_limited),
        realtime_requested=bool(realtime_requested),
    )
    return inputs, unavailable


def _shift(tier: ProfileTier, steps: int, floor: ProfileTier) -> ProfileTier:
    index = TIER_ORDER.index(tier) + steps
    index = max(TIER_ORDER.index(floor), min(index, len(TIER_ORDER) - 1))
    return TIER_ORDER[index]


def select_tier(inputs: PolicyInputs) -> ProfileTier:
    """Base tier from motion, adjusted for battery, app state and thermal state."""
    tier = BASE_TIER_BY_MOTION[inputs.motion]

    if inputs.battery == BatteryLevel.CRITICAL:
        return ProfileTier.ULTRA_POWER_SAVER
    if inputs.battery == BatteryLevel.LOW:
        return _shift(tier, -1, floor=ProfileTier.POWER_SAVER)
    if inputs.battery in (BatteryLevel.HIGH, BatteryLevel.FULL):
        if inputs.app == AppState.FOREGROUND and inputs.thermal == ThermalState.NORMAL:
            return _shift(tier, 1, floor=ProfileTier.ULTRA_POWER_SAVER)
    return tier


def composite_settings(config: PolicyConfig, network: NetworkQuality) -> CompositeSettings:
    flush_interval = config.composite_flush_interval
    if network in (NetworkQuality.NONE, NetworkQuality.POOR):
        flush_interval = min(
            flush_interval * config.degraded_network_flush_factor,
            config.composite_max_wait,
        )
    return CompositeSettings(
        geofence_radius_meters=config.geofence_radius_meters,
        geofence_responsiveness=config.geofence_responsiveness,
        batch_size=config.composite_batch_size,
        flush_interval=flush_interval,
        max_wait=config.composite_max_wait,
        passive_enabled=config.passive_enabled,
    )


def evaluate_inputs(inputs: PolicyInputs, config: Optional[PolicyConfig] = None) -> TrackingProfile:
    """Evaluate already-resolved inputs."""
    config = config or PolicyConfig()
    tier = select_tier(inputs)
    settings = config.tier_settings[tier]

    min_distance = settings.base_min_distance_meters
    if settings.scaled_by_motion:
        min_distance *= config.motion_distance_multipliers.get(inputs.motion, 1.0)

    profile = TrackingProfile(
        tier=tier,
        accuracy_tier=settings.accuracy,
        min_distance_meters=min_distance,
        sampling_interval=settings.sampling_interval,
    )

    if (inputs.background_limited
            and inputs.app != AppState.FOREGROUND
            and not inputs.realtime_requested):
        profile = replace(
            profile,
            strategy=SamplingStrategy.COMPOSITE,
            composite=composite_settings(config, inputs.network),
        )
    return profile


def evaluate(
    motion: Optional[MotionState],
    battery: Optional[BatteryLevel],
    thermal: Optional[ThermalState],
    app: Optional[AppState],
    network: Optional[NetworkQuality],
    background_limited: bool = False,
    realtime_requested: bool = False,
    config: Optional[PolicyConfig] = None,
) -> TrackingProfile:
    """
    Compute the tracking profile for a set of signals.

    Args:
        motion: Confirmed motion state
        battery: Battery category
        thermal: Thermal category
        app: App lifecycle state
        network: Network quality
        background_limited: Platform restricts background execution
        realtime_requested: Caller asked for real-time delivery
        config: Policy tables; defaults when omitted

    Returns:
        The TrackingProfile; never None
    """
    inputs, _ = resolve_inputs(
        motion, battery, thermal, app, network, background_limited, realtime_requested
    )
    return evaluate_inputs(inputs, config)


def default_profile(config: Optional[PolicyConfig] = None) -> TrackingProfile:
    """Balanced profile used before any signal has arrived."""
    config = config or PolicyConfig()
    settings = config.tier_settings[ProfileTier.BALANCED]
    return TrackingProfile(
        tier=ProfileTier.BALANCED,
        accuracy_tier=settings.accuracy,
        min_distance_meters=settings.base_min_distance_meters,
        sampling_interval=settings.sampling_interval,
    )

