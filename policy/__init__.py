"""
Location sampling policy: profiles, pure evaluation, battery statistics
and the stateful engine.
"""

from policy.battery import BatteryMonitor
from policy.engine import PolicyEngine
from policy.profiles import (
    AccuracyTier,
    CompositeSettings,
    PolicyConfig,
    ProfileTier,
    SamplingStrategy,
    TierSettings,
    TrackingProfile,
    default_profile,
    evaluate,
)

__all__ = [
    "AccuracyTier",
    "BatteryMonitor",
    "CompositeSettings",
    "PolicyConfig",
    "PolicyEngine",
    "ProfileTier",
    "SamplingStrategy",
    "TierSettings",
    "TrackingProfile",
    "default_profile",
    "evaluate",
]
