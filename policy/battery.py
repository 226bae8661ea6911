"""
Battery history and consumption estimates.

BatteryMonitor keeps a bounded history of battery readings together with
the profile tier active at the time, and derives the power consumption
rate (percent per minute over the most recent samples), an estimated
remaining battery life and a power efficiency score for the active tier.
"""

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional

from errors.exceptions import require
from policy.profiles import ProfileTier
from signals.models import BatteryReading

# Efficiency bonus per tier, higher for cheaper profiles
_TIER_EFFICIENCY = {
    ProfileTier.ULTRA_POWER_SAVER: 0.4,
    ProfileTier.POWER_SAVER: 0.3,
    ProfileTier.BALANCED: 0.2,
    ProfileTier.PERFORMANCE: 0.1,
    ProfileTier.HIGH_PERFORMANCE: 0.0,
}


@dataclass(frozen=True)
class BatterySample:
    percentage: float
    timestamp: float
    tier: ProfileTier
    is_charging: bool = False


class BatteryMonitor:
    """
    Bounded battery history with derived consumption statistics.

    Args:
        history_size: Maximum number of samples kept
        rate_window: Number of most recent samples used for the rate
        default_life_estimate: Estimate (seconds) reported while no
            discharge has been observed
    """

    def __init__(
        self,
        history_size: int = 100,
        rate_window: int = 10,
        default_life_estimate: float = 24 * 3600.0,
    ):
        require(history_size >= 2, "battery_history_size", "must be at least 2", history_size)
        require(2 <= rate_window <= history_size, "battery_rate_window",
                "must be between 2 and the history size", rate_window)
        self._history: Deque[BatterySample] = deque(maxlen=history_size)
        self._rate_window = rate_window
        self._default_life_estimate = default_life_estimate

    def record(self, reading: BatteryReading, tier: ProfileTier) -> bool:
        """
        Append a reading to the history.

        Returns:
            False when the reading has no percentage or does not advance
            past the latest recorded timestamp
        """
        if reading.percentage is None:
            return False
        latest = self.latest
        if latest is not None and reading.timestamp <= latest.timestamp:
            return False
        self._history.append(BatterySample(
            percentage=reading.percentage,
            timestamp=reading.timestamp,
            tier=tier,
            is_charging=reading.is_charging,
        ))
        return True

    @property
    def sample_count(self) -> int:
        return len(self._history)

    @property
    def latest(self) -> Optional[BatterySample]:
        return self._history[-1] if self._history else None

    def consumption_rate(self) -> float:
        """Percent per minute over the recent window; 0.0 when unknown."""
        if len(self._history) < 2:
            return 0.0
        recent = list(self._history)[-self._rate_window:]
        first, last = recent[0], recent[-1]
        minutes = (last.timestamp - first.timestamp) / 60.0
        if minutes <= 0:
            return 0.0
        return (first.percentage - last.percentage) / minutes

    def estimated_battery_life(self) -> float:
        """Seconds of battery left at the current consumption rate."""
        rate = self.consumption_rate()
        latest = self.latest
        if rate <= 0 or latest is None or latest.is_charging:
            return self._default_life_estimate
        return latest.percentage / rate * 60.0

    def power_efficiency_score(self, tier: ProfileTier) -> float:
        score = 0.5 + _TIER_EFFICIENCY[tier]
        rate = self.consumption_rate()
        if rate < 0.1:
            score += 0.1
        elif rate > 0.5:
            score -= 0.1
        return max(0.0, min(1.0, score))

    def statistics(self, tier: ProfileTier) -> Dict[str, Any]:
        latest = self.latest
        return {
            "samples": len(self._history),
            "latest_percentage": latest.percentage if latest else None,
            "is_charging": latest.is_charging if latest else None,
            "consumption_rate_per_minute": round(self.consumption_rate(), 4),
            "estimated_battery_life_seconds": round(self.estimated_battery_life(), 1),
            "power_efficiency_score": round(self.power_efficiency_score(tier), 2),
        }
