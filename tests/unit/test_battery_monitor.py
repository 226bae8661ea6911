"""
Unit tests for battery history and consumption estimates.
"""

import pytest

from errors.exceptions import InvalidConfigurationError
from policy.battery import BatteryMonitor
from policy.profiles import ProfileTier
from signals.models import BatteryReading


def reading(percentage, minute, is_charging=False):
    return BatteryReading(percentage=percentage, timestamp=minute * 60.0, is_charging=is_charging)


class TestBatteryMonitor:

    def test_rate_is_zero_without_history(self):
        monitor = BatteryMonitor()
        assert monitor.consumption_rate() == 0.0
        assert monitor.estimated_battery_life() == 24 * 3600.0

    def test_consumption_rate_per_minute(self):
        monitor = BatteryMonitor()
        monitor.record(reading(80, 0), ProfileTier.BALANCED)
        monitor.record(reading(78, 10), ProfileTier.BALANCED)
        monitor.record(reading(76, 20), ProfileTier.BALANCED)

        assert monitor.consumption_rate() == pytest.approx(0.2)
        # 76% at 0.2%/min is 380 minutes
        assert monitor.estimated_battery_life() == pytest.approx(380 * 60.0)

    def test_rate_uses_most_recent_window(self):
        monitor = BatteryMonitor(history_size=10, rate_window=2)
        monitor.record(reading(100, 0), ProfileTier.BALANCED)
        monitor.record(reading(50, 1), ProfileTier.BALANCED)
        monitor.record(reading(49, 11), ProfileTier.BALANCED)

        assert monitor.consumption_rate() == pytest.approx(0.1)

    def test_charging_reports_default_estimate(self):
        monitor = BatteryMonitor(default_life_estimate=3600.0)
        monitor.record(reading(60, 0), ProfileTier.BALANCED)
        monitor.record(reading(50, 10, is_charging=True), ProfileTier.BALANCED)

        assert monitor.estimated_battery_life() == 3600.0

    def test_unavailable_percentage_is_not_recorded(self):
        monitor = BatteryMonitor()
        monitor.record(BatteryReading(percentage=None, timestamp=0.0), ProfileTier.BALANCED)
        assert monitor.sample_count == 0

    def test_reading_without_newer_timestamp_is_ignored(self):
        monitor = BatteryMonitor(history_size=10, rate_window=2)
        assert monitor.record(reading(90, 0), ProfileTier.BALANCED) is True
        assert monitor.record(reading(80, 1), ProfileTier.BALANCED) is True

        assert monitor.record(reading(80, 1), ProfileTier.BALANCED) is False
        assert monitor.record(reading(85, 0), ProfileTier.BALANCED) is False

        assert monitor.sample_count == 2
        assert monitor.consumption_rate() == pytest.approx(10.0)

    def test_history_is_bounded(self):
        monitor = BatteryMonitor(history_size=5, rate_window=5)
        for minute in range(20):
            monitor.record(reading(100 - minute, minute), ProfileTier.BALANCED)
        assert monitor.sample_count == 5
        assert monitor.latest.percentage == 81

    @pytest.mark.parametrize("tier,expected", [
        (ProfileTier.ULTRA_POWER_SAVER, 1.0),
        (ProfileTier.BALANCED, 0.8),
        (ProfileTier.HIGH_PERFORMANCE, 0.6),
    ])
    def test_efficiency_score_idle_drain(self, tier, expected):
        monitor = BatteryMonitor()
        assert monitor.power_efficiency_score(tier) == pytest.approx(expected)

    def test_efficiency_score_penalises_fast_drain(self):
        monitor = BatteryMonitor()
        monitor.record(reading(90, 0), ProfileTier.HIGH_PERFORMANCE)
        monitor.record(reading(80, 10), ProfileTier.HIGH_PERFORMANCE)
        assert monitor.power_efficiency_score(ProfileTier.HIGH_PERFORMANCE) == pytest.approx(0.4)

    def test_statistics(self):
        monitor = BatteryMonitor()
        monitor.record(reading(42, 0), ProfileTier.POWER_SAVER)
        stats = monitor.statistics(ProfileTier.POWER_SAVER)
        assert stats["samples"] == 1
        assert stats["latest_percentage"] == 42
        assert stats["is_charging"] is False
        assert stats["consumption_rate_per_minute"] == 0.0

    @pytest.mark.parametrize("kwargs", [
        {"history_size": 1},
        {"history_size": 5, "rate_window": 6},
        {"rate_window": 1},
    ])
    def test_invalid_sizes_rejected(self, kwargs):
        with pytest.raises(InvalidConfigurationError):
            BatteryMonitor(**kwargs)
