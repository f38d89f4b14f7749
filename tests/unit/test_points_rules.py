"""Points rules unit tests: multipliers, caps, streaks, cooldowns."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from gochi.config import MultiplierConfig, PointsConfig
from gochi.points.rules import (
    calculate_multiplier,
    clamp_to_cap,
    cooldown_remaining,
    daily_cap,
    gameplay_amount,
    is_new_day,
    max_multiplier,
    next_streak,
    referral_multiplier,
    streak_bonus,
    streak_multiplier,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestMultipliers:
    """Streak and referral multipliers."""

    def test_below_threshold_is_one(self):
        assert streak_multiplier(2, MultiplierConfig()) == 1.0

    def test_at_threshold_is_one(self):
        assert streak_multiplier(3, MultiplierConfig()) == 1.0

    def test_five_days_is_one_point_two(self):
        assert streak_multiplier(5, MultiplierConfig()) == pytest.approx(1.2)

    def test_streak_bonus_capped(self):
        assert streak_multiplier(100, MultiplierConfig()) == pytest.approx(2.0)

    def test_referral_multiplier(self):
        assert referral_multiplier(0, MultiplierConfig()) == 1.0
        assert referral_multiplier(4, MultiplierConfig()) == pytest.approx(1.2)
        assert referral_multiplier(1000, MultiplierConfig()) == pytest.approx(2.0)

    def test_combined_is_rounded(self):
        assert calculate_multiplier(5, 4, MultiplierConfig()) == 1.44
        assert calculate_multiplier(5, 0, MultiplierConfig()) == 1.2

    def test_always_within_bounds(self):
        cfg = MultiplierConfig()
        ceiling = max_multiplier(cfg)
        for days in range(0, 60):
            for referrals in range(0, 45, 3):
                value = calculate_multiplier(days, referrals, cfg)
                assert 1.0 <= value <= ceiling


class TestDailyCap:
    def test_base_cap(self):
        assert daily_cap(0, PointsConfig()) == 200

    def test_grows_with_days_active(self):
        assert daily_cap(5, PointsConfig()) == 300

    def test_ceiling(self):
        assert daily_cap(20, PointsConfig()) == 500
        assert daily_cap(365, PointsConfig()) == 500

    def test_clamp_to_cap(self):
        assert clamp_to_cap(20, 195, 200) == 5
        assert clamp_to_cap(20, 200, 200) == 0
        assert clamp_to_cap(20, 0, 200) == 20


class TestStreaks:
    """Calendar-day streak transitions."""

    def test_first_claim(self):
        assert next_streak(0, None, NOW) == 1

    def test_consecutive_day_increments(self):
        assert next_streak(4, NOW - timedelta(days=1), NOW) == 5

    def test_gap_resets(self):
        assert next_streak(4, NOW - timedelta(days=2), NOW) == 1

    def test_same_day_is_rejected(self):
        assert next_streak(4, NOW - timedelta(hours=1), NOW) is None

    def test_yesterday_late_evening_still_consecutive(self):
        last = datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc)
        assert next_streak(1, last, NOW) == 2

    def test_is_new_day(self):
        assert is_new_day(None, NOW) is True
        assert is_new_day(NOW - timedelta(hours=2), NOW) is False
        assert is_new_day(NOW - timedelta(days=1), NOW) is True

    def test_streak_bonus_from_threshold(self):
        cfg = PointsConfig()
        assert streak_bonus(2, cfg) == 0
        assert streak_bonus(3, cfg) == 20


class TestCooldownsAndAmounts:
    def test_cooldown_remaining(self):
        assert cooldown_remaining(None, 60, NOW) == 0.0
        assert cooldown_remaining(NOW - timedelta(seconds=20), 60, NOW) == pytest.approx(40.0)
        assert cooldown_remaining(NOW - timedelta(seconds=90), 60, NOW) == 0.0

    def test_gameplay_amount(self):
        cfg = PointsConfig()
        assert gameplay_amount(0, cfg) == 10
        assert gameplay_amount(99, cfg) == 10
        assert gameplay_amount(250, cfg) == 20
