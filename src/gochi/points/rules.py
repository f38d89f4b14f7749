"""Pure points-economy rules: multipliers, caps, streaks, cooldowns."""

from __future__ import annotations

from datetime import datetime

from gochi.config import MultiplierConfig, PointsConfig


def streak_multiplier(consecutive_days: int, cfg: MultiplierConfig) -> float:
    """1.0 below the streak threshold, then +rate per day over it, capped."""
    if consecutive_days < cfg.consecutive_days_min:
        return 1.0
    days_over = consecutive_days - cfg.consecutive_days_min
    return 1.0 + min(days_over * cfg.consecutive_days_rate, cfg.max_streak_bonus)


def referral_multiplier(referral_count: int, cfg: MultiplierConfig) -> float:
    if referral_count <= 0:
        return 1.0
    return 1.0 + min(referral_count * cfg.referral_rate, cfg.max_referral_bonus)


def calculate_multiplier(consecutive_days: int, referral_count: int, cfg: MultiplierConfig) -> float:
    """Combined multiplier, rounded to 2 decimals."""
    value = streak_multiplier(consecutive_days, cfg) * referral_multiplier(referral_count, cfg)
    return round(value, 2)


def max_multiplier(cfg: MultiplierConfig) -> float:
    return round((1.0 + cfg.max_streak_bonus) * (1.0 + cfg.max_referral_bonus), 2)


def daily_cap(days_active: int, cfg: PointsConfig) -> int:
    """Daily cap for capped sources. Grows with days active up to the ceiling."""
    return min(cfg.daily_cap_max, cfg.daily_cap_base + max(days_active, 0) * cfg.daily_cap_per_day)


def is_new_day(last: datetime | None, now: datetime) -> bool:
    return last is None or last.date() != now.date()


def days_between(earlier: datetime, later: datetime) -> int:
    """Whole calendar days from `earlier` to `later`."""
    return (later.date() - earlier.date()).days


def next_streak(current: int, last_claim: datetime | None, now: datetime) -> int | None:
    """Streak after a daily claim at `now`, or None if already claimed today."""
    if last_claim is None:
        return 1
    gap = days_between(last_claim, now)
    if gap <= 0:
        return None
    if gap == 1:
        return current + 1
    return 1


def streak_bonus(consecutive_days: int, cfg: PointsConfig) -> int:
    if consecutive_days >= cfg.multipliers.consecutive_days_min:
        return cfg.base_values.get("streak", 0)
    return 0


def cooldown_remaining(last: datetime | None, cooldown_seconds: int, now: datetime) -> float:
    """Seconds left before the source can award again (0 when ready)."""
    if last is None or cooldown_seconds <= 0:
        return 0.0
    elapsed = (now - last).total_seconds()
    return max(0.0, cooldown_seconds - elapsed)


def gameplay_amount(score: int, cfg: PointsConfig) -> int:
    """Base gameplay value times the score multiple, never less than one base."""
    return cfg.base_values.get("gameplay", 0) * max(1, score // cfg.gameplay_score_step)


def clamp_to_cap(points: int, used: int, cap: int) -> int:
    """Largest award <= points that keeps `used + award` within `cap`."""
    return max(0, min(points, cap - used))
