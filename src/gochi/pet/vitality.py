"""Pure pet vitality rules.

Stats live in 0..100. Health is derived from them and never set directly.
A pet dies when health or hunger reaches zero and stays dead until revived.
"""

from __future__ import annotations

import math
from datetime import datetime

from gochi.config import PetConfig
from gochi.schemas import PetState

STATS = ("hunger", "happiness", "cleanliness", "energy")

HEALTH_WEIGHTS = {"hunger": 0.4, "happiness": 0.2, "cleanliness": 0.2, "energy": 0.2}
OVERFEED_PENALTY = 0.1


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def compute_health(
    hunger: float, happiness: float, cleanliness: float, energy: float, overfeed: float = 0.0
) -> float:
    health = (
        HEALTH_WEIGHTS["hunger"] * hunger
        + HEALTH_WEIGHTS["happiness"] * happiness
        + HEALTH_WEIGHTS["cleanliness"] * cleanliness
        + HEALTH_WEIGHTS["energy"] * energy
        - OVERFEED_PENALTY * max(overfeed, 0.0)
    )
    return round(clamp(health), 2)


def average_stats(pet: PetState) -> float:
    return sum(getattr(pet, stat) for stat in STATS) / len(STATS)


def quality_score(average: float, cfg: PetConfig) -> float:
    return round(clamp(average / cfg.quality_divisor, cfg.quality_min, cfg.quality_max), 2)


def refresh(pet: PetState, cfg: PetConfig) -> PetState:
    """Recompute derived fields and latch death."""
    pet.health = compute_health(pet.hunger, pet.happiness, pet.cleanliness, pet.energy, pet.overfeed)
    pet.quality_score = quality_score(average_stats(pet), cfg)
    if pet.health <= 0 or pet.hunger <= 0:
        pet.is_dead = True
    return pet


def apply_deltas(pet: PetState, deltas: dict[str, float], cfg: PetConfig) -> PetState:
    """Add stat deltas with clamping. Hunger pushed past 100 is recorded as overfeed."""
    for stat, delta in deltas.items():
        if stat not in STATS:
            continue
        raw = getattr(pet, stat) + delta
        if stat == "hunger":
            pet.overfeed = max(raw - 100.0, 0.0)
        setattr(pet, stat, clamp(raw))
    return refresh(pet, cfg)


def decay_elapsed_hours(pet: PetState, now: datetime) -> float:
    marks = [t for t in (pet.last_interaction_at, pet.last_decay_at) if t is not None]
    if not marks:
        return 0.0
    return max((now - max(marks)).total_seconds(), 0.0) / 3600


def decay(pet: PetState, hours: float, cfg: PetConfig) -> PetState:
    """Reduce each stat by its hourly rate times `hours`. Clears overfeed."""
    for stat in STATS:
        rate = cfg.decay_per_hour.get(stat, 0.0)
        setattr(pet, stat, clamp(getattr(pet, stat) - rate * hours))
    pet.overfeed = 0.0
    return refresh(pet, cfg)


def passive_rate(average: float, cfg: PetConfig) -> int:
    """Points per hour for a pet whose stats average `average`."""
    for threshold, rate in cfg.passive_tiers:
        if average > threshold:
            return rate
    return cfg.passive_tiers[-1][1] if cfg.passive_tiers else 0


def passive_points(pet: PetState, hours: float, cfg: PetConfig) -> int:
    if pet.is_dead or hours <= 0:
        return 0
    return math.floor(passive_rate(average_stats(pet), cfg) * hours)


def all_stats_maxed(pet: PetState) -> bool:
    return all(getattr(pet, stat) >= 100.0 for stat in STATS)


def baseline_pet(account_id: str, cfg: PetConfig, now: datetime | None = None) -> PetState:
    pet = PetState(account_id=account_id, **cfg.baseline)
    pet.last_decay_at = now
    return refresh(pet, cfg)


def reset_to_baseline(pet: PetState, cfg: PetConfig, now: datetime) -> PetState:
    """Revive: baseline stats, alive, cooldowns cleared."""
    for stat, value in cfg.baseline.items():
        setattr(pet, stat, clamp(value))
    pet.overfeed = 0.0
    pet.is_dead = False
    pet.action_cooldowns = {}
    pet.last_interaction_at = now
    pet.last_decay_at = now
    return refresh(pet, cfg)
