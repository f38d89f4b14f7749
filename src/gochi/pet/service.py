"""Pet interactions, background decay and revive."""

from __future__ import annotations

import logging

from gochi.clock import Clock, SystemClock
from gochi.config import PetConfig
from gochi.errors import PetStateError
from gochi.pet import vitality
from gochi.points.engine import PointsEngine
from gochi.schemas import EntityType, PetActionResult, PetState, PointSource, SyncOperation
from gochi.store.base import PersistentStore
from gochi.sync.cache import EntityCache, cache_key

logger = logging.getLogger(__name__)

ACTIONS = ("feed", "play", "clean", "heal")


class PetService:
    """Mutates PetState through the cache and credits points through the engine."""

    def __init__(
        self,
        cache: EntityCache,
        store: PersistentStore,
        engine: PointsEngine,
        config: PetConfig | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._cache = cache
        self._store = store
        self._engine = engine
        self._config = config or PetConfig()
        self._clock = clock or SystemClock()

    @staticmethod
    def key(account_id: str) -> str:
        return cache_key(EntityType.PET.value, account_id)

    async def load(self, account_id: str) -> PetState:
        """Cached pet, else the stored one, else a new baseline pet."""
        key = self.key(account_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        pet = await self._store.get_pet_state(account_id)
        if pet is None:
            pet = vitality.baseline_pet(account_id, self._config, self._clock.now())
            self._cache.set(key, pet, mark_dirty=False)
            self._cache.queue_operation(EntityType.PET.value, SyncOperation.CREATE, pet.model_dump(mode="json"))
            logger.info("Created pet for %s", account_id)
        else:
            self._cache.set(key, pet, mark_dirty=False)
        return pet

    def _save(self, pet: PetState) -> None:
        self._cache.set(self.key(pet.account_id), pet)

    # --- Interactions ---

    async def interact(self, account_id: str, action: str) -> PetActionResult:
        deltas = self._config.interactions.get(action)
        if deltas is None:
            msg = f"Unknown pet action: {action}"
            raise PetStateError(account_id, msg)

        pet = await self.load(account_id)
        if pet.is_dead:
            return PetActionResult(success=False, pet=pet, reason="pet_dead")

        now = self._clock.now()
        last = pet.action_cooldowns.get(action)
        cooldown = self._config.action_cooldowns.get(action, 0)
        if last is not None and (now - last).total_seconds() < cooldown:
            return PetActionResult(success=False, pet=pet, reason="cooldown")

        vitality.apply_deltas(pet, deltas, self._config)
        pet.action_cooldowns[action] = now
        pet.last_interaction_at = now
        self._save(pet)
        if pet.is_dead:
            logger.warning("Pet of %s died during %s", account_id, action)

        points = await self._engine.award_interaction_points(account_id, action)
        if vitality.all_stats_maxed(pet):
            await self._engine.award_achievement(account_id, "pet_max_stats")
        return PetActionResult(success=True, pet=pet, points=points)

    async def feed(self, account_id: str) -> PetActionResult:
        return await self.interact(account_id, "feed")

    async def play(self, account_id: str) -> PetActionResult:
        return await self.interact(account_id, "play")

    async def clean(self, account_id: str) -> PetActionResult:
        return await self.interact(account_id, "clean")

    async def heal(self, account_id: str) -> PetActionResult:
        return await self.interact(account_id, "heal")

    # --- Decay ---

    async def decay_tick(self, account_id: str) -> int:
        """Decay one pet for the time elapsed and credit passive points. Returns points credited."""
        pet = await self.load(account_id)
        now = self._clock.now()
        hours = vitality.decay_elapsed_hours(pet, now)
        if pet.is_dead or hours <= 0:
            if pet.last_decay_at is None:
                pet.last_decay_at = now
                self._save(pet)
            return 0

        # Passive income is earned on the stats held during the elapsed period
        amount = vitality.passive_points(pet, hours, self._config)
        vitality.decay(pet, hours, self._config)
        pet.last_decay_at = now
        self._save(pet)
        if pet.is_dead:
            logger.warning("Pet of %s died from neglect", account_id)

        if amount <= 0:
            return 0
        result = await self._engine.award_points(
            account_id, amount, PointSource.PASSIVE, metadata={"hours": round(hours, 4)}
        )
        return result.points_awarded if result.success else 0

    async def decay_all(self) -> int:
        """Run decay for every cached pet. Returns total points credited."""
        total = 0
        prefix = f"{EntityType.PET.value}:"
        for key in self._cache.keys(prefix):
            total += await self.decay_tick(key[len(prefix):])
        return total

    # --- Revive ---

    async def revive(self, account_id: str) -> PetActionResult:
        """Bring a dead pet back at baseline stats, burning part of the points balance."""
        pet = await self.load(account_id)
        if not pet.is_dead:
            raise PetStateError(account_id, "revive requires a dead pet")

        burn = await self._engine.burn_points(account_id, self._config.revive_burn_fraction, PointSource.REVIVE)
        if not burn.success:
            return PetActionResult(success=False, pet=pet, reason=burn.reason, points=burn)

        vitality.reset_to_baseline(pet, self._config, self._clock.now())
        self._save(pet)
        logger.info("Pet of %s revived, %d points remain", account_id, burn.new_total)
        return PetActionResult(success=True, pet=pet, points=burn)
