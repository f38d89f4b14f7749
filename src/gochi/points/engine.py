"""Points engine: awards, deductions, streaks and achievements.

Every mutation loads the account cache-first, applies the rules in
gochi.points.rules, appends a PointTransaction to the ledger and writes the
account back through the cache. Persistence is left to the SyncCoordinator.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from gochi.clock import Clock, SystemClock
from gochi.config import PointsConfig
from gochi.errors import AccountUnavailableError, InvalidOperationError
from gochi.events import ChangeNotifier
from gochi.points.ledger import TransactionLog
from gochi.points.rules import (
    calculate_multiplier,
    clamp_to_cap,
    cooldown_remaining,
    daily_cap,
    days_between,
    gameplay_amount,
    is_new_day,
    next_streak,
    streak_bonus,
)
from gochi.schemas import (
    CREDIT_OPERATIONS,
    DEBIT_OPERATIONS,
    Account,
    AwardResult,
    DailyBonusResult,
    PointOperation,
    PointSource,
    PointsSummary,
    PointTransaction,
)
from gochi.sync.accounts import AccountRepository
from gochi.sync.session import SessionSyncManager

logger = logging.getLogger(__name__)

# Consecutive-day thresholds that unlock streak achievements
STREAK_ACHIEVEMENT_MAP = {3: "daily_streak_3", 7: "daily_streak_7", 30: "daily_streak_30"}

# Games-played thresholds that unlock gameplay achievements
GAMES_ACHIEVEMENT_MAP = {1: "first_game", 5: "five_games"}

REASON_UNAVAILABLE = "account_unavailable"


@dataclass
class PendingMutation:
    """A mutation rejected while its account could not be loaded."""

    method: str
    blocked_id: str
    args: tuple[Any, ...]
    kwargs: dict[str, Any] = field(default_factory=dict)


class PointsEngine:
    """Applies the points economy rules to accounts."""

    def __init__(
        self,
        accounts: AccountRepository,
        ledger: TransactionLog,
        config: PointsConfig | None = None,
        *,
        clock: Clock | None = None,
        notifier: ChangeNotifier | None = None,
        sessions: SessionSyncManager | None = None,
        max_pending: int = 100,
    ) -> None:
        self._accounts = accounts
        self._ledger = ledger
        self._config = config or PointsConfig()
        self._clock = clock or SystemClock()
        self._notifier = notifier
        self._sessions = sessions
        self._max_pending = max_pending
        self._pending: list[PendingMutation] = []
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def config(self) -> PointsConfig:
        return self._config

    def update_config(self, **changes: Any) -> PointsConfig:
        """Replace top-level config fields. Unknown fields raise InvalidOperationError."""
        unknown = set(changes) - set(PointsConfig.model_fields)
        if unknown:
            msg = f"Unknown points config fields: {sorted(unknown)}"
            raise InvalidOperationError(msg)
        self._config = self._config.model_copy(update=changes)
        logger.info("Points config updated: %s", sorted(changes))
        return self._config

    # --- Account access ---

    def _lock(self, account_id: str) -> asyncio.Lock:
        """Serialises load, apply and commit for one account. Not reentrant."""
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def _begin(self, method: str, account_id: str, *args: Any, **kwargs: Any) -> Account | None:
        """Load `account_id` for mutation, or queue the call if it is blocked."""
        if not self._accounts.is_unavailable(account_id):
            try:
                return await self._accounts.load(account_id)
            except AccountUnavailableError:
                pass
        self._queue_pending(PendingMutation(method, account_id, args, kwargs))
        return None

    def _queue_pending(self, mutation: PendingMutation) -> None:
        if len(self._pending) >= self._max_pending:
            dropped = self._pending.pop(0)
            logger.warning("Pending mutation queue full, dropping %s for %s", dropped.method, dropped.blocked_id)
        self._pending.append(mutation)
        logger.info("Queued %s for unavailable account %s", mutation.method, mutation.blocked_id)

    @property
    def pending_mutations(self) -> int:
        return len(self._pending)

    async def replay_pending(self) -> int:
        """Retry loading blocked accounts and replay their queued mutations in order."""
        if not self._pending:
            return 0
        pending, self._pending = self._pending, []
        recovered: set[str] = set()
        still_blocked: set[str] = set()
        for account_id in dict.fromkeys(m.blocked_id for m in pending):
            try:
                await self._accounts.load(account_id)
            except AccountUnavailableError:
                still_blocked.add(account_id)
            else:
                recovered.add(account_id)

        kept = [m for m in pending if m.blocked_id in still_blocked]
        self._pending = kept + self._pending
        replayed = 0
        for mutation in pending:
            if mutation.blocked_id in recovered:
                await getattr(self, mutation.method)(*mutation.args, **mutation.kwargs)
                replayed += 1
        if replayed:
            logger.info("Replayed %d pending mutations (%d still blocked)", replayed, len(kept))
        return replayed

    def _unavailable(self, account_id: str) -> AwardResult:
        logger.warning("Account %s unavailable, mutation queued for replay", account_id)
        return AwardResult(success=False, reason=REASON_UNAVAILABLE)

    async def _commit(self, account: Account, tx: PointTransaction | None = None) -> None:
        self._accounts.save(account)
        if tx is None:
            return
        if self._sessions is not None and self._sessions.has_active_session():
            session = self._sessions.current_session
            if session is not None and session.owner_id == account.id:
                self._sessions.update_game_state(
                    {
                        "lastPointsUpdate": {
                            "amount": tx.amount,
                            "source": tx.source.value,
                            "timestamp": tx.timestamp.isoformat(),
                        }
                    },
                    path="userData.points",
                )
        if self._notifier is not None:
            await self._notifier.publish(
                "points",
                account.id,
                {"amount": tx.amount, "source": tx.source.value, "total": account.points},
            )

    # --- Core award ---

    def _apply_award(
        self,
        account: Account,
        amount: int,
        source: PointSource,
        operation: PointOperation,
        metadata: dict[str, Any] | None,
        now: datetime,
    ) -> tuple[AwardResult, PointTransaction | None]:
        cfg = self._config
        cooldown = cfg.cooldowns.get(source.value)
        if cooldown is not None and cooldown_remaining(account.cooldowns.get(source.value), cooldown, now) > 0:
            return AwardResult(
                success=False, new_total=account.points, multiplier=account.multiplier, reason="cooldown"
            ), None

        multiplier = calculate_multiplier(account.consecutive_days, account.referral_count, cfg.multipliers)
        raw = math.floor(amount * multiplier + 1e-9)

        if is_new_day(account.last_points_update, now):
            account.daily_points = 0

        points = raw
        capped = source.value in cfg.capped_sources
        if capped:
            points = clamp_to_cap(points, account.daily_points, daily_cap(account.days_active, cfg))
        if source == PointSource.INTERACTION:
            points = clamp_to_cap(points, account.interaction_points_total, cfg.interaction_lifetime_cap)

        if points <= 0:
            reason = "cap_reached" if raw > 0 else "zero_amount"
            return AwardResult(success=False, new_total=account.points, multiplier=multiplier, reason=reason), None

        tx = PointTransaction(
            wallet_id=account.id,
            amount=points,
            operation=operation,
            source=source,
            timestamp=now,
            metadata={**(metadata or {}), "multiplier": multiplier, "requested": amount},
        )
        self._ledger.append(tx)

        account.points += points
        if capped:
            account.daily_points += points
        if source == PointSource.INTERACTION:
            account.interaction_points_total += points
        if cooldown is not None:
            account.cooldowns[source.value] = now
        account.multiplier = multiplier
        account.last_points_update = now
        account.recent_point_gain = points
        return AwardResult(success=True, points_awarded=points, new_total=account.points, multiplier=multiplier), tx

    async def award_points(
        self,
        account_id: str,
        amount: int,
        source: PointSource | str,
        operation: PointOperation | str = PointOperation.EARN,
        metadata: dict[str, Any] | None = None,
    ) -> AwardResult:
        """Award `amount` base points, subject to cooldowns, multiplier and caps."""
        source = PointSource(source)
        operation = PointOperation(operation)
        if operation not in CREDIT_OPERATIONS:
            msg = f"award_points does not accept operation {operation.value}"
            raise InvalidOperationError(msg)
        if amount < 0:
            msg = "Award amount must be non-negative"
            raise InvalidOperationError(msg)

        async with self._lock(account_id):
            account = await self._begin("award_points", account_id, account_id, amount, source, operation, metadata)
            if account is None:
                return self._unavailable(account_id)

            result, tx = self._apply_award(account, amount, source, operation, metadata, self._clock.now())
            if result.success:
                await self._commit(account, tx)
            else:
                logger.debug("Award rejected for %s (%s): %s", account_id, source.value, result.reason)
        return result

    async def deduct_points(
        self,
        account_id: str,
        amount: int,
        source: PointSource | str,
        metadata: dict[str, Any] | None = None,
        operation: PointOperation | str = PointOperation.SPEND,
    ) -> AwardResult:
        """Remove `amount` points. Fails without change if the balance is short."""
        source = PointSource(source)
        operation = PointOperation(operation)
        if operation not in DEBIT_OPERATIONS:
            msg = f"deduct_points does not accept operation {operation.value}"
            raise InvalidOperationError(msg)
        if amount <= 0:
            msg = "Deduction amount must be positive"
            raise InvalidOperationError(msg)

        async with self._lock(account_id):
            account = await self._begin("deduct_points", account_id, account_id, amount, source, metadata, operation)
            if account is None:
                return self._unavailable(account_id)
            result, tx = self._apply_deduction(account, amount, source, operation, metadata)
            if result.success:
                await self._commit(account, tx)
        return result

    def _apply_deduction(
        self,
        account: Account,
        amount: int,
        source: PointSource,
        operation: PointOperation,
        metadata: dict[str, Any] | None,
    ) -> tuple[AwardResult, PointTransaction | None]:
        if account.points < amount:
            return AwardResult(
                success=False, new_total=account.points, multiplier=account.multiplier, reason="insufficient_points"
            ), None
        tx = PointTransaction(
            wallet_id=account.id,
            amount=-amount,
            operation=operation,
            source=source,
            timestamp=self._clock.now(),
            metadata=metadata or {},
        )
        self._ledger.append(tx)
        account.points -= amount
        return AwardResult(
            success=True, points_awarded=-amount, new_total=account.points, multiplier=account.multiplier
        ), tx

    # --- Specialised awards ---

    async def award_daily_bonus(self, account_id: str) -> DailyBonusResult:
        """Daily login bonus with streak tracking."""
        async with self._lock(account_id):
            result = await self._claim_daily_bonus(account_id)
        if not result.success:
            return result

        for threshold, achievement_id in STREAK_ACHIEVEMENT_MAP.items():
            if result.streak >= threshold:
                await self.award_achievement(account_id, achievement_id)

        account = await self._accounts.load(account_id)
        return result.model_copy(update={"new_total": account.points})

    async def _claim_daily_bonus(self, account_id: str) -> DailyBonusResult:
        account = await self._begin("award_daily_bonus", account_id, account_id)
        if account is None:
            return DailyBonusResult(success=False, reason=REASON_UNAVAILABLE)

        now = self._clock.now()
        last_claim = account.last_daily_bonus_at
        if last_claim is not None and days_between(last_claim, now) <= 0:
            return DailyBonusResult(
                success=False,
                new_total=account.points,
                multiplier=account.multiplier,
                reason="already_claimed",
                streak=account.consecutive_days,
                days_active=account.days_active,
            )

        streak = next_streak(account.consecutive_days, last_claim or account.last_points_update, now) or 1
        bonus = streak_bonus(streak, self._config)
        amount = self._config.base_values.get("daily", 0) + bonus
        result, tx = self._apply_award(
            account,
            amount,
            PointSource.DAILY,
            PointOperation.EARN,
            {"streak": streak, "is_streak_bonus": bonus > 0},
            now,
        )
        if not result.success:
            return DailyBonusResult(
                **result.model_dump(), streak=account.consecutive_days, days_active=account.days_active
            )

        account.days_active += 1
        account.consecutive_days = streak
        account.last_daily_bonus_at = now
        account.multiplier = calculate_multiplier(streak, account.referral_count, self._config.multipliers)
        await self._commit(account, tx)
        logger.info("Daily bonus for %s: %d points, streak %d", account_id, result.points_awarded, streak)
        return DailyBonusResult(**result.model_dump(), streak=streak, days_active=account.days_active)

    async def award_achievement(
        self, account_id: str, achievement_id: str, metadata: dict[str, Any] | None = None
    ) -> AwardResult:
        """Unlock a one-time achievement. Repeated unlocks are rejected."""
        points = self._config.achievements.get(achievement_id)
        if points is None:
            logger.warning("Unknown achievement %s for %s", achievement_id, account_id)
            return AwardResult(success=False, reason="unknown_achievement")

        async with self._lock(account_id):
            account = await self._begin("award_achievement", account_id, account_id, achievement_id, metadata)
            if account is None:
                return self._unavailable(account_id)
            if achievement_id in account.achievements:
                return AwardResult(
                    success=False, new_total=account.points, multiplier=account.multiplier, reason="already_unlocked"
                )

            now = self._clock.now()
            account.achievements[achievement_id] = now
            result, tx = self._apply_award(
                account,
                points,
                PointSource.ACHIEVEMENT,
                PointOperation.BONUS,
                {**(metadata or {}), "achievement_id": achievement_id},
                now,
            )
            await self._commit(account, tx)
        logger.info("Achievement %s unlocked for %s", achievement_id, account_id)
        if not result.success:
            return AwardResult(success=True, new_total=account.points, multiplier=account.multiplier)
        return result

    async def award_gameplay_points(
        self, account_id: str, score: int, metadata: dict[str, Any] | None = None
    ) -> AwardResult:
        async with self._lock(account_id):
            account = await self._begin("award_gameplay_points", account_id, account_id, score, metadata)
            if account is None:
                return self._unavailable(account_id)

            amount = gameplay_amount(score, self._config)
            result, tx = self._apply_award(
                account,
                amount,
                PointSource.GAMEPLAY,
                PointOperation.EARN,
                {**(metadata or {}), "score": score},
                self._clock.now(),
            )
            if not result.success:
                return result

            account.games_played += 1
            account.high_score = max(account.high_score, score)
            await self._commit(account, tx)
            games_played = account.games_played

        for threshold, achievement_id in GAMES_ACHIEVEMENT_MAP.items():
            if games_played >= threshold:
                await self.award_achievement(account_id, achievement_id)
        return result

    async def award_interaction_points(self, account_id: str, interaction_type: str) -> AwardResult:
        return await self.award_points(
            account_id,
            self._config.base_values.get("interaction", 0),
            PointSource.INTERACTION,
            metadata={"interaction": interaction_type},
        )

    async def award_referral_points(self, referrer_id: str, referred_id: str) -> AwardResult:
        """Credit `referrer_id` for bringing in `referred_id`. Each account can be referred once."""
        if referrer_id == referred_id:
            return AwardResult(success=False, reason="self_referral")

        # fixed order so two opposite referrals cannot deadlock
        first, second = sorted((referrer_id, referred_id))
        async with self._lock(first), self._lock(second):
            return await self._apply_referral(referrer_id, referred_id)

    async def _apply_referral(self, referrer_id: str, referred_id: str) -> AwardResult:
        referrer = await self._begin("award_referral_points", referrer_id, referrer_id, referred_id)
        if referrer is None:
            return self._unavailable(referrer_id)
        referred = await self._begin("award_referral_points", referred_id, referrer_id, referred_id)
        if referred is None:
            return self._unavailable(referred_id)
        if referred.referred_by is not None:
            return AwardResult(
                success=False, new_total=referrer.points, multiplier=referrer.multiplier, reason="already_referred"
            )

        result, tx = self._apply_award(
            referrer,
            self._config.base_values.get("referral", 0),
            PointSource.REFERRAL,
            PointOperation.BONUS,
            {"referred_id": referred_id},
            self._clock.now(),
        )
        if not result.success:
            return result

        referrer.referral_count += 1
        referrer.referral_points += result.points_awarded
        referrer.multiplier = calculate_multiplier(
            referrer.consecutive_days, referrer.referral_count, self._config.multipliers
        )
        referred.referred_by = referrer_id
        self._accounts.save(referred)
        await self._commit(referrer, tx)
        logger.info("Referral %s -> %s credited %d points", referrer_id, referred_id, result.points_awarded)
        return result

    # --- Spending and adjustments ---

    async def claim_points(
        self, account_id: str, amount: int, metadata: dict[str, Any] | None = None
    ) -> AwardResult:
        """Spend points on a purchase and track the lifetime claimed total."""
        if amount <= 0:
            msg = "Claim amount must be positive"
            raise InvalidOperationError(msg)
        async with self._lock(account_id):
            account = await self._begin("claim_points", account_id, account_id, amount, metadata)
            if account is None:
                return self._unavailable(account_id)
            result, tx = self._apply_deduction(account, amount, PointSource.PURCHASE, PointOperation.SPEND, metadata)
            if result.success:
                account.claimed_points += amount
                await self._commit(account, tx)
        return result

    async def burn_points(
        self, account_id: str, fraction: float, source: PointSource | str = PointSource.REVIVE
    ) -> AwardResult:
        """Burn `fraction` of the balance as a penalty. Remaining points round down."""
        if not 0 < fraction <= 1:
            msg = "Burn fraction must be in (0, 1]"
            raise InvalidOperationError(msg)
        source = PointSource(source)
        async with self._lock(account_id):
            account = await self._begin("burn_points", account_id, account_id, fraction, source)
            if account is None:
                return self._unavailable(account_id)

            remaining = math.floor(account.points * (1 - fraction))
            burned = account.points - remaining
            if burned <= 0:
                return AwardResult(success=True, new_total=account.points, multiplier=account.multiplier)
            result, tx = self._apply_deduction(
                account, burned, source, PointOperation.PENALTY, {"fraction": fraction}
            )
            await self._commit(account, tx)
        logger.info("Burned %d points from %s (%s)", burned, account_id, source.value)
        return result

    async def update_points(
        self, account_id: str, points: int, source: PointSource | str = PointSource.PURCHASE
    ) -> AwardResult:
        """Set the balance to `points`, logging the difference as a refund or penalty."""
        if points < 0:
            msg = "Points balance cannot be negative"
            raise InvalidOperationError(msg)
        source = PointSource(source)
        async with self._lock(account_id):
            account = await self._begin("update_points", account_id, account_id, points, source)
            if account is None:
                return self._unavailable(account_id)

            delta = points - account.points
            if delta == 0:
                return AwardResult(success=True, new_total=account.points, multiplier=account.multiplier)
            tx = PointTransaction(
                wallet_id=account_id,
                amount=delta,
                operation=PointOperation.REFUND if delta > 0 else PointOperation.PENALTY,
                source=source,
                timestamp=self._clock.now(),
                metadata={"adjustment": True, "previous": account.points},
            )
            self._ledger.append(tx)
            account.points = points
            await self._commit(account, tx)
        logger.info("Points for %s set to %d (delta %+d)", account_id, points, delta)
        return AwardResult(success=True, points_awarded=delta, new_total=points, multiplier=account.multiplier)

    # --- Reads ---

    async def get_points_data(self, account_id: str) -> PointsSummary | None:
        """Summary for display. Served from the Redis mirror when the store is down."""
        account, stale = await self._accounts.peek(account_id)
        if account is None:
            return None
        now = self._clock.now()
        daily_points = 0 if is_new_day(account.last_points_update, now) else account.daily_points
        return PointsSummary(
            account_id=account.id,
            points=account.points,
            daily_points=daily_points,
            daily_cap=daily_cap(account.days_active, self._config),
            multiplier=calculate_multiplier(account.consecutive_days, account.referral_count, self._config.multipliers),
            consecutive_days=account.consecutive_days,
            days_active=account.days_active,
            claimed_points=account.claimed_points,
            referral_count=account.referral_count,
            achievements=sorted(account.achievements),
            stale=stale,
        )

    def get_transaction_history(self, account_id: str) -> list[PointTransaction]:
        return self._ledger.history(account_id)
