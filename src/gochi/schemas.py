"""Domain records shared by the store, sync and points layers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityType(str, Enum):
    ACCOUNT = "account"
    PET = "pet"
    SESSION = "session"


class PointOperation(str, Enum):
    EARN = "earn"
    SPEND = "spend"
    BONUS = "bonus"
    PENALTY = "penalty"
    REFUND = "refund"


CREDIT_OPERATIONS = frozenset({PointOperation.EARN, PointOperation.BONUS, PointOperation.REFUND})
DEBIT_OPERATIONS = frozenset({PointOperation.SPEND, PointOperation.PENALTY})


class PointSource(str, Enum):
    GAMEPLAY = "gameplay"
    DAILY = "daily"
    ACHIEVEMENT = "achievement"
    REFERRAL = "referral"
    STREAK = "streak"
    INTERACTION = "interaction"
    PURCHASE = "purchase"
    PASSIVE = "passive"
    REVIVE = "revive"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConflictStrategy(str, Enum):
    CLIENT_WINS = "client-wins"
    SERVER_WINS = "server-wins"
    MERGE = "merge"


# --- Entities ---


class Account(BaseModel):
    """A player's points wallet and progression counters."""

    id: str
    points: int = Field(default=0, ge=0)
    daily_points: int = Field(default=0, ge=0)
    multiplier: float = Field(default=1.0, ge=1.0)
    consecutive_days: int = Field(default=0, ge=0)
    days_active: int = Field(default=0, ge=0)
    cooldowns: dict[str, datetime] = Field(default_factory=dict)
    achievements: dict[str, datetime] = Field(default_factory=dict)
    version: int = 0

    games_played: int = 0
    high_score: int = 0
    referral_count: int = 0
    referral_points: int = 0
    referred_by: str | None = None
    claimed_points: int = 0
    interaction_points_total: int = 0
    recent_point_gain: int = 0
    last_points_update: datetime | None = None
    last_daily_bonus_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class PetState(BaseModel):
    """Vital stats of an account's pet. Stats are clamped to 0..100."""

    account_id: str
    hunger: float = Field(default=50.0, ge=0, le=100)
    happiness: float = Field(default=40.0, ge=0, le=100)
    cleanliness: float = Field(default=40.0, ge=0, le=100)
    energy: float = Field(default=30.0, ge=0, le=100)
    health: float = Field(default=0.0, ge=0, le=100)
    # Feed amount that overflowed the hunger ceiling; penalises health until the next decay
    overfeed: float = Field(default=0.0, ge=0)
    is_dead: bool = False
    quality_score: float = 1.0
    last_interaction_at: datetime | None = None
    last_decay_at: datetime | None = None
    action_cooldowns: dict[str, datetime] = Field(default_factory=dict)
    version: int = 0


class GameSession(BaseModel):
    """Ephemeral per-play game state owned by one account."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str
    game_state: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    version: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    last_active_at: datetime = Field(default_factory=_utcnow)


class PointTransaction(BaseModel):
    """Immutable ledger entry. Credits are non-negative, debits non-positive."""

    model_config = ConfigDict(frozen=True)

    wallet_id: str
    amount: int
    operation: PointOperation
    source: PointSource
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_sign(self) -> PointTransaction:
        if self.operation in CREDIT_OPERATIONS and self.amount < 0:
            msg = f"{self.operation.value} amount must be >= 0, got {self.amount}"
            raise ValueError(msg)
        if self.operation in DEBIT_OPERATIONS and self.amount > 0:
            msg = f"{self.operation.value} amount must be <= 0, got {self.amount}"
            raise ValueError(msg)
        return self


class ChangeEvent(BaseModel):
    entity_type: str
    entity_id: str
    operation: SyncOperation
    data: dict[str, Any] = Field(default_factory=dict)


# --- Results ---


class AwardResult(BaseModel):
    success: bool
    points_awarded: int = 0
    new_total: int = 0
    multiplier: float = 1.0
    reason: str | None = None


class PointsSummary(BaseModel):
    account_id: str
    points: int
    daily_points: int
    daily_cap: int
    multiplier: float
    consecutive_days: int
    days_active: int
    claimed_points: int
    referral_count: int
    achievements: list[str]
    stale: bool = False


class DailyBonusResult(AwardResult):
    streak: int = 0
    days_active: int = 0


class PetActionResult(BaseModel):
    success: bool
    pet: PetState | None = None
    reason: str | None = None
    points: AwardResult | None = None
