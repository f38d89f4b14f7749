"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from gochi.clock import ManualClock
from gochi.config import Settings
from gochi.runtime import GameRuntime
from gochi.schemas import Account, EntityType
from gochi.store.memory import InMemoryStore

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, store_backend="memory", redis_url="", log_format="console")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def runtime(settings: Settings, store: InMemoryStore, clock: ManualClock) -> GameRuntime:
    return GameRuntime(settings, store, clock=clock)


@pytest.fixture
def seed_account(store: InMemoryStore):
    """Write an account straight into the store."""

    def _seed(account_id: str = "alice", **fields: Any) -> Account:
        account = Account(id=account_id, created_at=START, **fields)
        store.put(EntityType.ACCOUNT.value, account.model_dump(mode="json"))
        return account

    return _seed
