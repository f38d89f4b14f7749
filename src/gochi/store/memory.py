"""In-process store used by tests and offline demos."""

from __future__ import annotations

import copy
from typing import Any

import structlog

from gochi.errors import StoreUnavailableError
from gochi.schemas import Account, EntityType, GameSession, PetState
from gochi.store.base import PersistentStore, entity_id

logger = structlog.get_logger()


class InMemoryStore(PersistentStore):
    """Dict-backed store. Set `available = False` to simulate a lost connection."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {t.value: {} for t in EntityType}
        self.available = True
        self.writes = 0

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError

    def _table(self, entity_type: str) -> dict[str, dict[str, Any]]:
        try:
            return self._tables[entity_type]
        except KeyError:
            msg = f"Unknown entity type: {entity_type}"
            raise ValueError(msg) from None

    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> bool:
        self._check()
        table = self._table(entity_type)
        key = entity_id(entity_type, data)
        if key in table:
            return False
        if entity_type == EntityType.SESSION.value and data.get("is_active", True):
            self._deactivate_sessions(data["owner_id"])
        table[key] = copy.deepcopy(data)
        self.writes += 1
        return True

    async def update_entity(self, entity_type: str, data: dict[str, Any]) -> bool:
        self._check()
        table = self._table(entity_type)
        key = entity_id(entity_type, data)
        if key not in table:
            return False
        table[key] = copy.deepcopy(data)
        self.writes += 1
        return True

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        self._check()
        return self._table(entity_type).pop(entity_id, None) is not None

    async def get_account(self, account_id: str) -> Account | None:
        self._check()
        row = self._tables[EntityType.ACCOUNT.value].get(account_id)
        return Account.model_validate(row) if row is not None else None

    async def get_pet_state(self, account_id: str) -> PetState | None:
        self._check()
        row = self._tables[EntityType.PET.value].get(account_id)
        return PetState.model_validate(row) if row is not None else None

    async def get_session(self, session_id: str) -> GameSession | None:
        self._check()
        row = self._tables[EntityType.SESSION.value].get(session_id)
        return GameSession.model_validate(row) if row is not None else None

    def _deactivate_sessions(self, owner_id: str) -> None:
        for row in self._tables[EntityType.SESSION.value].values():
            if row["owner_id"] == owner_id and row.get("is_active"):
                row["is_active"] = False
                logger.info("session_deactivated", session_id=row["session_id"], owner_id=owner_id)

    # --- Test helpers ---

    def raw(self, entity_type: str, key: str) -> dict[str, Any] | None:
        """Return the stored record without validation."""
        row = self._tables[entity_type].get(key)
        return copy.deepcopy(row) if row is not None else None

    def put(self, entity_type: str, data: dict[str, Any]) -> None:
        """Seed a record directly, bypassing availability and session rules."""
        self._tables[entity_type][entity_id(entity_type, data)] = copy.deepcopy(data)
