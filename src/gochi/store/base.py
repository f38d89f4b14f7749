"""Persistent store interface.

A store holds the authoritative copy of accounts, pets and game sessions.
Implementations raise StoreUnavailableError when the backend cannot be
reached; any other failure of a write is reported by returning False.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from gochi.errors import SessionError
from gochi.schemas import Account, EntityType, GameSession, PetState

# Primary key field of each entity type's serialized record
ID_FIELDS: dict[str, str] = {
    EntityType.ACCOUNT.value: "id",
    EntityType.PET.value: "account_id",
    EntityType.SESSION.value: "session_id",
}


def entity_id(entity_type: str, data: dict[str, Any]) -> str:
    """Return the primary key of a serialized entity."""
    try:
        return str(data[ID_FIELDS[entity_type]])
    except KeyError:
        msg = f"Cannot resolve id of {entity_type} record"
        raise ValueError(msg) from None


class PersistentStore(ABC):
    """Remote source of truth used by the sync layer."""

    @abstractmethod
    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> bool:
        """Insert a record. Returns False if it already exists or the write failed."""

    @abstractmethod
    async def update_entity(self, entity_type: str, data: dict[str, Any]) -> bool:
        """Replace a record. Returns False if it does not exist or the write failed."""

    @abstractmethod
    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""

    @abstractmethod
    async def get_account(self, account_id: str) -> Account | None: ...

    @abstractmethod
    async def get_pet_state(self, account_id: str) -> PetState | None: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> GameSession | None: ...

    async def create_session(self, owner_id: str, now: datetime | None = None) -> GameSession:
        """Create and return a fresh active session for `owner_id`.

        Creating a session deactivates any other active session of the same
        owner, so each owner has at most one.
        """
        session = GameSession(owner_id=owner_id)
        if now is not None:
            session.started_at = now
            session.last_active_at = now
        if not await self.create_entity(EntityType.SESSION.value, session.model_dump(mode="json")):
            msg = f"Could not create session for {owner_id}"
            raise SessionError(msg)
        return session
