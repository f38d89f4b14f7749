"""SQLAlchemy-backed persistent store (postgres via asyncpg in deployment)."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, update
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gochi.db.models import AccountRow, PetRow, SessionRow
from gochi.errors import StoreUnavailableError
from gochi.schemas import Account, EntityType, GameSession, PetState
from gochi.store.base import PersistentStore, entity_id

logger = logging.getLogger(__name__)

_ROWS: dict[str, type[AccountRow] | type[PetRow] | type[SessionRow]] = {
    EntityType.ACCOUNT.value: AccountRow,
    EntityType.PET.value: PetRow,
    EntityType.SESSION.value: SessionRow,
}


def _row_class(entity_type: str) -> type[AccountRow] | type[PetRow] | type[SessionRow]:
    try:
        return _ROWS[entity_type]
    except KeyError:
        msg = f"Unknown entity type: {entity_type}"
        raise ValueError(msg) from None


class SqlAlchemyStore(PersistentStore):
    """Stores each entity as a JSON document keyed by its id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> bool:
        row_cls = _row_class(entity_type)
        key = entity_id(entity_type, data)
        try:
            async with self._session() as db:
                if await db.get(row_cls, key) is not None:
                    return False
                if entity_type == EntityType.SESSION.value and data.get("is_active", True):
                    await db.execute(
                        update(SessionRow)
                        .where(SessionRow.owner_id == data["owner_id"], SessionRow.is_active.is_(True))
                        .values(is_active=False)
                    )
                db.add(self._to_row(entity_type, key, data))
                await db.commit()
        except StoreUnavailableError:
            raise
        except SQLAlchemyError:
            logger.exception("Failed to create %s %s", entity_type, key)
            return False
        return True

    async def update_entity(self, entity_type: str, data: dict[str, Any]) -> bool:
        row_cls = _row_class(entity_type)
        key = entity_id(entity_type, data)
        try:
            async with self._session() as db:
                row = await db.get(row_cls, key)
                if row is None:
                    return False
                row.data = data
                row.version = int(data.get("version", 0))
                if isinstance(row, SessionRow):
                    row.is_active = bool(data.get("is_active", True))
                await db.commit()
        except StoreUnavailableError:
            raise
        except SQLAlchemyError:
            logger.exception("Failed to update %s %s", entity_type, key)
            return False
        return True

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        row_cls = _row_class(entity_type)
        pk = row_cls.__mapper__.primary_key[0]
        try:
            async with self._session() as db:
                result = await db.execute(delete(row_cls).where(pk == entity_id))
                await db.commit()
        except StoreUnavailableError:
            raise
        except SQLAlchemyError:
            logger.exception("Failed to delete %s %s", entity_type, entity_id)
            return False
        return bool(result.rowcount)

    async def get_account(self, account_id: str) -> Account | None:
        data = await self._get_data(AccountRow, account_id)
        return Account.model_validate(data) if data is not None else None

    async def get_pet_state(self, account_id: str) -> PetState | None:
        data = await self._get_data(PetRow, account_id)
        return PetState.model_validate(data) if data is not None else None

    async def get_session(self, session_id: str) -> GameSession | None:
        async with self._session() as db:
            row = await db.get(SessionRow, session_id)
            if row is None:
                return None
            session = GameSession.model_validate(row.data)
            # The column is authoritative: other sessions' creation flips it
            session.is_active = row.is_active
            return session

    async def _get_data(self, row_cls: type[AccountRow] | type[PetRow], key: str) -> dict[str, Any] | None:
        async with self._session() as db:
            row = await db.get(row_cls, key)
            return dict(row.data) if row is not None else None

    @staticmethod
    def _to_row(entity_type: str, key: str, data: dict[str, Any]) -> AccountRow | PetRow | SessionRow:
        version = int(data.get("version", 0))
        if entity_type == EntityType.ACCOUNT.value:
            return AccountRow(id=key, version=version, data=data)
        if entity_type == EntityType.PET.value:
            return PetRow(account_id=key, version=version, data=data)
        return SessionRow(
            session_id=key,
            owner_id=data["owner_id"],
            is_active=bool(data.get("is_active", True)),
            version=version,
            data=data,
        )
