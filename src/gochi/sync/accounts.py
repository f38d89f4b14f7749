"""Cache-first account loading.

Accounts are read from the EntityCache, then the store. A missing account
is created on first use. When the store cannot be reached the account is
marked unavailable and callers must not mutate it until a later load
succeeds; the Redis mirror may still serve read-only summaries.
"""

from __future__ import annotations

import structlog

from gochi.clock import Clock, SystemClock
from gochi.errors import AccountUnavailableError, StoreError
from gochi.schemas import Account, EntityType, SyncOperation
from gochi.store.base import PersistentStore
from gochi.sync.cache import EntityCache, cache_key
from gochi.sync.fallback import RedisFallbackCache

logger = structlog.get_logger()


class AccountRepository:
    def __init__(
        self,
        cache: EntityCache,
        store: PersistentStore,
        *,
        clock: Clock | None = None,
        fallback: RedisFallbackCache | None = None,
    ) -> None:
        self._cache = cache
        self._store = store
        self._clock = clock or SystemClock()
        self._fallback = fallback
        self._unavailable: set[str] = set()

    @staticmethod
    def key(account_id: str) -> str:
        return cache_key(EntityType.ACCOUNT.value, account_id)

    def is_unavailable(self, account_id: str) -> bool:
        return account_id in self._unavailable

    @property
    def unavailable(self) -> set[str]:
        return set(self._unavailable)

    async def load(self, account_id: str) -> Account:
        """Return the account, creating it if the store has none.

        Raises AccountUnavailableError when the store call fails.
        """
        key = self.key(account_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            account = await self._store.get_account(account_id)
        except StoreError as exc:
            self._unavailable.add(account_id)
            logger.warning("account_load_failed", account_id=account_id, reason=str(exc))
            raise AccountUnavailableError(account_id) from exc

        # another load may have filled the entry while the store call was pending
        cached = self._cache.get(key)
        if cached is not None:
            self._unavailable.discard(account_id)
            return cached

        if account is None:
            account = Account(id=account_id, created_at=self._clock.now())
            self._cache.set(key, account, mark_dirty=False)
            self._cache.queue_operation(EntityType.ACCOUNT.value, SyncOperation.CREATE, account.model_dump(mode="json"))
            logger.info("account_created", account_id=account_id)
            if self._fallback is not None:
                # a mirror left from a deleted account must not be served as stale data
                await self._fallback.forget(account_id)
        else:
            self._cache.set(key, account, mark_dirty=False)
            if self._fallback is not None:
                await self._fallback.save_account(account)

        if account_id in self._unavailable:
            self._unavailable.discard(account_id)
            logger.info("account_recovered", account_id=account_id)
        return account

    async def peek(self, account_id: str) -> tuple[Account | None, bool]:
        """Read-only lookup that may fall back to the mirror. Returns (account, stale)."""
        try:
            return await self.load(account_id), False
        except AccountUnavailableError:
            if self._fallback is None:
                return None, True
            return await self._fallback.load_account(account_id), True

    def save(self, account: Account) -> None:
        """Write back through the cache; the coordinator persists it."""
        self._cache.set(self.key(account.id), account)
