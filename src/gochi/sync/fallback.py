"""Redis mirror of the last known account state.

Written on every successful account sync and read only when the store
cannot be reached. Never authoritative: a mirrored account is served
read-only and is never written back to the store.
"""

from __future__ import annotations

import json

import redis.asyncio as redis
import structlog

from gochi.schemas import Account

logger = structlog.get_logger()


class RedisFallbackCache:
    """Best-effort account mirror. All failures are logged and swallowed."""

    def __init__(self, client: redis.Redis | None, ttl_seconds: int = 7 * 24 * 3600) -> None:
        self._client = client
        self._ttl = ttl_seconds

    @staticmethod
    def _key(account_id: str) -> str:
        return f"fallback:account:{account_id}"

    async def save_account(self, account: Account) -> None:
        if self._client is None:
            return
        try:
            await self._client.set(self._key(account.id), account.model_dump_json(), ex=self._ttl)
        except redis.RedisError:
            logger.warning("fallback_save_failed", account_id=account.id, exc_info=True)

    async def load_account(self, account_id: str) -> Account | None:
        if self._client is None:
            return None
        try:
            raw = await self._client.get(self._key(account_id))
        except redis.RedisError:
            logger.warning("fallback_load_failed", account_id=account_id, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return Account.model_validate(json.loads(raw))
        except ValueError:
            logger.warning("fallback_corrupt", account_id=account_id)
            return None

    async def forget(self, account_id: str) -> None:
        if self._client is None:
            return
        try:
            await self._client.delete(self._key(account_id))
        except redis.RedisError:
            logger.warning("fallback_delete_failed", account_id=account_id, exc_info=True)
