"""Periodic persistence of dirty cache entries.

Status cycle: idle -> syncing -> success | error -> idle. Listeners see
every transition, synchronously, in order.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime

import structlog
from pydantic import BaseModel

from gochi.clock import Clock, SystemClock, Ticker
from gochi.errors import StoreError, StoreUnavailableError
from gochi.events import ChangeNotifier
from gochi.schemas import Account, EntityType, SyncStatus
from gochi.store.base import PersistentStore
from gochi.sync.cache import EntityCache
from gochi.sync.fallback import RedisFallbackCache

logger = structlog.get_logger()

SyncListener = Callable[[SyncStatus], None]

PERSISTED_TYPES = frozenset(t.value for t in EntityType)


class SyncCoordinator:
    """Flushes dirty entities from an EntityCache to a PersistentStore."""

    def __init__(
        self,
        cache: EntityCache,
        store: PersistentStore,
        *,
        clock: Clock | None = None,
        interval: float = 5.0,
        poll_attempts: int = 10,
        poll_interval: float = 0.1,
        fallback: RedisFallbackCache | None = None,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        self._cache = cache
        self._store = store
        self._clock = clock or SystemClock()
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval
        self._fallback = fallback
        self._notifier = notifier
        self._listeners: list[SyncListener] = []
        self._status = SyncStatus.IDLE
        self._ticker = Ticker("entity-sync", interval, self._on_tick)
        self.last_sync_time: datetime | None = None
        self.last_error: str | None = None
        self._runs = 0
        self._entities_written = 0
        self._entities_failed = 0

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def ticker(self) -> Ticker:
        return self._ticker

    def add_sync_listener(self, listener: SyncListener) -> Callable[[], None]:
        """Register a status listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_status(self, status: SyncStatus) -> None:
        self._status = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("sync_listener_failed", status=status.value)

    # --- Lifecycle ---

    def start(self) -> None:
        self._ticker.start()
        logger.info("sync_started", interval=self._ticker.interval)

    async def stop(self) -> None:
        """Cancel the periodic sync and flush what is still dirty."""
        await self._ticker.stop()
        if self._cache.has_dirty_entities():
            await self.force_synchronize()
        logger.info("sync_stopped", **self.stats)

    async def on_visibility_change(self, visible: bool) -> None:
        if visible:
            self._ticker.resume()
            logger.debug("sync_resumed")
            return
        await self._ticker.pause()
        await self.force_synchronize()

    async def before_unload(self) -> None:
        if self._cache.has_dirty_entities():
            await self.force_synchronize()

    async def _on_tick(self) -> None:
        if self._cache.has_dirty_entities():
            await self.synchronize()

    # --- Sync ---

    async def force_synchronize(self) -> bool:
        """Wait briefly for an in-flight run, then synchronize."""
        for _ in range(self._poll_attempts):
            if self._status != SyncStatus.SYNCING:
                break
            await asyncio.sleep(self._poll_interval)
        return await self.synchronize()

    async def synchronize(self) -> bool:
        """Persist every dirty entity. Returns False if skipped or aborted."""
        if self._status == SyncStatus.SYNCING:
            logger.debug("sync_already_running")
            return False

        self._set_status(SyncStatus.SYNCING)
        self._runs += 1
        dirty = self._cache.get_dirty_entities()
        written = 0
        try:
            for key in dirty:
                if await self._persist(key):
                    written += 1
                else:
                    self._entities_failed += 1
        except StoreUnavailableError as exc:
            self.last_error = str(exc)
            logger.warning("sync_aborted", reason=str(exc), written=written, pending=len(dirty) - written)
            self._set_status(SyncStatus.ERROR)
            self._set_status(SyncStatus.IDLE)
            return False
        except Exception:
            self._set_status(SyncStatus.ERROR)
            self._set_status(SyncStatus.IDLE)
            raise

        self._entities_written += written
        self.last_sync_time = self._clock.now()
        self.last_error = None
        if dirty:
            logger.info("sync_completed", written=written, failed=len(dirty) - written)
        self._set_status(SyncStatus.SUCCESS)
        self._set_status(SyncStatus.IDLE)
        return True

    async def _persist(self, key: str) -> bool:
        entity_type, _, entity_id = key.partition(":")
        if entity_type not in PERSISTED_TYPES or not entity_id:
            logger.warning("sync_unknown_key", key=key)
            return False

        revision = self._cache.revision(key)
        value = self._cache.get(key)
        if not isinstance(value, BaseModel):
            logger.warning("sync_unserializable", key=key)
            return False

        new_version = value.version + 1
        data = value.model_dump(mode="json")
        data["version"] = new_version
        try:
            ok = await self._store.update_entity(entity_type, data)
            if not ok:
                ok = await self._store.create_entity(entity_type, data)
        except StoreUnavailableError:
            raise
        except StoreError:
            logger.warning("sync_entity_error", key=key, exc_info=True)
            return False
        if not ok:
            logger.warning("sync_entity_failed", key=key)
            return False

        unchanged = self._cache.revision(key) == revision
        current = self._cache.get(key)
        current.version = max(current.version, new_version)
        self._cache.set(key, current, mark_dirty=False)
        if unchanged:
            self._cache.clear_dirty_flag(key)

        if isinstance(current, Account) and self._fallback is not None:
            await self._fallback.save_account(current)
        if self._notifier is not None:
            await self._notifier.publish(entity_type, entity_id, current.model_dump(mode="json"))
        return True

    @property
    def stats(self) -> dict[str, int]:
        return {
            "runs": self._runs,
            "entities_written": self._entities_written,
            "entities_failed": self._entities_failed,
        }
