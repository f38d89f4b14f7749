"""Wiring of the sync and points services into one runtime.

Components are constructed explicitly and passed to each other; there are
no module-level singletons. Tests build a GameRuntime directly around an
InMemoryStore and a ManualClock.
"""

from __future__ import annotations

import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from gochi.clock import Clock, SystemClock, Ticker
from gochi.config import Settings, get_settings
from gochi.database import close_engine, create_engine, create_session_factory, create_tables
from gochi.events import ChangeNotifier
from gochi.pet.service import PetService
from gochi.points.engine import PointsEngine
from gochi.points.ledger import TransactionLog
from gochi.redis_client import close_redis, create_redis
from gochi.store.base import PersistentStore
from gochi.store.memory import InMemoryStore
from gochi.store.sql import SqlAlchemyStore
from gochi.sync.accounts import AccountRepository
from gochi.sync.cache import EntityCache
from gochi.sync.coordinator import SyncCoordinator
from gochi.sync.fallback import RedisFallbackCache
from gochi.sync.session import SessionSyncManager

logger = structlog.get_logger()


class GameRuntime:
    """All services for one client process, sharing one cache and store."""

    def __init__(
        self,
        settings: Settings,
        store: PersistentStore,
        *,
        clock: Clock | None = None,
        redis_client: redis.Redis | None = None,
        db_engine: AsyncEngine | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.clock = clock or SystemClock()
        self._redis = redis_client
        self._db_engine = db_engine

        self.notifier = ChangeNotifier(redis_client)
        self.fallback = RedisFallbackCache(redis_client, settings.fallback_ttl_seconds)
        self.cache = EntityCache(store, max_queue_size=settings.max_queue_size)
        self.coordinator = SyncCoordinator(
            self.cache,
            store,
            clock=self.clock,
            interval=settings.sync_interval_seconds,
            poll_attempts=settings.force_sync_poll_attempts,
            poll_interval=settings.force_sync_poll_interval_seconds,
            fallback=self.fallback,
            notifier=self.notifier,
        )
        self.sessions = SessionSyncManager(
            store,
            clock=self.clock,
            interval=settings.session_sync_interval_seconds,
            max_queue_size=settings.max_queue_size,
            batch_size=settings.session_sync_batch_size,
            strategy=settings.conflict_strategy,
            notifier=self.notifier,
        )
        self.accounts = AccountRepository(self.cache, store, clock=self.clock, fallback=self.fallback)
        self.ledger = TransactionLog()
        self.engine = PointsEngine(
            self.accounts,
            self.ledger,
            settings.points,
            clock=self.clock,
            notifier=self.notifier,
            sessions=self.sessions,
            max_pending=settings.max_queue_size,
        )
        self.pets = PetService(self.cache, store, self.engine, settings.pet, clock=self.clock)
        self.decay_ticker = Ticker("pet-decay", settings.pet_decay_interval_seconds, self.pets.decay_all)
        self.replay_ticker = Ticker("pending-replay", settings.replay_interval_seconds, self.engine.replay_pending)
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self.coordinator.start()
        self.sessions.start()
        self.decay_ticker.start()
        self.replay_ticker.start()
        self._started = True
        logger.info("runtime_started", store=type(self.store).__name__, redis=self._redis is not None)

    async def stop(self) -> None:
        """Stop background work and flush everything still pending."""
        if self._started:
            await self.decay_ticker.stop()
            await self.replay_ticker.stop()
            await self.sessions.stop()
            await self.coordinator.stop()
            self._started = False
        await self.cache.drain()
        logger.info("runtime_stopped", cache=self.cache.stats)

    async def close(self) -> None:
        await self.stop()
        await close_redis(self._redis)
        if self._db_engine is not None:
            await close_engine(self._db_engine)

    async def on_visibility_change(self, visible: bool) -> None:
        if not visible:
            await self.sessions.force_sync()
        await self.coordinator.on_visibility_change(visible)

    async def before_unload(self) -> None:
        await self.sessions.force_sync()
        await self.coordinator.before_unload()
        await self.cache.drain()


async def create_runtime(settings: Settings | None = None, *, clock: Clock | None = None) -> GameRuntime:
    """Build a runtime from settings, connecting the configured backends."""
    settings = settings or get_settings()
    redis_client = create_redis(settings.redis_url)
    db_engine: AsyncEngine | None = None

    store: PersistentStore
    if settings.store_backend == "sql":
        db_engine = create_engine(settings.database_url)
        await create_tables(db_engine)
        store = SqlAlchemyStore(create_session_factory(db_engine))
    elif settings.store_backend == "memory":
        store = InMemoryStore()
    else:
        msg = f"Unknown store backend: {settings.store_backend}"
        raise ValueError(msg)

    return GameRuntime(settings, store, clock=clock, redis_client=redis_client, db_engine=db_engine)
