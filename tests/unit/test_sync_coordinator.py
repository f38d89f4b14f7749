"""Sync coordinator: status cycle, dirty retention, abort and lifecycle."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import pytest

from gochi.events import ChangeNotifier
from gochi.schemas import Account, EntityType, PetState, SyncStatus
from gochi.store.memory import InMemoryStore
from gochi.sync.cache import EntityCache
from gochi.sync.coordinator import SyncCoordinator
from gochi.sync.fallback import RedisFallbackCache


class GatedStore(InMemoryStore):
    """Store whose updates wait for `gate` to open."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def update_entity(self, entity_type: str, data: dict[str, Any]) -> bool:
        self.entered.set()
        await self.gate.wait()
        return await super().update_entity(entity_type, data)


class RejectingStore(InMemoryStore):
    """Store that refuses every write for ids in `rejected`."""

    def __init__(self, rejected: set[str]) -> None:
        super().__init__()
        self.rejected = rejected

    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> bool:
        if data.get("id") in self.rejected:
            return False
        return await super().create_entity(entity_type, data)

    async def update_entity(self, entity_type: str, data: dict[str, Any]) -> bool:
        if data.get("id") in self.rejected:
            return False
        return await super().update_entity(entity_type, data)


def _coordinator(store, clock=None, **kwargs) -> tuple[EntityCache, SyncCoordinator]:
    cache = EntityCache(store)
    return cache, SyncCoordinator(cache, store, clock=clock, **kwargs)


class TestSynchronize:
    """Persisting dirty entities."""

    @pytest.mark.asyncio
    async def test_status_sequence_and_create(self, clock):
        store = InMemoryStore()
        cache, coordinator = _coordinator(store, clock)
        statuses: list[SyncStatus] = []
        coordinator.add_sync_listener(statuses.append)

        cache.set("account:a", Account(id="a", points=3))
        assert await coordinator.synchronize() is True

        assert statuses == [SyncStatus.SYNCING, SyncStatus.SUCCESS, SyncStatus.IDLE]
        assert store.raw(EntityType.ACCOUNT.value, "a")["version"] == 1
        assert not cache.is_dirty("account:a")
        assert cache.get("account:a").version == 1
        assert coordinator.last_sync_time == clock.now()

    @pytest.mark.asyncio
    async def test_version_increases_on_each_write(self):
        store = InMemoryStore()
        cache, coordinator = _coordinator(store)
        cache.set("account:a", Account(id="a"))
        await coordinator.synchronize()
        account = cache.get("account:a")
        account.points = 10
        cache.set("account:a", account)
        await coordinator.synchronize()
        row = store.raw("account", "a")
        assert row["version"] == 2
        assert row["points"] == 10

    @pytest.mark.asyncio
    async def test_pet_and_session_prefixes(self):
        store = InMemoryStore()
        cache, coordinator = _coordinator(store)
        cache.set("pet:a", PetState(account_id="a"))
        await coordinator.synchronize()
        assert store.raw("pet", "a")["version"] == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_listener(self):
        cache, coordinator = _coordinator(InMemoryStore())
        statuses: list[SyncStatus] = []
        unsubscribe = coordinator.add_sync_listener(statuses.append)
        unsubscribe()
        await coordinator.synchronize()
        assert statuses == []

    @pytest.mark.asyncio
    async def test_listener_error_does_not_break_sync(self):
        store = InMemoryStore()
        cache, coordinator = _coordinator(store)

        def broken(status: SyncStatus) -> None:
            raise RuntimeError("boom")

        coordinator.add_sync_listener(broken)
        cache.set("account:a", Account(id="a"))
        assert await coordinator.synchronize() is True
        assert store.raw("account", "a") is not None


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_second_sync_is_rejected_while_running(self):
        store = GatedStore()
        cache, coordinator = _coordinator(store)
        cache.set("account:a", Account(id="a"))

        first = asyncio.create_task(coordinator.synchronize())
        await store.entered.wait()
        assert coordinator.status == SyncStatus.SYNCING
        assert await coordinator.synchronize() is False

        store.gate.set()
        assert await first is True
        assert coordinator.status == SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_write_during_sync_stays_dirty(self):
        store = GatedStore()
        cache, coordinator = _coordinator(store)
        cache.set("account:a", Account(id="a", points=1))

        first = asyncio.create_task(coordinator.synchronize())
        await store.entered.wait()
        cache.set("account:a", Account(id="a", points=2))
        store.gate.set()
        await first

        assert cache.is_dirty("account:a")
        assert store.raw("account", "a")["points"] == 1
        await coordinator.synchronize()
        row = store.raw("account", "a")
        assert row["points"] == 2
        assert row["version"] == 2
        assert not cache.is_dirty("account:a")

    @pytest.mark.asyncio
    async def test_force_synchronize_gives_up_polling(self):
        store = GatedStore()
        cache, coordinator = _coordinator(store, poll_attempts=3, poll_interval=0.01)
        cache.set("account:a", Account(id="a"))

        first = asyncio.create_task(coordinator.synchronize())
        await store.entered.wait()
        assert await coordinator.force_synchronize() is False

        store.gate.set()
        await first

    @pytest.mark.asyncio
    async def test_force_synchronize_when_idle(self):
        store = InMemoryStore()
        cache, coordinator = _coordinator(store)
        cache.set("account:a", Account(id="a"))
        assert await coordinator.force_synchronize() is True


class TestFailures:
    @pytest.mark.asyncio
    async def test_unavailable_store_aborts_with_error(self):
        store = InMemoryStore()
        cache, coordinator = _coordinator(store)
        statuses: list[SyncStatus] = []
        coordinator.add_sync_listener(statuses.append)
        cache.set("account:a", Account(id="a"))
        cache.set("account:b", Account(id="b"))
        store.available = False

        assert await coordinator.synchronize() is False
        assert statuses == [SyncStatus.SYNCING, SyncStatus.ERROR, SyncStatus.IDLE]
        assert sorted(cache.get_dirty_entities()) == ["account:a", "account:b"]
        assert coordinator.last_sync_time is None

    @pytest.mark.asyncio
    async def test_rejected_entity_stays_dirty(self):
        store = RejectingStore({"bad"})
        cache, coordinator = _coordinator(store)
        statuses: list[SyncStatus] = []
        coordinator.add_sync_listener(statuses.append)
        cache.set("account:bad", Account(id="bad"))
        cache.set("account:good", Account(id="good"))

        assert await coordinator.synchronize() is True
        assert SyncStatus.SUCCESS in statuses
        assert cache.get_dirty_entities() == ["account:bad"]
        assert store.raw("account", "good") is not None
        assert coordinator.stats["entities_failed"] == 1

    @pytest.mark.asyncio
    async def test_unknown_prefix_stays_dirty(self):
        cache, coordinator = _coordinator(InMemoryStore())
        cache.set("widget:1", {"id": "1"})
        assert await coordinator.synchronize() is True
        assert cache.is_dirty("widget:1")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_hidden_pauses_and_flushes(self):
        store = InMemoryStore()
        cache, coordinator = _coordinator(store, interval=60)
        coordinator.start()
        cache.set("account:a", Account(id="a"))

        await coordinator.on_visibility_change(False)
        assert coordinator.ticker.paused
        assert not coordinator.ticker.running
        assert store.raw("account", "a") is not None

        await coordinator.on_visibility_change(True)
        assert coordinator.ticker.running
        await coordinator.stop()
        assert not coordinator.ticker.running

    @pytest.mark.asyncio
    async def test_before_unload_flushes_dirty(self):
        store = InMemoryStore()
        cache, coordinator = _coordinator(store)
        cache.set("account:a", Account(id="a", points=4))
        await coordinator.before_unload()
        assert store.raw("account", "a")["points"] == 4

    @pytest.mark.asyncio
    async def test_periodic_tick_syncs(self):
        store = InMemoryStore()
        cache, coordinator = _coordinator(store, interval=0.01)
        cache.set("account:a", Account(id="a"))
        coordinator.start()
        for _ in range(50):
            if store.raw("account", "a") is not None:
                break
            await asyncio.sleep(0.01)
        await coordinator.stop()
        assert store.raw("account", "a") is not None

    @pytest.mark.asyncio
    async def test_account_write_is_mirrored_and_published(self):
        store = InMemoryStore()
        redis_client = AsyncMock()
        notifier = ChangeNotifier()
        seen: list[str] = []
        notifier.subscribe_to_changes("account", lambda entity_id, data: seen.append(entity_id))
        cache = EntityCache(store)
        coordinator = SyncCoordinator(
            cache, store, fallback=RedisFallbackCache(redis_client), notifier=notifier
        )
        cache.set("account:a", Account(id="a"))
        await coordinator.synchronize()

        redis_client.set.assert_awaited_once()
        assert redis_client.set.await_args.args[0] == "fallback:account:a"
        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_pet_write_is_published(self):
        store = InMemoryStore()
        notifier = ChangeNotifier()
        seen: list[tuple[str, int]] = []
        notifier.subscribe_to_changes("pet", lambda entity_id, data: seen.append((entity_id, data["version"])))
        cache = EntityCache(store)
        coordinator = SyncCoordinator(cache, store, notifier=notifier)
        cache.set("pet:a", PetState(account_id="a"))
        await coordinator.synchronize()

        assert seen == [("a", 1)]
