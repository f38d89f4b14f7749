"""Session sync manager: optimistic edits, reconciliation and conflict strategies."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import pytest

from gochi.errors import SessionError, StoreUnavailableError
from gochi.events import ChangeNotifier
from gochi.schemas import ChangeEvent, ConflictStrategy, EntityType, SyncOperation
from gochi.store.memory import InMemoryStore
from gochi.sync.session import SessionSyncManager

SESSION = EntityType.SESSION.value


def _server_write(store: InMemoryStore, session_id: str, **fields: Any) -> None:
    """Simulate another client writing the session."""
    row = store.raw(SESSION, session_id)
    row.update(fields)
    store.put(SESSION, row)


@pytest.fixture
def manager(store, clock) -> SessionSyncManager:
    return SessionSyncManager(store, clock=clock)


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_start_session(self, manager, store):
        session = await manager.start_session("alice")
        assert manager.has_active_session()
        assert manager.session_id == session.session_id
        assert store.raw(SESSION, session.session_id)["is_active"] is True

    @pytest.mark.asyncio
    async def test_new_session_replaces_old(self, manager, store):
        first = await manager.start_session("alice")
        second = await manager.start_session("alice")
        assert first.session_id != second.session_id
        assert store.raw(SESSION, first.session_id)["is_active"] is False
        assert store.raw(SESSION, second.session_id)["is_active"] is True

    @pytest.mark.asyncio
    async def test_end_session_flushes_and_deactivates(self, manager, store):
        session = await manager.start_session("alice")
        manager.update_game_state({"score": 10})
        await manager.end_session()

        row = store.raw(SESSION, session.session_id)
        assert row["is_active"] is False
        assert row["game_state"] == {"score": 10}
        assert not manager.has_active_session()
        assert manager.get_game_state() == {}

    @pytest.mark.asyncio
    async def test_update_without_session(self, manager):
        assert manager.update_game_state({"a": 1}) is False


class TestLocalEdits:
    @pytest.mark.asyncio
    async def test_update_applies_immediately_and_notifies(self, manager):
        events: list[ChangeEvent] = []
        await manager.start_session("alice")
        manager.add_change_listener(events.append)

        manager.update_game_state({"amount": 5}, path="userData.points")

        assert manager.get_game_state() == {"userData": {"points": {"amount": 5}}}
        assert manager.get_game_state_value("userData.points.amount") == 5
        assert manager.get_game_state_value("userData.missing", "d") == "d"
        assert events[-1].operation == SyncOperation.UPDATE
        assert events[-1].data == {"userData": {"points": {"amount": 5}}}
        assert manager.pending_changes == 1

    @pytest.mark.asyncio
    async def test_delete_property(self, manager, store):
        await manager.start_session("alice")
        manager.update_game_state({"a": {"b": 1, "c": 2}})
        await manager.force_sync()
        manager.delete_game_state_property("a.b")
        assert manager.get_game_state() == {"a": {"c": 2}}
        await manager.force_sync()
        assert store.raw(SESSION, manager.session_id)["game_state"] == {"a": {"c": 2}}

    @pytest.mark.asyncio
    async def test_queue_overflow_drops_oldest(self, store, clock):
        manager = SessionSyncManager(store, clock=clock, max_queue_size=3, batch_size=100)
        await manager.start_session("alice")
        manager.set_offline(True)
        for i in range(5):
            manager.update_game_state({f"k{i}": i})

        assert manager.pending_changes == 3
        assert manager.dropped_changes == 2
        assert set(manager.get_game_state()) == {"k0", "k1", "k2", "k3", "k4"}

        manager.offline = False
        await manager.force_sync()
        assert store.raw(SESSION, manager.session_id)["game_state"] == {"k2": 2, "k3": 3, "k4": 4}


class TestReconciliation:
    """Server-newer and local-current branches."""

    @pytest.mark.asyncio
    async def test_local_current_writes_next_version(self, manager, store):
        await manager.start_session("alice")
        manager.update_game_state({"x": 1})
        assert await manager.force_sync() is True
        row = store.raw(SESSION, manager.session_id)
        assert row["version"] == 1
        assert row["game_state"] == {"x": 1}
        assert manager.pending_changes == 0

    @pytest.mark.asyncio
    async def test_client_wins_replays_on_server_state(self, manager, store):
        await manager.start_session("alice")
        manager.current_session.version = 3
        _server_write(store, manager.session_id, version=5, game_state={"b": 2})

        manager.update_game_state({"a": 1})
        assert await manager.force_sync() is True

        row = store.raw(SESSION, manager.session_id)
        assert row["game_state"] == {"a": 1, "b": 2}
        assert row["version"] == 6
        assert manager.get_game_state() == {"a": 1, "b": 2}
        assert manager.current_session.version == 6

    @pytest.mark.asyncio
    async def test_server_wins_discards_queue(self, store, clock):
        manager = SessionSyncManager(store, clock=clock, strategy=ConflictStrategy.SERVER_WINS)
        events: list[ChangeEvent] = []
        await manager.start_session("alice")
        manager.add_change_listener(events.append)
        _server_write(store, manager.session_id, version=5, game_state={"b": 2})

        manager.update_game_state({"a": 1})
        assert await manager.force_sync() is False

        assert manager.get_game_state() == {"b": 2}
        assert manager.pending_changes == 0
        assert manager.current_session.version == 5
        assert events[-1].data == {"b": 2}

    @pytest.mark.asyncio
    async def test_merge_keeps_server_value_on_conflict(self, store, clock):
        manager = SessionSyncManager(store, clock=clock, strategy="merge")
        await manager.start_session("alice")
        manager.update_game_state({"score": 1, "level": 1})
        await manager.force_sync()
        _server_write(store, manager.session_id, version=3, game_state={"score": 50, "level": 1, "coins": 7})

        manager.update_game_state({"score": 2, "level": 2})
        assert await manager.force_sync() is True

        row = store.raw(SESSION, manager.session_id)
        assert row["game_state"] == {"score": 50, "level": 2, "coins": 7}
        assert row["version"] == 4
        assert manager.last_conflicts == ["score"]

    @pytest.mark.asyncio
    async def test_missing_session_is_replaced_and_changes_carried(self, manager, store):
        old = await manager.start_session("alice")
        await store.delete_entity(SESSION, old.session_id)

        manager.update_game_state({"a": 1})
        assert await manager.force_sync() is False
        assert manager.session_id != old.session_id
        assert manager.pending_changes == 1
        assert manager.get_game_state() == {"a": 1}

        assert await manager.force_sync() is True
        assert store.raw(SESSION, manager.session_id)["game_state"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_store_error_defers(self, manager, store):
        await manager.start_session("alice")
        manager.update_game_state({"a": 1})
        store.get_session = AsyncMock(side_effect=StoreUnavailableError())
        assert await manager.force_sync() is False
        assert manager.pending_changes == 1


class TestTriggers:
    @pytest.mark.asyncio
    async def test_offline_skips_and_online_resumes(self, manager, store):
        await manager.start_session("alice")
        manager.set_offline(True)
        manager.update_game_state({"a": 1})
        assert await manager.process_pending_sync() is False

        manager.set_offline(False)
        assert manager.pending_task is not None
        assert await manager.pending_task is True
        assert store.raw(SESSION, manager.session_id)["game_state"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_batch_size_triggers_sync(self, store, clock):
        manager = SessionSyncManager(store, clock=clock, batch_size=3)
        await manager.start_session("alice")
        manager.update_game_state({"a": 1})
        manager.update_game_state({"b": 1})
        assert manager.pending_task is None
        manager.update_game_state({"c": 1})
        assert manager.pending_task is not None
        await manager.pending_task
        assert store.raw(SESSION, manager.session_id)["version"] == 1

    @pytest.mark.asyncio
    async def test_elapsed_time_triggers_sync(self, manager, clock):
        await manager.start_session("alice")
        clock.advance(5)
        manager.update_game_state({"a": 1})
        assert manager.pending_task is not None
        assert await manager.pending_task is True


class TestPublishing:
    """Persisted session writes reach the change notifier."""

    @pytest.mark.asyncio
    async def test_lifecycle_writes_are_published(self, store, clock):
        notifier = ChangeNotifier()
        seen: list[dict[str, Any]] = []
        notifier.subscribe_to_changes(SESSION, lambda entity_id, data: seen.append(data))
        manager = SessionSyncManager(store, clock=clock, notifier=notifier)

        session = await manager.start_session("alice")
        manager.update_game_state({"a": 1})
        await manager.force_sync()
        await manager.end_session()

        assert [data["session_id"] for data in seen] == [session.session_id] * 3
        assert [data["is_active"] for data in seen] == [True, True, False]
        assert seen[1]["game_state"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_rejected_write_is_not_published(self, store, clock):
        notifier = ChangeNotifier()
        seen: list[str] = []
        notifier.subscribe_to_changes(SESSION, lambda entity_id, data: seen.append(entity_id))
        manager = SessionSyncManager(store, clock=clock, notifier=notifier)
        await manager.start_session("alice")
        seen.clear()

        store.available = False
        manager.update_game_state({"a": 1})
        assert await manager.force_sync() is False
        assert seen == []

    @pytest.mark.asyncio
    async def test_reconcile_without_session_raises(self, manager):
        with pytest.raises(SessionError):
            await manager._reconcile()
        assert await manager.process_pending_sync() is False
