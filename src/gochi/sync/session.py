"""Game session state sync.

Local changes are applied to the session state immediately and queued.
A reconciliation pass fetches the server copy, replays the queue on top of
it according to the conflict strategy and writes the result back with a
bumped version.
"""

from __future__ import annotations

import asyncio
import copy
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from gochi.clock import Clock, SystemClock, Ticker
from gochi.errors import SessionError, StoreError
from gochi.events import ChangeNotifier
from gochi.schemas import ChangeEvent, ConflictStrategy, EntityType, GameSession, SyncOperation
from gochi.store.base import PersistentStore
from gochi.sync.merge import (
    build_nested_patch,
    changed_paths,
    deep_merge,
    delete_nested,
    get_nested,
    leaf_paths,
    paths_overlap,
    set_nested,
)

logger = structlog.get_logger()

ChangeListener = Callable[[ChangeEvent], None]

_MISSING = object()


@dataclass(eq=False)
class PendingChange:
    """A queued local edit. `patch` is set for updates, `path` for deletes."""

    operation: SyncOperation
    path: str
    patch: dict[str, Any] | None = None
    queued_at: datetime | None = None

    def touched_paths(self) -> set[str]:
        if self.operation == SyncOperation.DELETE:
            return {self.path}
        return leaf_paths(self.patch or {})


def replay(state: dict[str, Any], changes: Iterable[PendingChange]) -> dict[str, Any]:
    """Apply queued changes to `state` in order."""
    for change in changes:
        if change.operation == SyncOperation.DELETE:
            state = delete_nested(state, change.path)
        else:
            state = deep_merge(state, change.patch or {})
    return state


@dataclass
class SyncResult:
    synced: bool
    version: int | None = None
    conflicts: list[str] = field(default_factory=list)


class SessionSyncManager:
    """Keeps one active game session in sync with the store."""

    def __init__(
        self,
        store: PersistentStore,
        *,
        clock: Clock | None = None,
        interval: float = 2.0,
        max_queue_size: int = 100,
        batch_size: int = 10,
        strategy: ConflictStrategy | str = ConflictStrategy.CLIENT_WINS,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._interval = interval
        self._max_queue_size = max_queue_size
        self._batch_size = batch_size
        self.strategy = ConflictStrategy(strategy)
        self.current_session: GameSession | None = None
        self._base_state: dict[str, Any] = {}
        self._queue: deque[PendingChange] = deque()
        self._listeners: list[ChangeListener] = []
        self._lock = asyncio.Lock()
        self._ticker = Ticker("session-sync", interval, self.process_pending_sync)
        self._sync_task: asyncio.Task[bool] | None = None
        self.offline = False
        self.last_sync: datetime = self._clock.now()
        self.last_conflicts: list[str] = []
        self.dropped_changes = 0

    # --- Accessors ---

    @property
    def session_id(self) -> str | None:
        return self.current_session.session_id if self.current_session else None

    @property
    def pending_changes(self) -> int:
        return len(self._queue)

    @property
    def pending_task(self) -> asyncio.Task[bool] | None:
        return self._sync_task

    @property
    def ticker(self) -> Ticker:
        return self._ticker

    def has_active_session(self) -> bool:
        return self.current_session is not None and self.current_session.is_active

    def get_game_state(self) -> dict[str, Any]:
        if self.current_session is None:
            return {}
        return copy.deepcopy(self.current_session.game_state)

    def get_game_state_value(self, path: str, default: Any = None) -> Any:
        if self.current_session is None:
            return default
        value = get_nested(self.current_session.game_state, path, _MISSING)
        return default if value is _MISSING else copy.deepcopy(value)

    def add_change_listener(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, operation: SyncOperation, data: dict[str, Any]) -> None:
        if self.current_session is None:
            return
        event = ChangeEvent(
            entity_type=EntityType.SESSION.value,
            entity_id=self.current_session.session_id,
            operation=operation,
            data=data,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("session_listener_failed", session_id=event.entity_id)

    async def _publish(self, session: GameSession) -> None:
        """Announce a session write that reached the store."""
        if self._notifier is not None:
            await self._notifier.publish(
                EntityType.SESSION.value, session.session_id, session.model_dump(mode="json")
            )

    # --- Lifecycle ---

    def start(self) -> None:
        self._ticker.start()

    async def stop(self) -> None:
        await self._ticker.stop()
        await self.force_sync()

    async def start_session(self, owner_id: str) -> GameSession:
        """End any current session and adopt a freshly created one."""
        if self.current_session is not None:
            await self.end_session()
        session = await self._store.create_session(owner_id, now=self._clock.now())
        self._adopt(session)
        self._queue.clear()
        logger.info("session_started", session_id=session.session_id, owner_id=owner_id)
        self._notify(SyncOperation.CREATE, session.game_state)
        await self._publish(session)
        return session

    async def end_session(self) -> None:
        """Flush queued changes, mark the session inactive and forget it."""
        if self.current_session is None:
            return
        await self.force_sync()
        session = self.current_session
        if session is None:
            return
        if self._queue:
            logger.warning("session_ended_with_pending", session_id=session.session_id, pending=len(self._queue))
        ended = session.model_copy(
            update={"is_active": False, "version": session.version + 1, "last_active_at": self._clock.now()}
        )
        try:
            if await self._store.update_entity(EntityType.SESSION.value, ended.model_dump(mode="json")):
                await self._publish(ended)
        except StoreError:
            logger.warning("session_end_write_failed", session_id=session.session_id, exc_info=True)
        self._notify(SyncOperation.DELETE, {})
        self.current_session = None
        self._base_state = {}
        self._queue.clear()
        logger.info("session_ended", session_id=session.session_id)

    def _adopt(self, session: GameSession) -> None:
        self.current_session = session
        self._base_state = copy.deepcopy(session.game_state)
        self.last_sync = self._clock.now()

    # --- Local edits ---

    def update_game_state(self, changes: Any, path: str = "") -> bool:
        """Apply `changes` at `path` locally and queue them for sync."""
        if self.current_session is None:
            logger.warning("session_update_without_session", path=path)
            return False
        patch = build_nested_patch(path, changes)
        self.current_session.game_state = deep_merge(self.current_session.game_state, patch)
        self._enqueue(PendingChange(SyncOperation.UPDATE, path, patch, self._clock.now()))
        self._notify(SyncOperation.UPDATE, patch)
        self._maybe_schedule()
        return True

    def delete_game_state_property(self, path: str) -> bool:
        if self.current_session is None:
            logger.warning("session_delete_without_session", path=path)
            return False
        self.current_session.game_state = delete_nested(self.current_session.game_state, path)
        self._enqueue(PendingChange(SyncOperation.DELETE, path, None, self._clock.now()))
        self._notify(SyncOperation.DELETE, {"path": path})
        self._maybe_schedule()
        return True

    def _enqueue(self, change: PendingChange) -> None:
        if len(self._queue) >= self._max_queue_size:
            dropped = self._queue.popleft()
            self.dropped_changes += 1
            logger.warning(
                "session_queue_overflow",
                dropped_path=dropped.path,
                dropped_total=self.dropped_changes,
                max_size=self._max_queue_size,
            )
        self._queue.append(change)

    def _maybe_schedule(self) -> None:
        if self.offline:
            return
        elapsed = (self._clock.now() - self.last_sync).total_seconds()
        if len(self._queue) >= self._batch_size or elapsed > 2 * self._interval:
            self._schedule()

    def _schedule(self) -> None:
        if self._sync_task is not None and not self._sync_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sync_task = loop.create_task(self.process_pending_sync())

    def set_offline(self, offline: bool) -> None:
        was_offline, self.offline = self.offline, offline
        logger.info("session_offline" if offline else "session_online", pending=len(self._queue))
        if was_offline and not offline and self._queue:
            self._schedule()

    # --- Reconciliation ---

    async def force_sync(self) -> bool:
        if self._sync_task is not None and not self._sync_task.done():
            await self._sync_task
        return await self.process_pending_sync()

    async def process_pending_sync(self) -> bool:
        """Reconcile queued changes with the server copy. Returns True if a write landed."""
        if self.offline or self.current_session is None or not self._queue:
            return False
        async with self._lock:
            if self.current_session is None or not self._queue:
                return False
            try:
                result = await self._reconcile()
            except StoreError:
                logger.warning("session_sync_deferred", session_id=self.session_id, exc_info=True)
                return False
            finally:
                self.last_sync = self._clock.now()
            return result.synced

    async def _reconcile(self) -> SyncResult:
        local = self.current_session
        if local is None:
            msg = "No active session to reconcile"
            raise SessionError(msg)
        batch = list(self._queue)
        server = await self._store.get_session(local.session_id)

        if server is None or not server.is_active:
            replacement = await self._store.create_session(local.owner_id, now=self._clock.now())
            logger.warning(
                "session_replaced",
                old_session_id=local.session_id,
                new_session_id=replacement.session_id,
                carried_changes=len(self._queue),
            )
            created = replacement.model_copy(deep=True)
            self._adopt(replacement)
            replacement.game_state = replay(replacement.game_state, self._queue)
            await self._publish(created)
            return SyncResult(synced=False)

        conflicts: list[str] = []
        if server.version > local.version:
            if self.strategy == ConflictStrategy.SERVER_WINS:
                self._discard(batch)
                self._adopt(server)
                server.game_state = replay(server.game_state, self._queue)
                logger.info("session_server_wins", session_id=server.session_id, version=server.version)
                self._notify(SyncOperation.UPDATE, server.game_state)
                return SyncResult(synced=False, version=server.version)
            new_state = replay(server.game_state, batch)
            if self.strategy == ConflictStrategy.MERGE:
                new_state, conflicts = self._keep_server_on_conflict(new_state, server.game_state, batch)
            new_version = server.version + 1
        else:
            new_state = replay(server.game_state, batch)
            new_version = local.version + 1

        written = server.model_copy(
            update={"game_state": new_state, "version": new_version, "last_active_at": self._clock.now()}
        )
        if not await self._store.update_entity(EntityType.SESSION.value, written.model_dump(mode="json")):
            logger.warning("session_write_rejected", session_id=written.session_id)
            return SyncResult(synced=False)

        persisted = written.model_copy(deep=True)
        self._discard(batch)
        self._adopt(written)
        written.game_state = replay(new_state, self._queue)
        self.last_conflicts = conflicts
        if conflicts:
            logger.warning("session_merge_conflicts", session_id=written.session_id, paths=conflicts)
            self._notify(SyncOperation.UPDATE, {"conflicts": conflicts})
        logger.debug("session_synced", session_id=written.session_id, version=new_version, changes=len(batch))
        await self._publish(persisted)
        return SyncResult(synced=True, version=new_version, conflicts=conflicts)

    def _keep_server_on_conflict(
        self, merged: dict[str, Any], server_state: dict[str, Any], batch: list[PendingChange]
    ) -> tuple[dict[str, Any], list[str]]:
        """Restore server values on paths both sides changed since the last sync."""
        server_changed = changed_paths(self._base_state, server_state)
        local_touched: set[str] = set()
        for change in batch:
            local_touched |= change.touched_paths()
        conflicts = sorted(
            path for path in server_changed if any(paths_overlap(path, touched) for touched in local_touched)
        )
        for path in conflicts:
            value = get_nested(server_state, path, _MISSING)
            merged = delete_nested(merged, path) if value is _MISSING else set_nested(merged, path, value)
        return merged, conflicts

    def _discard(self, batch: list[PendingChange]) -> None:
        sent = {id(change) for change in batch}
        self._queue = deque(change for change in self._queue if id(change) not in sent)
