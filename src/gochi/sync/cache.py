"""Write-back entity cache with dirty tracking and an operation queue.

Keys are `<entity_type>:<id>`. Every `set` marks the entry dirty and bumps
its revision; the coordinator clears the flag only for the revision it
actually persisted, so a write that lands mid-sync stays dirty.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel

from gochi.errors import StoreError
from gochi.schemas import SyncOperation
from gochi.store.base import PersistentStore

logger = structlog.get_logger()


def cache_key(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}:{entity_id}"


@dataclass
class CacheEntry:
    value: Any
    dirty: bool = False
    revision: int = 0


@dataclass(frozen=True)
class QueuedOperation:
    entity_type: str
    operation: SyncOperation
    data: dict[str, Any]


def _copy(value: Any) -> Any:
    return value.model_copy(deep=True) if isinstance(value, BaseModel) else value


class EntityCache:
    """In-memory entity cache backed by a PersistentStore."""

    def __init__(self, store: PersistentStore, max_queue_size: int = 100) -> None:
        self._store = store
        self._entries: dict[str, CacheEntry] = {}
        self._queue: deque[QueuedOperation] = deque()
        self._max_queue_size = max_queue_size
        self._drain_task: asyncio.Task[None] | None = None
        self._ops_applied = 0
        self._ops_failed = 0
        self._ops_dropped = 0

    # --- Entries ---

    def set(self, key: str, value: Any, mark_dirty: bool = True) -> int:
        """Store a copy of `value`. Returns the entry's new revision."""
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = CacheEntry(value=None)
        entry.value = _copy(value)
        entry.revision += 1
        if mark_dirty:
            entry.dirty = True
        return entry.revision

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        return _copy(entry.value) if entry is not None else None

    def has(self, key: str) -> bool:
        return key in self._entries

    def revision(self, key: str) -> int:
        entry = self._entries.get(key)
        return entry.revision if entry is not None else 0

    def is_dirty(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.dirty

    def mark_dirty(self, key: str) -> None:
        """Flag an existing entry for sync. Unknown keys are ignored."""
        entry = self._entries.get(key)
        if entry is not None:
            entry.dirty = True

    def get_dirty_entities(self) -> list[str]:
        return [key for key, entry in self._entries.items() if entry.dirty]

    def has_dirty_entities(self) -> bool:
        return any(entry.dirty for entry in self._entries.values())

    def clear_dirty_flag(self, key: str, revision: int | None = None) -> bool:
        """Clear the dirty flag unless the entry changed since `revision`."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if revision is not None and entry.revision != revision:
            return False
        entry.dirty = False
        return True

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._entries if key.startswith(prefix)]

    def clear(self) -> None:
        self._entries.clear()
        self._queue.clear()

    # --- Operation queue ---

    def queue_operation(self, entity_type: str, operation: SyncOperation, data: dict[str, Any]) -> None:
        """Queue a direct store operation and schedule draining."""
        if len(self._queue) >= self._max_queue_size:
            dropped = self._queue.popleft()
            self._ops_dropped += 1
            logger.warning(
                "cache_queue_overflow",
                dropped_type=dropped.entity_type,
                dropped_operation=dropped.operation.value,
                max_size=self._max_queue_size,
            )
        self._queue.append(QueuedOperation(entity_type, SyncOperation(operation), data))
        self._schedule_drain()

    def _schedule_drain(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._drain_task = loop.create_task(self.drain())

    async def drain(self) -> None:
        """Apply queued operations in FIFO order. Failures are logged, not retried."""
        while self._queue:
            op = self._queue.popleft()
            try:
                ok = await self._apply(op)
            except StoreError:
                ok = False
                logger.warning("cache_queue_op_error", entity_type=op.entity_type, exc_info=True)
            if ok:
                self._ops_applied += 1
            else:
                self._ops_failed += 1
                logger.warning("cache_queue_op_failed", entity_type=op.entity_type, operation=op.operation.value)

    async def _apply(self, op: QueuedOperation) -> bool:
        if op.operation == SyncOperation.CREATE:
            return await self._store.create_entity(op.entity_type, op.data)
        if op.operation == SyncOperation.UPDATE:
            return await self._store.update_entity(op.entity_type, op.data)
        return await self._store.delete_entity(op.entity_type, str(op.data["id"]))

    @property
    def pending_operations(self) -> int:
        return len(self._queue)

    @property
    def stats(self) -> dict[str, int]:
        """Return cache statistics."""
        return {
            "entries": len(self._entries),
            "dirty": len(self.get_dirty_entities()),
            "queued": len(self._queue),
            "ops_applied": self._ops_applied,
            "ops_failed": self._ops_failed,
            "ops_dropped": self._ops_dropped,
        }
