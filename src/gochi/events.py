"""In-process change notification with an optional Redis fan-out.

Local subscribers are called synchronously in subscription order. When a
Redis client is configured the event is also published on
`pubsub:<entity_type>` for other processes; that publish is best-effort.
"""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

ChangeCallback = Callable[[str, dict[str, Any]], None]


class ChangeNotifier:
    """Fan-out of entity change events to subscribers."""

    def __init__(self, redis_client: redis.Redis | None = None) -> None:
        self._redis = redis_client
        self._subscribers: dict[str, list[ChangeCallback]] = defaultdict(list)
        self.published = 0

    def subscribe_to_changes(self, entity_type: str, callback: ChangeCallback) -> Callable[[], None]:
        """Register `callback(entity_id, data)` for `entity_type`. Returns an unsubscribe function."""
        self._subscribers[entity_type].append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers[entity_type].remove(callback)
            except ValueError:
                pass

        return unsubscribe

    async def publish(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> None:
        for callback in list(self._subscribers.get(entity_type, ())):
            try:
                callback(entity_id, data)
            except Exception:
                logger.exception("change_callback_failed", entity_type=entity_type, entity_id=entity_id)

        self.published += 1
        if self._redis is None:
            return
        try:
            payload = json.dumps({"entity_id": entity_id, "data": data}, default=str)
            await self._redis.publish(f"pubsub:{entity_type}", payload)
        except redis.RedisError:
            logger.warning("change_publish_failed", entity_type=entity_type, exc_info=True)
