"""Recent-activity sinks.

The router hands every sequenced event to the registered sinks so a
REST-facing "recent activity" read model can stay warm without holding a
live connection.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import redis.asyncio as aioredis

from roomhub.core.realtime.events import Event

logger = logging.getLogger(__name__)


class ActivitySink(ABC):
    """Abstract base class for activity sinks."""

    @abstractmethod
    async def record(self, event: Event) -> None:
        """Store or forward one event."""

    @abstractmethod
    async def recent(self, room_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent events of a room, newest last."""

    async def close(self) -> None:
        """Release connections."""


class InMemoryActivitySink(ActivitySink):
    """Bounded per-room ring buffers for single-instance deployments."""

    def __init__(self, history_limit: int = 50):
        self.history_limit = history_limit
        self._rooms: Dict[str, Deque[Dict[str, Any]]] = {}

    async def record(self, event: Event) -> None:
        buffer = self._rooms.get(event.room_id)
        if buffer is None:
            buffer = self._rooms[event.room_id] = deque(maxlen=self.history_limit)
        buffer.append(event.to_dict())

    async def recent(self, room_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        buffer = self._rooms.get(room_id)
        if not buffer:
            return []
        items = list(buffer)
        return items[-limit:] if limit > 0 else []

    async def close(self) -> None:
        self._rooms.clear()


class RedisActivitySink(ActivitySink):
    """Redis-backed sink for distributed deployments.

    Keeps a trimmed list per room and publishes each event on a per-room
    pub/sub channel for other consumers.
    """

    LIST_KEY = "roomhub:activity:{room_id}"
    CHANNEL = "roomhub:events:{room_id}"

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        history_limit: int = 50,
        client: Optional[Any] = None,
    ):
        self.url = url
        self.history_limit = history_limit
        self._redis: Optional[Any] = client

    def _get_redis(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self.url, decode_responses=True)
            logger.info("Connected to Redis for activity sink")
        return self._redis

    async def record(self, event: Event) -> None:
        redis = self._get_redis()
        payload = json.dumps(event.to_dict(), default=str)
        key = self.LIST_KEY.format(room_id=event.room_id)
        try:
            async with redis.pipeline(transaction=True) as pipe:
                pipe.rpush(key, payload)
                pipe.ltrim(key, -self.history_limit, -1)
                pipe.publish(self.CHANNEL.format(room_id=event.room_id), payload)
                await pipe.execute()
        except aioredis.RedisError:
            # The read model is best effort; fan-out already happened
            logger.exception("Redis activity write failed", extra={"room_id": event.room_id})

    async def recent(self, room_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        redis = self._get_redis()
        raw_items = await redis.lrange(self.LIST_KEY.format(room_id=room_id), -limit, -1)
        items: List[Dict[str, Any]] = []
        for raw in raw_items:
            try:
                items.append(json.loads(raw))
            except json.JSONDecodeError:
                logger.warning("Dropping undecodable activity entry", extra={"room_id": room_id})
        return items

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.info("Redis activity sink closed")


def create_activity_sink(backend: str = "memory", url: str = "", history_limit: int = 50) -> ActivitySink:
    """Build a sink from configuration ("memory" or "redis")."""
    if backend == "redis":
        return RedisActivitySink(url=url, history_limit=history_limit)
    return InMemoryActivitySink(history_limit=history_limit)
