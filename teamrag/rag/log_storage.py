"""Append-only Log Storage

Storage behind the interaction monitor and the example bank. Entries are
immutable pydantic models appended in time order; they can be read back as a
snapshot or pruned by age, never edited.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Generic, List, Type, TypeVar
import threading

import structlog
from pydantic import BaseModel
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


class AppendOnlyLog(ABC, Generic[T]):
    """Append-only sequence of timestamped records."""

    @abstractmethod
    async def append(self, item: T) -> None:
        """Append a record."""

    @abstractmethod
    async def snapshot(self) -> List[T]:
        """Copy of all records in insertion order."""

    @abstractmethod
    async def count(self) -> int:
        """Number of records."""

    @abstractmethod
    async def prune(self, older_than: datetime) -> int:
        """Drop records with ``timestamp`` before ``older_than``.

        Returns:
            Number of records removed
        """


class InMemoryLog(AppendOnlyLog[T]):
    """Process-local log; reads copy the list so appends never wait on readers."""

    def __init__(self):
        self._items: List[T] = []
        self._lock = threading.Lock()

    async def append(self, item: T) -> None:
        with self._lock:
            self._items.append(item)

    async def snapshot(self) -> List[T]:
        with self._lock:
            return list(self._items)

    async def count(self) -> int:
        return len(self._items)

    async def prune(self, older_than: datetime) -> int:
        with self._lock:
            kept = [item for item in self._items if item.timestamp >= older_than]
            removed = len(self._items) - len(kept)
            self._items = kept
        return removed


class RedisLog(AppendOnlyLog[T]):
    """Log kept in a Redis list, one JSON document per entry."""

    def __init__(self, redis: Redis, model_type: Type[T], key: str):
        """Initialize the log.

        Args:
            redis: Async Redis client
            model_type: Model used to decode entries
            key: Redis list key
        """
        self.redis = redis
        self.model_type = model_type
        self.key = key

    async def append(self, item: T) -> None:
        await self.redis.rpush(self.key, item.model_dump_json())

    async def snapshot(self) -> List[T]:
        entries = await self.redis.lrange(self.key, 0, -1)
        return [self.model_type.model_validate_json(entry) for entry in entries]

    async def count(self) -> int:
        return await self.redis.llen(self.key)

    async def prune(self, older_than: datetime) -> int:
        # Entries are appended in time order, so expired ones form a prefix.
        entries = await self.snapshot()
        expired = 0
        for entry in entries:
            if entry.timestamp >= older_than:
                break
            expired += 1
        if expired:
            await self.redis.ltrim(self.key, expired, -1)
            logger.info("Log pruned", key=self.key, removed=expired)
        return expired
