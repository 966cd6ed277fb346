"""In-process key-value store.

Implements the KeyValueStore primitives with plain dicts and lazy expiry.
Not suitable for multi-instance deployments - use RedisStore instead.
"""

from __future__ import annotations

import fnmatch
import time
from uuid import uuid4

from ledgerhook.exceptions import StorageError

from .base import KeyValueStore


def _redis_range(length: int, start: int, stop: int) -> tuple[int, int]:
    """Translate inclusive Redis-style indices into a Python slice."""
    if start < 0:
        start = max(length + start, 0)
    if stop < 0:
        stop = length + stop
    return start, min(stop, length - 1) + 1


class InMemoryStore(KeyValueStore):
    """Dict-backed store with Redis semantics for a single process."""

    def __init__(self) -> None:
        self._strings: dict[str, str] = {}
        self._lists: dict[str, list[str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        # key -> monotonic deadline
        self._expiry: dict[str, float] = {}

    def _expire_if_due(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._drop(key)

    def _drop(self, key: str) -> bool:
        self._expiry.pop(key, None)
        removed = False
        for table in (self._strings, self._lists, self._zsets):
            if key in table:
                del table[key]
                removed = True
        return removed

    def _all_keys(self) -> list[str]:
        for key in list(self._expiry):
            self._expire_if_due(key)
        return [*self._strings, *self._lists, *self._zsets]

    # Strings

    async def get(self, key: str) -> str | None:
        self._expire_if_due(key)
        return self._strings.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._drop(key)
        self._strings[key] = value
        if ttl_seconds is not None:
            self._expiry[key] = time.monotonic() + ttl_seconds

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        if await self.exists(key):
            return False
        self._strings[key] = value
        self._expiry[key] = time.monotonic() + ttl_ms / 1000
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._expire_if_due(key)
            if self._drop(key):
                removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        self._expire_if_due(key)
        return key in self._strings or key in self._lists or key in self._zsets

    async def incr(self, key: str) -> int:
        self._expire_if_due(key)
        current = self._strings.get(key, "0")
        try:
            value = int(current) + 1
        except ValueError as e:
            raise StorageError(f"Value at {key} is not an integer") from e
        # INCR keeps an existing TTL
        self._strings[key] = str(value)
        return value

    async def scan_keys(self, pattern: str) -> list[str]:
        return sorted(key for key in self._all_keys() if fnmatch.fnmatchcase(key, pattern))

    # Lists (index 0 is the head)

    async def lpush(self, key: str, *values: str) -> int:
        self._expire_if_due(key)
        items = self._lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def rpop(self, key: str) -> str | None:
        self._expire_if_due(key)
        items = self._lists.get(key)
        if not items:
            return None
        value = items.pop()
        if not items:
            del self._lists[key]
        return value

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        self._expire_if_due(key)
        items = self._lists.get(key, [])
        begin, end = _redis_range(len(items), start, stop)
        return list(items[begin:end])

    async def llen(self, key: str) -> int:
        self._expire_if_due(key)
        return len(self._lists.get(key, []))

    async def lrem(self, key: str, count: int, value: str) -> int:
        self._expire_if_due(key)
        items = self._lists.get(key)
        if not items:
            return 0

        limit = abs(count) if count else len(items)
        indices = [i for i, item in enumerate(items) if item == value]
        if count < 0:
            indices.reverse()
        doomed = set(indices[:limit])

        self._lists[key] = [item for i, item in enumerate(items) if i not in doomed]
        if not self._lists[key]:
            del self._lists[key]
        return len(doomed)

    # Sorted sets

    async def zadd(self, key: str, score: float, member: str) -> int:
        self._expire_if_due(key)
        members = self._zsets.setdefault(key, {})
        added = 0 if member in members else 1
        members[member] = score
        return added

    async def zrem(self, key: str, *members: str) -> int:
        self._expire_if_due(key)
        zset = self._zsets.get(key)
        if not zset:
            return 0
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        if not zset:
            del self._zsets[key]
        return removed

    def _ordered(self, key: str) -> list[tuple[str, float]]:
        self._expire_if_due(key)
        zset = self._zsets.get(key, {})
        return sorted(zset.items(), key=lambda item: (item[1], item[0]))

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]:
        return [m for m, score in self._ordered(key) if min_score <= score <= max_score]

    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        ordered = self._ordered(key)
        begin, end = _redis_range(len(ordered), start, stop)
        return [member for member, _ in ordered[begin:end]]

    async def zcard(self, key: str) -> int:
        self._expire_if_due(key)
        return len(self._zsets.get(key, {}))

    # Locks

    async def acquire_lock(self, key: str, ttl_ms: int = 5000) -> str | None:
        token = uuid4().hex
        if await self.set_if_absent(key, token, ttl_ms):
            return token
        return None

    async def release_lock(self, key: str, token: str) -> bool:
        if await self.get(key) != token:
            return False
        return await self.delete(key) == 1

    # Lifecycle

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        """Nothing to release; data stays available until the object is dropped."""
