"""Redis-backed key-value store.

Uses redis.asyncio so store calls never block the dispatcher loop.
Connection errors are retried with backoff; anything still failing is
raised as StorageError.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ledgerhook.exceptions import StorageError

from .base import KeyValueStore
from .retry import redis_retry

logger = logging.getLogger(__name__)

# Compare-and-delete so a lock that expired and was re-acquired by another
# holder is never released by the previous one
_RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisStore(KeyValueStore):
    """KeyValueStore on top of a Redis server.

    Example:
        ```python
        store = RedisStore.from_url("redis://localhost:6379/0")
        await store.ping()
        await store.lpush("webhook:queue", job.to_json())
        await store.close()
        ```
    """

    def __init__(self, client: aioredis.Redis) -> None:
        """Wrap an existing client.

        Args:
            client: redis.asyncio client created with decode_responses=True.
        """
        self._client = client
        self._release_script = client.register_script(_RELEASE_LOCK_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisStore:
        """Create a store from a Redis URL."""
        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True, **kwargs)
        logger.info("Redis store configured for %s", url.rsplit("@", 1)[-1])
        return cls(client)

    @redis_retry
    async def _run(self, command: str, *args: Any, **kwargs: Any) -> Any:
        return await getattr(self._client, command)(*args, **kwargs)

    async def _execute(self, command: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await self._run(command, *args, **kwargs)
        except RedisError as e:
            raise StorageError(f"Redis {command.upper()} failed: {e}") from e

    # Strings

    async def get(self, key: str) -> str | None:
        value: str | None = await self._execute("get", key)
        return value

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._execute("set", key, value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        return bool(await self._execute("set", key, value, px=ttl_ms, nx=True))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._execute("delete", *keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._execute("exists", key))

    async def incr(self, key: str) -> int:
        return int(await self._execute("incr", key))

    @redis_retry
    async def _scan(self, pattern: str) -> list[str]:
        return [key async for key in self._client.scan_iter(match=pattern, count=500)]

    async def scan_keys(self, pattern: str) -> list[str]:
        try:
            keys = await self._scan(pattern)
        except RedisError as e:
            raise StorageError(f"Redis SCAN failed: {e}") from e
        return sorted(keys)

    # Lists

    async def lpush(self, key: str, *values: str) -> int:
        return int(await self._execute("lpush", key, *values))

    async def rpop(self, key: str) -> str | None:
        value: str | None = await self._execute("rpop", key)
        return value

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._execute("lrange", key, start, stop))

    async def llen(self, key: str) -> int:
        return int(await self._execute("llen", key))

    async def lrem(self, key: str, count: int, value: str) -> int:
        return int(await self._execute("lrem", key, count, value))

    # Sorted sets

    async def zadd(self, key: str, score: float, member: str) -> int:
        return int(await self._execute("zadd", key, {member: score}))

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._execute("zrem", key, *members))

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]:
        return list(await self._execute("zrangebyscore", key, min_score, max_score))

    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._execute("zrange", key, start, stop))

    async def zcard(self, key: str) -> int:
        return int(await self._execute("zcard", key))

    # Locks

    async def acquire_lock(self, key: str, ttl_ms: int = 5000) -> str | None:
        token = uuid4().hex
        if await self.set_if_absent(key, token, ttl_ms):
            return token
        return None

    async def release_lock(self, key: str, token: str) -> bool:
        try:
            released = await self._release_script(keys=[key], args=[token])
        except RedisError as e:
            raise StorageError(f"Redis lock release failed: {e}") from e
        return bool(released)

    # Lifecycle

    async def ping(self) -> bool:
        return bool(await self._execute("ping"))

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except RedisError:
            logger.warning("Error closing Redis connection", exc_info=True)
