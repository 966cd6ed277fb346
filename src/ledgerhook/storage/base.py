"""Key-value store interface and key layout.

The core treats the store as a reliable, already-connected service that
exposes a handful of Redis-style primitives. Every component receives a
KeyValueStore instance explicitly; nothing reaches for a global client.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class Keys:
    """Key patterns used by the ledger and the delivery pipeline.

    An optional prefix namespaces every key so several gateways can share
    one store.
    """

    def __init__(self, prefix: str = "") -> None:
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def transaction(self, correlation_id: str) -> str:
        return self._key(f"tx:{correlation_id}")

    def transaction_pattern(self) -> str:
        return self._key("tx:*")

    def tx_index(self, tx_id: str) -> str:
        return self._key(f"txid:{tx_id}")

    def callback(self, correlation_id: str) -> str:
        return self._key(f"callback:{correlation_id}")

    @property
    def webhook_queue(self) -> str:
        return self._key("webhook:queue")

    @property
    def webhook_retry(self) -> str:
        return self._key("webhook:retry")

    @property
    def webhook_dlq(self) -> str:
        return self._key("webhook:dlq")

    def webhook_success(self, correlation_id: str) -> str:
        return self._key(f"webhook:success:{correlation_id}")

    def lock(self, name: str) -> str:
        return self._key(f"lock:{name}")


class KeyValueStore(ABC):
    """Abstract key-value store.

    Strings, lists and sorted sets follow Redis semantics: ``lpush`` adds at
    the head and ``rpop`` removes from the tail, so the pair forms a FIFO
    queue. TTLs are in seconds unless a parameter says otherwise.
    """

    # Strings

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Get a string value, or None if missing or expired."""
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Set a string value, optionally expiring after ttl_seconds."""
        ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """Set a value only if the key does not exist.

        Returns:
            True if the value was set.
        """
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys. Returns the number of keys removed."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether a key exists."""
        ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment an integer value. Returns the new value."""
        ...

    @abstractmethod
    async def scan_keys(self, pattern: str) -> list[str]:
        """List keys matching a glob pattern, sorted."""
        ...

    # Lists

    @abstractmethod
    async def lpush(self, key: str, *values: str) -> int:
        """Push values at the head of a list. Returns the new length."""
        ...

    @abstractmethod
    async def rpop(self, key: str) -> str | None:
        """Pop from the tail of a list."""
        ...

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        """Get list elements between start and stop (inclusive, -1 = last)."""
        ...

    @abstractmethod
    async def llen(self, key: str) -> int:
        """Get the length of a list."""
        ...

    @abstractmethod
    async def lrem(self, key: str, count: int, value: str) -> int:
        """Remove up to count occurrences of value, head first.

        Returns:
            The number of elements removed.
        """
        ...

    # Sorted sets

    @abstractmethod
    async def zadd(self, key: str, score: float, member: str) -> int:
        """Add a member with a score. Returns the number of new members."""
        ...

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int:
        """Remove members. Returns the number of members removed."""
        ...

    @abstractmethod
    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]:
        """Get members with min_score <= score <= max_score, lowest first."""
        ...

    @abstractmethod
    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        """Get members by rank (inclusive, -1 = last), lowest score first."""
        ...

    @abstractmethod
    async def zcard(self, key: str) -> int:
        """Get the number of members of a sorted set."""
        ...

    # Locks

    @abstractmethod
    async def acquire_lock(self, key: str, ttl_ms: int = 5000) -> str | None:
        """Acquire a lock that expires after ttl_ms.

        Returns:
            An ownership token to pass to release_lock, or None if the lock
            is held by someone else.
        """
        ...

    @abstractmethod
    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock if token still owns it.

        Returns:
            True if the lock was released.
        """
        ...

    # Lifecycle

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...

    async def __aenter__(self) -> KeyValueStore:
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()
