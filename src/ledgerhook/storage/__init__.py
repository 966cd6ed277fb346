"""Key-value store backends for Ledgerhook.

Example:
    ```python
    from ledgerhook.storage import get_store

    store = get_store(redis_url="redis://localhost:6379/0")
    await store.lpush("webhook:queue", job.to_json())
    ```
"""

from __future__ import annotations

import logging

from .base import Keys, KeyValueStore
from .memory import InMemoryStore
from .redis_store import RedisStore

logger = logging.getLogger(__name__)


def get_store(redis_url: str | None = None) -> KeyValueStore:
    """Create the store for the given configuration.

    Uses RedisStore when redis_url is provided, otherwise InMemoryStore
    (not suitable for multi-instance deployments).
    """
    if redis_url:
        return RedisStore.from_url(redis_url)
    logger.info("Using in-memory store (not distributed)")
    return InMemoryStore()


__all__ = [
    "InMemoryStore",
    "KeyValueStore",
    "Keys",
    "RedisStore",
    "get_store",
]
