"""Callback registry: where a correlation id's notification goes."""

from __future__ import annotations

import logging

from ledgerhook.models import CallbackRegistration
from ledgerhook.storage import Keys, KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_TTL_SECONDS = 86400


class CallbackRegistry:
    """Maps correlation ids to webhook destinations.

    Registrations are read by the notification path but never deleted by
    it: they expire on their own, so duplicate completion notices still
    resolve the same URL.
    """

    def __init__(
        self,
        store: KeyValueStore,
        keys: Keys | None = None,
        ttl_seconds: int = DEFAULT_CALLBACK_TTL_SECONDS,
    ) -> None:
        self._store = store
        self._keys = keys or Keys()
        self._ttl = ttl_seconds

    async def register(
        self,
        correlation_id: str,
        url: str,
        submitter: str = "anonymous",
        ttl_seconds: int | None = None,
    ) -> CallbackRegistration:
        """Store a callback registration.

        Args:
            correlation_id: Correlation id to notify about.
            url: Destination URL.
            submitter: Identity of the submitting client.
            ttl_seconds: Expiry override (test triggers use 1 hour).

        Returns:
            The stored registration.
        """
        registration = CallbackRegistration(
            correlation_id=correlation_id,
            callback_url=url,
            submitter=submitter,
        )
        await self._store.set(
            self._keys.callback(correlation_id),
            registration.to_json(),
            ttl_seconds=ttl_seconds or self._ttl,
        )
        logger.debug("Callback registered for %s by %s", correlation_id, submitter)
        return registration

    async def get(self, correlation_id: str) -> CallbackRegistration | None:
        """Get the full registration, or None if absent or expired."""
        data = await self._store.get(self._keys.callback(correlation_id))
        if data is None:
            return None
        return CallbackRegistration.from_json(data)

    async def resolve(self, correlation_id: str) -> str | None:
        """Get the destination URL, or None if nothing is registered."""
        registration = await self.get(correlation_id)
        return registration.callback_url if registration else None
