"""Delivery archive and delivery-history lookup."""

from __future__ import annotations

import logging

from ledgerhook.models import DeliveryHistory, DeliveryRecord, WebhookJob
from ledgerhook.storage import Keys, KeyValueStore

from .queue import DeadLetterStore, WebhookQueue

logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_TTL_SECONDS = 86400


class DeliveryArchive:
    """Success records for delivered notifications, kept for audit.

    The archive is also where history lookups start: a correlation id is
    reported as SUCCESS if archived, FAILED if dead-lettered, PENDING if
    still queued or scheduled for retry.
    """

    def __init__(
        self,
        store: KeyValueStore,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
        keys: Keys | None = None,
        ttl_seconds: int = DEFAULT_SUCCESS_TTL_SECONDS,
    ) -> None:
        self._store = store
        self._queue = queue
        self._dead_letters = dead_letters
        self._keys = keys or Keys()
        self._ttl = ttl_seconds

    async def record_success(self, job: WebhookJob, response_status: int) -> DeliveryRecord:
        """Archive a delivered job."""
        record = DeliveryRecord(job=job, response_status=response_status)
        await self._store.set(
            self._keys.webhook_success(job.correlation_id),
            record.to_json(),
            ttl_seconds=self._ttl,
        )
        return record

    async def get(self, correlation_id: str) -> DeliveryRecord | None:
        """Get the archived delivery for a correlation id, if retained."""
        data = await self._store.get(self._keys.webhook_success(correlation_id))
        if data is None:
            return None
        return DeliveryRecord.from_json(data)

    async def history(self, correlation_id: str) -> DeliveryHistory | None:
        """Report where a correlation id's notification stands.

        Args:
            correlation_id: Correlation id to look up.

        Returns:
            DeliveryHistory, or None if no job for the id is known.
        """
        record = await self.get(correlation_id)
        if record is not None:
            return DeliveryHistory(
                correlation_id=correlation_id,
                status="SUCCESS",
                attempts=record.job.attempts,
                callback_url=record.job.callback_url,
                response_status=record.response_status,
                completed_at=record.completed_at,
            )

        job = await self._dead_letters.find_by_correlation_id(correlation_id)
        if job is not None:
            return DeliveryHistory(
                correlation_id=correlation_id,
                status="FAILED",
                attempts=job.attempts,
                callback_url=job.callback_url,
                last_error=job.last_error,
                moved_to_dlq=job.moved_to_dlq,
            )

        for job in await self._queue.pending_jobs():
            if job.correlation_id == correlation_id:
                return DeliveryHistory(
                    correlation_id=correlation_id,
                    status="PENDING",
                    attempts=job.attempts,
                    callback_url=job.callback_url,
                    next_retry=job.next_retry,
                    last_error=job.last_error,
                )

        logger.debug("No delivery history for %s", correlation_id)
        return None
