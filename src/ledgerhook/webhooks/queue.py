"""Webhook job locations: queue, retry schedule and dead letter queue.

A job is in at most one of these at a time. Moving a job always removes
it from its old location before it is written to the next one, and the
dispatcher holds it in memory only while a delivery attempt is in flight.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError as PydanticValidationError

from ledgerhook.exceptions import NotFoundError, ValidationError
from ledgerhook.models import DeadLetterEntry, DeadLetterPage, WebhookJob, utc_now
from ledgerhook.storage import Keys, KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_MAX = 100


def _parse_job(data: str) -> WebhookJob | None:
    try:
        return WebhookJob.from_json(data)
    except PydanticValidationError:
        logger.error("Discarding malformed webhook job: %.500s", data)
        return None


class WebhookQueue:
    """FIFO queue of first-attempt jobs plus the time-ordered retry set.

    Jobs are pushed at the head and popped from the tail of the queue
    list. The retry set is scored by due time in Unix milliseconds.
    """

    def __init__(self, store: KeyValueStore, keys: Keys | None = None) -> None:
        self._store = store
        self._keys = keys or Keys()

    async def enqueue(self, job: WebhookJob) -> None:
        """Append a job to the tail of the queue."""
        await self._store.lpush(self._keys.webhook_queue, job.to_json())
        logger.info("Webhook job queued: %s", job.id)

    async def dequeue(self) -> WebhookJob | None:
        """Pop the oldest queued job, or None when the queue is empty."""
        data = await self._store.rpop(self._keys.webhook_queue)
        if data is None:
            return None
        return _parse_job(data)

    async def schedule_retry(self, job: WebhookJob, not_before_ms: int) -> None:
        """Put a job in the retry set, due at not_before_ms."""
        job.next_retry = not_before_ms
        await self._store.zadd(self._keys.webhook_retry, not_before_ms, job.to_json())

    async def drain_due(self, now_ms: int) -> list[WebhookJob]:
        """Remove and return every retry entry due at or before now_ms.

        Each entry is claimed by removing it; an entry another dispatcher
        removed first is skipped, so no job is delivered twice at once.
        """
        members = await self._store.zrangebyscore(self._keys.webhook_retry, 0, now_ms)

        due: list[WebhookJob] = []
        for member in members:
            if not await self._store.zrem(self._keys.webhook_retry, member):
                continue
            job = _parse_job(member)
            if job is not None:
                due.append(job)
        return due

    async def queue_length(self) -> int:
        return await self._store.llen(self._keys.webhook_queue)

    async def retry_length(self) -> int:
        return await self._store.zcard(self._keys.webhook_retry)

    async def pending_jobs(self) -> list[WebhookJob]:
        """All queued and scheduled jobs, queue first (read-only)."""
        queued = await self._store.lrange(self._keys.webhook_queue, 0, -1)
        scheduled = await self._store.zrange(self._keys.webhook_retry, 0, -1)
        jobs = (_parse_job(data) for data in [*queued, *scheduled])
        return [job for job in jobs if job is not None]


class DeadLetterStore:
    """Jobs that will not be retried automatically.

    Operators inspect them page by page and replay one or all of them,
    which resets their retry state and puts them back on the queue.
    """

    def __init__(
        self,
        store: KeyValueStore,
        queue: WebhookQueue,
        keys: Keys | None = None,
        page_max: int = DEFAULT_PAGE_MAX,
    ) -> None:
        self._store = store
        self._queue = queue
        self._keys = keys or Keys()
        self._page_max = page_max

    async def push(self, job: WebhookJob) -> None:
        """Dead-letter a job, stamping the time it was moved."""
        job.moved_to_dlq = utc_now()
        await self._store.lpush(self._keys.webhook_dlq, job.to_json())

    async def length(self) -> int:
        return await self._store.llen(self._keys.webhook_dlq)

    async def inspect(self, offset: int = 0, limit: int = 10) -> DeadLetterPage:
        """Read a page of dead-lettered jobs, newest first.

        Args:
            offset: Entries to skip.
            limit: Page size, capped at the configured maximum.

        Returns:
            DeadLetterPage with pagination info.

        Raises:
            ValidationError: If offset is negative or limit is not positive.
        """
        if offset < 0:
            raise ValidationError("offset", "must be >= 0")
        if limit < 1:
            raise ValidationError("limit", "must be >= 1")
        limit = min(limit, self._page_max)

        raw = await self._store.lrange(self._keys.webhook_dlq, offset, offset + limit - 1)
        total = await self.length()

        jobs = (_parse_job(data) for data in raw)
        return DeadLetterPage(
            jobs=[DeadLetterEntry.from_job(job) for job in jobs if job is not None],
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + limit < total,
        )

    async def find_by_correlation_id(self, correlation_id: str) -> WebhookJob | None:
        """Most recently dead-lettered job for a correlation id."""
        for data in await self._store.lrange(self._keys.webhook_dlq, 0, -1):
            job = _parse_job(data)
            if job is not None and job.correlation_id == correlation_id:
                return job
        return None

    async def reprocess(self, job_id: str) -> WebhookJob:
        """Requeue one dead-lettered job with its retry state reset.

        Raises:
            NotFoundError: If no job with this id is in the dead letter queue.
        """
        for data in await self._store.lrange(self._keys.webhook_dlq, 0, -1):
            job = _parse_job(data)
            if job is None or job.id != job_id:
                continue
            # Whoever removes the entry owns the replay
            if not await self._store.lrem(self._keys.webhook_dlq, 1, data):
                break
            await self._queue.enqueue(job.reset_for_replay())
            logger.info("Dead-lettered job requeued: %s", job_id)
            return job

        raise NotFoundError("webhook_job", job_id)

    async def reprocess_all(self) -> int:
        """Requeue every dead-lettered job, oldest first.

        Returns:
            Number of jobs requeued.
        """
        count = 0
        while True:
            data = await self._store.rpop(self._keys.webhook_dlq)
            if data is None:
                break
            job = _parse_job(data)
            if job is None:
                continue
            await self._queue.enqueue(job.reset_for_replay())
            count += 1

        logger.info("Reprocessed %d jobs from dead letter queue", count)
        return count
