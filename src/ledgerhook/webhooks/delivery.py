"""Webhook delivery with HMAC signatures, retry backoff and dead-lettering.

The dispatcher polls the webhook queue and the retry schedule, POSTs
each job's payload to its callback URL and classifies failures:

- transport errors (timeouts, refused connections, DNS) are retried
- HTTP 408 and 429 are retried, other 4xx responses are dead-lettered
- HTTP 5xx responses are retried

Retries wait 1s, 5s, 15s, 60s and 300s. A job that fails again after
its retry budget is spent moves to the dead letter queue.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

import httpx

from ledgerhook.exceptions import DeliveryHTTPError
from ledgerhook.logging import bind_context, unbind_context
from ledgerhook.models import DispatcherStats, WebhookJob

from .history import DeliveryArchive
from .queue import DeadLetterStore, WebhookQueue

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS_SECONDS: tuple[float, ...] = (1.0, 5.0, 15.0, 60.0, 300.0)

# Client errors worth retrying: request timeout and rate limiting
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

SIGNATURE_HEADER = "X-Ledgerhook-Signature"
TIMESTAMP_HEADER = "X-Ledgerhook-Timestamp"
ATTEMPT_HEADER = "X-Ledgerhook-Attempt"


def compute_signature(body: str, timestamp: str, secret: str) -> str:
    """Compute the HMAC-SHA256 signature of a webhook request.

    The signed message is ``"<timestamp>.<body>"`` so a captured request
    cannot be replayed with a different timestamp header.

    Args:
        body: JSON request body exactly as sent.
        timestamp: Value of the timestamp header.
        secret: Shared secret for HMAC.

    Returns:
        Hex digest.
    """
    message = f"{timestamp}.{body}"
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=message.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(body: str, timestamp: str, secret: str, signature: str) -> bool:
    """Verify a webhook request signature on the receiving side.

    Args:
        body: Raw request body.
        timestamp: Value of the X-Ledgerhook-Timestamp header.
        secret: Shared secret for HMAC.
        signature: Value of the X-Ledgerhook-Signature header.

    Returns:
        True if signature is valid, False otherwise.
    """
    expected = compute_signature(body, timestamp, secret)
    return hmac.compare_digest(expected, signature)


class WebhookDispatcher:
    """Delivers queued webhook jobs until stopped.

    Each polling cycle delivers at most one job from the queue, then every
    retry that is due. A job is held only by the cycle delivering it; it
    is written back to the retry schedule or the dead letter queue, or
    archived, before the cycle moves on.

    Example:
        ```python
        dispatcher = WebhookDispatcher(queue, dead_letters, archive, secret="s3cret")
        await dispatcher.start()
        ...
        await dispatcher.stop()  # waits for the in-flight delivery
        ```
    """

    def __init__(
        self,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
        archive: DeliveryArchive,
        secret: str,
        timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 5.0,
        retry_delays_seconds: Sequence[float] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the webhook dispatcher.

        Args:
            queue: Queue and retry schedule to poll.
            dead_letters: Destination of jobs that will not be retried.
            archive: Success archive.
            secret: Shared secret for request signatures.
            timeout_seconds: HTTP request timeout per attempt.
            poll_interval_seconds: Delay between polling cycles.
            retry_delays_seconds: Backoff table indexed by attempt; the last
                entry repeats.
            clock: Source of Unix time in seconds.
        """
        self._queue = queue
        self._dead_letters = dead_letters
        self._archive = archive
        self._secret = secret
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._retry_delays = tuple(retry_delays_seconds or DEFAULT_RETRY_DELAYS_SECONDS)
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def start(self) -> None:
        """Start the polling loop; the first cycle runs immediately."""
        if self.is_running:
            logger.warning("Webhook dispatcher already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="webhook-dispatcher")
        logger.info("Webhook dispatcher started (poll interval %.1fs)", self._poll_interval)

    async def stop(self) -> None:
        """Stop polling and wait for the current cycle to finish."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Webhook dispatcher stopped")

    async def _run(self) -> None:
        while True:
            await self.run_cycle()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                continue
            return

    async def run_cycle(self) -> int:
        """Run one polling cycle.

        Errors are logged, never raised, so the loop always reaches the
        next cycle.

        Returns:
            Number of delivery attempts made.
        """
        attempted = 0
        try:
            if await self.process_queue():
                attempted += 1
            attempted += await self.process_retries()
        except Exception:
            logger.exception("Webhook dispatcher cycle failed")
        return attempted

    async def process_queue(self) -> bool:
        """Deliver the oldest queued job, if any.

        Returns:
            True if a job was taken from the queue.
        """
        job = await self._queue.dequeue()
        if job is None:
            return False
        await self._process_job(job)
        return True

    async def process_retries(self) -> int:
        """Deliver every retry that is due.

        Returns:
            Number of retries attempted.
        """
        due = await self._queue.drain_due(self._now_ms())
        for job in due:
            await self._process_job(job)
        return len(due)

    async def _process_job(self, job: WebhookJob) -> None:
        bind_context(job_id=job.id, correlation_id=job.correlation_id)
        try:
            await self.send_webhook(job)
        except Exception as e:
            try:
                await self._handle_failure(job, e)
            except Exception:
                logger.exception(
                    "Could not reschedule webhook job %s for %s (attempt %d, last error: %s)",
                    job.id,
                    job.callback_url,
                    job.attempts,
                    job.last_error,
                )
        finally:
            unbind_context("job_id", "correlation_id")

    async def send_webhook(self, job: WebhookJob) -> int:
        """Make one delivery attempt and archive the job on success.

        Args:
            job: Job to deliver; its attempt count is incremented.

        Returns:
            HTTP status of the successful response.

        Raises:
            DeliveryHTTPError: If the receiver answered with status >= 400.
            httpx.HTTPError: On timeouts and connection failures.
        """
        job.attempts += 1
        body = job.payload.to_json()
        timestamp = datetime.fromtimestamp(self._clock(), UTC).isoformat()

        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: compute_signature(body, timestamp, self._secret),
            TIMESTAMP_HEADER: timestamp,
            ATTEMPT_HEADER: str(job.attempts),
        }

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(job.callback_url, content=body, headers=headers)

        if response.status_code >= 400:
            raise DeliveryHTTPError(response.status_code)

        await self._archive.record_success(job, response.status_code)
        logger.info(
            "Webhook delivered: %s to %s (status %d, attempt %d)",
            job.id,
            job.callback_url,
            response.status_code,
            job.attempts,
        )
        return response.status_code

    @staticmethod
    def should_retry(job: WebhookJob, error: BaseException) -> bool:
        """Classify a failed attempt.

        Transport errors are always retryable. Of the HTTP errors, 5xx,
        408 and 429 are retryable and every other status is permanent.
        """
        if isinstance(error, DeliveryHTTPError):
            if error.status_code >= 500:
                return True
            return error.status_code in RETRYABLE_CLIENT_STATUSES
        return True

    def retry_delay(self, attempts: int) -> float:
        """Backoff in seconds after the given number of attempts."""
        index = min(max(attempts - 1, 0), len(self._retry_delays) - 1)
        return self._retry_delays[index]

    async def _handle_failure(self, job: WebhookJob, error: Exception) -> None:
        job.last_error = str(error) or type(error).__name__

        if self.should_retry(job, error) and job.attempts <= job.max_attempts:
            delay = self.retry_delay(job.attempts)
            await self._queue.schedule_retry(job, self._now_ms() + int(delay * 1000))
            logger.warning(
                "Webhook delivery failed: %s to %s (attempt %d, %s); retrying in %.0fs",
                job.id,
                job.callback_url,
                job.attempts,
                job.last_error,
                delay,
            )
            return

        await self._move_to_dead_letter(job)

    async def _move_to_dead_letter(self, job: WebhookJob) -> None:
        await self._dead_letters.push(job)
        logger.warning(
            "dead_letter_alert: job %s (correlation %s) to %s dead-lettered after %d attempts: %s",
            job.id,
            job.correlation_id,
            job.callback_url,
            job.attempts,
            job.last_error,
        )

    async def get_stats(self) -> DispatcherStats:
        """Queue depths and whether the polling loop is running."""
        return DispatcherStats(
            queue=await self._queue.queue_length(),
            retry=await self._queue.retry_length(),
            dlq=await self._dead_letters.length(),
            processing=self.is_running,
        )
