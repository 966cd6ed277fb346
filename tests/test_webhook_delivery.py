"""Unit tests for webhook delivery dispatcher."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import httpx
import pytest
import structlog
from conftest import SECRET, FakeClock, http_response, make_job, mock_http

from ledgerhook.exceptions import DeliveryHTTPError, StorageError
from ledgerhook.storage import InMemoryStore, Keys
from ledgerhook.webhooks import (
    ATTEMPT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    DeadLetterStore,
    DeliveryArchive,
    WebhookDispatcher,
    WebhookQueue,
    compute_signature,
    verify_signature,
)


async def job_locations(store: InMemoryStore, keys: Keys, job_id: str) -> list[str]:
    """Names of the places a job id currently appears in."""
    found = []
    sources = {
        "queue": await store.lrange(keys.webhook_queue, 0, -1),
        "retry": await store.zrange(keys.webhook_retry, 0, -1),
        "dlq": await store.lrange(keys.webhook_dlq, 0, -1),
    }
    for name, entries in sources.items():
        found.extend(name for entry in entries if f'"id":"{job_id}"' in entry)
    return found


async def next_retry_of(queue: WebhookQueue) -> int | None:
    pending = await queue.pending_jobs()
    assert len(pending) == 1
    return pending[0].next_retry


class TestSignatures:
    """Tests for request signing."""

    def test_compute_signature_is_hex_sha256(self) -> None:
        """Signature should be a 64-character hex digest."""
        signature = compute_signature('{"txId":"tx_42"}', "2024-01-01T00:00:00+00:00", SECRET)
        assert len(signature) == 64
        int(signature, 16)

    def test_signature_covers_timestamp(self) -> None:
        """Changing the timestamp should change the signature."""
        body = '{"txId":"tx_42"}'
        first = compute_signature(body, "2024-01-01T00:00:00+00:00", SECRET)
        second = compute_signature(body, "2024-01-01T00:00:01+00:00", SECRET)
        assert first != second

    def test_verify_signature_roundtrip(self) -> None:
        """verify_signature should accept what compute_signature produces."""
        body = '{"txId":"tx_42"}'
        timestamp = "2024-01-01T00:00:00+00:00"
        signature = compute_signature(body, timestamp, SECRET)
        assert verify_signature(body, timestamp, SECRET, signature)

    def test_verify_signature_rejects_tampering(self) -> None:
        """A modified body, timestamp or secret should fail verification."""
        body = '{"txId":"tx_42"}'
        timestamp = "2024-01-01T00:00:00+00:00"
        signature = compute_signature(body, timestamp, SECRET)

        assert not verify_signature('{"txId":"tx_43"}', timestamp, SECRET, signature)
        assert not verify_signature(body, "2024-01-02T00:00:00+00:00", SECRET, signature)
        assert not verify_signature(body, timestamp, "other_secret", signature)


class TestSendWebhook:
    """Tests for a single delivery attempt."""

    @pytest.mark.asyncio
    async def test_success_archives_job(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
        archive: DeliveryArchive,
    ) -> None:
        """A 2xx response should archive the job and leave no copy behind."""
        job = make_job()
        await queue.enqueue(job)

        with mock_http(200):
            assert await dispatcher.process_queue() is True

        record = await archive.get("abc-1")
        assert record is not None
        assert record.response_status == 200
        assert record.job.id == job.id
        assert record.job.attempts == 1
        assert await queue.queue_length() == 0
        assert await queue.retry_length() == 0
        assert await dead_letters.length() == 0

    @pytest.mark.asyncio
    async def test_request_is_signed(self, dispatcher: WebhookDispatcher, clock: FakeClock) -> None:
        """The POST should carry a verifiable signature, timestamp and attempt."""
        job = make_job()

        with mock_http(200) as client:
            status = await dispatcher.send_webhook(job)

        assert status == 200
        args, kwargs = client.post.call_args
        assert args == ("https://example.com/hooks/ledger",)

        body = kwargs["content"]
        headers = kwargs["headers"]
        assert body == job.payload.to_json()
        assert headers["Content-Type"] == "application/json"
        assert headers[TIMESTAMP_HEADER] == datetime.fromtimestamp(clock.now, UTC).isoformat()
        assert headers[ATTEMPT_HEADER] == "1"
        assert verify_signature(body, headers[TIMESTAMP_HEADER], SECRET, headers[SIGNATURE_HEADER])

    @pytest.mark.asyncio
    async def test_body_uses_camel_case(self, dispatcher: WebhookDispatcher) -> None:
        """The payload should be posted with camelCase field names."""
        with mock_http(200) as client:
            await dispatcher.send_webhook(make_job())

        body = client.post.call_args.kwargs["content"]
        assert '"txId":"tx_42"' in body
        assert '"correlationId":"abc-1"' in body
        assert '"blockNumber":100' in body

    @pytest.mark.asyncio
    async def test_redirect_status_is_success(
        self, dispatcher: WebhookDispatcher, archive: DeliveryArchive
    ) -> None:
        """Statuses below 400 count as delivered."""
        with mock_http(302):
            assert await dispatcher.send_webhook(make_job()) == 302

        record = await archive.get("abc-1")
        assert record is not None
        assert record.response_status == 302

    @pytest.mark.asyncio
    async def test_error_status_raises(self, dispatcher: WebhookDispatcher) -> None:
        """Statuses >= 400 should raise DeliveryHTTPError."""
        with mock_http(503), pytest.raises(DeliveryHTTPError) as exc_info:
            await dispatcher.send_webhook(make_job())

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_attempts_increment_per_call(self, dispatcher: WebhookDispatcher) -> None:
        """Each attempt should bump the attempt counter before sending."""
        job = make_job(attempts=2)

        with mock_http(200) as client:
            await dispatcher.send_webhook(job)

        assert job.attempts == 3
        assert client.post.call_args.kwargs["headers"][ATTEMPT_HEADER] == "3"


class TestShouldRetry:
    """Tests for failure classification."""

    @pytest.mark.parametrize(
        ("status_code", "expected"),
        [
            (400, False),
            (401, False),
            (403, False),
            (404, False),
            (408, True),
            (422, False),
            (429, True),
            (500, True),
            (502, True),
            (503, True),
        ],
    )
    def test_http_errors(self, status_code: int, expected: bool) -> None:
        """Only 408, 429 and 5xx are retryable HTTP failures."""
        error = DeliveryHTTPError(status_code)
        assert WebhookDispatcher.should_retry(make_job(), error) is expected

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("timed out"),
            ValueError("unexpected"),
        ],
    )
    def test_non_http_errors_are_retryable(self, error: Exception) -> None:
        """Transport and unexpected errors are always retryable."""
        assert WebhookDispatcher.should_retry(make_job(), error) is True


class TestRetryDelay:
    """Tests for the backoff table."""

    def test_default_table(self, dispatcher: WebhookDispatcher) -> None:
        """Delays should follow 1s, 5s, 15s, 60s, 300s."""
        assert [dispatcher.retry_delay(n) for n in range(1, 6)] == [1, 5, 15, 60, 300]

    def test_clamps_to_last_entry(self, dispatcher: WebhookDispatcher) -> None:
        """Attempts past the table reuse the last delay."""
        assert dispatcher.retry_delay(6) == 300
        assert dispatcher.retry_delay(50) == 300

    def test_zero_attempts_uses_first_entry(self, dispatcher: WebhookDispatcher) -> None:
        assert dispatcher.retry_delay(0) == 1

    def test_custom_table(
        self,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
        archive: DeliveryArchive,
    ) -> None:
        """A configured table should replace the default."""
        dispatcher = WebhookDispatcher(
            queue, dead_letters, archive, secret=SECRET, retry_delays_seconds=[2, 4]
        )
        assert dispatcher.retry_delay(1) == 2
        assert dispatcher.retry_delay(2) == 4
        assert dispatcher.retry_delay(3) == 4


class TestRetrySchedule:
    """Tests for the retry and dead-letter path."""

    @pytest.mark.asyncio
    async def test_transport_errors_follow_backoff_then_dead_letter(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
        clock: FakeClock,
    ) -> None:
        """Failures should retry after 1, 5, 15, 60, 300s and dead-letter on the sixth."""
        job = make_job()
        await queue.enqueue(job)

        errors = [httpx.ConnectError("connection refused") for _ in range(6)]
        with mock_http(*errors) as client:
            await dispatcher.process_queue()
            assert await next_retry_of(queue) == clock.now_ms + 1000

            for previous, delay in [(1, 5), (5, 15), (15, 60), (60, 300)]:
                clock.advance(previous)
                assert await dispatcher.process_retries() == 1
                assert await next_retry_of(queue) == clock.now_ms + delay * 1000

            clock.advance(300)
            assert await dispatcher.process_retries() == 1

        assert client.post.call_count == 6
        assert await queue.retry_length() == 0
        assert await dead_letters.length() == 1

        page = await dead_letters.inspect()
        entry = page.jobs[0]
        assert entry.id == job.id
        assert entry.attempts == 6
        assert entry.last_error == "connection refused"
        assert entry.moved_to_dlq is not None

    @pytest.mark.asyncio
    async def test_retry_not_due_is_left_alone(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        clock: FakeClock,
    ) -> None:
        """A scheduled retry should not run before its due time."""
        await queue.enqueue(make_job())

        with mock_http(500) as client:
            await dispatcher.process_queue()
            clock.advance(0.5)
            assert await dispatcher.process_retries() == 0

        assert client.post.call_count == 1
        assert await queue.retry_length() == 1

    @pytest.mark.asyncio
    async def test_forbidden_goes_straight_to_dead_letter(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """HTTP 403 is permanent: no retry, one dead-letter alert."""
        job = make_job()
        await queue.enqueue(job)

        with caplog.at_level(logging.WARNING), mock_http(403):
            await dispatcher.process_queue()

        assert await queue.retry_length() == 0
        assert await dead_letters.length() == 1
        page = await dead_letters.inspect()
        assert page.jobs[0].attempts == 1
        assert page.jobs[0].last_error == "HTTP 403"

        alerts = [r for r in caplog.records if r.getMessage().startswith("dead_letter_alert")]
        assert len(alerts) == 1
        assert alerts[0].levelno == logging.WARNING
        message = alerts[0].getMessage()
        assert job.id in message
        assert "correlation abc-1" in message
        assert job.callback_url in message
        assert "after 1 attempts: HTTP 403" in message

    @pytest.mark.asyncio
    async def test_job_context_bound_during_delivery(
        self, dispatcher: WebhookDispatcher, queue: WebhookQueue
    ) -> None:
        """Records logged while a job is delivered carry its ids."""
        job = make_job()
        await queue.enqueue(job)
        seen: list[dict[str, object]] = []

        async def post(*args: object, **kwargs: object) -> object:
            seen.append(structlog.contextvars.get_contextvars())
            return http_response(200)

        with mock_http() as client:
            client.post.side_effect = post
            await dispatcher.process_queue()

        assert seen == [{"job_id": job.id, "correlation_id": "abc-1"}]
        assert structlog.contextvars.get_contextvars() == {}

    @pytest.mark.asyncio
    async def test_rate_limited_follows_backoff(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
        clock: FakeClock,
    ) -> None:
        """HTTP 429 should be retried after the first backoff delay."""
        await queue.enqueue(make_job())

        with mock_http(429):
            await dispatcher.process_queue()

        assert await dead_letters.length() == 0
        assert await next_retry_of(queue) == clock.now_ms + 1000

        pending = await queue.pending_jobs()
        assert pending[0].last_error == "HTTP 429"

    @pytest.mark.asyncio
    async def test_server_errors_then_success(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
        archive: DeliveryArchive,
        store: InMemoryStore,
        keys: Keys,
        clock: FakeClock,
    ) -> None:
        """500, 500, 500, 200: retry at now+15s after the third failure, then archived."""
        job = make_job()
        await queue.enqueue(job)

        with mock_http(500, 500, 500, 200):
            await dispatcher.process_queue()
            clock.advance(1)
            await dispatcher.process_retries()
            clock.advance(5)
            await dispatcher.process_retries()

            assert await queue.retry_length() == 1
            assert await next_retry_of(queue) == clock.now_ms + 15_000
            assert await job_locations(store, keys, job.id) == ["retry"]

            clock.advance(15)
            assert await dispatcher.process_retries() == 1

        record = await archive.get("abc-1")
        assert record is not None
        assert record.job.attempts == 4
        assert record.response_status == 200
        assert await job_locations(store, keys, job.id) == []
        assert await dead_letters.length() == 0

    @pytest.mark.asyncio
    async def test_job_is_never_in_two_places(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        store: InMemoryStore,
        keys: Keys,
        clock: FakeClock,
    ) -> None:
        """At every step a job id appears in at most one location."""
        job = make_job(max_attempts=2)
        await queue.enqueue(job)
        assert await job_locations(store, keys, job.id) == ["queue"]

        with mock_http(500, 500, 500):
            await dispatcher.process_queue()
            assert await job_locations(store, keys, job.id) == ["retry"]

            clock.advance(1)
            await dispatcher.process_retries()
            assert await job_locations(store, keys, job.id) == ["retry"]

            clock.advance(5)
            await dispatcher.process_retries()
            assert await job_locations(store, keys, job.id) == ["dlq"]

    @pytest.mark.asyncio
    async def test_zero_retry_budget_dead_letters_first_failure(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
    ) -> None:
        """A job with max_attempts=0 is never retried."""
        await queue.enqueue(make_job(max_attempts=0))

        with mock_http(500):
            await dispatcher.process_queue()

        assert await queue.retry_length() == 0
        assert await dead_letters.length() == 1


class TestRunCycle:
    """Tests for polling cycles and error isolation."""

    @pytest.mark.asyncio
    async def test_cycle_takes_one_queued_job(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
    ) -> None:
        """One cycle delivers at most one job from the queue."""
        await queue.enqueue(make_job("abc-1"))
        await queue.enqueue(make_job("abc-2"))

        with mock_http(200, 200) as client:
            assert await dispatcher.run_cycle() == 1

        assert client.post.call_count == 1
        assert await queue.queue_length() == 1

    @pytest.mark.asyncio
    async def test_cycle_delivers_fifo(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        archive: DeliveryArchive,
    ) -> None:
        """The oldest queued job is delivered first."""
        await queue.enqueue(make_job("first"))
        await queue.enqueue(make_job("second"))

        with mock_http(200):
            await dispatcher.run_cycle()

        assert await archive.get("first") is not None
        assert await archive.get("second") is None

    @pytest.mark.asyncio
    async def test_cycle_processes_due_retries(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        clock: FakeClock,
    ) -> None:
        """A cycle delivers every due retry after the queued job."""
        await queue.schedule_retry(make_job("r-1", attempts=1), clock.now_ms - 10)
        await queue.schedule_retry(make_job("r-2", attempts=1), clock.now_ms)
        await queue.schedule_retry(make_job("r-3", attempts=1), clock.now_ms + 60_000)

        with mock_http(200, 200) as client:
            assert await dispatcher.run_cycle() == 2

        assert client.post.call_count == 2
        assert await queue.retry_length() == 1

    @pytest.mark.asyncio
    async def test_cycle_survives_store_errors(self, dispatcher: WebhookDispatcher, queue: WebhookQueue) -> None:
        """Store failures are logged and the cycle returns normally."""
        queue.dequeue = AsyncMock(side_effect=StorageError("store unavailable"))

        assert await dispatcher.run_cycle() == 0

    @pytest.mark.asyncio
    async def test_reschedule_failure_is_logged(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """If the retry cannot be stored the error is logged with the job id."""
        job = make_job()
        await queue.enqueue(job)
        queue.schedule_retry = AsyncMock(side_effect=StorageError("store unavailable"))

        with caplog.at_level(logging.ERROR), mock_http(500):
            assert await dispatcher.process_queue() is True

        assert any(job.id in r.getMessage() for r in caplog.records)


class TestLifecycle:
    """Tests for starting and stopping the polling loop."""

    @pytest.mark.asyncio
    async def test_start_runs_immediate_cycle(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        archive: DeliveryArchive,
    ) -> None:
        """Starting should deliver without waiting for the poll interval."""
        await queue.enqueue(make_job())

        with mock_http(200):
            await dispatcher.start()
            assert dispatcher.is_running
            await dispatcher.stop()

        assert not dispatcher.is_running
        assert await archive.get("abc-1") is not None

    @pytest.mark.parametrize(("status", "location"), [(200, "archive"), (503, "retry")])
    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_delivery(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        archive: DeliveryArchive,
        status: int,
        location: str,
    ) -> None:
        """stop() returns only after the in-flight POST resolves; no cycle follows."""
        await queue.enqueue(make_job("abc-1"))
        posted = asyncio.Event()
        release = asyncio.Event()

        async def post(*args: object, **kwargs: object) -> object:
            posted.set()
            await release.wait()
            return http_response(status)

        with mock_http() as client:
            client.post.side_effect = post
            await dispatcher.start()
            await asyncio.wait_for(posted.wait(), timeout=1)

            # Queued while the first delivery is in flight
            await queue.enqueue(make_job("abc-2"))
            stopping = asyncio.create_task(dispatcher.stop())
            await asyncio.sleep(0.05)
            assert not stopping.done()

            release.set()
            await asyncio.wait_for(stopping, timeout=1)

        assert not dispatcher.is_running
        assert client.post.await_count == 1
        assert await queue.queue_length() == 1

        if location == "archive":
            assert await archive.get("abc-1") is not None
            assert await queue.retry_length() == 0
        else:
            assert await archive.get("abc-1") is None
            pending = await queue.pending_jobs()
            assert [job.correlation_id for job in pending] == ["abc-2", "abc-1"]
            assert await queue.retry_length() == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, dispatcher: WebhookDispatcher) -> None:
        """stop() on an idle dispatcher is a no-op."""
        await dispatcher.stop()
        assert not dispatcher.is_running

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_loop(self, dispatcher: WebhookDispatcher) -> None:
        with mock_http():
            await dispatcher.start()
            first = dispatcher._task
            await dispatcher.start()
            assert dispatcher._task is first
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_stats_report_processing(
        self,
        dispatcher: WebhookDispatcher,
        queue: WebhookQueue,
        dead_letters: DeadLetterStore,
        clock: FakeClock,
    ) -> None:
        """get_stats should report queue depths and loop state."""
        await queue.enqueue(make_job("q-1"))
        await queue.schedule_retry(make_job("r-1"), clock.now_ms + 60_000)
        await dead_letters.push(make_job("d-1"))

        stats = await dispatcher.get_stats()
        assert (stats.queue, stats.retry, stats.dlq) == (1, 1, 1)
        assert stats.processing is False

        with mock_http(200):
            await dispatcher.start()
            assert (await dispatcher.get_stats()).processing is True
            await dispatcher.stop()

        assert (await dispatcher.get_stats()).processing is False
