"""Webhook models: notification payloads, delivery jobs and their history.

A WebhookJob is created when a transaction reaches a terminal state and
lives in exactly one place at a time: the webhook queue, the retry
schedule or the dead letter queue. Successful deliveries leave a
DeliveryRecord behind for audit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from .base import StoredModel, now_ms, utc_now
from .transaction import TransactionStatus

# Delivery state reported by history lookups
HistoryStatus = Literal["SUCCESS", "FAILED", "PENDING"]

DEFAULT_MAX_ATTEMPTS = 5


class WebhookPayload(StoredModel):
    """JSON body POSTed to the callback URL.

    Receivers should deduplicate on (correlation_id, tx_id): delivery is
    at-least-once.
    """

    tx_id: str = Field(description="Backend transaction id")
    correlation_id: str = Field(description="Correlation id")
    status: TransactionStatus = Field(description="Terminal status")
    block_number: int | None = Field(default=None, ge=0, description="Block height")
    payload_hash: str | None = Field(default=None, description="Committed payload hash")
    error: str | None = Field(default=None, description="Failure reason")


class WebhookJob(StoredModel):
    """A pending notification delivery.

    Attributes:
        id: Opaque job id, ``webhook:{correlationId}:{createdAtMs}``.
        payload: Notification body.
        callback_url: Destination URL.
        attempts: Delivery attempts made so far.
        max_attempts: Retry budget.
        next_retry: Unix ms at which the job becomes due again.
        last_error: Error of the most recent failed attempt.
        moved_to_dlq: When the job was dead-lettered.
    """

    id: str = Field(description="Job id")
    payload: WebhookPayload = Field(description="Notification body")
    callback_url: str = Field(min_length=1, description="Destination URL")
    attempts: int = Field(default=0, ge=0, description="Attempts made")
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=0, description="Retry budget")
    next_retry: int | None = Field(default=None, description="Due-at unix ms")
    last_error: str | None = Field(default=None, description="Last failure")
    moved_to_dlq: datetime | None = Field(
        default=None,
        alias="movedToDLQ",
        description="When the job entered the dead letter queue",
    )

    @classmethod
    def create(
        cls,
        payload: WebhookPayload,
        callback_url: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> WebhookJob:
        """Create a fresh job for a notification payload."""
        return cls(
            id=f"webhook:{payload.correlation_id}:{now_ms()}",
            payload=payload,
            callback_url=callback_url,
            max_attempts=max_attempts,
        )

    @property
    def correlation_id(self) -> str:
        return self.payload.correlation_id

    def reset_for_replay(self) -> WebhookJob:
        """Clear retry state before an operator requeue."""
        self.attempts = 0
        self.last_error = None
        self.moved_to_dlq = None
        self.next_retry = None
        return self


class DeliveryRecord(StoredModel):
    """Archive entry for a delivered notification (kept 24h)."""

    job: WebhookJob = Field(description="Final job snapshot")
    completed_at: datetime = Field(default_factory=utc_now, description="Delivery time")
    response_status: int = Field(description="HTTP status returned by the receiver")


class DeadLetterEntry(StoredModel):
    """Operator view of a dead-lettered job."""

    id: str
    correlation_id: str
    callback_url: str
    attempts: int
    last_error: str | None = None
    moved_to_dlq: datetime | None = Field(default=None, alias="movedToDLQ")

    @classmethod
    def from_job(cls, job: WebhookJob) -> DeadLetterEntry:
        return cls(
            id=job.id,
            correlation_id=job.correlation_id,
            callback_url=job.callback_url,
            attempts=job.attempts,
            last_error=job.last_error,
            moved_to_dlq=job.moved_to_dlq,
        )


class DeadLetterPage(StoredModel):
    """A read-only page of the dead letter queue."""

    jobs: list[DeadLetterEntry] = Field(default_factory=list)
    total: int = Field(ge=0)
    limit: int = Field(ge=0)
    offset: int = Field(ge=0)
    has_more: bool = False


class DeliveryHistory(StoredModel):
    """Where a correlation id's notification currently stands.

    SUCCESS comes from the archive, FAILED from the dead letter queue and
    PENDING from the webhook queue or retry schedule.
    """

    correlation_id: str
    status: HistoryStatus
    attempts: int = 0
    callback_url: str | None = None
    response_status: int | None = None
    completed_at: datetime | None = None
    next_retry: int | None = None
    last_error: str | None = None
    moved_to_dlq: datetime | None = Field(default=None, alias="movedToDLQ")


class DispatcherStats(StoredModel):
    """Queue depths and dispatcher state."""

    queue: int = Field(ge=0, description="Jobs awaiting first attempt")
    retry: int = Field(ge=0, description="Jobs scheduled for retry")
    dlq: int = Field(ge=0, description="Dead-lettered jobs")
    processing: bool = Field(description="Whether the polling loop is running")


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DeadLetterEntry",
    "DeadLetterPage",
    "DeliveryHistory",
    "DeliveryRecord",
    "DispatcherStats",
    "HistoryStatus",
    "WebhookJob",
    "WebhookPayload",
]
