"""Ledgerhook service layer.

Composes the store, ledger, callback registry, webhook queue, dead
letter store and dispatcher, and exposes the operations an HTTP layer
calls.

Example:
    ```python
    from ledgerhook.service import LedgerhookService

    async with LedgerhookService.create() as service:
        record = await service.submit_transaction(
            "abc-1",
            OperationInput(container_id="c-9", instruction="ship", source="erp"),
            callback_url="https://example.com/hooks/ledger",
        )
        print(record.status)
    ```
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ledgerhook.config import Settings
from ledgerhook.exceptions import StorageError, ValidationError
from ledgerhook.ledger import (
    CallbackRegistry,
    LedgerBackend,
    SimulatedLedgerBackend,
    TransactionLedger,
    compute_payload_hash,
)
from ledgerhook.models import (
    CompletionNotice,
    DeadLetterPage,
    DeliveryHistory,
    DispatcherStats,
    OperationInput,
    TransactionPage,
    TransactionRecord,
    TransactionStatus,
    WebhookJob,
    WebhookPayload,
    now_ms,
)
from ledgerhook.storage import Keys, KeyValueStore, get_store
from ledgerhook.webhooks import DeadLetterStore, DeliveryArchive, WebhookDispatcher, WebhookQueue

logger = logging.getLogger(__name__)

TEST_SUBMITTER = "test-user"


@dataclass
class LedgerhookService:
    """High-level entry point for submissions and webhook operations.

    Only the store, settings and ledger backend are injected; the rest of
    the pipeline is built from them so every component shares one store
    and one key layout.

    Attributes:
        store: Key-value store backend (Redis or in-memory).
        settings: Configuration settings.
        backend: Ledger client (simulated unless one is injected).
        clock: Source of Unix time in seconds for the dispatcher.
    """

    store: KeyValueStore
    settings: Settings
    backend: LedgerBackend
    clock: Callable[[], float] = field(default=time.time)

    keys: Keys = field(init=False, repr=False)
    callbacks: CallbackRegistry = field(init=False, repr=False)
    queue: WebhookQueue = field(init=False, repr=False)
    dead_letters: DeadLetterStore = field(init=False, repr=False)
    archive: DeliveryArchive = field(init=False, repr=False)
    ledger: TransactionLedger = field(init=False, repr=False)
    dispatcher: WebhookDispatcher = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Wire the pipeline components together."""
        settings = self.settings
        self.keys = Keys(settings.redis_key_prefix)
        self.callbacks = CallbackRegistry(
            self.store, self.keys, ttl_seconds=settings.callback_ttl_seconds
        )
        self.queue = WebhookQueue(self.store, self.keys)
        self.dead_letters = DeadLetterStore(
            self.store, self.queue, self.keys, page_max=settings.dead_letter_page_max
        )
        self.archive = DeliveryArchive(
            self.store,
            self.queue,
            self.dead_letters,
            self.keys,
            ttl_seconds=settings.success_ttl_seconds,
        )
        self.ledger = TransactionLedger(
            self.store,
            self.backend,
            self.queue,
            self.callbacks,
            self.keys,
            pending_ttl_seconds=settings.tx_pending_ttl_seconds,
            terminal_ttl_seconds=settings.tx_terminal_ttl_seconds,
            max_attempts=settings.max_attempts,
            lock_enabled=settings.submit_lock_enabled,
            lock_ttl_ms=settings.submit_lock_ttl_ms,
        )
        self.dispatcher = WebhookDispatcher(
            self.queue,
            self.dead_letters,
            self.archive,
            secret=settings.effective_webhook_secret,
            timeout_seconds=settings.webhook_timeout_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            retry_delays_seconds=settings.retry_delays_seconds,
            clock=self.clock,
        )
        self.backend.bind_completion_handler(self.ledger.record_completion)

    @classmethod
    def create(cls, settings: Settings | None = None) -> LedgerhookService:
        """Create a LedgerhookService with default dependencies.

        Args:
            settings: Optional settings. Uses defaults if None.

        Returns:
            Configured LedgerhookService instance.
        """
        if settings is None:
            settings = Settings()

        return cls(
            store=get_store(settings.redis_url),
            settings=settings,
            backend=SimulatedLedgerBackend(
                commit_delay_seconds=settings.simulated_commit_delay_seconds
            ),
        )

    async def initialize(self, start_dispatcher: bool = True) -> None:
        """Check the store connection and start the dispatcher.

        Raises:
            StorageError: If the store does not answer.
        """
        if not await self.store.ping():
            raise StorageError("Key-value store did not answer ping")
        if start_dispatcher:
            await self.dispatcher.start()

    async def close(self) -> None:
        """Stop the dispatcher, then release the backend and the store."""
        await self.dispatcher.stop()
        await self.backend.close()
        await self.store.close()

    async def __aenter__(self) -> LedgerhookService:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    # Transactions

    async def submit_transaction(
        self,
        correlation_id: str,
        operation: OperationInput,
        callback_url: str | None = None,
        submitter: str = "anonymous",
    ) -> TransactionRecord:
        """Submit an operation, registering its callback first.

        A duplicate submission returns the existing record and leaves the
        original callback registration in place.

        Args:
            correlation_id: Client-chosen id of the logical operation.
            operation: Operation to record on the ledger.
            callback_url: Where to deliver the completion webhook.
            submitter: Identity of the submitting client.

        Returns:
            The transaction record.

        Raises:
            ValidationError: If correlation_id is empty.
            BackendError: If the ledger backend rejects the submission.
        """
        if not correlation_id:
            raise ValidationError("correlation_id", "must not be empty")

        existing = await self.ledger.get_by_correlation_id(correlation_id)
        if existing is not None:
            logger.info("Duplicate submission for %s", correlation_id)
            return existing

        if callback_url:
            await self.callbacks.register(correlation_id, callback_url, submitter=submitter)

        return await self.ledger.submit(correlation_id, operation)

    async def get_transaction(self, correlation_id: str) -> TransactionRecord | None:
        return await self.ledger.get_by_correlation_id(correlation_id)

    async def get_transaction_by_tx_id(self, tx_id: str) -> TransactionRecord | None:
        return await self.ledger.get_by_tx_id(tx_id)

    async def list_transactions(
        self,
        offset: int = 0,
        limit: int = 10,
        status: TransactionStatus | None = None,
    ) -> TransactionPage:
        return await self.ledger.list_transactions(offset=offset, limit=limit, status=status)

    async def reset_transaction(self, correlation_id: str) -> TransactionRecord:
        """Delete a FAILED transaction so it can be submitted again."""
        return await self.ledger.reset(correlation_id)

    async def record_completion(self, notice: CompletionNotice) -> TransactionRecord | None:
        """Apply a completion notice from an external ledger listener."""
        return await self.ledger.record_completion(notice)

    # Webhooks

    async def trigger_test_webhook(
        self,
        correlation_id: str,
        callback_url: str,
        payload: WebhookPayload | None = None,
    ) -> WebhookJob:
        """Queue a webhook without a ledger transaction.

        Lets integrators check their receiver. A COMMITTED test payload
        is generated when none is given.

        Returns:
            The queued job.
        """
        await self.callbacks.register(
            correlation_id,
            callback_url,
            submitter=TEST_SUBMITTER,
            ttl_seconds=self.settings.test_callback_ttl_seconds,
        )

        if payload is None:
            payload = WebhookPayload(
                tx_id=f"test_{now_ms()}",
                correlation_id=correlation_id,
                status=TransactionStatus.COMMITTED,
                block_number=random.randint(1, 1000),
                payload_hash=compute_payload_hash({"test": True}),
            )

        job = WebhookJob.create(payload, callback_url, self.settings.max_attempts)
        await self.queue.enqueue(job)
        logger.info("Test webhook queued for %s", correlation_id)
        return job

    async def get_stats(self) -> DispatcherStats:
        return await self.dispatcher.get_stats()

    async def list_dead_letters(self, offset: int = 0, limit: int = 10) -> DeadLetterPage:
        return await self.dead_letters.inspect(offset=offset, limit=limit)

    async def replay_dead_letter(self, job_id: str) -> WebhookJob:
        """Requeue one dead-lettered job with its attempts reset."""
        return await self.dead_letters.reprocess(job_id)

    async def replay_all_dead_letters(self) -> int:
        """Requeue every dead-lettered job; returns how many were moved."""
        return await self.dead_letters.reprocess_all()

    async def get_delivery_history(self, correlation_id: str) -> DeliveryHistory | None:
        return await self.archive.history(correlation_id)


__all__ = ["LedgerhookService"]
