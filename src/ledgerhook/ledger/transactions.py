"""Transaction ledger with idempotent submission.

Each correlation id has at most one TransactionRecord. Submitting a
correlation id that already has a record returns that record and never
reaches the backend again, so client retries cannot create duplicate
ledger operations.

Lifecycle:
    PENDING (persisted before the backend call) -> SUBMITTED -> COMMITTED
    or FAILED. Terminal records are only replaced by an operator reset.
"""

from __future__ import annotations

import logging

from ledgerhook.exceptions import BackendError, ConflictError, NotFoundError, ValidationError
from ledgerhook.logging import bind_context, unbind_context
from ledgerhook.models import (
    DEFAULT_MAX_ATTEMPTS,
    CompletionNotice,
    OperationInput,
    TransactionPage,
    TransactionRecord,
    TransactionStatus,
    WebhookJob,
    WebhookPayload,
    utc_now,
)
from ledgerhook.storage import Keys, KeyValueStore
from ledgerhook.webhooks.queue import WebhookQueue

from .backend import LedgerBackend
from .callbacks import CallbackRegistry

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class TransactionLedger:
    """Correlation-keyed record of backend transactions.

    Example:
        ```python
        ledger = TransactionLedger(store, backend, queue, callbacks)
        backend.bind_completion_handler(ledger.record_completion)

        record = await ledger.submit("abc-1", operation)
        again = await ledger.submit("abc-1", operation)  # same record, no backend call
        ```
    """

    def __init__(
        self,
        store: KeyValueStore,
        backend: LedgerBackend,
        queue: WebhookQueue,
        callbacks: CallbackRegistry,
        keys: Keys | None = None,
        pending_ttl_seconds: int = 3600,
        terminal_ttl_seconds: int = 86400,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lock_enabled: bool = False,
        lock_ttl_ms: int = 5000,
    ) -> None:
        self._store = store
        self._backend = backend
        self._queue = queue
        self._callbacks = callbacks
        self._keys = keys or Keys()
        self._pending_ttl = pending_ttl_seconds
        self._terminal_ttl = terminal_ttl_seconds
        self._max_attempts = max_attempts
        self._lock_enabled = lock_enabled
        self._lock_ttl_ms = lock_ttl_ms

    async def _save(self, record: TransactionRecord) -> None:
        ttl = self._terminal_ttl if record.is_terminal else self._pending_ttl
        await self._store.set(
            self._keys.transaction(record.correlation_id),
            record.to_json(),
            ttl_seconds=ttl,
        )
        if record.tx_id:
            await self._store.set(
                self._keys.tx_index(record.tx_id),
                record.correlation_id,
                ttl_seconds=ttl,
            )

    async def get_by_correlation_id(self, correlation_id: str) -> TransactionRecord | None:
        """Get the record for a correlation id, or None if unknown or expired."""
        data = await self._store.get(self._keys.transaction(correlation_id))
        if data is None:
            return None
        return TransactionRecord.from_json(data)

    async def get_by_tx_id(self, tx_id: str) -> TransactionRecord | None:
        """Get a record through the backend transaction id reverse index."""
        correlation_id = await self._store.get(self._keys.tx_index(tx_id))
        if correlation_id is None:
            return None
        return await self.get_by_correlation_id(correlation_id)

    async def submit(self, correlation_id: str, operation: OperationInput) -> TransactionRecord:
        """Submit an operation at most once per correlation id.

        A completion that arrives before the backend call returns is kept:
        the record is re-read and a terminal record is returned as is.
        The re-read and the SUBMITTED write are separate store calls, so a
        completion landing between them is overwritten with SUBMITTED on a
        shared store. That window is accepted; the completion webhook is
        still queued and delivered, only the stored status stays
        SUBMITTED until the record expires.

        Args:
            correlation_id: Client-chosen id of the logical operation.
            operation: Validated operation to record on the ledger.

        Returns:
            The existing record for a duplicate submission, otherwise the
            new SUBMITTED record.

        Raises:
            BackendError: If the backend call fails (a FAILED record is kept).
            ConflictError: If another caller holds the submission lock.
            StorageError: If the store is unavailable.
        """
        bind_context(correlation_id=correlation_id)
        try:
            return await self._submit(correlation_id, operation)
        finally:
            unbind_context("correlation_id")

    async def _submit(self, correlation_id: str, operation: OperationInput) -> TransactionRecord:
        existing = await self.get_by_correlation_id(correlation_id)
        if existing is not None:
            logger.info(
                "Duplicate submission for %s, returning %s record",
                correlation_id,
                existing.status.value,
            )
            return existing

        if not self._lock_enabled:
            return await self._submit_new(correlation_id, operation)

        lock_key = self._keys.lock(f"submit:{correlation_id}")
        token = await self._store.acquire_lock(lock_key, self._lock_ttl_ms)
        if token is None:
            existing = await self.get_by_correlation_id(correlation_id)
            if existing is not None:
                return existing
            raise ConflictError(f"Submission already in progress for {correlation_id}")

        try:
            existing = await self.get_by_correlation_id(correlation_id)
            if existing is not None:
                return existing
            return await self._submit_new(correlation_id, operation)
        finally:
            await self._store.release_lock(lock_key, token)

    async def _submit_new(self, correlation_id: str, operation: OperationInput) -> TransactionRecord:
        tx_id = self._backend.new_transaction_id()
        record = TransactionRecord(
            correlation_id=correlation_id,
            tx_id=tx_id,
            status=TransactionStatus.PENDING,
        )
        await self._save(record)

        try:
            await self._backend.submit(tx_id, correlation_id, operation)
        except Exception as e:
            failed = record.model_copy(
                update={
                    "status": TransactionStatus.FAILED,
                    "error": str(e) or type(e).__name__,
                    "updated_at": utc_now(),
                }
            )
            await self._save(failed)
            logger.error("Ledger submission failed for %s: %s", correlation_id, e)
            raise BackendError(correlation_id, f"Ledger submission failed: {e}") from e

        # A fast backend may have reported completion already
        current = await self.get_by_correlation_id(correlation_id)
        if current is not None and current.is_terminal:
            return current

        submitted = record.model_copy(
            update={"status": TransactionStatus.SUBMITTED, "updated_at": utc_now()}
        )
        await self._save(submitted)
        logger.info("Transaction %s submitted for %s", tx_id, correlation_id)
        return submitted

    async def record_completion(self, notice: CompletionNotice) -> TransactionRecord | None:
        """Apply a backend completion notice.

        Moves the record to its terminal state and enqueues a webhook job
        for the registered callback. Duplicate notices for a record that
        is already terminal change nothing and enqueue nothing.

        Args:
            notice: Final outcome reported by the backend.

        Returns:
            The terminal record, or None if the tx id is unknown.

        Raises:
            ValidationError: If the notice carries a non-terminal status.
        """
        if not notice.status.is_terminal:
            raise ValidationError("status", f"completion status must be terminal, got {notice.status.value}")

        record = await self.get_by_tx_id(notice.tx_id)
        if record is None:
            logger.warning("Completion notice for unknown transaction %s", notice.tx_id)
            return None

        if record.is_terminal:
            logger.info(
                "Ignoring duplicate completion of %s (%s already %s)",
                notice.tx_id,
                record.correlation_id,
                record.status.value,
            )
            return record

        updated = record.model_copy(
            update={
                "status": notice.status,
                "block_number": notice.block_number,
                "payload_hash": notice.payload_hash,
                "error": notice.error,
                "updated_at": utc_now(),
            }
        )
        await self._save(updated)
        logger.info(
            "Transaction %s for %s is %s",
            notice.tx_id,
            updated.correlation_id,
            updated.status.value,
        )

        callback_url = await self._callbacks.resolve(updated.correlation_id)
        if callback_url is None:
            logger.debug("No callback registered for %s", updated.correlation_id)
            return updated

        payload = WebhookPayload(
            tx_id=notice.tx_id,
            correlation_id=updated.correlation_id,
            status=updated.status,
            block_number=updated.block_number,
            payload_hash=updated.payload_hash,
            error=updated.error,
        )
        await self._queue.enqueue(WebhookJob.create(payload, callback_url, self._max_attempts))
        return updated

    async def list_transactions(
        self,
        offset: int = 0,
        limit: int = 10,
        status: TransactionStatus | None = None,
    ) -> TransactionPage:
        """List records ordered by correlation id.

        Args:
            offset: Records to skip.
            limit: Page size (max 100).
            status: Only return records in this state.

        Raises:
            ValidationError: If offset or limit is out of range.
        """
        if offset < 0:
            raise ValidationError("offset", "must be >= 0")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError("limit", f"must be between 1 and {MAX_PAGE_SIZE}")

        records: list[TransactionRecord] = []
        for key in sorted(await self._store.scan_keys(self._keys.transaction_pattern())):
            data = await self._store.get(key)
            if data is None:
                continue
            record = TransactionRecord.from_json(data)
            if status is None or record.status == status:
                records.append(record)

        return TransactionPage(
            transactions=records[offset : offset + limit],
            total=len(records),
            limit=limit,
            offset=offset,
            has_more=offset + limit < len(records),
        )

    async def reset(self, correlation_id: str) -> TransactionRecord:
        """Delete a FAILED record so the correlation id can be submitted again.

        Returns:
            The deleted record.

        Raises:
            NotFoundError: If no record exists.
            ConflictError: If the record is not FAILED.
        """
        record = await self.get_by_correlation_id(correlation_id)
        if record is None:
            raise NotFoundError("transaction", correlation_id)
        if record.status != TransactionStatus.FAILED:
            raise ConflictError(
                f"Only FAILED transactions can be reset; {correlation_id} is {record.status.value}"
            )

        keys = [self._keys.transaction(correlation_id)]
        if record.tx_id:
            keys.append(self._keys.tx_index(record.tx_id))
        await self._store.delete(*keys)

        logger.info("Transaction %s reset", correlation_id)
        return record
