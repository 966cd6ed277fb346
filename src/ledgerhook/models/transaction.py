"""Transaction ledger models.

A TransactionRecord tracks one backend ledger operation, keyed by the
client-supplied correlation id. CallbackRegistration remembers where the
terminal-state notification for that operation should be delivered.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field

from .base import StoredModel, utc_now


class TransactionStatus(str, Enum):
    """Lifecycle state of a ledger transaction.

    SUBMITTED -> (PENDING) -> COMMITTED, or -> FAILED.
    """

    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """COMMITTED and FAILED admit no further transition."""
        return self in (TransactionStatus.COMMITTED, TransactionStatus.FAILED)


class OperationInput(StoredModel):
    """Validated input of a ledger submission.

    Attributes:
        container_id: Container the instruction applies to.
        instruction: Instruction recorded on the ledger.
        source: Originating system.
        timestamp: Client-side timestamp of the operation.
    """

    container_id: str = Field(min_length=1, description="Container identifier")
    instruction: str = Field(min_length=1, description="Instruction to record")
    source: str = Field(min_length=1, description="Originating system")
    timestamp: str = Field(
        default_factory=lambda: utc_now().isoformat(),
        description="Client-side operation timestamp",
    )


class TransactionRecord(StoredModel):
    """Ledger record for one correlation id.

    Attributes:
        correlation_id: Client-chosen id of the logical operation.
        tx_id: Backend transaction id, empty until one is assigned.
        status: Lifecycle state.
        block_number: Block height once committed.
        payload_hash: Hash of the committed payload.
        error: Error message for FAILED records.
        updated_at: When this record was last written.
    """

    correlation_id: str = Field(description="Client-supplied correlation id")
    tx_id: str = Field(default="", description="Backend transaction id")
    status: TransactionStatus = Field(description="Lifecycle state")
    block_number: int | None = Field(default=None, ge=0, description="Block height")
    payload_hash: str | None = Field(default=None, description="Committed payload hash")
    error: str | None = Field(default=None, description="Failure reason")
    updated_at: datetime = Field(default_factory=utc_now, description="Last write time")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class CompletionNotice(StoredModel):
    """Final outcome of a backend transaction, reported asynchronously.

    Produced by the block listener of a real ledger client, or by the
    simulated backend's commit timer.
    """

    tx_id: str = Field(description="Backend transaction id")
    status: TransactionStatus = Field(description="Final state")
    block_number: int | None = Field(default=None, ge=0, description="Block height")
    payload_hash: str | None = Field(default=None, description="Committed payload hash")
    error: str | None = Field(default=None, description="Failure reason")


class CallbackRegistration(StoredModel):
    """Where and for whom a correlation id's notification is delivered."""

    correlation_id: str = Field(description="Correlation id")
    callback_url: str = Field(min_length=1, description="Webhook destination URL")
    submitter: str = Field(default="anonymous", description="Submitting identity")
    created_at: datetime = Field(default_factory=utc_now, description="Registration time")


class TransactionPage(StoredModel):
    """A page of ledger records for operator listings."""

    transactions: list[TransactionRecord] = Field(default_factory=list)
    total: int = Field(ge=0)
    limit: int = Field(ge=0)
    offset: int = Field(ge=0)
    has_more: bool = False


__all__ = [
    "CallbackRegistration",
    "CompletionNotice",
    "OperationInput",
    "TransactionPage",
    "TransactionRecord",
    "TransactionStatus",
]
