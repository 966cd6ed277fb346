"""Ledger backend abstraction.

The distributed-ledger client is an external collaborator: it assigns a
transaction id, submits the operation, and later reports the final state
through a completion handler (a block-commit listener in a real client).

- **LedgerBackend**: protocol the transaction ledger talks to
- **SimulatedLedgerBackend**: commits every submission after a fixed
  delay, for development when no ledger network is configured
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import random
import secrets
from abc import abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from ledgerhook.models import CompletionNotice, OperationInput, TransactionStatus, now_ms

logger = logging.getLogger(__name__)

CompletionHandler = Callable[[CompletionNotice], Awaitable[object]]


def compute_payload_hash(data: Any) -> str:
    """Hash a JSON-serializable payload.

    Returns:
        Digest in format "sha256:<hex_digest>".
    """
    encoded = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return "sha256:" + hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@runtime_checkable
class LedgerBackend(Protocol):
    """Protocol for ledger clients."""

    @abstractmethod
    def new_transaction_id(self) -> str:
        """Allocate the id the next submission will carry."""
        ...

    @abstractmethod
    async def submit(self, tx_id: str, correlation_id: str, operation: OperationInput) -> None:
        """Submit an operation under a previously allocated transaction id.

        Raises:
            Exception: Any failure; the ledger records it as FAILED.
        """
        ...

    @abstractmethod
    def bind_completion_handler(self, handler: CompletionHandler) -> None:
        """Register the coroutine called when a transaction is finalized."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections and pending timers."""
        ...


class SimulatedLedgerBackend:
    """Backend that commits every submission after a fixed delay.

    Example:
        ```python
        backend = SimulatedLedgerBackend(commit_delay_seconds=0.1)
        backend.bind_completion_handler(ledger.record_completion)
        tx_id = backend.new_transaction_id()
        await backend.submit(tx_id, "abc-1", operation)
        ```
    """

    def __init__(
        self,
        commit_delay_seconds: float = 5.0,
        rng: random.Random | None = None,
    ) -> None:
        self._delay = commit_delay_seconds
        self._rng = rng or random.Random()
        self._handler: CompletionHandler | None = None
        self._timers: set[asyncio.Task[None]] = set()

    @property
    def pending_commits(self) -> int:
        """Submissions whose commit has not been reported yet."""
        return len(self._timers)

    def new_transaction_id(self) -> str:
        return f"tx_{now_ms()}_{secrets.token_hex(4)}"

    def bind_completion_handler(self, handler: CompletionHandler) -> None:
        self._handler = handler

    async def submit(self, tx_id: str, correlation_id: str, operation: OperationInput) -> None:
        payload_hash = compute_payload_hash(operation.model_dump(mode="json", by_alias=True))
        notice = CompletionNotice(
            tx_id=tx_id,
            status=TransactionStatus.COMMITTED,
            block_number=self._rng.randint(1, 1000),
            payload_hash=payload_hash,
        )

        timer = asyncio.create_task(self._commit_later(notice))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

        logger.info("Simulated transaction %s submitted for %s", tx_id, correlation_id)

    async def _commit_later(self, notice: CompletionNotice) -> None:
        await asyncio.sleep(self._delay)

        if self._handler is None:
            logger.warning("No completion handler bound; dropping commit of %s", notice.tx_id)
            return

        try:
            await self._handler(notice)
        except Exception:
            logger.exception("Completion handler failed for %s", notice.tx_id)
            return

        logger.info("Simulated transaction %s committed in block %s", notice.tx_id, notice.block_number)

    async def close(self) -> None:
        timers = list(self._timers)
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()
