"""Transaction ledger, callback registry and ledger backends.

Example:
    ```python
    from ledgerhook.ledger import CallbackRegistry, SimulatedLedgerBackend, TransactionLedger

    backend = SimulatedLedgerBackend()
    callbacks = CallbackRegistry(store)
    ledger = TransactionLedger(store, backend, queue, callbacks)
    backend.bind_completion_handler(ledger.record_completion)
    ```
"""

from .backend import (
    CompletionHandler,
    LedgerBackend,
    SimulatedLedgerBackend,
    compute_payload_hash,
)
from .callbacks import CallbackRegistry
from .transactions import TransactionLedger

__all__ = [
    "CallbackRegistry",
    "CompletionHandler",
    "LedgerBackend",
    "SimulatedLedgerBackend",
    "TransactionLedger",
    "compute_payload_hash",
]
