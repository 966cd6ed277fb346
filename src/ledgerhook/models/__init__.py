"""Record types for Ledgerhook.

Ledger:
    - TransactionRecord: lifecycle of one correlation id
    - CallbackRegistration: webhook destination for a correlation id
    - CompletionNotice: asynchronous backend outcome

Delivery:
    - WebhookPayload, WebhookJob: notification and its delivery state
    - DeliveryRecord: success archive entry
    - DeadLetterPage, DeliveryHistory, DispatcherStats: operator views
"""

from .base import StoredModel, now_ms, utc_now
from .transaction import (
    CallbackRegistration,
    CompletionNotice,
    OperationInput,
    TransactionPage,
    TransactionRecord,
    TransactionStatus,
)
from .webhook import (
    DEFAULT_MAX_ATTEMPTS,
    DeadLetterEntry,
    DeadLetterPage,
    DeliveryHistory,
    DeliveryRecord,
    DispatcherStats,
    HistoryStatus,
    WebhookJob,
    WebhookPayload,
)

__all__ = [
    # Base
    "StoredModel",
    "now_ms",
    "utc_now",
    # Ledger
    "CallbackRegistration",
    "CompletionNotice",
    "OperationInput",
    "TransactionPage",
    "TransactionRecord",
    "TransactionStatus",
    # Delivery
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
