"""Ledgerhook: idempotent ledger submissions and reliable webhook delivery.

The asynchronous delivery core of a blockchain API gateway. Submissions
are idempotent per correlation id; when a transaction reaches a terminal
state, a signed webhook is delivered at least once to the registered
callback, retried with backoff, and dead-lettered when retries run out.

Quick Start:
    from ledgerhook import LedgerhookService, OperationInput

    async with LedgerhookService.create() as service:
        record = await service.submit_transaction(
            "abc-1",
            OperationInput(container_id="c-9", instruction="ship", source="erp"),
            callback_url="https://example.com/hooks/ledger",
        )

Components:
    - TransactionLedger: correlation id -> transaction lifecycle
    - CallbackRegistry: correlation id -> callback URL
    - WebhookQueue / DeadLetterStore: where delivery jobs live
    - WebhookDispatcher: polling delivery loop
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings

# Exceptions
from .exceptions import (
    BackendError,
    ConfigurationError,
    ConflictError,
    DeliveryHTTPError,
    LedgerhookError,
    NotFoundError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Models
from .models import (
    CompletionNotice,
    OperationInput,
    TransactionRecord,
    TransactionStatus,
    WebhookJob,
    WebhookPayload,
)

# Service
from .service import LedgerhookService

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    # Exceptions
    "LedgerhookError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StorageError",
    "BackendError",
    "DeliveryHTTPError",
    "ConfigurationError",
    # Logging
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    # Models
    "CompletionNotice",
    "OperationInput",
    "TransactionRecord",
    "TransactionStatus",
    "WebhookJob",
    "WebhookPayload",
    # Service
    "LedgerhookService",
]
