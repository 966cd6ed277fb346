"""Webhook delivery pipeline for transaction notifications.

Provides:
- WebhookQueue: FIFO queue of new jobs plus the time-ordered retry schedule
- DeadLetterStore: jobs that exhausted their retries, with manual replay
- DeliveryArchive: success records and delivery-history lookup
- WebhookDispatcher: polling loop with signed delivery and backoff
"""

from .delivery import (
    ATTEMPT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WebhookDispatcher,
    compute_signature,
    verify_signature,
)
from .history import DeliveryArchive
from .queue import DeadLetterStore, WebhookQueue

__all__ = [
    "ATTEMPT_HEADER",
    "DeadLetterStore",
    "DeliveryArchive",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "WebhookDispatcher",
    "WebhookQueue",
    "compute_signature",
    "verify_signature",
]
