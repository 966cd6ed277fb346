"""Ledgerhook exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from LedgerhookError for easy catching.
"""

from __future__ import annotations


class LedgerhookError(Exception):
    """Base exception for all Ledgerhook errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "ledgerhook_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(LedgerhookError):
    """Invalid input provided.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(LedgerhookError):
    """Resource not found.

    Raised by operations that require an existing resource, such as
    replaying a dead-lettered job. Plain lookups return None instead.

    Attributes:
        resource_type: Type of resource (e.g., "transaction", "webhook_job").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class ConflictError(LedgerhookError):
    """Operation conflicts with the current state of a resource.

    Raised when a transaction cannot be reset in its current state, or
    when a concurrent submission holds the submission lock.
    """

    code: str = "conflict"


class StorageError(LedgerhookError):
    """Key-value store operation failed.

    Raised when the store is unreachable or rejects a command. Never
    swallowed: losing a job silently would break at-least-once delivery.
    """

    code: str = "storage_error"


class BackendError(LedgerhookError):
    """Ledger backend rejected or failed a submission.

    Attributes:
        correlation_id: Correlation id of the failed submission.
    """

    code: str = "backend_error"

    def __init__(self, correlation_id: str, message: str) -> None:
        self.correlation_id = correlation_id
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "correlation_id": self.correlation_id,
                "message": self.message,
            }
        }


class DeliveryHTTPError(LedgerhookError):
    """Webhook receiver answered with an error status.

    Attributes:
        status_code: HTTP status returned by the receiver.
    """

    code: str = "delivery_http_error"

    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"HTTP {status_code}")


class ConfigurationError(LedgerhookError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"
