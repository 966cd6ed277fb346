"""Configuration management for Ledgerhook."""

import logging
import secrets
import warnings
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from ledgerhook.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS_SECONDS = [1.0, 5.0, 15.0, 60.0, 300.0]


def _generate_dev_secret() -> str:
    """Generate a random webhook signing secret for development use.

    Receivers cannot verify signatures across restarts with this secret,
    which is acceptable outside production.
    """
    return secrets.token_hex(32)


class Settings(BaseSettings):
    """Ledgerhook configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the LEDGERHOOK_ prefix. For example:
        LEDGERHOOK_REDIS_URL=redis://localhost:6379/0
        LEDGERHOOK_WEBHOOK_SECRET=...

    Security Notes:
        - In production (LEDGERHOOK_ENV=production) the webhook secret is required
        - In development/test a random secret is generated at startup
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Store
    redis_url: str | None = Field(
        default=None,
        description=(
            "Redis URL (e.g., redis://localhost:6379/0). If not set, an in-memory "
            "store is used (single process only, nothing survives a restart)."
        ),
    )
    redis_key_prefix: str = Field(
        default="",
        description="Optional namespace prepended to every key",
    )

    # Webhook delivery
    webhook_secret: str | None = Field(
        default=None,
        description="Shared secret for HMAC-SHA256 webhook signatures",
    )
    webhook_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="HTTP timeout for a single delivery attempt",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Delay between dispatcher polling cycles",
    )
    max_attempts: int = Field(
        default=5,
        ge=0,
        le=50,
        description="Retries allowed after the first failed delivery",
    )
    retry_delays_seconds: list[float] = Field(
        default_factory=lambda: list(DEFAULT_RETRY_DELAYS_SECONDS),
        description="Backoff table indexed by attempt number; last entry repeats",
    )
    dead_letter_page_max: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Largest page returned by dead letter inspection",
    )

    # Retention
    tx_pending_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="TTL of non-terminal transaction records",
    )
    tx_terminal_ttl_seconds: int = Field(
        default=86400,
        ge=1,
        description="TTL of COMMITTED/FAILED transaction records",
    )
    callback_ttl_seconds: int = Field(
        default=86400,
        ge=1,
        description="TTL of callback registrations",
    )
    test_callback_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="TTL of callback registrations made by manual test triggers",
    )
    success_ttl_seconds: int = Field(
        default=86400,
        ge=1,
        description="Retention of delivery success records",
    )

    # Idempotency
    submit_lock_enabled: bool = Field(
        default=False,
        description=(
            "Serialize submissions per correlation id with a store lock. When off, "
            "two concurrent duplicate submissions may both reach the backend."
        ),
    )
    submit_lock_ttl_ms: int = Field(
        default=5000,
        ge=100,
        description="Expiry of the per-correlation-id submission lock",
    )

    # Simulated backend
    simulated_commit_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Delay before the simulated backend reports a commit",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # Runtime-generated dev secret (not from env)
    _runtime_dev_secret: str | None = None

    model_config = {
        "env_prefix": "LEDGERHOOK_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @field_validator("retry_delays_seconds")
    @classmethod
    def validate_retry_delays(cls, value: list[float]) -> list[float]:
        """The backoff table must be non-empty and strictly positive."""
        if not value:
            raise ValueError("retry_delays_seconds must contain at least one delay")
        if any(delay <= 0 for delay in value):
            raise ValueError(f"retry_delays_seconds must be positive, got {value}")
        return value

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Require an explicit webhook secret in production.

        In dev/test a random secret is generated if none is provided.
        """
        if self.env == "production":
            if not self.webhook_secret:
                raise ValueError(
                    "LEDGERHOOK_WEBHOOK_SECRET must be set in production. "
                    'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
                )
            if self.redis_url is None:
                warnings.warn(
                    "No LEDGERHOOK_REDIS_URL in production: queued webhooks will not "
                    "survive a restart.",
                    UserWarning,
                    stacklevel=2,
                )
                logger.warning("Using in-memory store in production")
        elif not self.webhook_secret:
            object.__setattr__(self, "_runtime_dev_secret", _generate_dev_secret())
            logger.debug("Generated random webhook secret for development")

        if self.tx_terminal_ttl_seconds < self.tx_pending_ttl_seconds:
            raise ValueError(
                f"tx_terminal_ttl_seconds ({self.tx_terminal_ttl_seconds}) must not be "
                f"shorter than tx_pending_ttl_seconds ({self.tx_pending_ttl_seconds})."
            )
        return self

    @property
    def effective_webhook_secret(self) -> str:
        """Get the secret used to sign webhook payloads.

        Raises:
            ConfigurationError: If no secret is available, e.g. the
                secret was cleared after validation.
        """
        if self.webhook_secret:
            return self.webhook_secret
        if self._runtime_dev_secret is not None:
            return self._runtime_dev_secret
        raise ConfigurationError("No webhook secret available; set LEDGERHOOK_WEBHOOK_SECRET")
