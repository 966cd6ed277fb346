"""Structured logging configuration for Ledgerhook.

Library modules log through stdlib ``logging.getLogger(__name__)``; the
worker uses structlog. ``configure_logging`` installs one root handler
whose structlog formatter renders both, so records from the dispatcher
and the ledger carry the context bound with ``bind_context`` (job id,
correlation id) in JSON or console form.

Nothing is configured at import time: embedding applications keep their
own logging setup unless they call ``configure_logging``.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

# Handler installed by the last configure_logging call
_handler: logging.Handler | None = None


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for Ledgerhook.

    Calling it again replaces the previous handler and level.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL). Unknown
            names fall back to INFO.
        format: Output format - "json" for production, "text" for development.

    Example:
        ```python
        from ledgerhook.logging import configure_logging, get_logger

        configure_logging(level="DEBUG", format="text")
        logger = get_logger(__name__)
        logger.info("Dispatcher started", poll_interval=5.0)
        ```
    """
    global _handler

    log_level = _resolve_level(level)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderers: list[Processor]
    if format.lower() == "json":
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Stdlib records get the same chain, plus their ``extra`` fields
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared_processors, structlog.stdlib.ExtraAdder()],
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(formatter)
    root.addHandler(_handler)
    root.setLevel(log_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    The logger is lazy: it picks up whatever configuration is active when
    it first logs.

    Args:
        name: Logger name, usually ``__name__``.
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: object) -> None:
    """Bind context variables to all subsequent log records in this task.

    The dispatcher binds ``job_id`` and ``correlation_id`` around each
    delivery; the ledger binds ``correlation_id`` around a submission.

    Example:
        ```python
        bind_context(correlation_id="abc-1")
        logger.info("Submitting")  # Includes correlation_id
        ```
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from the logging context.

    Args:
        *keys: Keys to remove from context.
    """
    structlog.contextvars.unbind_contextvars(*keys)
