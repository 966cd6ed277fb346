"""Standalone webhook worker.

Runs the dispatcher (and the simulated ledger backend when no real one is
configured) until SIGINT or SIGTERM, then drains the in-flight delivery
and shuts down.
"""

from __future__ import annotations

import asyncio
import signal

from ledgerhook.config import Settings
from ledgerhook.logging import configure_logging, get_logger
from ledgerhook.service import LedgerhookService

logger = get_logger(__name__)


async def run_worker(
    settings: Settings | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Run the service until stop_event is set.

    Args:
        settings: Optional settings. Uses environment if None.
        stop_event: Event that ends the worker. Set by SIGINT/SIGTERM
            when not provided.
    """
    if settings is None:
        settings = Settings()

    configure_logging(level=settings.log_level, format=settings.log_format)
    logger.info(
        "Starting Ledgerhook worker",
        env=settings.env,
        store="redis" if settings.redis_url else "memory",
        poll_interval=settings.poll_interval_seconds,
    )

    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    async with LedgerhookService.create(settings):
        await stop_event.wait()
        logger.info("Shutting down Ledgerhook worker")

    logger.info("Ledgerhook worker stopped")


def main() -> None:
    """Run the worker with settings from the environment."""
    asyncio.run(run_worker())


__all__ = ["main", "run_worker"]
