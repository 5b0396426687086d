"""
Job poller background worker.

Continuously claims and processes work queue batches. Any number of pollers
may run at once; claims are arbitrated by the shared store.
"""
import argparse
import asyncio
import signal
from typing import Any, Optional

import structlog

from processing_core.api.dependencies import build_services
from processing_core.config import Settings, get_settings
from processing_core.database.connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
)
from processing_core.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_job_poller(
    settings: Optional[Settings] = None, batch_limit: Optional[int] = None
) -> None:
    """
    Start the job poller worker.

    Runs until SIGINT/SIGTERM. Sleeps for the poll interval whenever a batch
    comes back empty.

    Args:
        settings: Settings override; defaults to get_settings()
        batch_limit: Batch size override
    """
    settings = settings or get_settings()
    setup_logging(settings)
    limit = max(1, min(batch_limit or settings.queue_batch_limit, settings.queue_max_batch_limit))

    structlog.contextvars.bind_contextvars(worker="job_poller")
    logger.info("job_poller_starting", batch_limit=limit)

    engine = create_engine_from_settings(settings)
    services = build_services(settings, create_session_factory(engine))

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("job_poller_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                stats = await services.queue.process_batch(limit)
            except Exception as e:
                logger.error("job_poller_batch_error", error=str(e))
                await asyncio.sleep(settings.queue_poll_interval_seconds)
                continue

            if stats.claimed:
                logger.info("job_poller_batch_processed", **stats.to_dict())
            else:
                await asyncio.sleep(settings.queue_poll_interval_seconds)

    finally:
        await services.close()
        await close_db(engine)
        logger.info("job_poller_stopped")


def main() -> None:
    """Console entrypoint."""
    parser = argparse.ArgumentParser(description="Work queue poller")
    parser.add_argument("--limit", type=int, default=None, help="Jobs to claim per batch")
    args = parser.parse_args()

    asyncio.run(start_job_poller(batch_limit=args.limit))


if __name__ == "__main__":
    main()
