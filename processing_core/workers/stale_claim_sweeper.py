"""
Stale claim sweeper background worker.

A process that dies while holding a claim leaves its ledger entry or job in
processing. The sweeper periodically returns claims older than the lease to
a retryable failed state.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from processing_core.config import Settings, get_settings
from processing_core.core.event_ledger import EventLedger
from processing_core.core.timeutils import seconds_ago
from processing_core.core.work_queue import WorkQueue
from processing_core.database.connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
)
from processing_core.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def sweep_once(
    session_factory: async_sessionmaker[AsyncSession], settings: Settings
) -> Dict[str, int]:
    """
    Run one sweep over both components.

    Args:
        session_factory: Session factory for the shared store
        settings: Application settings (lease length)

    Returns:
        Dict[str, int]: Reclaimed counts per component
    """
    older_than = seconds_ago(settings.stale_claim_timeout_seconds)
    ledger = EventLedger(session_factory, max_replays=settings.webhook_max_replays)
    queue = WorkQueue(session_factory, default_max_attempts=settings.queue_default_max_attempts)

    result = {
        "ledger_reclaimed": await ledger.sweep_stale(older_than),
        "jobs_reclaimed": await queue.sweep_stale(older_than),
    }
    await queue.status_counts()
    return result


async def start_stale_claim_sweeper(settings: Optional[Settings] = None) -> None:
    """
    Start the stale claim sweeper.

    Args:
        settings: Settings override; defaults to get_settings()
    """
    settings = settings or get_settings()
    setup_logging(settings)

    structlog.contextvars.bind_contextvars(worker="stale_claim_sweeper")
    logger.info(
        "stale_claim_sweeper_starting",
        lease_seconds=settings.stale_claim_timeout_seconds,
        interval_seconds=settings.sweeper_interval_seconds,
    )

    engine = create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("stale_claim_sweeper_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                result = await sweep_once(session_factory, settings)
                logger.info("stale_claim_sweep_completed", **result)
            except Exception as e:
                logger.error("stale_claim_sweep_error", error=str(e))
                # Continue running even if one sweep fails

            await asyncio.sleep(settings.sweeper_interval_seconds)

    finally:
        await close_db(engine)
        logger.info("stale_claim_sweeper_stopped")


def main() -> None:
    """Console entrypoint."""
    asyncio.run(start_stale_claim_sweeper())


if __name__ == "__main__":
    main()
