"""Reputation worker: periodic sweep recomputing every user's trust score."""

import asyncio

import structlog

from nexusmod.config import settings
from nexusmod.database import async_session_factory
from nexusmod.logging_config import configure_logging
from nexusmod.services.reputation import ReputationScorer

log = structlog.get_logger()


async def reputation_worker_loop():
    """Background loop that runs the sweep on a configurable interval."""
    configure_logging("reputation_worker")
    interval = settings.reputation_interval_hours * 3600
    log.info("reputation_worker_started", interval_hours=settings.reputation_interval_hours)

    while True:
        try:
            await ReputationScorer(async_session_factory).recompute_all()
        except Exception:
            log.error("reputation_worker_error", exc_info=True)
        await asyncio.sleep(interval)


if __name__ == "__main__":
    asyncio.run(reputation_worker_loop())
