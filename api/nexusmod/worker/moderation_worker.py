"""Moderation worker: drains the moderation queue on a fixed interval.

Every tick is an independent cycle with a freshly wired processor. Overlap
with another worker instance (or the manual HTTP trigger) is safe because the
claim step is a compare-and-swap on status; a cycle only ever touches the
items it won.

Each tick first returns items that have sat in processing for longer than
moderation_stale_claim_seconds to pending, so a crashed or timed-out cycle
never strands work.
"""
import asyncio
from datetime import timedelta

import structlog

from nexusmod.config import settings
from nexusmod.database import async_session_factory
from nexusmod.dependencies import build_processor
from nexusmod.logging_config import configure_logging
from nexusmod.services.analysis import AnalyzerAuthError

log = structlog.get_logger(__name__)


async def run_cycle() -> None:
    processor = build_processor(async_session_factory)
    recovered = await processor.recover_stale_claims(
        timedelta(seconds=settings.moderation_stale_claim_seconds)
    )
    if recovered.requeued or recovered.dead_lettered:
        log.info(
            "stale_claims_recovered",
            requeued=recovered.requeued,
            dead_lettered=recovered.dead_lettered,
        )
    await asyncio.wait_for(
        processor.process_batch(),
        timeout=settings.moderation_cycle_timeout_seconds,
    )


async def run_worker() -> None:
    """Main polling loop: one processing cycle every moderation_interval_seconds."""
    configure_logging("moderation_worker")
    log.info(
        "moderation_worker_started",
        interval_seconds=settings.moderation_interval_seconds,
        batch_size=settings.moderation_batch_size,
    )

    while True:
        try:
            await run_cycle()
        except AnalyzerAuthError:
            log.critical("moderation_worker_analyzer_auth_failed", exc_info=True)
        except asyncio.TimeoutError:
            log.error("moderation_cycle_timeout", timeout=settings.moderation_cycle_timeout_seconds)
        except Exception as exc:
            log.error("worker_loop_error", error=str(exc), exc_info=True)

        await asyncio.sleep(settings.moderation_interval_seconds)


if __name__ == "__main__":
    asyncio.run(run_worker())
