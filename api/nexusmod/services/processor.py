"""Batch moderation processor.

One call to process_batch() is one cycle:

1. select up to batch_size pending items, priority desc then timestamp asc
2. claim them (pending -> processing, compare-and-swap); only won items go on
3. items the pre-check rejects get a local block verdict; the rest go to the
   analysis engine in a single batched call
4. write every verdict to the queue in one transaction; only rows still held
   under this cycle's claim token are written
5. fan each verdict that landed out (content status, audit log, suspension)

If the analyzer call fails, the items that needed it go back to pending with
retry_count + 1 (or are dead-lettered at the retry ceiling). They are never
left in processing. The same release runs when the caller cancels the
cycle (an HTTP trigger deadline, the worker's cycle timeout) before it
finishes. Credential failures are re-raised after that cleanup so the
scheduler can alert.

The processor holds no module-level state; the queue, engine, propagator and
clock are injected, and each cycle is independent of the last.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import structlog

from nexusmod.clock import Clock, utcnow
from nexusmod.config import settings
from nexusmod.metrics import queue_items_processed
from nexusmod.models.queue import ModerationQueueItem
from nexusmod.schemas.moderation import ModerationResult
from nexusmod.services.analysis import AnalysisEngine, AnalyzerAuthError
from nexusmod.services.precheck import rule_verdict
from nexusmod.services.propagation import ConsequencePropagator
from nexusmod.services.queue_store import SqlQueueStore

log = structlog.get_logger(__name__)


@dataclass
class BatchReport:
    claimed: int = 0
    approved: int = 0
    rejected: int = 0
    requeued: int = 0
    dead_lettered: int = 0


class BatchModerationProcessor:
    def __init__(
        self,
        queue: SqlQueueStore,
        engine: AnalysisEngine,
        propagator: ConsequencePropagator,
        clock: Clock = utcnow,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        analysis_timeout: Optional[float] = None,
        local_verdict: Callable[[str], Optional[ModerationResult]] = rule_verdict,
    ) -> None:
        self._queue = queue
        self._engine = engine
        self._propagator = propagator
        self._clock = clock
        if batch_size is None:
            batch_size = settings.moderation_batch_size
        if max_retries is None:
            max_retries = settings.moderation_max_retries
        if analysis_timeout is None:
            analysis_timeout = settings.moderation_analysis_timeout_seconds
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._analysis_timeout = analysis_timeout
        self._local_verdict = local_verdict

    async def process_batch(self) -> BatchReport:
        report = BatchReport()

        candidates = await self._queue.select_pending(self._batch_size)
        if not candidates:
            log.debug("moderation_queue_empty")
            return report

        token = uuid.uuid4()
        won = await self._queue.claim([item.id for item in candidates], token=token)
        items = [item for item in candidates if item.id in won]
        report.claimed = len(items)
        if not items:
            log.info("moderation_batch_lost_claim", candidates=len(candidates))
            return report
        log.info("moderation_batch_claimed", count=len(items), claim_token=str(token))

        try:
            auth_error = await self._decide(items, token, report)
        except asyncio.CancelledError:
            # Caller's deadline hit mid-cycle; release() skips anything already completed
            log.warning("moderation_batch_cancelled", count=len(items))
            await self._requeue(items, report, token)
            raise

        log.info(
            "moderation_batch_processed",
            claimed=report.claimed,
            approved=report.approved,
            rejected=report.rejected,
            requeued=report.requeued,
            dead_lettered=report.dead_lettered,
        )
        if auth_error is not None:
            raise auth_error
        return report

    async def _decide(
        self,
        items: list[ModerationQueueItem],
        token: uuid.UUID,
        report: BatchReport,
    ) -> Optional[AnalyzerAuthError]:
        verdicts: dict[uuid.UUID, ModerationResult] = {}
        to_analyze: list[ModerationQueueItem] = []
        for item in items:
            local = self._local_verdict(item.content)
            if local is not None:
                verdicts[item.id] = local
            else:
                to_analyze.append(item)

        auth_error: Optional[AnalyzerAuthError] = None
        failed: list[ModerationQueueItem] = []
        if to_analyze:
            try:
                analyzed = await asyncio.wait_for(
                    self._engine.analyze([item.content for item in to_analyze]),
                    timeout=self._analysis_timeout,
                )
            except AnalyzerAuthError as exc:
                log.error("analysis_auth_failed", count=len(to_analyze))
                auth_error = exc
                failed = to_analyze
            except Exception:
                log.error("analysis_failed", count=len(to_analyze), exc_info=True)
                failed = to_analyze
            else:
                for item, verdict in zip(to_analyze, analyzed):
                    verdicts[item.id] = verdict

        processed_at = self._clock()
        decided = [item for item in items if item.id in verdicts]
        landed = await self._queue.complete(
            [(item.id, verdicts[item.id]) for item in decided], processed_at, token=token
        )

        for item in decided:
            if item.id not in landed:
                continue
            verdict = verdicts[item.id]
            if verdict.allowed:
                report.approved += 1
                queue_items_processed.labels(outcome="approved").inc()
            else:
                report.rejected += 1
                queue_items_processed.labels(outcome="rejected").inc()
            await self._propagator.propagate(item, verdict, processed_at)

        if failed:
            await self._requeue(failed, report, token)
        return auth_error

    async def recover_stale_claims(self, older_than: timedelta) -> BatchReport:
        """Requeue items a crashed or timed-out cycle left in processing."""
        report = BatchReport()
        stale = await self._queue.stale_claims(older_than)
        if not stale:
            return report
        log.warning("moderation_stale_claims_found", count=len(stale))
        items = [item for item in [await self._queue.get(item_id) for item_id in stale] if item]
        await self._requeue(items, report)
        return report

    async def _requeue(
        self,
        items: list[ModerationQueueItem],
        report: BatchReport,
        token: Optional[uuid.UUID] = None,
    ) -> None:
        released = await self._queue.release(
            [item.id for item in items], self._max_retries, token=token
        )
        report.dead_lettered += len(released.dead_lettered)
        report.requeued += len(released.requeued)
        queue_items_processed.labels(outcome="requeued").inc(len(released.requeued))
        for item in released.dead_lettered:
            queue_items_processed.labels(outcome="dead_lettered").inc()
            await self._propagator.propagate(item, ModerationResult.model_validate(item.result), item.processed_at)
