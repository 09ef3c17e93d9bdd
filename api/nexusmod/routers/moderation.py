"""Moderation endpoints: submission, queue inspection, manual batch trigger, audit log.

The scheduled worker is the normal driver of the queue; POST
/moderation/queue/process runs the same cycle on demand with a shorter
time budget.
"""
import asyncio
import uuid
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, HTTPException, Query
from sqlalchemy import func, select

from nexusmod.config import settings
from nexusmod.dependencies import CurrentAdmin, DbSession, Processor, QueueStore
from nexusmod.middleware.rate_limiter import ReadRateLimit, WriteRateLimit
from nexusmod.models.moderation_log import ModerationLogEntry
from nexusmod.models.queue import ModerationQueueItem, priority_rank
from nexusmod.schemas.common import PaginatedResponse
from nexusmod.schemas.moderation import (
    BatchReportResponse,
    EnqueueRequest,
    EnqueueResponse,
    ModerationLogResponse,
    PrecheckRequest,
    PrecheckResponse,
    QueueItemResponse,
    SubmissionRequest,
    SubmissionResponse,
)
from nexusmod.services.analysis import AnalyzerAuthError
from nexusmod.services.precheck import precheck
from nexusmod.services.submission import submit_for_moderation

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/moderation", tags=["moderation"])


@router.post("/precheck", response_model=PrecheckResponse)
async def run_precheck(
    body: PrecheckRequest,
    admin: CurrentAdmin,
    _rate: ReadRateLimit,
) -> PrecheckResponse:
    """Run the synchronous pre-check without enqueueing anything."""
    result = precheck(body.content)
    return PrecheckResponse(safe=result.safe, reason=result.reason)


@router.post("/submissions", response_model=SubmissionResponse, status_code=202)
async def submit_content(
    body: SubmissionRequest,
    admin: CurrentAdmin,
    queue: QueueStore,
    _rate: WriteRateLimit,
) -> SubmissionResponse:
    """Pre-check and enqueue content after the caller has persisted it.

    Content failing the pre-check is queued at high priority, clean content at low.
    """
    receipt = await submit_for_moderation(
        queue,
        user_id=body.user_id,
        user_name=body.user_name,
        content=body.content,
        content_type=body.content_type,
        content_id=body.content_id,
    )
    return SubmissionResponse(
        queue_id=receipt.queue_id,
        precheck_passed=receipt.precheck_passed,
        reason=receipt.reason,
    )


@router.post("/queue", response_model=EnqueueResponse, status_code=201)
async def enqueue_content(
    body: EnqueueRequest,
    admin: CurrentAdmin,
    queue: QueueStore,
    _rate: WriteRateLimit,
) -> EnqueueResponse:
    """Place content on the queue at an explicit priority."""
    queue_id = await queue.enqueue(
        body.user_id,
        body.user_name,
        body.content,
        body.content_type,
        body.content_id,
        body.priority,
    )
    return EnqueueResponse(queue_id=queue_id)


@router.get("/queue", response_model=PaginatedResponse[QueueItemResponse])
async def list_queue(
    admin: CurrentAdmin,
    db: DbSession,
    _rate: ReadRateLimit,
    status: Optional[Literal["pending", "processing", "approved", "rejected"]] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> PaginatedResponse[QueueItemResponse]:
    """List queue items in processing order (priority desc, oldest first)."""
    stmt = select(ModerationQueueItem)
    count_stmt = select(func.count(ModerationQueueItem.id))
    if status is not None:
        stmt = stmt.where(ModerationQueueItem.status == status)
        count_stmt = count_stmt.where(ModerationQueueItem.status == status)

    total = (await db.execute(count_stmt)).scalar_one()
    result = await db.execute(
        stmt.order_by(priority_rank().desc(), ModerationQueueItem.timestamp.asc())
        .limit(limit)
        .offset(offset)
    )
    items = [QueueItemResponse.model_validate(item) for item in result.scalars().all()]
    return PaginatedResponse[QueueItemResponse](
        items=items, total=total, limit=limit, offset=offset
    )


@router.get("/queue/{queue_id}", response_model=QueueItemResponse)
async def get_queue_item(
    queue_id: uuid.UUID,
    admin: CurrentAdmin,
    db: DbSession,
    _rate: ReadRateLimit,
) -> QueueItemResponse:
    result = await db.execute(
        select(ModerationQueueItem).where(ModerationQueueItem.id == queue_id)
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return QueueItemResponse.model_validate(item)


@router.post("/queue/process", response_model=BatchReportResponse)
async def process_queue_now(
    admin: CurrentAdmin,
    processor: Processor,
    _rate: WriteRateLimit,
) -> BatchReportResponse:
    """Run one processing cycle immediately.

    Bounded by moderation_http_trigger_timeout_seconds. A cycle cut off by
    that deadline returns its claimed items to pending before the 504.
    """
    try:
        report = await asyncio.wait_for(
            processor.process_batch(),
            timeout=settings.moderation_http_trigger_timeout_seconds,
        )
    except asyncio.TimeoutError:
        log.error("manual_process_timeout")
        raise HTTPException(status_code=504, detail="Queue processing timed out")
    except AnalyzerAuthError:
        raise HTTPException(status_code=502, detail="Analyzer rejected credentials")
    return BatchReportResponse(
        claimed=report.claimed,
        approved=report.approved,
        rejected=report.rejected,
        requeued=report.requeued,
        dead_lettered=report.dead_lettered,
    )


@router.get("/logs", response_model=list[ModerationLogResponse])
async def list_moderation_logs(
    admin: CurrentAdmin,
    db: DbSession,
    _rate: ReadRateLimit,
    user_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[ModerationLogResponse]:
    """Audit log, newest first, optionally filtered to one user."""
    stmt = select(ModerationLogEntry)
    if user_id is not None:
        stmt = stmt.where(ModerationLogEntry.user_id == user_id)
    result = await db.execute(
        stmt.order_by(ModerationLogEntry.timestamp.desc()).limit(limit).offset(offset)
    )
    return [ModerationLogResponse.model_validate(row) for row in result.scalars().all()]
