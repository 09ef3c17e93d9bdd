"""Durable moderation queue backed by the ``moderation_queue`` table.

The processor never updates a row it has not claimed. claim() is the
compare-and-swap at the heart of the concurrency model:

    UPDATE moderation_queue SET status='processing'
    WHERE id IN (...) AND status='pending'
    RETURNING id

Only the ids that come back belong to the caller. Two overlapping cycles
that selected the same candidates split them between themselves; neither
sees the other's rows. select_pending() takes no row locks; the claim is the
only serialization point.

A claim is stamped with the caller's claim token. complete() and a cycle's
release() only touch rows still in processing under that token, so a cycle
that stalls past stale-claim recovery cannot overwrite an item that was
requeued or claimed again in the meantime.

Design notes:
- retry_count is bumped with a column expression, never read-modify-write.
- complete() only lands on items still in processing, so replaying it is a
  no-op on the row.
- Items are never deleted.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexusmod.clock import Clock, utcnow
from nexusmod.models.queue import (
    ModerationQueueItem,
    Priority,
    QueueStatus,
    priority_rank,
)
from nexusmod.schemas.moderation import ModerationResult

log = structlog.get_logger(__name__)


@dataclass
class ReleaseResult:
    requeued: list[uuid.UUID] = field(default_factory=list)
    dead_lettered: list[ModerationQueueItem] = field(default_factory=list)


def dead_letter_result(attempts: int) -> ModerationResult:
    """Synthetic verdict for an item whose analysis kept failing."""
    return ModerationResult(
        allowed=False,
        severity="MEDIUM",
        categories=[],
        action="escalate",
        reason=f"Manual review required (analysis failed {attempts} times)",
        confidence=0.0,
    )


class SqlQueueStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def enqueue(
        self,
        user_id: str,
        user_name: str,
        content: str,
        content_type: str,
        content_id: str,
        priority: str = Priority.medium.value,
    ) -> uuid.UUID:
        """Insert a pending queue item and return its id."""
        item = ModerationQueueItem(
            id=uuid.uuid4(),
            user_id=user_id,
            user_name=user_name,
            content=content,
            content_type=content_type,
            content_id=content_id,
            priority=priority,
            timestamp=self._clock(),
            status=QueueStatus.pending.value,
            retry_count=0,
        )
        async with self._session_factory() as session:
            session.add(item)
            await session.commit()
        log.info(
            "moderation_item_enqueued",
            queue_id=str(item.id),
            content_type=content_type,
            content_id=content_id,
            priority=priority,
        )
        return item.id

    async def get(self, item_id: uuid.UUID) -> Optional[ModerationQueueItem]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ModerationQueueItem).where(ModerationQueueItem.id == item_id)
            )
            return result.scalar_one_or_none()

    async def select_pending(self, limit: int) -> list[ModerationQueueItem]:
        """Return up to ``limit`` pending items, highest priority first, oldest first within a priority."""
        stmt = (
            select(ModerationQueueItem)
            .where(ModerationQueueItem.status == QueueStatus.pending.value)
            .order_by(priority_rank().desc(), ModerationQueueItem.timestamp.asc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def claim(
        self,
        item_ids: Iterable[uuid.UUID],
        token: Optional[uuid.UUID] = None,
    ) -> set[uuid.UUID]:
        """Atomically move pending items to processing. Returns the ids this caller won.

        ``token`` identifies the claiming cycle; pass the same token to
        complete() and release() so they only act on this claim.
        """
        ids = list(item_ids)
        if not ids:
            return set()
        stmt = (
            update(ModerationQueueItem)
            .where(ModerationQueueItem.id.in_(ids))
            .where(ModerationQueueItem.status == QueueStatus.pending.value)
            .values(
                status=QueueStatus.processing.value,
                claimed_at=self._clock(),
                claim_token=token,
            )
            .returning(ModerationQueueItem.id)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            claimed = set(result.scalars().all())
            await session.commit()
        return claimed

    @staticmethod
    def _held(stmt, token: Optional[uuid.UUID]):
        """Restrict an UPDATE to rows still in processing (under ``token`` when given)."""
        stmt = stmt.where(ModerationQueueItem.status == QueueStatus.processing.value)
        if token is not None:
            stmt = stmt.where(ModerationQueueItem.claim_token == token)
        return stmt

    async def complete(
        self,
        outcomes: Sequence[tuple[uuid.UUID, ModerationResult]],
        processed_at: datetime,
        token: Optional[uuid.UUID] = None,
    ) -> set[uuid.UUID]:
        """Write final status and verdict for every outcome in one transaction.

        Only items still held in processing (under ``token`` when given) are
        written.

        Returns:
            The ids whose verdict landed.
        """
        if not outcomes:
            return set()
        landed: set[uuid.UUID] = set()
        async with self._session_factory() as session:
            for item_id, verdict in outcomes:
                status = QueueStatus.approved if verdict.allowed else QueueStatus.rejected
                stmt = self._held(
                    update(ModerationQueueItem).where(ModerationQueueItem.id == item_id),
                    token,
                )
                result = await session.execute(
                    stmt.values(
                        status=status.value,
                        result=verdict.model_dump(mode="json"),
                        processed_at=processed_at,
                        claimed_at=None,
                        claim_token=None,
                    )
                    .returning(ModerationQueueItem.id)
                    .execution_options(synchronize_session=False)
                )
                landed.update(result.scalars().all())
            await session.commit()

        lost = [str(item_id) for item_id, _ in outcomes if item_id not in landed]
        if lost:
            log.warning("moderation_verdicts_discarded", queue_ids=lost)
        return landed

    async def release(
        self,
        item_ids: Iterable[uuid.UUID],
        max_retries: int,
        token: Optional[uuid.UUID] = None,
    ) -> ReleaseResult:
        """Return claimed items to pending with retry_count + 1.

        Items whose retry_count reaches ``max_retries`` are dead-lettered
        instead: forced to rejected with a manual-review verdict. With a
        ``token`` only that claim's items are touched; stale-claim recovery
        passes none.

        Returns:
            The requeued ids, and the dead-lettered items so the caller can
            propagate them.
        """
        ids = list(item_ids)
        if not ids:
            return ReleaseResult()
        now = self._clock()
        async with self._session_factory() as session:
            released = (
                await session.execute(
                    self._held(
                        update(ModerationQueueItem).where(ModerationQueueItem.id.in_(ids)),
                        token,
                    )
                    .values(
                        status=QueueStatus.pending.value,
                        retry_count=ModerationQueueItem.retry_count + 1,
                        claimed_at=None,
                        claim_token=None,
                    )
                    .returning(ModerationQueueItem.id)
                    .execution_options(synchronize_session=False)
                )
            ).scalars().all()

            dead_ids = []
            if released:
                dead_ids = (
                    await session.execute(
                        update(ModerationQueueItem)
                        .where(ModerationQueueItem.id.in_(released))
                        .where(ModerationQueueItem.retry_count >= max_retries)
                        .values(
                            status=QueueStatus.rejected.value,
                            result=dead_letter_result(max_retries).model_dump(mode="json"),
                            processed_at=now,
                        )
                        .returning(ModerationQueueItem.id)
                        .execution_options(synchronize_session=False)
                    )
                ).scalars().all()
            dead = []
            if dead_ids:
                dead = list(
                    (
                        await session.execute(
                            select(ModerationQueueItem).where(ModerationQueueItem.id.in_(dead_ids))
                        )
                    ).scalars().all()
                )
            await session.commit()

        if dead:
            log.warning(
                "moderation_items_dead_lettered",
                queue_ids=[str(item.id) for item in dead],
                max_retries=max_retries,
            )
        dead_set = set(dead_ids)
        return ReleaseResult(
            requeued=[item_id for item_id in released if item_id not in dead_set],
            dead_lettered=dead,
        )

    async def stale_claims(self, older_than: timedelta) -> list[uuid.UUID]:
        """Ids of items stuck in processing since before now - older_than."""
        cutoff = self._clock() - older_than
        async with self._session_factory() as session:
            result = await session.execute(
                select(ModerationQueueItem.id)
                .where(ModerationQueueItem.status == QueueStatus.processing.value)
                .where(ModerationQueueItem.claimed_at < cutoff)
            )
            return list(result.scalars().all())
