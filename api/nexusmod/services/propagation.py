"""Consequence propagation: fan a verdict out from the queue to the rest of the platform.

apply_verdict() writes the queue item first; that row is the durable source
of truth. Everything after it is best-effort:

- allowed + action "allow": nothing else is written
- any other verdict: moderation status on the source content record, plus an
  audit log entry
- disallowed + action block/ban at or above the suspension severity: the
  author's account is suspended

Each downstream write is an idempotent overwrite (or an insert-or-ignore for
the audit log), so a failed fan-out can simply be replayed. Failures are
logged and counted, never rolled back into the queue write.
"""

from datetime import datetime
from typing import Optional, Protocol

import structlog
from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexusmod.config import settings
from nexusmod.metrics import propagation_failures
from nexusmod.models.content import (
    ChatMessage,
    CommunityPost,
    MarketplaceProduct,
    PostComment,
    User,
)
from nexusmod.models.moderation_log import ModerationLogEntry
from nexusmod.models.queue import SEVERITY_RANK, ContentType, ModerationQueueItem
from nexusmod.schemas.moderation import ModerationResult

log = structlog.get_logger(__name__)

CONTENT_MODELS = {
    ContentType.chat.value: ChatMessage,
    ContentType.post.value: CommunityPost,
    ContentType.comment.value: PostComment,
    ContentType.marketplace.value: MarketplaceProduct,
    ContentType.profile.value: User,
}

SUSPENDING_ACTIONS = {"block", "ban"}


class QueueWriter(Protocol):
    async def complete(self, outcomes, processed_at: datetime, token=None) -> set:
        ...

    async def get(self, item_id) -> Optional[ModerationQueueItem]:
        ...


class SqlContentStatusWriter:
    """Writes moderation_status / moderation_reason onto the content record addressed by (content_type, content_id)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def set_moderation_status(
        self, content_type: str, content_id: str, status: str, reason: str
    ) -> bool:
        """Returns False when no record matched (already deleted, or never mirrored)."""
        model = CONTENT_MODELS.get(content_type)
        if model is None:
            raise ValueError(f"Unknown content type: {content_type}")
        async with self._session_factory() as session:
            result = await session.execute(
                update(model)
                .where(model.id == content_id)
                .values(moderation_status=status, moderation_reason=reason)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0


class SqlAccountActions:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def suspend_user(self, user_id: str, reason: str, timestamp: datetime) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(suspended=True, suspension_reason=reason, suspended_at=timestamp)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0


class SqlAuditLog:
    """Append-only sink for ModerationLogEntry rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, values: dict) -> bool:
        """Insert one entry; a replay for the same (queue_item_id, action) is ignored.

        Returns:
            True if a row was written.
        """
        async with self._session_factory() as session:
            dialect = session.get_bind().dialect.name
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(ModerationLogEntry).values(**values).on_conflict_do_nothing()
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0


def should_suspend(result: ModerationResult, min_severity: str) -> bool:
    return (
        not result.allowed
        and result.action in SUSPENDING_ACTIONS
        and SEVERITY_RANK[result.severity] >= SEVERITY_RANK[min_severity]
    )


class ConsequencePropagator:
    def __init__(
        self,
        queue: QueueWriter,
        content_writer: SqlContentStatusWriter,
        accounts: SqlAccountActions,
        audit_log: SqlAuditLog,
        suspend_min_severity: Optional[str] = None,
    ) -> None:
        self._queue = queue
        self._content = content_writer
        self._accounts = accounts
        self._audit_log = audit_log
        if suspend_min_severity is None:
            suspend_min_severity = settings.moderation_suspend_min_severity
        self._suspend_min_severity = suspend_min_severity

    async def apply_verdict(
        self,
        item: ModerationQueueItem,
        result: ModerationResult,
        processed_at: datetime,
    ) -> None:
        """Record the verdict on the queue item, then fan it out.

        A replay of the verdict already stored on the item fans out again, so
        a failed fan-out can be repaired. A different verdict for an item that
        is no longer in processing is dropped.
        """
        landed = await self._queue.complete([(item.id, result)], processed_at)
        if item.id not in landed:
            current = await self._queue.get(item.id)
            if current is None or current.result != result.model_dump(mode="json"):
                log.warning("moderation_verdict_not_applied", queue_id=str(item.id))
                return
        await self.propagate(item, result, processed_at)

    async def propagate(
        self,
        item: ModerationQueueItem,
        result: ModerationResult,
        processed_at: datetime,
    ) -> None:
        """Fan a committed verdict out to content, audit log and account.

        ``processed_at`` doubles as the log and suspension timestamp, so a
        replay writes identical values.
        """
        if result.allowed and result.action == "allow":
            return

        status = "approved" if result.allowed else "hidden"
        try:
            found = await self._content.set_moderation_status(
                item.content_type, item.content_id, status, result.reason
            )
            if not found:
                log.warning(
                    "moderation_content_missing",
                    queue_id=str(item.id),
                    content_type=item.content_type,
                    content_id=item.content_id,
                )
        except Exception:
            propagation_failures.labels(target="content").inc()
            log.error(
                "propagation_failed",
                target="content",
                queue_id=str(item.id),
                content_id=item.content_id,
                exc_info=True,
            )

        try:
            await self._audit_log.append(
                {
                    "queue_item_id": item.id,
                    "user_id": item.user_id,
                    "user_name": item.user_name,
                    "content_type": item.content_type,
                    "content_id": item.content_id,
                    "content": item.content,
                    "action": result.action,
                    "reason": result.reason,
                    "severity": result.severity,
                    "timestamp": processed_at,
                    "status": "flagged",
                }
            )
        except Exception:
            propagation_failures.labels(target="audit_log").inc()
            log.error("propagation_failed", target="audit_log", queue_id=str(item.id), exc_info=True)

        if should_suspend(result, self._suspend_min_severity):
            try:
                await self._accounts.suspend_user(item.user_id, result.reason, processed_at)
                log.info("user_suspended", user_id=item.user_id, queue_id=str(item.id))
            except Exception:
                propagation_failures.labels(target="account").inc()
                log.error(
                    "propagation_failed",
                    target="account",
                    queue_id=str(item.id),
                    user_id=item.user_id,
                    exc_info=True,
                )
