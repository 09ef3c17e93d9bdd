"""ModerationQueueItem ORM model and the moderation enums.

A queue item is the durable record of one piece of content awaiting (or
having received) moderation. Rows are never deleted; once processed they
double as the audit trail for the verdict stored in ``result``.

Ordering for the batch processor is priority descending, then timestamp
ascending. ``priority`` is stored as a string, so ordering goes through
``priority_rank()`` rather than the raw column.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, JSON, String, Text, Uuid, case
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class QueueStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    approved = "approved"
    rejected = "rejected"


class Priority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


class ContentType(str, enum.Enum):
    post = "post"
    comment = "comment"
    chat = "chat"
    marketplace = "marketplace"
    profile = "profile"


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ModerationAction(str, enum.Enum):
    allow = "allow"
    warn = "warn"
    block = "block"
    ban = "ban"
    escalate = "escalate"


PRIORITY_RANK = {Priority.low.value: 0, Priority.medium.value: 1, Priority.high.value: 2}
SEVERITY_RANK = {
    Severity.LOW.value: 0,
    Severity.MEDIUM.value: 1,
    Severity.HIGH.value: 2,
    Severity.CRITICAL.value: 3,
}


class ModerationQueueItem(Base):
    __tablename__ = "moderation_queue"

    __table_args__ = (
        Index("ix_moderation_queue_status_timestamp", "status", "timestamp"),
        Index("ix_moderation_queue_content", "content_type", "content_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    content_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Snapshot taken at enqueue time; nothing updates it afterwards
    content: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=QueueStatus.pending.value, nullable=False
    )
    priority: Mapped[str] = mapped_column(
        String(10), default=Priority.medium.value, nullable=False
    )

    # ModerationResult.model_dump(mode="json") once processed
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Set by the cycle that won the claim; complete/release only land with a matching token
    claim_token: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


def priority_rank():
    """SQL expression mapping the priority string to a sortable integer."""
    return case(PRIORITY_RANK, value=ModerationQueueItem.priority, else_=0)
