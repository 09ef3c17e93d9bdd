"""Append-only audit record written for every verdict that is not a plain allow.

``queue_item_id`` ties the entry back to the queue item that produced it. The
unique constraint on (queue_item_id, action) is what makes replaying a verdict
a no-op; entries written outside the queue leave it NULL and are never
deduplicated.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

MODERATION_LOG_UNIQUE_CONSTRAINT = "uq_moderation_logs_queue_item_action"


class ModerationLogEntry(Base):
    __tablename__ = "moderation_logs"

    __table_args__ = (
        UniqueConstraint(
            "queue_item_id",
            "action",
            name=MODERATION_LOG_UNIQUE_CONSTRAINT,
        ),
        Index("ix_moderation_logs_user_timestamp", "user_id", "timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    queue_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    content_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content_id: Mapped[str] = mapped_column(String(128), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="flagged")
