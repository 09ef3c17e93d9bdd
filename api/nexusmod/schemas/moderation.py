"""Pydantic schemas for the moderation pipeline.

ModerationResult is both the internal verdict type and its JSON shape in
``moderation_queue.result``. Analyzer output never becomes a ModerationResult
directly; it goes through services.analysis.normalize_result() first.
"""

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SeverityLiteral = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
ActionLiteral = Literal["allow", "warn", "block", "ban", "escalate"]
ContentTypeLiteral = Literal["post", "comment", "chat", "marketplace", "profile"]
PriorityLiteral = Literal["low", "medium", "high"]


class ModerationResult(BaseModel):
    allowed: bool
    severity: SeverityLiteral = "LOW"
    categories: list[str] = Field(default_factory=list)
    action: ActionLiteral = "allow"
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)


class PrecheckRequest(BaseModel):
    content: str


class PrecheckResponse(BaseModel):
    safe: bool
    reason: Optional[str] = None


class EnqueueRequest(BaseModel):
    """Request body for placing content on the moderation queue."""

    user_id: str = Field(min_length=1, max_length=128)
    user_name: str = Field(default="", max_length=255)
    content: str
    content_type: ContentTypeLiteral
    content_id: str = Field(min_length=1, max_length=128)
    priority: PriorityLiteral = "medium"


class SubmissionRequest(BaseModel):
    """Request body for pre-check + enqueue; priority is derived from the pre-check."""

    user_id: str = Field(min_length=1, max_length=128)
    user_name: str = Field(default="", max_length=255)
    content: str
    content_type: ContentTypeLiteral
    content_id: str = Field(min_length=1, max_length=128)


class EnqueueResponse(BaseModel):
    queue_id: uuid.UUID


class SubmissionResponse(BaseModel):
    queue_id: uuid.UUID
    precheck_passed: bool
    reason: Optional[str] = None


class QueueItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: str
    user_name: str
    content_type: str
    content_id: str
    content: str
    timestamp: datetime
    status: str
    priority: str
    result: Optional[ModerationResult] = None
    processed_at: Optional[datetime] = None
    retry_count: int


class ModerationLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    queue_item_id: Optional[uuid.UUID] = None
    user_id: str
    user_name: str
    content_type: str
    content_id: str
    content: str
    action: str
    reason: str
    severity: str
    timestamp: datetime
    status: str


class BatchReportResponse(BaseModel):
    claimed: int
    approved: int
    rejected: int
    requeued: int
    dead_lettered: int
