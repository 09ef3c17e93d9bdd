"""Nexus Moderation Pydantic schemas package.

Re-exports all request and response schemas for convenient importing:

    from nexusmod.schemas import ModerationResult, EnqueueRequest, ...
"""

from nexusmod.schemas.common import PaginatedResponse
from nexusmod.schemas.moderation import (
    BatchReportResponse,
    EnqueueRequest,
    EnqueueResponse,
    ModerationLogResponse,
    ModerationResult,
    PrecheckRequest,
    PrecheckResponse,
    QueueItemResponse,
    SubmissionRequest,
    SubmissionResponse,
)
from nexusmod.schemas.reputation import (
    OverrideRequest,
    RecomputeAllResponse,
    RecomputeResponse,
    ReputationResponse,
    VisibilityRequest,
)

__all__ = [
    # Moderation
    "ModerationResult",
    "PrecheckRequest",
    "PrecheckResponse",
    "EnqueueRequest",
    "EnqueueResponse",
    "SubmissionRequest",
    "SubmissionResponse",
    "QueueItemResponse",
    "ModerationLogResponse",
    "BatchReportResponse",
    # Reputation
    "ReputationResponse",
    "RecomputeResponse",
    "RecomputeAllResponse",
    "OverrideRequest",
    "VisibilityRequest",
    # Common
    "PaginatedResponse",
]
