from .base import Base
from .queue import (
    ContentType,
    ModerationAction,
    ModerationQueueItem,
    Priority,
    QueueStatus,
    Severity,
)
from .moderation_log import ModerationLogEntry
from .reputation import UserReputation
from .content import ChatMessage, CommunityPost, MarketplaceProduct, PostComment, User

__all__ = [
    "Base",
    "ModerationQueueItem",
    "QueueStatus",
    "Priority",
    "ContentType",
    "Severity",
    "ModerationAction",
    "ModerationLogEntry",
    "UserReputation",
    "User",
    "CommunityPost",
    "PostComment",
    "ChatMessage",
    "MarketplaceProduct",
]
