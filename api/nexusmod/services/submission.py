"""Submission entry point used by chat-send and post-create flows.

Runs the synchronous pre-check and enqueues the content. Rejected content is
still queued, at high priority, so the batch processor records the block
verdict and applies its consequences on the next cycle; clean content waits
at low priority for the analyzer.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from nexusmod.models.queue import Priority
from nexusmod.services.precheck import precheck
from nexusmod.services.queue_store import SqlQueueStore


@dataclass(frozen=True)
class SubmissionReceipt:
    queue_id: uuid.UUID
    precheck_passed: bool
    reason: Optional[str] = None


async def submit_for_moderation(
    queue: SqlQueueStore,
    user_id: str,
    user_name: str,
    content: str,
    content_type: str,
    content_id: str,
) -> SubmissionReceipt:
    check = precheck(content)
    priority = Priority.low if check.safe else Priority.high
    queue_id = await queue.enqueue(
        user_id, user_name, content, content_type, content_id, priority.value
    )
    return SubmissionReceipt(queue_id=queue_id, precheck_passed=check.safe, reason=check.reason)
