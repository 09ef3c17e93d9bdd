"""Tests for BatchModerationProcessor cycles against the SQLite queue."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import pytest
from sqlalchemy import func, select

from conftest import SlowModelClient, StubModelClient
from nexusmod.models import CommunityPost, ModerationLogEntry, User
from nexusmod.models.queue import PRIORITY_RANK, QueueStatus
from nexusmod.schemas.moderation import ModerationResult
from nexusmod.services.analysis import AnalysisEngine, AnalyzerAuthError
from nexusmod.services.processor import BatchModerationProcessor
from nexusmod.services.queue_store import ReleaseResult


async def _seed_post(session_factory, post_id: str, user_id: str = "u1") -> None:
    async with session_factory() as session:
        if await session.get(User, user_id) is None:
            session.add(User(id=user_id, name="Ada"))
        session.add(CommunityPost(id=post_id, user_id=user_id, created_at=datetime(2026, 9, 1)))
        await session.commit()


async def _statuses(queue, ids) -> list[str]:
    return [(await queue.get(item_id)).status for item_id in ids]


class TestLocalVerdicts:
    async def test_url_flood_is_rejected_without_analyzer(
        self, queue, clock, make_processor, session_factory
    ):
        """Six URLs trip the pre-check; the analyzer is never consulted."""
        await _seed_post(session_factory, "p1")
        content = " ".join(f"https://shop{n}.example" for n in range(6))
        item_id = await queue.enqueue("u1", "Ada", content, "post", "p1", "high")
        client = StubModelClient(error=RuntimeError("must not be called"))

        report = await make_processor(client).process_batch()

        assert report.rejected == 1
        assert client.prompts == []
        item = await queue.get(item_id)
        assert item.status == QueueStatus.rejected.value
        assert item.result["action"] == "block"
        assert item.result["severity"] == "MEDIUM"
        assert item.result["categories"] == ["spam"]
        async with session_factory() as session:
            post = await session.get(CommunityPost, "p1")
            assert post.moderation_status == "hidden"
            assert (await session.get(User, "u1")).suspended is True

    async def test_banned_term_is_blocked_high(self, queue, make_processor):
        item_id = await queue.enqueue("u1", "Ada", "total scam, send money", "chat", "m1")
        await make_processor(StubModelClient()).process_batch()
        item = await queue.get(item_id)
        assert item.result["severity"] == "HIGH"
        assert item.result["confidence"] == 1.0


class TestAnalyzedBatch:
    async def test_priority_order_across_a_full_batch(self, queue, clock, make_processor, echo_client):
        """4 high, 3 medium, 3 low; all processed in one cycle, high first."""
        expected = []
        for priority, count in (("low", 3), ("medium", 3), ("high", 4)):
            for n in range(count):
                clock.advance(seconds=1)
                content = f"{priority} item {n}"
                await queue.enqueue("u1", "Ada", content, "chat", f"{priority}-{n}", priority)
                expected.append((priority, content))
        expected.sort(key=lambda pair: -PRIORITY_RANK[pair[0]])

        report = await make_processor(echo_client).process_batch()

        assert report.claimed == 10
        assert report.approved == 10
        assert echo_client.batches == [[content for _, content in expected]]
        assert await queue.select_pending(10) == []

    async def test_batch_size_limits_claim(self, queue, clock, make_processor, echo_client):
        for n in range(5):
            clock.advance(seconds=1)
            await queue.enqueue("u1", "Ada", f"hello {n}", "chat", f"m{n}")
        report = await make_processor(echo_client, batch_size=2).process_batch()
        assert report.claimed == 2
        assert len(await queue.select_pending(10)) == 3

    async def test_mixed_verdicts(self, queue, clock, make_processor, echo_client, session_factory):
        await _seed_post(session_factory, "p-ok")
        await _seed_post(session_factory, "p-bad", user_id="u2")
        ok = await queue.enqueue("u1", "Ada", "lovely day", "post", "p-ok")
        clock.advance(seconds=1)
        bad = await queue.enqueue("u2", "Bob", "I hate you", "post", "p-bad")

        report = await make_processor(echo_client).process_batch()

        assert (report.approved, report.rejected) == (1, 1)
        assert await _statuses(queue, [ok, bad]) == ["approved", "rejected"]
        async with session_factory() as session:
            assert (await session.get(CommunityPost, "p-ok")).moderation_status is None
            assert (await session.get(CommunityPost, "p-bad")).moderation_status == "hidden"
            assert (await session.get(User, "u2")).suspended is True
            assert (await session.get(User, "u1")).suspended is False

    async def test_empty_queue_is_a_noop(self, make_processor, echo_client):
        report = await make_processor(echo_client).process_batch()
        assert report.claimed == 0
        assert echo_client.prompts == []

    async def test_malformed_reply_fails_open(self, queue, make_processor):
        item_id = await queue.enqueue("u1", "Ada", "hello", "chat", "m1")
        report = await make_processor(StubModelClient(reply="not json at all")).process_batch()
        assert report.approved == 1
        item = await queue.get(item_id)
        assert item.status == QueueStatus.approved.value
        assert item.result["action"] == "allow"
        assert item.result["confidence"] == 0.5

    async def test_no_client_approves_with_defaults(self, queue, make_processor):
        item_id = await queue.enqueue("u1", "Ada", "hello", "chat", "m1")
        await make_processor(None).process_batch()
        assert (await queue.get(item_id)).status == QueueStatus.approved.value


class TestAnalyzerFailures:
    async def test_transport_error_requeues_with_retry(self, queue, make_processor):
        item_id = await queue.enqueue("u1", "Ada", "hello", "chat", "m1")
        report = await make_processor(StubModelClient(error=ConnectionError("down"))).process_batch()

        assert report.requeued == 1
        item = await queue.get(item_id)
        assert item.status == QueueStatus.pending.value
        assert item.retry_count == 1
        assert item.claimed_at is None

    async def test_local_verdicts_survive_analyzer_failure(self, queue, clock, make_processor):
        spam = await queue.enqueue("u1", "Ada", "phishing link", "chat", "m1")
        clock.advance(seconds=1)
        normal = await queue.enqueue("u1", "Ada", "hello", "chat", "m2")

        report = await make_processor(StubModelClient(error=TimeoutError())).process_batch()

        assert (report.rejected, report.requeued) == (1, 1)
        assert await _statuses(queue, [spam, normal]) == ["rejected", "pending"]

    async def test_auth_error_requeues_then_raises(self, queue, make_processor):
        item_id = await queue.enqueue("u1", "Ada", "hello", "chat", "m1")
        processor = make_processor(StubModelClient(error=AnalyzerAuthError("bad key")))

        with pytest.raises(AnalyzerAuthError):
            await processor.process_batch()

        item = await queue.get(item_id)
        assert item.status == QueueStatus.pending.value
        assert item.retry_count == 1

    async def test_dead_letter_after_max_retries(self, queue, make_processor, session_factory):
        await _seed_post(session_factory, "p1")
        item_id = await queue.enqueue("u1", "Ada", "hello", "post", "p1")
        processor = make_processor(StubModelClient(error=ConnectionError("down")), max_retries=3)

        reports = [await processor.process_batch() for _ in range(3)]

        assert [r.requeued for r in reports] == [1, 1, 0]
        assert reports[-1].dead_lettered == 1
        item = await queue.get(item_id)
        assert item.status == QueueStatus.rejected.value
        assert item.result["action"] == "escalate"
        assert item.result["reason"] == "Manual review required (analysis failed 3 times)"

        # Dead-lettered items never come back
        assert (await processor.process_batch()).claimed == 0
        async with session_factory() as session:
            assert (await session.get(CommunityPost, "p1")).moderation_status == "hidden"
            assert (await session.get(User, "u1")).suspended is False
            logs = await session.scalar(select(func.count()).select_from(ModerationLogEntry))
            assert logs == 1


class TestCycleDeadlines:
    async def test_slow_analyzer_counts_as_failure(self, queue, make_processor):
        item_id = await queue.enqueue("u1", "Ada", "hello", "chat", "m1")
        processor = make_processor(SlowModelClient(delay=5), analysis_timeout=0.05)

        report = await processor.process_batch()

        assert report.requeued == 1
        item = await queue.get(item_id)
        assert item.status == QueueStatus.pending.value
        assert item.retry_count == 1

    async def test_cancelled_cycle_releases_its_claims(self, queue, clock, make_processor):
        """A caller deadline shorter than the analysis timeout still leaves nothing in processing."""
        analyzed = await queue.enqueue("u1", "Ada", "hello", "chat", "m1")
        clock.advance(seconds=1)
        local = await queue.enqueue("u1", "Ada", "phishing link", "chat", "m2")
        processor = make_processor(SlowModelClient(delay=5), analysis_timeout=5)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(processor.process_batch(), timeout=0.1)

        for item_id in (analyzed, local):
            item = await queue.get(item_id)
            assert item.status == QueueStatus.pending.value
            assert item.retry_count == 1
            assert item.claim_token is None

    async def test_verdict_from_outlived_claim_is_dropped(
        self, queue, clock, make_processor, session_factory
    ):
        await _seed_post(session_factory, "p1")
        item_id = await queue.enqueue("u1", "Ada", "hello", "post", "p1")
        client = SlowModelClient(
            delay=0,
            reply='[{"allowed": false, "severity": "HIGH", "categories": [], '
            '"action": "block", "reason": "Abuse", "confidence": 0.9}]',
        )
        processor = make_processor(client)

        async def stall_past_recovery():
            clock.advance(minutes=11)
            await processor.recover_stale_claims(timedelta(minutes=10))

        client.during = stall_past_recovery
        report = await processor.process_batch()

        assert report.rejected == 0
        item = await queue.get(item_id)
        assert item.status == QueueStatus.pending.value
        assert item.retry_count == 1
        async with session_factory() as session:
            assert (await session.get(CommunityPost, "p1")).moderation_status is None
            assert (await session.get(User, "u1")).suspended is False
            logs = await session.scalar(select(func.count()).select_from(ModerationLogEntry))
            assert logs == 0

    async def test_zero_retry_ceiling_is_honoured(self, queue, make_processor):
        item_id = await queue.enqueue("u1", "Ada", "hello", "chat", "m1")
        processor = make_processor(StubModelClient(error=ConnectionError("down")), max_retries=0)

        report = await processor.process_batch()

        assert (report.requeued, report.dead_lettered) == (0, 1)
        assert (await queue.get(item_id)).status == QueueStatus.rejected.value


class TestStaleClaims:
    async def test_stale_claims_are_requeued(self, queue, clock, make_processor):
        item_id = await queue.enqueue("u1", "Ada", "hello", "chat", "m1")
        await queue.claim([item_id])
        clock.advance(minutes=15)

        report = await make_processor().recover_stale_claims(timedelta(minutes=10))

        assert report.requeued == 1
        item = await queue.get(item_id)
        assert item.status == QueueStatus.pending.value
        assert item.retry_count == 1

    async def test_fresh_claims_are_left_alone(self, queue, clock, make_processor):
        item_id = await queue.enqueue("u1", "Ada", "hello", "chat", "m1")
        await queue.claim([item_id])
        clock.advance(minutes=5)

        report = await make_processor().recover_stale_claims(timedelta(minutes=10))

        assert report.requeued == 0
        assert (await queue.get(item_id)).status == QueueStatus.processing.value


@dataclass
class _Item:
    id: uuid.UUID
    content: str
    user_id: str = "u1"
    user_name: str = "Ada"
    content_type: str = "chat"
    content_id: str = ""
    priority: str = "medium"
    status: str = "pending"
    retry_count: int = 0
    claim_token: Optional[uuid.UUID] = None
    result: Optional[dict] = None
    processed_at: Optional[datetime] = None
    timestamp: datetime = field(default_factory=datetime.now)


class InMemoryQueueStore:
    """Queue double whose claim() is an atomic check-and-set within one event loop step.

    select_pending() yields to the loop so that two cycles started together
    both see the same candidates before either claims.
    """

    def __init__(self) -> None:
        self.items: dict[uuid.UUID, _Item] = {}
        self.completions: list[uuid.UUID] = []

    def add(self, content: str) -> uuid.UUID:
        item = _Item(id=uuid.uuid4(), content=content, content_id=content)
        self.items[item.id] = item
        return item.id

    async def select_pending(self, limit: int):
        pending = [i for i in self.items.values() if i.status == "pending"][:limit]
        await asyncio.sleep(0)
        return pending

    def _held(self, item_id, token) -> bool:
        item = self.items[item_id]
        return item.status == "processing" and item.claim_token == token

    async def claim(self, ids, token=None):
        won = set()
        for item_id in ids:
            if self.items[item_id].status == "pending":
                self.items[item_id].status = "processing"
                self.items[item_id].claim_token = token
                won.add(item_id)
        return won

    async def complete(self, outcomes, processed_at, token=None):
        landed = set()
        for item_id, verdict in outcomes:
            if not self._held(item_id, token):
                continue
            landed.add(item_id)
            self.completions.append(item_id)
            self.items[item_id].status = "approved" if verdict.allowed else "rejected"
            self.items[item_id].result = verdict.model_dump(mode="json")
        return landed

    async def release(self, ids, max_retries, token=None):
        released = ReleaseResult()
        for item_id in ids:
            if self._held(item_id, token):
                self.items[item_id].status = "pending"
                self.items[item_id].retry_count += 1
                released.requeued.append(item_id)
        return released


class RecordingPropagator:
    def __init__(self) -> None:
        self.calls: list[tuple[uuid.UUID, ModerationResult]] = []

    async def propagate(self, item, result, processed_at):
        self.calls.append((item.id, result))


class TestConcurrentCycles:
    async def test_overlapping_cycles_never_share_an_item(self, clock, echo_client):
        store = InMemoryQueueStore()
        ids = {store.add(f"message {n}") for n in range(6)}
        propagator = RecordingPropagator()

        def _processor():
            return BatchModerationProcessor(
                queue=store,
                engine=AnalysisEngine(echo_client),
                propagator=propagator,
                clock=clock,
                batch_size=10,
                max_retries=3,
                analysis_timeout=5,
            )

        first, second = await asyncio.gather(_processor().process_batch(), _processor().process_batch())

        assert first.claimed + second.claimed == 6
        assert sorted(store.completions) == sorted(ids)
        assert len(propagator.calls) == 6
        assert {item.status for item in store.items.values()} == {"approved"}
