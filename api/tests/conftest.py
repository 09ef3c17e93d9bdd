"""Pytest configuration and fixtures for the moderation service tests.

These fixtures run everything against SQLite in memory (aiosqlite) with
stub analyzer clients, so no PostgreSQL, Redis or LLM provider is needed.
"""

import os

# Settings are read at import time; point them at test values first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("ANTHROPIC_API_KEY", "")
os.environ.setdefault("CREATE_TABLES_ON_STARTUP", "false")

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from nexusmod.models import Base
from nexusmod.services.analysis import AnalysisEngine
from nexusmod.services.processor import BatchModerationProcessor
from nexusmod.services.propagation import (
    ConsequencePropagator,
    SqlAccountActions,
    SqlAuditLog,
    SqlContentStatusWriter,
)
from nexusmod.services.queue_store import SqlQueueStore

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; advance() moves it forward."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StubModelClient:
    """Analyzer client double that records prompts and replays a canned reply."""

    provider = "stub"

    def __init__(self, reply: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply or "[]"


class SlowModelClient(StubModelClient):
    """Analyzer client that sleeps before answering, optionally running a hook mid-call."""

    def __init__(self, delay: float, reply: str = "[]", during=None) -> None:
        super().__init__(reply=reply)
        self.delay = delay
        self.during = during

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.during is not None:
            await self.during()
        await asyncio.sleep(self.delay)
        return self.reply


class EchoModelClient(StubModelClient):
    """Answers every item; content containing 'hate' is banned, 'meh' is warned."""

    def __init__(self) -> None:
        super().__init__()
        self.batches: list[list[str]] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        contents = []
        for line in prompt.splitlines():
            if line.startswith("[") and "]: " in line:
                contents.append(json.loads(line.split("]: ", 1)[1]))
        self.batches.append(contents)
        results = []
        for content in contents:
            if "hate" in content:
                results.append({
                    "allowed": False, "severity": "CRITICAL", "categories": ["hate_speech"],
                    "action": "ban", "reason": "Hate speech", "confidence": 0.97,
                })
            elif "meh" in content:
                results.append({
                    "allowed": True, "severity": "LOW", "categories": ["off_topic"],
                    "action": "warn", "reason": "Off topic", "confidence": 0.6,
                })
            else:
                results.append({
                    "allowed": True, "severity": "LOW", "categories": [],
                    "action": "allow", "reason": "Content is appropriate", "confidence": 0.9,
                })
        return json.dumps(results)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def async_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def queue(session_factory, clock) -> SqlQueueStore:
    return SqlQueueStore(session_factory, clock=clock)


@pytest.fixture
def propagator(session_factory, queue) -> ConsequencePropagator:
    return ConsequencePropagator(
        queue=queue,
        content_writer=SqlContentStatusWriter(session_factory),
        accounts=SqlAccountActions(session_factory),
        audit_log=SqlAuditLog(session_factory),
        suspend_min_severity="LOW",
    )


@pytest.fixture
def echo_client() -> EchoModelClient:
    return EchoModelClient()


@pytest.fixture
def make_processor(queue, propagator, clock):
    """Factory: build a processor around any analyzer client."""

    def _make(
        client=None, max_retries: int = 3, batch_size: int = 10, analysis_timeout: float = 5
    ) -> BatchModerationProcessor:
        return BatchModerationProcessor(
            queue=queue,
            engine=AnalysisEngine(client),
            propagator=propagator,
            clock=clock,
            batch_size=batch_size,
            max_retries=max_retries,
            analysis_timeout=analysis_timeout,
        )

    return _make
