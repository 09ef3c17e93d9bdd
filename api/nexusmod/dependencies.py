import hashlib
import hmac
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexusmod.config import settings
from nexusmod.database import get_db, get_session_factory
from nexusmod.services.analysis import AnalysisEngine, build_model_client
from nexusmod.services.processor import BatchModerationProcessor
from nexusmod.services.propagation import (
    ConsequencePropagator,
    SqlAccountActions,
    SqlAuditLog,
    SqlContentStatusWriter,
)
from nexusmod.services.queue_store import SqlQueueStore
from nexusmod.services.reputation import ReputationScorer

DbSession = Annotated[AsyncSession, Depends(get_db)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# Admin key header; also shows up as the security scheme in OpenAPI
admin_key_header = APIKeyHeader(name=settings.admin_api_key_header_name, auto_error=True)


async def get_redis(request: Request) -> aioredis.Redis:
    """Inject the Redis client from app.state (set during lifespan startup)."""
    return request.app.state.redis


async def require_admin(raw_key: str = Security(admin_key_header)) -> str:
    """Authenticate an admin request via the admin key header.

    Compares SHA-256 digests in constant time. Returns the key digest, which
    doubles as the rate-limit bucket namespace. An unset admin key locks the
    admin API entirely.
    """
    if not settings.admin_api_key:
        raise HTTPException(status_code=401, detail="Invalid admin key")
    presented = hashlib.sha256(raw_key.encode()).hexdigest()
    expected = hashlib.sha256(settings.admin_api_key.encode()).hexdigest()
    if not hmac.compare_digest(presented, expected):
        raise HTTPException(status_code=401, detail="Invalid admin key")
    return presented


def get_queue_store(session_factory: SessionFactory) -> SqlQueueStore:
    return SqlQueueStore(session_factory)


def build_processor(session_factory: async_sessionmaker[AsyncSession]) -> BatchModerationProcessor:
    """Wire a processor with the configured analyzer and SQL-backed collaborators."""
    queue = SqlQueueStore(session_factory)
    propagator = ConsequencePropagator(
        queue=queue,
        content_writer=SqlContentStatusWriter(session_factory),
        accounts=SqlAccountActions(session_factory),
        audit_log=SqlAuditLog(session_factory),
    )
    return BatchModerationProcessor(
        queue=queue,
        engine=AnalysisEngine(build_model_client()),
        propagator=propagator,
    )


def get_processor(session_factory: SessionFactory) -> BatchModerationProcessor:
    return build_processor(session_factory)


def get_scorer(session_factory: SessionFactory) -> ReputationScorer:
    return ReputationScorer(session_factory)


# Annotated type aliases for clean endpoint signatures
CurrentAdmin = Annotated[str, Depends(require_admin)]
RedisClient = Annotated[aioredis.Redis, Depends(get_redis)]
QueueStore = Annotated[SqlQueueStore, Depends(get_queue_store)]
Processor = Annotated[BatchModerationProcessor, Depends(get_processor)]
Scorer = Annotated[ReputationScorer, Depends(get_scorer)]
