from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from nexusmod.config import settings
from nexusmod.database import async_session_factory, init_models
from nexusmod.logging_config import configure_logging
from nexusmod.metrics import metrics_endpoint
from nexusmod.middleware.logging_middleware import RequestLoggingMiddleware
from nexusmod.routers import moderation, reputation

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure structured logging before anything else
    configure_logging()

    if settings.create_tables_on_startup:
        await init_models()

    app.state.redis = aioredis.from_url(
        settings.redis_url, encoding="utf-8", decode_responses=True
    )
    log.info(
        "api_started",
        analyzer_provider=settings.moderation_llm_provider,
        batch_size=settings.moderation_batch_size,
    )
    try:
        yield
    finally:
        await app.state.redis.aclose()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(moderation.router)
app.include_router(reputation.router)

# Prometheus metrics endpoint
app.get("/metrics")(metrics_endpoint)


@app.get("/health")
async def health_check():
    """Liveness: the process is up and serving."""
    return {"status": "ok"}


@app.get("/health/ready")
async def readiness_check():
    """Readiness: the database and Redis both answer."""
    checks = {}
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        log.warning("readiness_database_failed", error=str(exc))
        checks["database"] = "unavailable"
    try:
        await app.state.redis.ping()
        checks["redis"] = "ok"
    except Exception as exc:
        log.warning("readiness_redis_failed", error=str(exc))
        checks["redis"] = "unavailable"

    ready = all(value == "ok" for value in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ok" if ready else "degraded", **checks},
    )
