import re
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from nexusmod.metrics import http_requests, http_request_duration

log = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"

# Probes hit these every few seconds; they are counted but not logged
_QUIET_PATHS = {"/health", "/metrics"}

_UUID_SEGMENT = re.compile(
    r"/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)


def metrics_path(path: str) -> str:
    """Collapse queue item ids so each route is one label value."""
    return _UUID_SEGMENT.sub("/{id}", path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        # Keep an upstream proxy's id so logs join across hops
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        path = request.url.path
        quiet = path in _QUIET_PATHS

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=path,
            method=request.method,
        )

        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            log.error("request_failed", duration_ms=round((time.monotonic() - start) * 1000, 2))
            raise
        duration = time.monotonic() - start

        label = metrics_path(path)
        http_requests.labels(
            method=request.method, path=label, status_code=str(response.status_code)
        ).inc()
        http_request_duration.labels(method=request.method, path=label).observe(duration)

        if not quiet:
            log.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
