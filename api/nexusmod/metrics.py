from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi.responses import Response

# Batch moderation processor
queue_items_processed = Counter(
    "nexus_moderation_queue_items_total",
    "Queue items leaving the processing state",
    ["outcome"],  # outcome: approved | rejected | requeued | dead_lettered
)

analysis_duration = Histogram(
    "nexus_moderation_analysis_duration_seconds",
    "Time for one batched analyzer call",
    ["provider"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

analysis_fallbacks = Counter(
    "nexus_moderation_analysis_fallbacks_total",
    "Batches answered with fail-open defaults",
    ["reason"],  # reason: no_client | invalid_json | not_array | length_mismatch
)

propagation_failures = Counter(
    "nexus_moderation_propagation_failures_total",
    "Best-effort writes that failed after the queue item was committed",
    ["target"],  # target: content | audit_log | account
)

# Reputation scorer
reputation_recomputes = Counter(
    "nexus_reputation_recomputes_total",
    "Reputation recomputations",
    ["status"],  # status: success | error | missing_user
)

# HTTP request metrics (from middleware)
http_requests = Counter(
    "nexus_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration = Histogram(
    "nexus_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "path"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)


async def metrics_endpoint():
    """FastAPI endpoint handler that returns Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
