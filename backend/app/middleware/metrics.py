"""
Prometheus metrics middleware.

Collects HTTP request metrics (counter + histogram) and exposes application-level
counters/gauges for analysis runs, findings and the AI judgment providers.
"""

import re
import time

from prometheus_client import Counter, Histogram, Gauge
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Ingestion metrics ────────────────────────────────────────────────────────

repository_uploads_total = Counter(
    "repository_uploads_total",
    "Repository archive uploads",
    ["outcome"],
)

# ── Analysis metrics ─────────────────────────────────────────────────────────

analysis_runs_total = Counter(
    "analysis_runs_total",
    "Analysis runs by terminal status",
    ["status"],
)

analysis_duration_seconds = Histogram(
    "analysis_duration_seconds",
    "Analysis run duration in seconds",
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 900.0, 1800.0),
)

findings_generated_total = Counter(
    "findings_generated_total",
    "Findings persisted by analysis runs",
    ["status"],
)

# ── AI judgment metrics ──────────────────────────────────────────────────────

ai_calls_total = Counter(
    "ai_calls_total",
    "AI judgment calls by provider and outcome",
    ["provider", "outcome"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state per provider (0=closed, 1=half_open, 2=open)",
    ["provider"],
)

CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}

_ID_SEGMENT = re.compile(r"^(SNAP|RUN|FND|TASK)-[0-9A-F]+$")


def _normalize_path(path: str) -> str:
    """Collapse path parameters to reduce cardinality.

    e.g. /api/repository/SNAP-ABC123/findings → /api/repository/{id}/findings
    """
    parts = path.strip("/").split("/")
    normalized = []
    for i, part in enumerate(parts):
        if i > 1 and (_ID_SEGMENT.match(part) or part.isdigit() or len(part) > 20):
            normalized.append("{id}")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint itself to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        http_requests_total.labels(
            method=method,
            path=path,
            status_code=response.status_code,
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            path=path,
        ).observe(duration)

        return response
