"""
Prometheus metrics endpoint.

GET /metrics in text exposition format. Breaker gauges are refreshed on
scrape because open -> half_open happens on a timer, not on a call.
"""

from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.middleware.metrics import circuit_breaker_state, CIRCUIT_STATE_VALUES

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def prometheus_metrics(request: Request):
    adapter = getattr(request.app.state, "ai_adapter", None)
    if adapter is not None:
        for stats in adapter.stats():
            circuit_breaker_state.labels(provider=stats["name"]).set(CIRCUIT_STATE_VALUES[stats["state"]])
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
