import asyncio
import logging
import time
import traceback
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.database import async_session, engine
from app.middleware.logging_config import configure_logging

# Configure logging before the routers import their module loggers
configure_logging(settings.log_level, settings.log_format)

from app.api.repository import router as repository_router  # noqa: E402
from app.api.audit import router as audit_router  # noqa: E402
from app.api.metrics import router as metrics_router  # noqa: E402
from app.errors import setup_exception_handlers  # noqa: E402
from app.services.ai_judge import AIJudgmentAdapter  # noqa: E402
from app.services.analysis_orchestrator import AnalysisOrchestrator  # noqa: E402

logger = logging.getLogger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: verify DB connection
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    # One adapter (and one breaker per provider) for the whole process
    app.state.ai_adapter = AIJudgmentAdapter.from_settings(settings)
    # Runs orphaned by a previous process are failed now and on every interval
    orchestrator = AnalysisOrchestrator(async_session, app.state.ai_adapter, settings)
    sweeper = asyncio.create_task(orchestrator.sweep_stale_runs(settings.stale_run_sweep_interval_seconds))
    yield
    # Shutdown
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    await engine.dispose()


app = FastAPI(
    title="RepoComply",
    description="Repository compliance analysis for SOC 2, ISO 27001, NIST 800-53 and FedRAMP",
    version="0.1.0",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────────────────────
origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

# ── Request context middleware (request ID + timing) ─────────────────────────
from app.middleware.request_context import RequestContextMiddleware  # noqa: E402

app.add_middleware(RequestContextMiddleware)

# ── Prometheus metrics middleware ────────────────────────────────────────────
from app.middleware.metrics import PrometheusMiddleware  # noqa: E402

app.add_middleware(PrometheusMiddleware)

setup_exception_handlers(app)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return detailed error info in development mode so 500s are debuggable."""
    tb = traceback.format_exc()
    logger.error(
        "Unhandled %s on %s %s: %s\n%s",
        type(exc).__name__, request.method, request.url.path, exc, tb,
    )
    detail = f"{type(exc).__name__}: {exc}"
    if settings.environment == "development":
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "traceback": tb.splitlines()[-5:]},
        )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


# Register API routers
app.include_router(repository_router)
app.include_router(audit_router)
app.include_router(metrics_router)

# ── Health check ─────────────────────────────────────────────────────────────

HEALTH_CACHE_TTL = 10.0  # seconds
_health_cache: dict = {"at": 0.0, "result": None}


async def _probe_database() -> dict:
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "connected"}
    except Exception as exc:
        return {"status": "disconnected", "error": str(exc)}


async def _probe_redis() -> dict:
    try:
        r = aioredis.from_url(settings.redis_url, decode_responses=True)
        try:
            await r.ping()
        finally:
            await r.aclose()
        return {"status": "connected"}
    except Exception as exc:
        return {"status": "disconnected", "error": str(exc)}


async def _probe_ollama() -> dict:
    try:
        async with httpx.AsyncClient(timeout=3.0) as client:
            resp = await client.post(f"{settings.ollama_url}/api/show", json={"name": settings.llm_model})
        status = "ready" if resp.status_code == 200 else "loading"
        return {"status": status, "model": settings.llm_model}
    except httpx.HTTPError:
        return {"status": "unavailable", "model": settings.llm_model}


@app.get("/api/health")
async def health_check(request: Request):
    now = time.time()
    if _health_cache["result"] is not None and now - _health_cache["at"] < HEALTH_CACHE_TTL:
        return _health_cache["result"]

    probes = {"database": _probe_database()}
    # Redis only matters when runs go through the worker queue
    if settings.analysis_queue_backend == "redis":
        probes["redis"] = _probe_redis()
    if settings.ai_enabled:
        probes["ollama"] = _probe_ollama()
    components = dict(zip(probes, await asyncio.gather(*probes.values())))

    adapter = getattr(request.app.state, "ai_adapter", None)
    if adapter is not None:
        components["circuit_breakers"] = adapter.stats()

    if components["database"]["status"] != "connected":
        overall = "unhealthy"
    elif components.get("redis", {}).get("status", "connected") != "connected":
        overall = "degraded"
    elif adapter is not None and adapter.enabled and adapter.all_open:
        # analyses still complete, AI-assisted rules come back needs_review
        overall = "degraded"
    else:
        overall = "healthy"

    result = {"status": overall, "environment": settings.environment, "components": components}
    _health_cache.update(at=now, result=result)
    return result
