"""
Analysis worker: executes analysis runs pushed onto the Redis queue.

Run with: python worker.py   (with ANALYSIS_QUEUE_BACKEND=redis on the API)
"""

import asyncio
import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.config import settings
from app.middleware.logging_config import configure_logging

configure_logging(settings.log_level, settings.log_format)
logger = logging.getLogger("worker")


async def main():
    """Worker entry point: sweeps stale runs and consumes the Redis queue."""
    from app.services.ai_judge import AIJudgmentAdapter
    from app.services.analysis_orchestrator import AnalysisOrchestrator
    from app.services.job_queue import ANALYSIS_QUEUE, consume_analyses

    engine = create_async_engine(settings.database_url, echo=False)
    SessionMaker = async_sessionmaker(engine, expire_on_commit=False)
    orchestrator = AnalysisOrchestrator(SessionMaker, AIJudgmentAdapter.from_settings(settings), settings)

    # fails runs orphaned by a dead process, at startup and on every interval
    sweeper = asyncio.create_task(orchestrator.sweep_stale_runs(settings.stale_run_sweep_interval_seconds))

    r = aioredis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Worker started, listening on %s (concurrency %d)", ANALYSIS_QUEUE, settings.worker_concurrency)

    try:
        await consume_analyses(r, orchestrator, settings.worker_concurrency)
    finally:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
        await r.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
