"""
Dispatch of analysis runs.

Runs execute out-of-band. With ANALYSIS_QUEUE_BACKEND=inline they run in
the API process after the response is sent (FastAPI BackgroundTasks);
with ANALYSIS_QUEUE_BACKEND=redis the run id is pushed onto a Redis list
and `worker.py` picks it up. The run row in the database is the source of
truth for status in both cases.
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis
from fastapi import BackgroundTasks

from app.config import settings
from app.errors import ExternalServiceError

logger = logging.getLogger(__name__)

ANALYSIS_QUEUE = "repocomply:analysis:queue"


async def get_redis() -> aioredis.Redis:
    return aioredis.from_url(settings.redis_url, decode_responses=True)


async def enqueue_analysis(run_id: str) -> None:
    """Push a run onto the work queue."""
    r = await get_redis()
    try:
        await r.lpush(ANALYSIS_QUEUE, json.dumps({"run_id": run_id}))
    finally:
        await r.aclose()
    logger.info("Enqueued analysis %s", run_id)


async def dequeue_analysis(r: aioredis.Redis, timeout: int = 5) -> str | None:
    """Block-pop the next run id, or None after `timeout` seconds."""
    result = await r.brpop(ANALYSIS_QUEUE, timeout=timeout)
    if result is None:
        return None
    _, raw = result
    return json.loads(raw).get("run_id")


async def consume_analyses(r: aioredis.Redis, orchestrator, concurrency: int) -> None:
    """
    Pop run ids off the queue and execute up to `concurrency` runs at once.

    A slot is taken before popping, so a busy worker leaves jobs on the
    queue for other workers. Runs until cancelled; runs still in flight are
    cancelled with it and left for the stale-run sweep.
    """
    slots = asyncio.Semaphore(concurrency)
    in_flight: set[asyncio.Task] = set()

    async def _execute(run_id: str) -> None:
        try:
            await orchestrator.execute_run(run_id)
        except Exception:
            logger.exception("Analysis %s crashed its worker task", run_id)
        finally:
            slots.release()

    try:
        while True:
            await slots.acquire()
            try:
                run_id = await dequeue_analysis(r, timeout=5)
            except Exception as exc:
                slots.release()
                logger.error("Worker loop error: %s", exc, exc_info=True)
                await asyncio.sleep(1)
                continue
            if run_id is None:
                slots.release()
                continue

            logger.info("Processing analysis: %s", run_id)
            task = asyncio.create_task(_execute(run_id))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
    finally:
        pending = list(in_flight)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


async def dispatch_analysis(background_tasks: BackgroundTasks, orchestrator, run_id: str) -> None:
    if settings.analysis_queue_backend != "redis":
        background_tasks.add_task(orchestrator.execute_run, run_id)
        return
    try:
        await enqueue_analysis(run_id)
    except aioredis.RedisError as e:
        logger.error("Could not enqueue analysis %s: %s", run_id, e)
        # the run is committed as queued; nothing would ever pick it up
        await orchestrator.fail_run(run_id, "Analysis queue unavailable")
        raise ExternalServiceError("Analysis queue unavailable", provider="redis") from e
