"""Tests for dispatching runs onto the Redis queue and consuming them."""

import asyncio
import json

import pytest
import redis.asyncio as aioredis

from app.config import settings
from app.services.job_queue import consume_analyses
from tests.factories import auth_header, upload

ADMIN = auth_header("admin")


@pytest.fixture
def redis_backend(monkeypatch):
    monkeypatch.setattr(settings, "analysis_queue_backend", "redis")


@pytest.mark.asyncio
class TestRedisDispatch:
    async def test_run_is_enqueued_not_executed(self, client, redis_backend, monkeypatch):
        pushed = []

        async def fake_enqueue(run_id):
            pushed.append(run_id)

        monkeypatch.setattr("app.services.job_queue.enqueue_analysis", fake_enqueue)
        snapshot_id = (await upload(client)).json()["snapshotId"]

        resp = await client.post(f"/api/repository/{snapshot_id}/analyze", headers=ADMIN, json={"frameworks": ["SOC2"]})
        assert resp.status_code == 202
        assert pushed == [resp.json()["runId"]]

        status = (await client.get(f"/api/repository/{snapshot_id}/analysis", headers=ADMIN)).json()
        assert status["analysisRun"]["phaseStatus"] == "queued"
        assert status["snapshot"]["status"] == "analyzing"

    async def test_queue_outage_fails_the_run(self, client, redis_backend, monkeypatch):
        async def broken_enqueue(run_id):
            raise aioredis.ConnectionError("connection refused")

        monkeypatch.setattr("app.services.job_queue.enqueue_analysis", broken_enqueue)
        snapshot_id = (await upload(client)).json()["snapshotId"]

        resp = await client.post(f"/api/repository/{snapshot_id}/analyze", headers=ADMIN, json={"frameworks": ["SOC2"]})
        assert resp.status_code == 502

        status = (await client.get(f"/api/repository/{snapshot_id}/analysis", headers=ADMIN)).json()
        assert status["analysisRun"]["phaseStatus"] == "failed"
        assert status["analysisRun"]["error"] == "Analysis queue unavailable"
        assert status["snapshot"]["status"] == "error"


class FakeQueue:
    """Stands in for the Redis client: pops queued run ids, then idles."""

    def __init__(self, run_ids):
        self.items = [json.dumps({"run_id": run_id}) for run_id in run_ids]

    async def brpop(self, key, timeout=0):
        if self.items:
            return key, self.items.pop(0)
        await asyncio.sleep(0.01)
        return None


class BlockingOrchestrator:
    """Holds every run open until released, recording how many overlap."""

    def __init__(self):
        self.release = asyncio.Event()
        self.active = 0
        self.peak = 0
        self.finished = []

    async def execute_run(self, run_id):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await self.release.wait()
        self.active -= 1
        self.finished.append(run_id)


async def _wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
class TestConsumeAnalyses:
    async def test_runs_of_different_snapshots_execute_in_parallel(self):
        queue = FakeQueue(["RUN-A", "RUN-B", "RUN-C"])
        orchestrator = BlockingOrchestrator()
        consumer = asyncio.create_task(consume_analyses(queue, orchestrator, concurrency=2))
        try:
            await _wait_for(lambda: orchestrator.active == 2)
            # both slots are busy; the third run stays on the queue
            assert orchestrator.active == 2
            assert len(queue.items) == 1

            orchestrator.release.set()
            await _wait_for(lambda: len(orchestrator.finished) == 3)
        finally:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

        assert sorted(orchestrator.finished) == ["RUN-A", "RUN-B", "RUN-C"]
        assert orchestrator.peak == 2

    async def test_cancelling_the_consumer_cancels_runs_in_flight(self):
        orchestrator = BlockingOrchestrator()
        consumer = asyncio.create_task(consume_analyses(FakeQueue(["RUN-A"]), orchestrator, concurrency=2))
        await _wait_for(lambda: orchestrator.active == 1)

        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)
        assert orchestrator.finished == []
