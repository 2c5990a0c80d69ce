"""End-to-end tests for the repository API over HTTP."""

from pathlib import Path

import pytest
from sqlalchemy import func, select

from app.database import async_session
from app.models import Finding
from tests.factories import ORG_A, ORG_B, SAMPLE_REPO, auth_header, upload

ADMIN = auth_header("admin", ORG_A)
DOCKERFILE = "FROM node:20-slim\nUSER node\nCOPY . /app\nCMD [\"node\", \"src/index.js\"]\n"


async def _analyze(client, snapshot_id: str, frameworks=("SOC2",)):
    return await client.post(
        f"/api/repository/{snapshot_id}/analyze",
        headers=ADMIN,
        json={"frameworks": list(frameworks), "depth": "security_relevant"},
    )


@pytest.mark.asyncio
class TestRepositoryFlow:
    async def test_upload_analyze_review_and_delete(self, client):
        resp = await upload(client, files={**SAMPLE_REPO, "Dockerfile": DOCKERFILE})
        assert resp.status_code == 201
        body = resp.json()
        snapshot_id = body["snapshotId"]
        assert body["fileCount"] == len(SAMPLE_REPO) + 1
        assert {"node", "docker"} <= set(body["technologies"])
        extracted_path = body["extractedPath"]
        assert body["duplicateOf"] is None

        resp = await _analyze(client, snapshot_id, frameworks=("SOC2", "ISO27001"))
        assert resp.status_code == 202
        assert resp.json()["status"] == "queued"
        run_id = resp.json()["runId"]

        # background work has finished by the time the transport returns
        resp = await client.get(f"/api/repository/{snapshot_id}/analysis", headers=ADMIN)
        assert resp.status_code == 200
        status = resp.json()
        assert status["snapshot"]["status"] == "analyzed"
        assert status["analysisRun"]["runId"] == run_id
        assert status["analysisRun"]["phaseStatus"] == "completed"
        assert status["analysisRun"]["progress"] == 100

        resp = await client.get(f"/api/repository/{snapshot_id}/findings?status=fail&limit=100", headers=ADMIN)
        assert resp.status_code == 200
        listing = resp.json()
        assert listing["total"] == len(listing["findings"]) > 0
        assert set(listing["summary"]["byFramework"]) == {"SOC2", "ISO27001"}
        finding = next(f for f in listing["findings"] if f["ruleId"] == "DEP-002")
        assert "snapshotId" not in finding

        resp = await client.patch(
            f"/api/repository/{snapshot_id}/findings/{finding['findingId']}",
            headers=ADMIN,
            json={"status": "waived", "notes": "tracked elsewhere"},
        )
        assert resp.status_code == 200
        assert resp.json()["finding"]["status"] == "waived"
        assert resp.json()["finding"]["reviewedBy"] == "user-1"

        resp = await client.get(
            f"/api/repository/{snapshot_id}/findings/{finding['findingId']}/reviews", headers=ADMIN,
        )
        assert [r["newStatus"] for r in resp.json()["reviews"]] == ["waived"]

        resp = await client.get(f"/api/repository/{snapshot_id}/tasks", headers=ADMIN)
        assert resp.status_code == 200
        tasks = resp.json()
        assert tasks["tasks"]
        task = next(t for t in tasks["tasks"] if finding["findingId"] in t["findingIds"])
        assert all(fid.startswith("FND-") for t in tasks["tasks"] for fid in t["findingIds"])

        resp = await client.patch(
            f"/api/repository/{snapshot_id}/tasks/{task['taskId']}",
            headers=ADMIN,
            json={"status": "in_progress", "assignedToRole": "engineering"},
        )
        assert resp.status_code == 200
        assert resp.json()["task"]["status"] == "in_progress"

        resp = await client.patch(
            f"/api/repository/{snapshot_id}/tasks/{task['taskId']}", headers=ADMIN, json={"status": "completed"},
        )
        assert resp.status_code == 200
        assert resp.json()["task"]["completedBy"] == "user-1"
        by_status = (await client.get(f"/api/repository/{snapshot_id}/tasks", headers=ADMIN)).json()["byStatus"]
        assert [t["taskId"] for t in by_status["completed"]] == [task["taskId"]]
        assert task["taskId"] not in {t["taskId"] for t in by_status["open"] + by_status["in_progress"]}

        resp = await client.patch(
            f"/api/repository/{snapshot_id}/tasks/{task['taskId']}", headers=ADMIN, json={"status": "bogus"},
        )
        assert resp.status_code == 400

        resp = await client.delete(f"/api/repository/{snapshot_id}", headers=ADMIN)
        assert resp.status_code == 200
        resp = await client.get(f"/api/repository/{snapshot_id}", headers=ADMIN)
        assert resp.status_code == 404
        resp = await client.get(f"/api/repository/{snapshot_id}/findings", headers=ADMIN)
        assert resp.status_code == 404
        async with async_session() as session:
            assert (await session.execute(select(func.count(Finding.id)))).scalar() == 0
        assert not Path(extracted_path).exists()

        resp = await client.get("/api/audit", headers=ADMIN)
        events = {e["eventType"] for e in resp.json()["items"]}
        assert {"snapshot_uploaded", "analysis_started", "analysis_finished",
                "finding_reviewed", "task_updated", "snapshot_deleted"} <= events

        resp = await client.get("/api/audit/integrity", headers=ADMIN)
        assert resp.json()["valid"] is True

    async def test_second_analysis_conflicts(self, client):
        snapshot_id = (await upload(client)).json()["snapshotId"]
        assert (await _analyze(client, snapshot_id)).status_code == 202

        resp = await _analyze(client, snapshot_id)
        assert resp.status_code == 409
        assert resp.json()["code"] == "ANALYSIS_NOT_ALLOWED"

    async def test_invalid_analysis_request(self, client):
        snapshot_id = (await upload(client)).json()["snapshotId"]
        resp = await client.post(
            f"/api/repository/{snapshot_id}/analyze", headers=ADMIN, json={"frameworks": []},
        )
        assert resp.status_code == 422

        resp = await client.post(
            f"/api/repository/{snapshot_id}/analyze", headers=ADMIN, json={"frameworks": ["PCI"]},
        )
        assert resp.status_code == 400

    async def test_analysis_status_before_any_run(self, client):
        snapshot_id = (await upload(client)).json()["snapshotId"]
        resp = await client.get(f"/api/repository/{snapshot_id}/analysis", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["snapshot"]["status"] == "indexed"
        assert resp.json()["analysisRun"] is None

    async def test_rejected_archive(self, client):
        resp = await client.post(
            "/api/repository/upload",
            headers=ADMIN,
            files={"file": ("notes.txt", b"hello", "text/plain")},
            data={"companyProfileId": "PROFILE-1"},
        )
        assert resp.status_code == 400
        resp = await client.get("/api/repository", headers=ADMIN)
        assert resp.json()["total"] == 0

    async def test_list_snapshots(self, client):
        await upload(client)
        await upload(client)
        resp = await client.get("/api/repository", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["total"] == 2


@pytest.mark.asyncio
class TestTenantIsolation:
    async def test_missing_org_claim(self, client):
        resp = await client.get("/api/repository", headers=auth_header("admin", org_id=None))
        assert resp.status_code == 403
        assert resp.json()["code"] == "ORG_CONTEXT_REQUIRED"

    async def test_other_org_sees_not_found(self, client):
        snapshot_id = (await upload(client, org_id=ORG_A)).json()["snapshotId"]
        intruder = auth_header("admin", ORG_B)

        for path in ("", "/analysis", "/findings", "/tasks"):
            resp = await client.get(f"/api/repository/{snapshot_id}{path}", headers=intruder)
            assert resp.status_code == 404, path

        resp = await client.delete(f"/api/repository/{snapshot_id}", headers=intruder)
        assert resp.status_code == 404
        resp = await client.post(
            f"/api/repository/{snapshot_id}/analyze", headers=intruder, json={"frameworks": ["SOC2"]},
        )
        assert resp.status_code == 404

        resp = await client.get("/api/repository", headers=intruder)
        assert resp.json()["total"] == 0

    async def test_upload_for_another_org_is_forbidden(self, client):
        resp = await client.post(
            "/api/repository/upload",
            headers=ADMIN,
            files={"file": ("repo.zip", b"PK", "application/zip")},
            data={"companyProfileId": "PROFILE-1", "organizationId": ORG_B},
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "CROSS_TENANT_ACCESS"

    async def test_audit_is_scoped_to_org(self, client):
        await upload(client, org_id=ORG_A)
        resp = await client.get("/api/audit", headers=auth_header("admin", ORG_B))
        assert resp.status_code == 200
        assert resp.json()["total"] == 0


@pytest.mark.asyncio
class TestAccessControl:
    async def test_no_token(self, client):
        resp = await client.get("/api/repository")
        assert resp.status_code == 401

    async def test_bad_token(self, client):
        resp = await client.get("/api/repository", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    async def test_viewer_cannot_upload(self, client):
        resp = await upload(client, role="viewer")
        assert resp.status_code == 403

    async def test_analyst_cannot_review(self, client):
        resp = await client.patch(
            "/api/repository/SNAP-X/findings/FND-X",
            headers=auth_header("analyst", ORG_A),
            json={"status": "pass"},
        )
        assert resp.status_code == 403

    async def test_health_and_metrics_are_open(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["components"]["database"]["status"] == "connected"

        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "http_requests_total" in resp.text
