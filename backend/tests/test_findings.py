"""Tests for findings listing, review history and snapshot deletion."""

from pathlib import Path

import pytest
from sqlalchemy import select, func, update

from app.errors import ConflictError, NotFoundError, ValidationError
from app.models import AnalysisRun, Finding, FindingReview, RemediationTask, RepositoryFile, RepositorySnapshot
from app.services.findings_service import FindingsService
from app.services.ingestion import remove_extraction_dir
from tests.factories import ORG_A, ORG_B, analyzed_snapshot


async def _finding(session, snapshot_id: str, rule_id: str) -> Finding:
    snapshot = (await session.execute(
        select(RepositorySnapshot).where(RepositorySnapshot.snapshot_id == snapshot_id)
    )).scalar_one()
    return (await session.execute(
        select(Finding).where(Finding.snapshot_id == snapshot.id, Finding.rule_id == rule_id)
    )).scalars().first()


async def _tasks_covering(session, finding: Finding) -> list[RemediationTask]:
    tasks = (await session.execute(
        select(RemediationTask).where(RemediationTask.snapshot_id == finding.snapshot_id)
    )).scalars()
    return [t for t in tasks if finding.id in (t.finding_ids or [])]


@pytest.mark.asyncio
class TestFindingsQueries:
    async def test_pagination_and_filters(self, db_session):
        snapshot_id = await analyzed_snapshot()
        service = FindingsService(db_session)

        everything, total = await service.get_findings(snapshot_id, ORG_A, limit=100)
        assert total == len(everything) > 2

        page, page_total = await service.get_findings(snapshot_id, ORG_A, page=1, limit=2)
        assert len(page) == 2 and page_total == total

        _, clamped_total = await service.get_findings(snapshot_id, ORG_A, limit=500)
        assert clamped_total == total

        failing, _ = await service.get_findings(snapshot_id, ORG_A, status="fail")
        assert failing and all(f.status == "fail" for f in failing)

    async def test_summary_counts(self, db_session):
        snapshot_id = await analyzed_snapshot()
        service = FindingsService(db_session)

        summary = await service.get_findings_summary(snapshot_id, ORG_A)
        _, total = await service.get_findings(snapshot_id, ORG_A)
        assert summary["total"] == total
        assert sum(summary["by_severity"].values()) == total
        assert summary["by_framework"] == {"SOC2": total}
        assert summary["critical_open"] >= 0

    async def test_other_tenant_sees_nothing(self, db_session):
        snapshot_id = await analyzed_snapshot()
        service = FindingsService(db_session)
        finding = await _finding(db_session, snapshot_id, "DEP-002")

        with pytest.raises(NotFoundError):
            await service.get_findings(snapshot_id, ORG_B)
        with pytest.raises(NotFoundError):
            await service.get_finding(finding.finding_id, ORG_B)


@pytest.mark.asyncio
class TestFindingReview:
    async def test_review_stamps_reviewer_and_appends_history(self, db_session):
        snapshot_id = await analyzed_snapshot()
        service = FindingsService(db_session)
        finding = await _finding(db_session, snapshot_id, "DEP-002")
        evidence_before = dict(finding.evidence)

        await service.review_finding(finding.finding_id, ORG_A, "reviewer-1", "waived", "accepted risk")
        await service.review_finding(finding.finding_id, ORG_A, "reviewer-2", "waived")
        await db_session.commit()

        assert finding.status == "waived"
        assert finding.reviewed_by == "reviewer-2"
        assert finding.reviewed_at is not None
        assert finding.evidence == evidence_before

        history = await service.get_review_history(finding.finding_id, ORG_A, snapshot_id)
        assert [(h.previous_status, h.new_status, h.reviewer) for h in history] == [
            ("fail", "waived", "reviewer-1"),
            ("waived", "waived", "reviewer-2"),
        ]
        assert history[0].notes == "accepted risk"

    async def test_rejects_non_reviewable_status(self, db_session):
        snapshot_id = await analyzed_snapshot()
        finding = await _finding(db_session, snapshot_id, "DEP-002")
        with pytest.raises(ValidationError):
            await FindingsService(db_session).review_finding(finding.finding_id, ORG_A, "reviewer-1", "needs_review")

    async def test_regression_to_fail_opens_task(self, db_session):
        snapshot_id = await analyzed_snapshot()
        finding = await _finding(db_session, snapshot_id, "DEP-001")
        assert finding.status == "pass"
        assert await _tasks_covering(db_session, finding) == []

        await FindingsService(db_session).review_finding(finding.finding_id, ORG_A, "reviewer-1", "fail")
        await db_session.commit()

        tasks = await _tasks_covering(db_session, finding)
        assert len(tasks) == 1
        assert tasks[0].status == "open"
        assert tasks[0].priority == finding.severity

    async def test_regression_does_not_duplicate_active_task(self, db_session):
        snapshot_id = await analyzed_snapshot()
        service = FindingsService(db_session)
        finding = await _finding(db_session, snapshot_id, "DEP-002")
        assert len(await _tasks_covering(db_session, finding)) == 1

        await service.review_finding(finding.finding_id, ORG_A, "reviewer-1", "pass")
        await service.review_finding(finding.finding_id, ORG_A, "reviewer-1", "fail")
        await db_session.commit()

        assert len(await _tasks_covering(db_session, finding)) == 1

    async def test_reaffirming_fail_leaves_closed_task_alone(self, db_session):
        snapshot_id = await analyzed_snapshot()
        service = FindingsService(db_session)
        finding = await _finding(db_session, snapshot_id, "DEP-002")
        [task] = await _tasks_covering(db_session, finding)
        task.status = "dismissed"
        await db_session.flush()

        await service.review_finding(finding.finding_id, ORG_A, "reviewer-1", "fail")
        await db_session.commit()

        tasks = await _tasks_covering(db_session, finding)
        assert [t.status for t in tasks] == ["dismissed"]


@pytest.mark.asyncio
class TestDeleteSnapshot:
    async def test_delete_cascades(self, db_session):
        snapshot_id = await analyzed_snapshot()
        finding = await _finding(db_session, snapshot_id, "DEP-002")
        service = FindingsService(db_session)
        await service.review_finding(finding.finding_id, ORG_A, "reviewer-1", "waived")
        await db_session.commit()

        extracted_path = await service.delete_snapshot(snapshot_id, ORG_A, "user-1")
        await db_session.commit()
        assert extracted_path

        for model in (RepositorySnapshot, RepositoryFile, AnalysisRun, Finding, FindingReview, RemediationTask):
            count = (await db_session.execute(select(func.count()).select_from(model))).scalar()
            assert count == 0, model.__name__

        await remove_extraction_dir(extracted_path)
        assert not Path(extracted_path).exists()

    async def test_delete_refused_while_analyzing(self, db_session):
        snapshot_id = await analyzed_snapshot()
        await db_session.execute(
            update(RepositorySnapshot)
            .where(RepositorySnapshot.snapshot_id == snapshot_id)
            .values(status="analyzing")
        )
        await db_session.commit()

        with pytest.raises(ConflictError) as exc:
            await FindingsService(db_session).delete_snapshot(snapshot_id, ORG_A, "user-1")
        assert exc.value.code == "ANALYSIS_IN_PROGRESS"

    async def test_delete_foreign_snapshot_is_not_found(self, db_session):
        snapshot_id = await analyzed_snapshot(org_id=ORG_B)
        with pytest.raises(NotFoundError):
            await FindingsService(db_session).delete_snapshot(snapshot_id, ORG_A, "user-1")
