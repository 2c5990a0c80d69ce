"""
Findings Service

Tenant-scoped access to repository findings:
- Paginated, filterable listing (newest first)
- Human review with append-only history
- Summary statistics per snapshot
- Transactional cascade delete of a snapshot and everything it owns
"""

import logging

from sqlalchemy import select, func, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.tenant import get_owned_snapshot
from app.database import utcnow
from app.errors import ConflictError, NotFoundError, ValidationError
from app.models import (
    AnalysisRun,
    Finding,
    FindingReview,
    RemediationTask,
    RepositoryFile,
    RepositorySnapshot,
)
from app.models.enums import REVIEWABLE_STATUSES, FindingStatus, Severity, SnapshotStatus
from app.services.audit_service import AuditService
from app.services.task_service import TaskService

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class FindingsService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditService(session)

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_findings(
        self,
        snapshot_id: str,
        org_id: str,
        *,
        framework: str | None = None,
        status: str | None = None,
        severity: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Finding], int]:
        snapshot = await get_owned_snapshot(self.session, snapshot_id, org_id)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        page = max(page, 1)

        conditions = [
            Finding.snapshot_id == snapshot.id,
            Finding.organization_id == org_id,
        ]
        if framework:
            conditions.append(Finding.framework == framework)
        if status:
            conditions.append(Finding.status == status)
        if severity:
            conditions.append(Finding.severity == severity)

        total = (await self.session.execute(
            select(func.count(Finding.id)).where(and_(*conditions))
        )).scalar() or 0

        result = await self.session.execute(
            select(Finding)
            .where(and_(*conditions))
            .order_by(Finding.created_at.desc(), Finding.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars()), total

    async def get_finding(self, finding_id: str, org_id: str, snapshot_id: str | None = None) -> Finding:
        query = select(Finding).where(
            Finding.finding_id == finding_id,
            Finding.organization_id == org_id,
        )
        if snapshot_id is not None:
            query = query.join(RepositorySnapshot, RepositorySnapshot.id == Finding.snapshot_id).where(
                RepositorySnapshot.snapshot_id == snapshot_id,
            )
        finding = (await self.session.execute(query)).scalar_one_or_none()
        if finding is None:
            raise NotFoundError(f"Finding {finding_id} not found")
        return finding

    async def get_review_history(self, finding_id: str, org_id: str, snapshot_id: str | None = None) -> list[FindingReview]:
        finding = await self.get_finding(finding_id, org_id, snapshot_id)
        result = await self.session.execute(
            select(FindingReview)
            .where(FindingReview.finding_id == finding.id)
            .order_by(FindingReview.id.asc())
        )
        return list(result.scalars())

    async def get_findings_summary(self, snapshot_id: str, org_id: str) -> dict:
        snapshot = await get_owned_snapshot(self.session, snapshot_id, org_id)
        base = and_(Finding.snapshot_id == snapshot.id, Finding.organization_id == org_id)

        async def _grouped(column) -> dict[str, int]:
            rows = await self.session.execute(
                select(column, func.count(Finding.id)).where(base).group_by(column)
            )
            return {key: count for key, count in rows.all()}

        by_status = await _grouped(Finding.status)
        by_severity = await _grouped(Finding.severity)
        by_framework = await _grouped(Finding.framework)

        critical_open = (await self.session.execute(
            select(func.count(Finding.id)).where(
                base,
                Finding.status == FindingStatus.FAIL.value,
                Finding.severity == Severity.CRITICAL.value,
            )
        )).scalar() or 0

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_severity": by_severity,
            "by_framework": by_framework,
            "critical_open": critical_open,
        }

    # ── Review ───────────────────────────────────────────────────────────

    async def review_finding(
        self,
        finding_id: str,
        org_id: str,
        reviewer_id: str,
        status: str,
        notes: str | None = None,
        snapshot_id: str | None = None,
    ) -> Finding:
        """
        Record a human decision on a finding.

        Every review, including re-affirming the current status, stamps the
        reviewer and appends to the history. Evidence is never modified.
        Only a move into `fail` from another status derives a remediation
        task; re-affirming `fail` leaves the existing tasks as they are, even
        when all of them are completed or dismissed.
        """
        if status not in {s.value for s in REVIEWABLE_STATUSES}:
            raise ValidationError(
                f"Invalid review status: {status}. Valid: {sorted(s.value for s in REVIEWABLE_STATUSES)}",
            )

        finding = await self.get_finding(finding_id, org_id, snapshot_id)
        previous = finding.status
        now = utcnow()

        finding.status = status
        finding.reviewed_by = reviewer_id
        finding.reviewed_at = now
        self.session.add(FindingReview(
            finding_id=finding.id,
            previous_status=previous,
            new_status=status,
            reviewer=reviewer_id,
            notes=notes,
            created_at=now,
        ))
        await self.session.flush()

        if status == FindingStatus.FAIL.value and previous != FindingStatus.FAIL.value:
            snapshot = await self.session.get(RepositorySnapshot, finding.snapshot_id)
            await TaskService(self.session).derive_for_regression(snapshot, finding)

        await self.audit.log_finding_reviewed(finding.finding_id, org_id, reviewer_id, previous, status)
        return finding

    # ── Deletion ─────────────────────────────────────────────────────────

    async def delete_snapshot_findings(self, snapshot: RepositorySnapshot) -> int:
        """Delete reviews, tasks and findings of a snapshot in the caller's transaction."""
        finding_ids = select(Finding.id).where(Finding.snapshot_id == snapshot.id)
        await self.session.execute(delete(FindingReview).where(FindingReview.finding_id.in_(finding_ids)))
        await self.session.execute(delete(RemediationTask).where(RemediationTask.snapshot_id == snapshot.id))
        result = await self.session.execute(delete(Finding).where(Finding.snapshot_id == snapshot.id))
        return result.rowcount or 0

    async def delete_snapshot(self, snapshot_id: str, org_id: str, user_id: str) -> str | None:
        """
        Delete a snapshot and everything it owns.

        Returns the extraction directory; the caller removes it with
        `remove_extraction_dir` only after the transaction has committed.
        """
        snapshot = await get_owned_snapshot(self.session, snapshot_id, org_id)
        if snapshot.status == SnapshotStatus.ANALYZING.value:
            raise ConflictError(
                f"Snapshot {snapshot_id} is being analyzed and cannot be deleted",
                code="ANALYSIS_IN_PROGRESS",
            )

        findings_deleted = await self.delete_snapshot_findings(snapshot)
        await self.session.execute(delete(RepositoryFile).where(RepositoryFile.snapshot_id == snapshot.id))
        await self.session.execute(delete(AnalysisRun).where(AnalysisRun.snapshot_id == snapshot.id))
        extracted_path = snapshot.extracted_path
        await self.session.execute(delete(RepositorySnapshot).where(RepositorySnapshot.id == snapshot.id))

        await self.audit.log_snapshot_deleted(snapshot_id, org_id, user_id, findings_deleted)
        logger.info("Deleted snapshot %s (%d findings)", snapshot_id, findings_deleted)
        return extracted_path

