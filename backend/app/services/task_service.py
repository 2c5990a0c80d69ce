"""
Task Service

Derives remediation tasks from findings and manages their lifecycle:
- Aggregation by (framework, control, category) into one active task
- Priority from the highest finding severity, due date from priority
- Status transitions with validation
- Kanban-style listing grouped by status
"""

import logging
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.tenant import get_owned_snapshot
from app.database import utcnow
from app.errors import NotFoundError, ValidationError
from app.models import Finding, RemediationTask, RepositorySnapshot
from app.models.enums import (
    ACTIVE_TASK_STATUSES,
    SEVERITY_RANK,
    FindingStatus,
    TaskCategory,
    TaskStatus,
)
from app.services.audit_service import AuditService
from app.services.rule_engine import get_rule

logger = logging.getLogger(__name__)

# Priority → days until due
_DUE_DAYS = {
    "critical": 7,
    "high": 14,
    "medium": 30,
    "low": 60,
}

# Valid status transitions
VALID_TRANSITIONS: dict[str, set[str]] = {
    "open": {"in_progress", "dismissed"},
    "in_progress": {"completed", "dismissed", "open"},
    "completed": set(),  # terminal
    "dismissed": set(),  # terminal
}

TASK_STATUSES = [s.value for s in TaskStatus]


def due_date_for(priority: str, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(days=_DUE_DAYS.get(priority, 30))


def remediation_category(finding: Finding) -> str:
    if finding.status == FindingStatus.NEEDS_REVIEW.value:
        return TaskCategory.MISSING_EVIDENCE.value
    rule = get_rule(finding.rule_id)
    return rule.remediation_category if rule else TaskCategory.CODE_CHANGE.value


def _higher(a: str, b: str) -> str:
    return a if SEVERITY_RANK.get(a, 0) >= SEVERITY_RANK.get(b, 0) else b


class TaskService:
    """Derives and manages remediation tasks for a snapshot."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditService(session)

    # ── Derivation ───────────────────────────────────────────────────────

    async def derive_tasks(self, snapshot: RepositorySnapshot, findings: list[Finding]) -> list[RemediationTask]:
        """
        Attach actionable findings (fail / needs_review) to tasks.

        Findings sharing (framework, control_id, category) land on the same
        active task; a new open task is created when none exists. Runs in
        the caller's transaction.
        """
        actionable = [
            f for f in findings
            if f.status in (FindingStatus.FAIL.value, FindingStatus.NEEDS_REVIEW.value)
        ]
        if not actionable:
            return []

        result = await self.session.execute(
            select(RemediationTask).where(
                RemediationTask.snapshot_id == snapshot.id,
                RemediationTask.status.in_(ACTIVE_TASK_STATUSES),
            )
        )
        active: dict[tuple[str, str, str], RemediationTask] = {
            (t.framework, t.control_id, t.category): t for t in result.scalars()
        }

        touched: dict[int, RemediationTask] = {}
        now = utcnow()
        for finding in actionable:
            category = remediation_category(finding)
            key = (finding.framework, finding.control_id, category)
            task = active.get(key)

            if task is None:
                task = RemediationTask(
                    task_id=f"TASK-{uuid4().hex[:12].upper()}",
                    snapshot_id=snapshot.id,
                    finding_id=finding.id,
                    finding_ids=[finding.id],
                    framework=finding.framework,
                    control_id=finding.control_id,
                    title=self._title(finding, category),
                    description=self._description(finding, category),
                    category=category,
                    priority=finding.severity,
                    status=TaskStatus.OPEN.value,
                    due_date=due_date_for(finding.severity, now),
                )
                self.session.add(task)
                active[key] = task
            elif finding.id not in (task.finding_ids or []):
                # reassign so the JSON column is flagged dirty
                task.finding_ids = [*(task.finding_ids or []), finding.id]
                new_priority = _higher(task.priority, finding.severity)
                if new_priority != task.priority:
                    task.priority = new_priority
                    task.due_date = min(task.due_date or now, due_date_for(new_priority, now))

            touched[id(task)] = task

        await self.session.flush()
        logger.info("Derived %d tasks for snapshot %s", len(touched), snapshot.snapshot_id)
        return list(touched.values())

    async def derive_for_regression(self, snapshot: RepositorySnapshot, finding: Finding) -> RemediationTask | None:
        """A finding moved to fail: open a task unless an active one already covers it."""
        result = await self.session.execute(
            select(RemediationTask).where(
                RemediationTask.snapshot_id == snapshot.id,
                RemediationTask.status.in_(ACTIVE_TASK_STATUSES),
            )
        )
        for task in result.scalars():
            if finding.id in (task.finding_ids or []):
                return None
        tasks = await self.derive_tasks(snapshot, [finding])
        return tasks[0] if tasks else None

    @staticmethod
    def _title(finding: Finding, category: str) -> str:
        if category == TaskCategory.MISSING_EVIDENCE.value:
            return f"Provide evidence for {finding.framework} {finding.control_id}: {finding.title}"[:300]
        return f"Remediate {finding.framework} {finding.control_id}: {finding.title}"[:300]

    @staticmethod
    def _description(finding: Finding, category: str) -> str:
        if category == TaskCategory.MISSING_EVIDENCE.value:
            return (
                f"Automated analysis could not decide rule {finding.rule_id}. "
                "Review the code manually and record the outcome on the finding."
            )
        return finding.recommendation or f"Resolve the failing check {finding.rule_id}."

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def get_task(self, snapshot_id: str, task_id: str, org_id: str) -> RemediationTask:
        snapshot = await get_owned_snapshot(self.session, snapshot_id, org_id)
        result = await self.session.execute(
            select(RemediationTask).where(
                RemediationTask.task_id == task_id,
                RemediationTask.snapshot_id == snapshot.id,
            )
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def update_task(
        self,
        snapshot_id: str,
        task_id: str,
        org_id: str,
        user_id: str,
        *,
        status: str | None = None,
        assigned_to_role: str | None = None,
        due_date: datetime | None = None,
    ) -> RemediationTask:
        """
        Update a task with validated transitions.

        Allowed transitions:
            open -> in_progress | dismissed
            in_progress -> completed | dismissed | open
            completed, dismissed -> (terminal)
        """
        task = await self.get_task(snapshot_id, task_id, org_id)
        changes: dict = {}

        if status is not None and status != task.status:
            allowed = VALID_TRANSITIONS.get(task.status, set())
            if status not in allowed:
                raise ValidationError(
                    f"Invalid transition: {task.status} -> {status}. "
                    f"Allowed: {sorted(allowed) if allowed else 'none (terminal)'}",
                    code="INVALID_TRANSITION",
                )
            changes["status"] = {"old": task.status, "new": status}
            task.status = status
            if status == TaskStatus.COMPLETED.value:
                task.completed_by = user_id
                task.completed_at = utcnow()

        if assigned_to_role is not None:
            changes["assigned_to_role"] = {"old": task.assigned_to_role, "new": assigned_to_role}
            task.assigned_to_role = assigned_to_role

        if due_date is not None:
            if due_date.tzinfo is not None:
                due_date = due_date.replace(tzinfo=None) - (due_date.utcoffset() or timedelta(0))
            changes["due_date"] = {
                "old": task.due_date.isoformat() if task.due_date else None,
                "new": due_date.isoformat(),
            }
            task.due_date = due_date

        if changes:
            await self.audit.log_task_updated(task.task_id, org_id, user_id, changes)
        await self.session.flush()
        return task

    async def list_tasks(
        self, snapshot_id: str, org_id: str, status: str | None = None,
    ) -> tuple[list[RemediationTask], dict[str, list[RemediationTask]]]:
        """Tasks for a snapshot plus the same tasks grouped by status (board columns)."""
        snapshot = await get_owned_snapshot(self.session, snapshot_id, org_id)
        query = select(RemediationTask).where(RemediationTask.snapshot_id == snapshot.id)
        if status:
            query = query.where(RemediationTask.status == status)
        query = query.order_by(RemediationTask.due_date.asc(), RemediationTask.id.asc())

        result = await self.session.execute(query)
        tasks = list(result.scalars())

        by_status: dict[str, list[RemediationTask]] = {s: [] for s in TASK_STATUSES}
        for task in tasks:
            by_status.setdefault(task.status, []).append(task)
        return tasks, by_status
