"""
Audit Service

Immutable, hash-chained audit trail for repository compliance actions.
Every upload, analysis run, finding review, task change and deletion
creates an audit log entry tagged with the owning organization.

The chain is global: each entry hashes its own fields together with the
previous entry's hash, whichever organization that entry belongs to.
"""

import hashlib
import json
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AuditLog

# Entry fields covered by current_hash
HASHED_FIELDS = ("event_type", "actor", "action", "organization_id", "resource_type", "resource_id", "details")


def chain_hash(fields: dict, previous_hash: str | None) -> str:
    """SHA-256 over the hashed fields plus the previous entry's hash."""
    raw = json.dumps(
        {"content": {k: fields.get(k) for k in HASHED_FIELDS}, "previous_hash": previous_hash or ""},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(raw.encode()).hexdigest()


class AuditService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_latest_hash(self) -> str | None:
        result = await self.session.execute(
            select(AuditLog.current_hash).order_by(AuditLog.id.desc()).limit(1)
        )
        return result.scalar()

    async def log_event(
        self,
        event_type: str,
        actor: str,
        action: str,
        organization_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict | None = None,
    ) -> AuditLog:
        """
        Append an entry to the chain in the caller's transaction.

        Args:
            event_type: e.g. "snapshot_uploaded", "analysis_started", "finding_reviewed"
            actor: user id, or "worker" for the analysis executor
            action: Human-readable description
            organization_id: Tenant owning the affected resource
            resource_type: "snapshot", "analysis_run", "finding", "task"
            resource_id: Public id of the affected resource
            details: Structured event details
        """
        fields = {
            "event_type": event_type,
            "actor": actor,
            "action": action,
            "organization_id": organization_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "details": details or {},
        }
        previous_hash = await self._get_latest_hash()
        entry = AuditLog(
            event_id=str(uuid4()),
            previous_hash=previous_hash,
            current_hash=chain_hash(fields, previous_hash),
            **fields,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def log_snapshot_uploaded(
        self, snapshot_id: str, organization_id: str, actor: str, file_name: str, size: int, file_hash: str,
    ) -> AuditLog:
        return await self.log_event(
            event_type="snapshot_uploaded",
            actor=actor,
            action=f"Uploaded repository archive {file_name} ({size} bytes)",
            organization_id=organization_id,
            resource_type="snapshot",
            resource_id=snapshot_id,
            details={"file_name": file_name, "size": size, "file_hash": file_hash},
        )

    async def log_analysis_started(
        self, run_id: str, snapshot_id: str, organization_id: str, actor: str, frameworks: list[str], depth: str,
    ) -> AuditLog:
        return await self.log_event(
            event_type="analysis_started",
            actor=actor,
            action=f"Analysis {run_id} queued for {snapshot_id} ({', '.join(frameworks)}, {depth})",
            organization_id=organization_id,
            resource_type="analysis_run",
            resource_id=run_id,
            details={"snapshot_id": snapshot_id, "frameworks": frameworks, "depth": depth},
        )

    async def log_analysis_finished(
        self, run_id: str, organization_id: str, status: str, details: dict,
    ) -> AuditLog:
        return await self.log_event(
            event_type="analysis_finished",
            actor="worker",
            action=f"Analysis {run_id} {status}",
            organization_id=organization_id,
            resource_type="analysis_run",
            resource_id=run_id,
            details={"status": status, **details},
        )

    async def log_finding_reviewed(
        self, finding_id: str, organization_id: str, actor: str, old_status: str, new_status: str,
    ) -> AuditLog:
        return await self.log_event(
            event_type="finding_reviewed",
            actor=actor,
            action=f"Finding {finding_id} reviewed: {old_status} → {new_status}",
            organization_id=organization_id,
            resource_type="finding",
            resource_id=finding_id,
            details={"old_status": old_status, "new_status": new_status},
        )

    async def log_task_updated(
        self, task_id: str, organization_id: str, actor: str, changes: dict,
    ) -> AuditLog:
        return await self.log_event(
            event_type="task_updated",
            actor=actor,
            action=f"Task {task_id} updated",
            organization_id=organization_id,
            resource_type="task",
            resource_id=task_id,
            details=changes,
        )

    async def log_snapshot_deleted(
        self, snapshot_id: str, organization_id: str, actor: str, findings_deleted: int,
    ) -> AuditLog:
        return await self.log_event(
            event_type="snapshot_deleted",
            actor=actor,
            action=f"Repository snapshot {snapshot_id} deleted ({findings_deleted} findings)",
            organization_id=organization_id,
            resource_type="snapshot",
            resource_id=snapshot_id,
            details={"findings_deleted": findings_deleted},
        )

    async def verify_chain_integrity(self) -> dict:
        """Walk the whole chain oldest first and recompute every link."""
        result = await self.session.execute(select(AuditLog).order_by(AuditLog.id.asc()))

        previous_hash = None
        checked = 0
        for entry in result.scalars():
            checked += 1
            if entry.previous_hash != previous_hash:
                reason = "previous_hash mismatch"
            elif entry.current_hash != chain_hash(
                {name: getattr(entry, name) for name in HASHED_FIELDS}, entry.previous_hash,
            ):
                reason = "current_hash mismatch (data tampered)"
            else:
                previous_hash = entry.current_hash
                continue
            return {"valid": False, "entries_checked": checked, "first_invalid": entry.event_id, "reason": reason}

        return {"valid": True, "entries_checked": checked, "first_invalid": None}

    async def get_entries(
        self,
        organization_id: str,
        event_type: str | None = None,
        resource_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditLog]:
        """An organization's audit entries, newest first."""
        query = select(AuditLog).where(AuditLog.organization_id == organization_id)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        if resource_id:
            query = query.where(AuditLog.resource_id == resource_id)

        result = await self.session.execute(query.order_by(AuditLog.id.desc()).limit(limit))
        return list(result.scalars())
