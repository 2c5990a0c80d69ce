"""
Audit API Router: the organization's audit trail and hash-chain integrity.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, require
from app.auth.permissions import Permission
from app.auth.context import RequestContext
from app.services.audit_service import AuditService
from app.schemas.schemas import AuditListResponse, AuditEntry, IntegrityCheckResponse

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("", response_model=AuditListResponse)
async def list_audit_entries(
    event_type: str | None = Query(None, description="Filter by event type"),
    resource_id: str | None = Query(None, description="Filter by resource ID"),
    limit: int = Query(50, ge=1, le=200),
    ctx: RequestContext = Depends(require(Permission.AUDIT_READ)),
    db: AsyncSession = Depends(get_db),
) -> AuditListResponse:
    """Audit entries of the caller's organization, newest first."""
    entries = await AuditService(db).get_entries(
        ctx.organization_id,
        event_type=event_type,
        resource_id=resource_id,
        limit=limit,
    )
    items = [AuditEntry.model_validate(entry) for entry in entries]
    return AuditListResponse(items=items, total=len(items))


@router.get("/integrity", response_model=IntegrityCheckResponse)
async def check_integrity(
    ctx: RequestContext = Depends(require(Permission.AUDIT_READ)),
    db: AsyncSession = Depends(get_db),
) -> IntegrityCheckResponse:
    """Verify the hash-chain integrity of the entire audit trail."""
    result = await AuditService(db).verify_chain_integrity()
    return IntegrityCheckResponse(**result)
