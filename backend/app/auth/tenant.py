"""
Tenant guard: organization scoping for repository data.

Every repository entity is reachable to an organization id, either
directly (snapshot, finding) or through its snapshot. Lookups filter on
that id, and a row owned by another organization is reported exactly
like a row that does not exist.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.context import RequestContext
from app.errors import AuthorizationError, NotFoundError
from app.models import RepositorySnapshot


def require_org_context(ctx: RequestContext) -> str:
    """Return the caller's organization id or raise 403 ORG_CONTEXT_REQUIRED."""
    if not ctx.organization_id:
        raise AuthorizationError(
            "Organization context is required",
            code="ORG_CONTEXT_REQUIRED",
        )
    return ctx.organization_id


def ensure_same_organization(ctx_org_id: str, requested_org_id: str | None) -> None:
    """Reject writes that name an organization other than the caller's."""
    if requested_org_id and requested_org_id != ctx_org_id:
        raise AuthorizationError(
            "Cannot act on behalf of another organization",
            code="CROSS_TENANT_ACCESS",
        )


async def get_owned_snapshot(session: AsyncSession, snapshot_id: str, org_id: str) -> RepositorySnapshot:
    """Load a snapshot by public id within the caller's organization, else 404."""
    result = await session.execute(
        select(RepositorySnapshot).where(
            RepositorySnapshot.snapshot_id == snapshot_id,
            RepositorySnapshot.organization_id == org_id,
        )
    )
    snapshot = result.scalar_one_or_none()
    if snapshot is None:
        raise NotFoundError(f"Repository snapshot {snapshot_id} not found")
    return snapshot
