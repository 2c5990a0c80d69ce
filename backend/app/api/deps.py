"""
API Dependencies: DB session, auth context, permission guards, services.

`get_request_context`:
  1. Extracts the Bearer token from the Authorization header
  2. Decodes and validates the JWT
  3. Resolves role → permissions via ROLE_PERMISSIONS
  4. Carries the token's `org_id` claim as the tenant

Auth-exempt paths (no token required):
  /api/health, /metrics
"""

import logging
from typing import AsyncGenerator

from fastapi import Depends, Request, HTTPException
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session
from app.auth.permissions import Permission
from app.auth.roles import Role, ROLE_PERMISSIONS
from app.auth.context import RequestContext
from app.auth.jwt import decode_access_token
from app.auth.tenant import require_org_context
from app.services.ai_judge import AIJudgmentAdapter
from app.services.analysis_orchestrator import AnalysisOrchestrator

logger = logging.getLogger(__name__)

# Paths that do not require authentication
AUTH_EXEMPT_PATHS = {
    "/api/health",
    "/metrics",
}


# ── Database session ─────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session per request, commit on success, rollback on error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker:
    """Session factory for work that outlives the request (analysis runs)."""
    return async_session


# ── Request context (JWT authentication) ──────────────────────────────────────

async def get_request_context(request: Request) -> RequestContext:
    path = request.url.path.rstrip("/")

    if path in AUTH_EXEMPT_PATHS:
        return RequestContext(
            user_id="anonymous",
            role=Role.VIEWER,
            permissions=ROLE_PERMISSIONS[Role.VIEWER],
        )

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    token = auth_header[7:]
    try:
        claims = decode_access_token(token)
    except JWTError as e:
        logger.debug("JWT decode failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    try:
        role = Role(claims.get("role", "viewer"))
    except ValueError:
        role = Role.VIEWER

    return RequestContext(
        user_id=claims.get("sub", "anonymous"),
        role=role,
        permissions=ROLE_PERMISSIONS.get(role, set()),
        organization_id=claims.get("org_id") or None,
    )


# ── Permission guards ────────────────────────────────────────────────────────

def require(*perms: Permission):
    """
    FastAPI dependency that checks the caller has ALL listed permissions
    and belongs to an organization.

    Usage:
        @router.get("/{snapshot_id}/findings")
        async def list_findings(ctx: RequestContext = Depends(require(Permission.FINDINGS_READ))):
            ...
    """
    async def _check(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        require_org_context(ctx)
        for p in perms:
            ctx.require_permission(p)
        return ctx
    return _check


# ── Services ─────────────────────────────────────────────────────────────────

def get_ai_adapter(request: Request) -> AIJudgmentAdapter | None:
    return getattr(request.app.state, "ai_adapter", None)


def get_orchestrator(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    ai_adapter: AIJudgmentAdapter | None = Depends(get_ai_adapter),
) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(session_factory, ai_adapter)
