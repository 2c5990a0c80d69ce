"""
RequestContext: the "who is asking, what can they do, which tenant" abstraction.

Every API request gets a RequestContext built from the verified JWT:
- user_id: who is making the request
- role: their role
- permissions: the resolved set of permissions for that role
- organization_id: the tenant the token was issued for (None = no tenant)

Repository data is only ever read through `organization_id`; it is never
taken from a query string or request body.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import HTTPException

from app.auth.permissions import Permission
from app.auth.roles import Role


@dataclass
class RequestContext:
    user_id: str = "anonymous"
    role: Role = Role.VIEWER
    permissions: set[Permission] = field(default_factory=set)
    organization_id: str | None = None

    def has_permission(self, perm: Permission) -> bool:
        return perm in self.permissions

    def require_permission(self, perm: Permission) -> None:
        """Raise 403 if the caller lacks the given permission."""
        if not self.has_permission(perm):
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient permissions: requires {perm.value}",
            )

    @property
    def actor(self) -> str:
        """Identity string for audit logging."""
        return f"{self.role.value}:{self.user_id}"
