from app.auth.permissions import Permission
from app.auth.roles import Role, ROLE_PERMISSIONS
from app.auth.context import RequestContext
from app.auth.tenant import require_org_context, ensure_same_organization

__all__ = [
    "Permission", "Role", "ROLE_PERMISSIONS", "RequestContext",
    "require_org_context", "ensure_same_organization",
]
