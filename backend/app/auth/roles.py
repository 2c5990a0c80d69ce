"""
Role definitions: which bundles of permissions make up each role.

Roles are hierarchical: each higher role includes all permissions
of the roles below it, plus additional ones.

    VIEWER < ANALYST < REVIEWER < ADMIN

There is also a SYSTEM role for the analysis worker.
"""

from enum import Enum
from app.auth.permissions import Permission


class Role(str, Enum):
    VIEWER = "viewer"
    ANALYST = "analyst"
    REVIEWER = "reviewer"
    ADMIN = "admin"
    SYSTEM = "system"


# ── Viewer: read-only snapshots, findings, tasks ──
_VIEWER_PERMS: set[Permission] = {
    Permission.REPOSITORY_READ,
    Permission.FINDINGS_READ,
    Permission.TASKS_READ,
}

# ── Analyst: viewer + upload archives, start analyses ──
_ANALYST_PERMS: set[Permission] = {
    *_VIEWER_PERMS,
    Permission.REPOSITORY_UPLOAD,
    Permission.ANALYSIS_RUN,
}

# ── Reviewer: analyst + finding review, task management, audit ──
_REVIEWER_PERMS: set[Permission] = {
    *_ANALYST_PERMS,
    Permission.FINDINGS_REVIEW,
    Permission.TASKS_MANAGE,
    Permission.AUDIT_READ,
}

# ── Admin: everything ──
_ADMIN_PERMS: set[Permission] = {p for p in Permission}

# ── System: what the analysis worker needs ──
_SYSTEM_PERMS: set[Permission] = {
    Permission.REPOSITORY_READ,
    Permission.ANALYSIS_RUN,
    Permission.FINDINGS_READ,
    Permission.TASKS_READ,
}


ROLE_PERMISSIONS: dict[Role, set[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.ANALYST: _ANALYST_PERMS,
    Role.REVIEWER: _REVIEWER_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.SYSTEM: _SYSTEM_PERMS,
}
