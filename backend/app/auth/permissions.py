"""
Permission constants: the exhaustive list of actions in the system.

Each permission follows the pattern `resource:action`. JWTs carry a role
claim, which maps to a set of these permissions via ROLE_PERMISSIONS.
"""

from enum import Enum


class Permission(str, Enum):
    # ── Repositories ──
    REPOSITORY_READ = "repository:read"
    REPOSITORY_UPLOAD = "repository:upload"       # upload + extract archives
    REPOSITORY_DELETE = "repository:delete"       # cascade delete of a snapshot

    # ── Analysis ──
    ANALYSIS_RUN = "analysis:run"                 # start a compliance scan

    # ── Findings ──
    FINDINGS_READ = "findings:read"
    FINDINGS_REVIEW = "findings:review"           # pass / fail / waive a finding

    # ── Tasks ──
    TASKS_READ = "tasks:read"
    TASKS_MANAGE = "tasks:manage"                 # status changes, assignment, due dates

    # ── Audit ──
    AUDIT_READ = "audit:read"
