"""
Tagged enumerations shared by models, services and API schemas.

Stored as plain strings in the database; the Enum classes are the single
source of the allowed values.
"""

from enum import Enum


class SnapshotStatus(str, Enum):
    UPLOADING = "uploading"
    INDEXED = "indexed"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    ERROR = "error"


class PhaseStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_RUN_STATUSES = (PhaseStatus.QUEUED.value, PhaseStatus.RUNNING.value)


class AnalysisDepth(str, Enum):
    STRUCTURE_ONLY = "structure_only"
    SECURITY_RELEVANT = "security_relevant"
    FULL = "full"


class Framework(str, Enum):
    SOC2 = "SOC2"
    ISO27001 = "ISO27001"
    NIST80053 = "NIST80053"
    FEDRAMP = "FedRAMP"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_RANK = {
    Severity.CRITICAL.value: 4,
    Severity.HIGH.value: 3,
    Severity.MEDIUM.value: 2,
    Severity.LOW.value: 1,
}


class FindingStatus(str, Enum):
    FAIL = "fail"
    PASS = "pass"
    WAIVED = "waived"
    NEEDS_REVIEW = "needs_review"  # AI judgment unavailable


REVIEWABLE_STATUSES = {FindingStatus.FAIL, FindingStatus.PASS, FindingStatus.WAIVED}


class TaskCategory(str, Enum):
    CODE_CHANGE = "code_change"
    MISSING_EVIDENCE = "missing_evidence"
    POLICY_NEEDED = "policy_needed"
    PROCEDURE_NEEDED = "procedure_needed"


class TaskStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISMISSED = "dismissed"


ACTIVE_TASK_STATUSES = (TaskStatus.OPEN.value, TaskStatus.IN_PROGRESS.value)


class FileCategory(str, Enum):
    SOURCE = "source"
    CONFIG = "config"
    DOCS = "docs"
    CI_CD = "ci_cd"
    IAC = "iac"
    TEST = "test"
    OTHER = "other"
