"""
Pydantic schemas for API request/response models.

JSON keys are camelCase on the wire; Python attributes stay snake_case.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ── Snapshots ──

class SnapshotSchema(CamelModel):
    snapshot_id: str
    organization_id: str
    company_profile_id: str
    name: str
    uploaded_by: str
    uploaded_file_name: str
    uploaded_file_hash: str
    status: str
    extracted_path: str | None = None
    manifest_hash: str | None = None
    file_count: int = 0
    total_size: int = 0
    technologies: list[str] = []
    analysis_phase: str | None = None
    error_message: str | None = None
    analysis_started_at: datetime | None = None
    analysis_completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SnapshotListResponse(CamelModel):
    snapshots: list[SnapshotSchema]
    total: int


class SnapshotResponse(CamelModel):
    snapshot: SnapshotSchema


class UploadResponse(CamelModel):
    snapshot_id: str
    extracted_path: str
    file_count: int
    manifest_hash: str
    technologies: list[str]
    duplicate_of: str | None = None


# ── Analysis ──

class AnalyzeRequest(CamelModel):
    frameworks: list[str] = Field(..., min_length=1)
    depth: str = "security_relevant"


class AnalyzeResponse(CamelModel):
    run_id: str
    status: str


class AnalysisRunSchema(CamelModel):
    run_id: str
    frameworks: list[str]
    depth: str
    phase: str | None = None
    phase_status: str
    progress: int
    error: str | None = None
    metrics: dict | None = None
    requested_by: str
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class AnalysisStatusResponse(CamelModel):
    snapshot: SnapshotSchema
    analysis_run: AnalysisRunSchema | None = None


# ── Findings ──

class FindingSchema(CamelModel):
    finding_id: str
    framework: str
    control_id: str
    rule_id: str
    phase: str
    title: str
    severity: str
    status: str
    evidence: dict = {}
    recommendation: str | None = None
    ai_model: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FindingsSummary(CamelModel):
    total: int = 0
    by_status: dict[str, int] = {}
    by_severity: dict[str, int] = {}
    by_framework: dict[str, int] = {}
    critical_open: int = 0


class FindingListResponse(CamelModel):
    findings: list[FindingSchema]
    total: int
    page: int
    limit: int
    summary: FindingsSummary


class FindingReviewRequest(CamelModel):
    status: str
    notes: str | None = Field(None, max_length=5000)


class FindingResponse(CamelModel):
    finding: FindingSchema


class FindingReviewSchema(CamelModel):
    previous_status: str
    new_status: str
    reviewer: str
    notes: str | None = None
    created_at: datetime | None = None


class FindingReviewListResponse(CamelModel):
    finding_id: str
    reviews: list[FindingReviewSchema]


# ── Tasks ──

class TaskSchema(CamelModel):
    task_id: str
    framework: str
    control_id: str
    title: str
    description: str
    category: str
    priority: str
    status: str
    finding_ids: list[str] = []
    assigned_to_role: str | None = None
    due_date: datetime | None = None
    completed_by: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TaskListResponse(CamelModel):
    tasks: list[TaskSchema]
    by_status: dict[str, list[TaskSchema]]


class TaskUpdateRequest(CamelModel):
    status: str | None = None
    assigned_to_role: str | None = Field(None, max_length=50)
    due_date: datetime | None = None


class TaskResponse(CamelModel):
    task: TaskSchema


class MessageResponse(CamelModel):
    message: str


# ── Audit ──

class AuditEntry(CamelModel):
    event_id: str
    event_type: str
    actor: str
    action: str
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict = {}
    previous_hash: str | None = None
    current_hash: str
    created_at: datetime | None = None


class AuditListResponse(CamelModel):
    items: list[AuditEntry]
    total: int


class IntegrityCheckResponse(CamelModel):
    valid: bool
    entries_checked: int
    first_invalid: str | None = None
    reason: str | None = None
