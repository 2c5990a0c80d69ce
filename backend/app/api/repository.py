"""
Repository API: archive upload, analysis runs, findings review and
remediation tasks.

Every route is scoped to the caller's organization (the token's org_id
claim). Snapshots, findings and tasks of other organizations are reported
as not found.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_orchestrator, require
from app.auth.context import RequestContext
from app.auth.permissions import Permission
from app.auth.tenant import ensure_same_organization, get_owned_snapshot
from app.config import settings
from app.errors import ValidationError
from app.middleware.metrics import repository_uploads_total
from app.models import Finding, RemediationTask, RepositorySnapshot
from app.services.analysis_orchestrator import AnalysisOrchestrator
from app.services.findings_service import FindingsService
from app.services.ingestion import IngestionService, remove_extraction_dir
from app.services.job_queue import dispatch_analysis
from app.services.task_service import TASK_STATUSES, TaskService
from app.schemas.schemas import (
    AnalysisRunSchema,
    AnalysisStatusResponse,
    AnalyzeRequest,
    AnalyzeResponse,
    FindingListResponse,
    FindingResponse,
    FindingReviewListResponse,
    FindingReviewRequest,
    FindingReviewSchema,
    FindingSchema,
    FindingsSummary,
    MessageResponse,
    SnapshotListResponse,
    SnapshotResponse,
    SnapshotSchema,
    TaskListResponse,
    TaskResponse,
    TaskSchema,
    TaskUpdateRequest,
    UploadResponse,
)

router = APIRouter(prefix="/api/repository", tags=["repository"])


# ── Helpers ──────────────────────────────────────────────────────────────────

async def _task_schemas(db: AsyncSession, tasks: list[RemediationTask]) -> list[TaskSchema]:
    """Serialize tasks, translating internal finding keys to public finding ids."""
    internal_ids = {fid for t in tasks for fid in (t.finding_ids or [])}
    public_ids: dict[int, str] = {}
    if internal_ids:
        rows = await db.execute(
            select(Finding.id, Finding.finding_id).where(Finding.id.in_(internal_ids))
        )
        public_ids = dict(rows.all())

    return [
        TaskSchema(
            task_id=t.task_id,
            framework=t.framework,
            control_id=t.control_id,
            title=t.title,
            description=t.description,
            category=t.category,
            priority=t.priority,
            status=t.status,
            finding_ids=[public_ids[fid] for fid in (t.finding_ids or []) if fid in public_ids],
            assigned_to_role=t.assigned_to_role,
            due_date=t.due_date,
            completed_by=t.completed_by,
            completed_at=t.completed_at,
            created_at=t.created_at,
            updated_at=t.updated_at,
        )
        for t in tasks
    ]


# ── Snapshots ────────────────────────────────────────────────────────────────

@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_repository(
    file: UploadFile = File(...),
    organization_id: str | None = Form(None, alias="organizationId"),
    company_profile_id: str = Form(..., alias="companyProfileId"),
    name: str | None = Form(None),
    ctx: RequestContext = Depends(require(Permission.REPOSITORY_UPLOAD)),
    db: AsyncSession = Depends(get_db),
) -> UploadResponse:
    """Upload a zip archive, extract it safely and index its files."""
    ensure_same_organization(ctx.organization_id, organization_id)

    # read one byte past the limit so oversize archives are detectable
    data = await file.read(settings.max_upload_bytes + 1)
    filename = file.filename or ""
    try:
        result = await IngestionService(db).upload_and_extract(
            data,
            filename,
            ctx.organization_id,
            company_profile_id,
            ctx.user_id,
            name or filename,
        )
    except ValidationError:
        repository_uploads_total.labels(outcome="rejected").inc()
        raise
    except Exception:
        repository_uploads_total.labels(outcome="error").inc()
        raise
    repository_uploads_total.labels(outcome="success").inc()

    return UploadResponse(
        snapshot_id=result.snapshot_id,
        extracted_path=result.extracted_path,
        file_count=result.file_count,
        manifest_hash=result.manifest_hash,
        technologies=result.technologies,
        duplicate_of=result.duplicate_of,
    )


@router.get("", response_model=SnapshotListResponse)
async def list_snapshots(
    ctx: RequestContext = Depends(require(Permission.REPOSITORY_READ)),
    db: AsyncSession = Depends(get_db),
) -> SnapshotListResponse:
    result = await db.execute(
        select(RepositorySnapshot)
        .where(RepositorySnapshot.organization_id == ctx.organization_id)
        .order_by(RepositorySnapshot.created_at.desc(), RepositorySnapshot.id.desc())
    )
    snapshots = [SnapshotSchema.model_validate(s) for s in result.scalars()]
    return SnapshotListResponse(snapshots=snapshots, total=len(snapshots))


@router.get("/{snapshot_id}", response_model=SnapshotResponse)
async def get_snapshot(
    snapshot_id: str,
    ctx: RequestContext = Depends(require(Permission.REPOSITORY_READ)),
    db: AsyncSession = Depends(get_db),
) -> SnapshotResponse:
    snapshot = await get_owned_snapshot(db, snapshot_id, ctx.organization_id)
    return SnapshotResponse(snapshot=SnapshotSchema.model_validate(snapshot))


@router.delete("/{snapshot_id}", response_model=MessageResponse)
async def delete_snapshot(
    snapshot_id: str,
    ctx: RequestContext = Depends(require(Permission.REPOSITORY_DELETE)),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """Delete a snapshot with its files, runs, findings, reviews and tasks."""
    extracted_path = await FindingsService(db).delete_snapshot(snapshot_id, ctx.organization_id, ctx.user_id)
    await db.commit()
    # the directory only goes once the rows are gone for good
    await remove_extraction_dir(extracted_path)
    return MessageResponse(message=f"Snapshot {snapshot_id} deleted")


# ── Analysis ─────────────────────────────────────────────────────────────────

@router.post("/{snapshot_id}/analyze", response_model=AnalyzeResponse, status_code=202)
async def start_analysis(
    snapshot_id: str,
    body: AnalyzeRequest,
    background_tasks: BackgroundTasks,
    ctx: RequestContext = Depends(require(Permission.ANALYSIS_RUN)),
    db: AsyncSession = Depends(get_db),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> AnalyzeResponse:
    """Queue an analysis run; progress is polled via GET /analysis."""
    run = await orchestrator.start_analysis(
        db, snapshot_id, body.frameworks, body.depth, ctx.organization_id, ctx.user_id,
    )
    await dispatch_analysis(background_tasks, orchestrator, run.run_id)
    return AnalyzeResponse(run_id=run.run_id, status=run.phase_status)


@router.get("/{snapshot_id}/analysis", response_model=AnalysisStatusResponse)
async def get_analysis_status(
    snapshot_id: str,
    ctx: RequestContext = Depends(require(Permission.REPOSITORY_READ)),
    db: AsyncSession = Depends(get_db),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> AnalysisStatusResponse:
    snapshot, run = await orchestrator.get_latest_run(db, snapshot_id, ctx.organization_id)
    return AnalysisStatusResponse(
        snapshot=SnapshotSchema.model_validate(snapshot),
        analysis_run=AnalysisRunSchema.model_validate(run) if run else None,
    )


# ── Findings ─────────────────────────────────────────────────────────────────

@router.get("/{snapshot_id}/findings", response_model=FindingListResponse)
async def list_findings(
    snapshot_id: str,
    framework: str | None = Query(None),
    status: str | None = Query(None),
    severity: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    ctx: RequestContext = Depends(require(Permission.FINDINGS_READ)),
    db: AsyncSession = Depends(get_db),
) -> FindingListResponse:
    service = FindingsService(db)
    findings, total = await service.get_findings(
        snapshot_id, ctx.organization_id,
        framework=framework, status=status, severity=severity, page=page, limit=limit,
    )
    summary = await service.get_findings_summary(snapshot_id, ctx.organization_id)
    return FindingListResponse(
        findings=[FindingSchema.model_validate(f) for f in findings],
        total=total,
        page=page,
        limit=limit,
        summary=FindingsSummary(**summary),
    )


@router.patch("/{snapshot_id}/findings/{finding_id}", response_model=FindingResponse)
async def review_finding(
    snapshot_id: str,
    finding_id: str,
    body: FindingReviewRequest,
    ctx: RequestContext = Depends(require(Permission.FINDINGS_REVIEW)),
    db: AsyncSession = Depends(get_db),
) -> FindingResponse:
    finding = await FindingsService(db).review_finding(
        finding_id, ctx.organization_id, ctx.user_id, body.status, body.notes, snapshot_id=snapshot_id,
    )
    await db.refresh(finding)
    return FindingResponse(finding=FindingSchema.model_validate(finding))


@router.get("/{snapshot_id}/findings/{finding_id}/reviews", response_model=FindingReviewListResponse)
async def get_finding_reviews(
    snapshot_id: str,
    finding_id: str,
    ctx: RequestContext = Depends(require(Permission.FINDINGS_READ)),
    db: AsyncSession = Depends(get_db),
) -> FindingReviewListResponse:
    reviews = await FindingsService(db).get_review_history(finding_id, ctx.organization_id, snapshot_id)
    return FindingReviewListResponse(
        finding_id=finding_id,
        reviews=[FindingReviewSchema.model_validate(r) for r in reviews],
    )


# ── Tasks ────────────────────────────────────────────────────────────────────

@router.get("/{snapshot_id}/tasks", response_model=TaskListResponse)
async def list_tasks(
    snapshot_id: str,
    status: str | None = Query(None),
    ctx: RequestContext = Depends(require(Permission.TASKS_READ)),
    db: AsyncSession = Depends(get_db),
) -> TaskListResponse:
    if status and status not in TASK_STATUSES:
        raise ValidationError(f"Invalid task status: {status}. Valid: {TASK_STATUSES}")
    tasks, by_status = await TaskService(db).list_tasks(snapshot_id, ctx.organization_id, status)
    serialized = {t.task_id: s for t, s in zip(tasks, await _task_schemas(db, tasks))}
    return TaskListResponse(
        tasks=list(serialized.values()),
        by_status={key: [serialized[t.task_id] for t in group] for key, group in by_status.items()},
    )


@router.patch("/{snapshot_id}/tasks/{task_id}", response_model=TaskResponse)
async def update_task(
    snapshot_id: str,
    task_id: str,
    body: TaskUpdateRequest,
    ctx: RequestContext = Depends(require(Permission.TASKS_MANAGE)),
    db: AsyncSession = Depends(get_db),
) -> TaskResponse:
    if body.status is not None and body.status not in TASK_STATUSES:
        raise ValidationError(f"Invalid task status: {body.status}. Valid: {TASK_STATUSES}")
    task = await TaskService(db).update_task(
        snapshot_id, task_id, ctx.organization_id, ctx.user_id,
        status=body.status,
        assigned_to_role=body.assigned_to_role,
        due_date=body.due_date,
    )
    await db.refresh(task)
    return TaskResponse(task=(await _task_schemas(db, [task]))[0])
