"""
Analysis Orchestrator

Drives one AnalysisRun through its phases:

    AnalysisRun:  queued → running → completed | failed
    Snapshot:     indexed → analyzing → analyzed | error

`start_analysis` runs inside the request: it claims the snapshot with a
compare-and-swap on its status (the only guard for "one active run per
snapshot"), inserts the queued run and commits. The run itself executes
out-of-band via `execute_run`, in the API process (BackgroundTasks) or in
the Redis worker.

Each phase evaluates its rules, then persists findings, derives tasks and
advances progress in one transaction. Every write to the run row is
conditioned on the run still being queued/running, so a stray second
executor can never overwrite a terminal state.
"""

import asyncio
import logging
import time
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.tenant import get_owned_snapshot
from app.config import Settings, settings as default_settings
from app.database import utcnow
from app.errors import ConflictError, PipelineError, ValidationError
from app.middleware.metrics import analysis_runs_total, analysis_duration_seconds, findings_generated_total
from app.middleware.request_context import bind_run_id
from app.models import AnalysisRun, Finding, RepositoryFile, RepositorySnapshot
from app.models.enums import (
    ACTIVE_RUN_STATUSES,
    AnalysisDepth,
    Framework,
    PhaseStatus,
    SnapshotStatus,
)
from app.rules.base import PHASES, IndexedFile, RuleContext
from app.services.ai_judge import AIJudgmentAdapter, RunJudgmentGate
from app.services.audit_service import AuditService
from app.services.rule_engine import RuleEngine
from app.services.task_service import TaskService

logger = logging.getLogger(__name__)

FRAMEWORK_VALUES = [f.value for f in Framework]
DEPTH_VALUES = [d.value for d in AnalysisDepth]


class AnalysisOrchestrator:
    """Starts analysis runs and executes them phase by phase."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ai_adapter: AIJudgmentAdapter | None,
        config: Settings | None = None,
        rule_engine: RuleEngine | None = None,
    ):
        self.session_factory = session_factory
        self.ai_adapter = ai_adapter
        self.config = config or default_settings
        self.rule_engine = rule_engine or RuleEngine()

    # ── Start ────────────────────────────────────────────────────────────

    async def start_analysis(
        self,
        session: AsyncSession,
        snapshot_id: str,
        frameworks: list[str],
        depth: str,
        org_id: str,
        user_id: str,
    ) -> AnalysisRun:
        """
        Claim the snapshot and create a queued run. Commits before returning
        so the executor can see the run; the caller dispatches it.
        """
        if not frameworks:
            raise ValidationError("At least one framework is required")
        unknown = [f for f in frameworks if f not in FRAMEWORK_VALUES]
        if unknown:
            raise ValidationError(f"Unsupported frameworks: {unknown}. Valid: {FRAMEWORK_VALUES}")
        if depth not in DEPTH_VALUES:
            raise ValidationError(f"Invalid depth: {depth}. Valid: {DEPTH_VALUES}")
        frameworks = list(dict.fromkeys(frameworks))

        snapshot = await get_owned_snapshot(session, snapshot_id, org_id)

        now = utcnow()
        claimed = await session.execute(
            update(RepositorySnapshot)
            .where(
                RepositorySnapshot.id == snapshot.id,
                RepositorySnapshot.status == SnapshotStatus.INDEXED.value,
            )
            .values(
                status=SnapshotStatus.ANALYZING.value,
                analysis_phase=None,
                analysis_started_at=now,
                analysis_completed_at=None,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await session.refresh(snapshot)
            raise ConflictError(
                f"Snapshot {snapshot_id} cannot be analyzed in status '{snapshot.status}'",
                code="ANALYSIS_NOT_ALLOWED",
                details={"status": snapshot.status},
            )

        run = AnalysisRun(
            run_id=f"RUN-{uuid4().hex[:12].upper()}",
            snapshot_id=snapshot.id,
            frameworks=frameworks,
            depth=depth,
            phase_status=PhaseStatus.QUEUED.value,
            progress=0,
            requested_by=user_id,
        )
        session.add(run)
        await session.flush()

        await AuditService(session).log_analysis_started(
            run.run_id, snapshot_id, org_id, user_id, frameworks, depth,
        )
        await session.commit()
        logger.info("Analysis %s queued for snapshot %s (%s, %s)", run.run_id, snapshot_id, frameworks, depth)
        return run

    async def get_latest_run(self, session: AsyncSession, snapshot_id: str, org_id: str):
        snapshot = await get_owned_snapshot(session, snapshot_id, org_id)
        result = await session.execute(
            select(AnalysisRun)
            .where(AnalysisRun.snapshot_id == snapshot.id)
            .order_by(AnalysisRun.id.desc())
            .limit(1)
        )
        return snapshot, result.scalar_one_or_none()

    # ── Execute ──────────────────────────────────────────────────────────

    async def execute_run(self, run_id: str) -> None:
        """Execute a queued run under the watchdog. Never raises."""
        deadline = self.config.analysis_max_duration_seconds
        started = time.monotonic()
        with bind_run_id(run_id):
            try:
                await asyncio.wait_for(self._run(run_id), timeout=deadline)
            except asyncio.TimeoutError:
                logger.error("Analysis %s exceeded %ss", run_id, deadline)
                await self.fail_run(run_id, f"Analysis exceeded maximum duration of {deadline}s")
            except Exception as e:
                logger.exception("Analysis %s failed", run_id)
                message = e.message if isinstance(e, PipelineError) else f"{type(e).__name__}: {e}"
                await self.fail_run(run_id, message)
            finally:
                analysis_duration_seconds.observe(time.monotonic() - started)

    async def _run(self, run_id: str) -> None:
        async with self.session_factory() as session:
            run = (await session.execute(
                select(AnalysisRun).where(AnalysisRun.run_id == run_id)
            )).scalar_one_or_none()
            if run is None:
                logger.warning("Analysis %s not found; nothing to execute", run_id)
                return
            snapshot = await session.get(RepositorySnapshot, run.snapshot_id)
            files = [
                IndexedFile(
                    relative_path=f.relative_path,
                    file_name=f.file_name,
                    category=f.category,
                    size=f.size,
                    is_security_relevant=f.is_security_relevant,
                    is_oversized=f.is_oversized,
                    language=f.language,
                )
                for f in (await session.execute(
                    select(RepositoryFile).where(RepositoryFile.snapshot_id == snapshot.id)
                )).scalars()
            ]
            if not await self._update_run(
                session, run_id, phase_status=PhaseStatus.RUNNING.value, started_at=utcnow(),
            ):
                logger.warning("Analysis %s is no longer active; skipping", run_id)
                return
            await session.commit()

        snapshot_pk = snapshot.id
        org_id = snapshot.organization_id
        frameworks = list(run.frameworks)
        gate = RunJudgmentGate(self.ai_adapter)
        ctx = RuleContext(
            extracted_path=snapshot.extracted_path or "",
            files=files,
            technologies=list(snapshot.technologies or []),
            depth=run.depth,
            max_scan_bytes=self.config.max_scan_file_bytes,
            judgment=gate,
        )

        total_phases = len(PHASES)
        findings_total = 0
        rules_evaluated = 0
        for index, phase in enumerate(PHASES, start=1):
            async with self.session_factory() as session:
                if not await self._update_run(session, run_id, phase=phase, phase_status=PhaseStatus.RUNNING.value):
                    logger.warning("Analysis %s stopped being active before phase %s", run_id, phase)
                    return
                await self._update_snapshot(session, snapshot_pk, SnapshotStatus.ANALYZING, analysis_phase=phase)
                await session.commit()

            logger.info("Analysis %s: phase %d/%d %s", run_id, index, total_phases, phase)
            try:
                evaluations = await self.rule_engine.evaluate_phase(phase, ctx)
            except Exception as e:
                raise PipelineError(f"Phase '{phase}' failed: {type(e).__name__}: {e}") from e
            rules_evaluated += len(evaluations)

            async with self.session_factory() as session:
                findings = []
                now = utcnow()
                for rule, evaluation in evaluations:
                    evidence = dict(evaluation.evidence)
                    if evaluation.details:
                        evidence["summary"] = evaluation.details
                    for framework in frameworks:
                        control_id = rule.controls.get(framework)
                        if control_id is None:
                            continue
                        findings.append(Finding(
                            finding_id=f"FND-{uuid4().hex[:12].upper()}",
                            snapshot_id=snapshot_pk,
                            organization_id=org_id,
                            run_id=run.id,
                            framework=framework,
                            control_id=control_id,
                            rule_id=rule.rule_id,
                            phase=phase,
                            title=rule.title,
                            severity=evaluation.severity,
                            status=evaluation.status,
                            evidence=evidence,
                            recommendation=rule.recommendation or None,
                            ai_model=evaluation.ai_model,
                            created_at=now,
                        ))
                session.add_all(findings)
                await session.flush()

                phase_snapshot = await session.get(RepositorySnapshot, snapshot_pk)
                await TaskService(session).derive_tasks(phase_snapshot, findings)

                progress = round(100 * index / total_phases)
                if not await self._update_run(session, run_id, progress=progress):
                    await session.rollback()
                    logger.warning("Analysis %s stopped being active during phase %s", run_id, phase)
                    return
                await session.commit()

            findings_total += len(findings)
            for f in findings:
                findings_generated_total.labels(status=f.status).inc()

        metrics = {
            "files_indexed": len(files),
            "files_analyzed": ctx.files_read,
            "rules_evaluated": rules_evaluated,
            "findings_generated": findings_total,
            "ai_calls": gate.calls,
            "degraded_rules": gate.degraded,
            "ai_circuit_open": gate.latched,
        }
        async with self.session_factory() as session:
            now = utcnow()
            if not await self._update_run(
                session, run_id,
                phase_status=PhaseStatus.COMPLETED.value,
                progress=100,
                completed_at=now,
                metrics=metrics,
            ):
                return
            await self._update_snapshot(
                session, snapshot_pk, SnapshotStatus.ANALYZED,
                analysis_phase=None, analysis_completed_at=now,
            )
            await AuditService(session).log_analysis_finished(run_id, org_id, PhaseStatus.COMPLETED.value, metrics)
            await session.commit()

        analysis_runs_total.labels(status=PhaseStatus.COMPLETED.value).inc()
        logger.info("Analysis %s completed: %d findings", run_id, findings_total)

    # ── Failure / recovery ───────────────────────────────────────────────

    async def fail_run(self, run_id: str, message: str) -> bool:
        """Mark an active run failed and its snapshot errored. False if the run was already terminal."""
        async with self.session_factory() as session:
            run = (await session.execute(
                select(AnalysisRun).where(AnalysisRun.run_id == run_id)
            )).scalar_one_or_none()
            if run is None:
                return False
            now = utcnow()
            if not await self._update_run(
                session, run_id,
                phase_status=PhaseStatus.FAILED.value,
                error=message[:2000],
                completed_at=now,
            ):
                return False
            await self._update_snapshot(
                session, run.snapshot_id, SnapshotStatus.ERROR,
                error_message=message[:2000], analysis_completed_at=now,
            )
            snapshot = await session.get(RepositorySnapshot, run.snapshot_id)
            await AuditService(session).log_analysis_finished(
                run_id, snapshot.organization_id if snapshot else None, PhaseStatus.FAILED.value, {"error": message[:500]},
            )
            await session.commit()

        analysis_runs_total.labels(status=PhaseStatus.FAILED.value).inc()
        return True

    async def fail_stale_runs(self) -> int:
        """Fail queued/running runs older than the analysis deadline; their executor is gone."""
        deadline = self.config.analysis_max_duration_seconds
        cutoff = utcnow() - timedelta(seconds=deadline)
        async with self.session_factory() as session:
            result = await session.execute(
                select(AnalysisRun.run_id).where(
                    AnalysisRun.phase_status.in_(ACTIVE_RUN_STATUSES),
                    AnalysisRun.created_at < cutoff,
                )
            )
            stale = list(result.scalars())

        failed = 0
        for run_id in stale:
            if await self.fail_run(run_id, f"Analysis exceeded maximum duration of {deadline}s"):
                failed += 1
        if failed:
            logger.warning("Failed %d stale analysis runs", failed)
        return failed

    async def sweep_stale_runs(self, interval_seconds: float) -> None:
        """
        Run `fail_stale_runs` now and then every `interval_seconds` until cancelled.

        The in-process watchdog dies with its process; this sweep is what
        eventually fails runs orphaned by a restart or a crashed worker.
        """
        while True:
            try:
                await self.fail_stale_runs()
            except Exception:
                logger.exception("Stale run sweep failed")
            await asyncio.sleep(interval_seconds)

    # ── Conditional writes ───────────────────────────────────────────────

    @staticmethod
    async def _update_run(session: AsyncSession, run_id: str, **values) -> bool:
        """Update the run only while it is queued/running. Returns False if it was not."""
        result = await session.execute(
            update(AnalysisRun)
            .where(
                AnalysisRun.run_id == run_id,
                AnalysisRun.phase_status.in_(ACTIVE_RUN_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def _update_snapshot(session: AsyncSession, snapshot_pk: int, status: SnapshotStatus, **values) -> None:
        """Move an analyzing snapshot to `status`; snapshots in any other state are left alone."""
        await session.execute(
            update(RepositorySnapshot)
            .where(
                RepositorySnapshot.id == snapshot_pk,
                RepositorySnapshot.status == SnapshotStatus.ANALYZING.value,
            )
            .values(status=status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
