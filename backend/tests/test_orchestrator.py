"""Tests for the analysis state machine: phases, degradation, failure, watchdog, CAS."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from app.config import settings
from app.database import async_session, utcnow
from app.errors import ConflictError, NotFoundError, ValidationError
from app.models import AnalysisRun, Finding, RemediationTask, RepositorySnapshot
from app.models.enums import Severity
from app.rules.base import PHASE_DEPENDENCIES, PHASE_SECRETS, PHASES, BaseRule, RuleContext, RuleEvaluation, controls
from app.services.analysis_orchestrator import AnalysisOrchestrator
from app.services.ingestion import IngestionService
from app.services.rule_engine import RuleEngine
from tests.factories import ORG_A, ORG_B, SAMPLE_REPO, FakeProvider, make_adapter, make_zip


# ── Test rules ───────────────────────────────────────────────────────────────

class AlwaysFailsRule(BaseRule):
    rule_id = "T-001"
    title = "Always fails"
    phase = PHASE_DEPENDENCIES
    severity = Severity.HIGH.value
    controls = controls("CC1.1", "A.5.1", "PL-1")

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        return self._fail({"reason": "test"})


class ExplodingRule(BaseRule):
    rule_id = "T-002"
    title = "Raises"
    phase = PHASE_SECRETS
    severity = Severity.LOW.value
    controls = controls("CC1.2", "A.5.2", "PL-2")

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        raise RuntimeError("scanner crashed")


class SlowRule(BaseRule):
    rule_id = "T-003"
    title = "Never finishes"
    phase = PHASE_DEPENDENCIES
    severity = Severity.LOW.value
    controls = controls("CC1.3", "A.5.3", "PL-3")

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        await asyncio.sleep(30)
        return self._pass({})


class ProgressRecorderRule(BaseRule):
    """Reads the run's progress from its own session while its phase executes."""
    title = "Records progress"
    severity = Severity.LOW.value
    controls = controls("CC1.4", "A.5.4", "PL-4")

    def __init__(self, phase: str, seen: list[int]):
        self.rule_id = f"T-P{PHASES.index(phase)}"
        self.phase = phase
        self.seen = seen

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        async with async_session() as session:
            self.seen.append((await session.execute(select(AnalysisRun.progress))).scalar_one())
        return self._pass({})


# ── Helpers ──────────────────────────────────────────────────────────────────

async def _indexed_snapshot(org_id: str = ORG_A) -> str:
    async with async_session() as session:
        result = await IngestionService(session).upload_and_extract(
            make_zip(SAMPLE_REPO), "repo.zip", org_id, "PROFILE-1", "user-1", "demo",
        )
        await session.commit()
    return result.snapshot_id


async def _start(orchestrator: AnalysisOrchestrator, snapshot_id: str, frameworks=("SOC2",), depth="security_relevant") -> str:
    async with async_session() as session:
        run = await orchestrator.start_analysis(session, snapshot_id, list(frameworks), depth, ORG_A, "user-1")
    return run.run_id


async def _mark_running(run_id: str, age_seconds: float) -> None:
    """Put a run in the state its executor leaves it in mid-phase, created `age_seconds` ago."""
    async with async_session() as session:
        await session.execute(
            update(AnalysisRun)
            .where(AnalysisRun.run_id == run_id)
            .values(phase_status="running", created_at=utcnow() - timedelta(seconds=age_seconds))
        )
        await session.commit()


async def _load(run_id: str):
    async with async_session() as session:
        run = (await session.execute(select(AnalysisRun).where(AnalysisRun.run_id == run_id))).scalar_one()
        snapshot = await session.get(RepositorySnapshot, run.snapshot_id)
        findings = list((await session.execute(
            select(Finding).where(Finding.snapshot_id == snapshot.id)
        )).scalars())
        tasks = list((await session.execute(
            select(RemediationTask).where(RemediationTask.snapshot_id == snapshot.id)
        )).scalars())
    return run, snapshot, findings, tasks


# ── Full runs ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestExecuteRun:
    async def test_run_completes_with_findings_and_tasks(self):
        provider = FakeProvider(verdict="pass")
        orchestrator = AnalysisOrchestrator(async_session, make_adapter(provider), settings)
        snapshot_id = await _indexed_snapshot()

        run_id = await _start(orchestrator, snapshot_id, frameworks=("SOC2", "NIST80053"))
        await orchestrator.execute_run(run_id)

        run, snapshot, findings, tasks = await _load(run_id)
        assert run.phase_status == "completed"
        assert run.progress == 100
        assert run.completed_at is not None
        assert snapshot.status == "analyzed"
        assert snapshot.analysis_phase is None

        assert findings
        assert {f.framework for f in findings} == {"SOC2", "NIST80053"}
        assert all(f.organization_id == ORG_A for f in findings)
        assert run.metrics["findings_generated"] == len(findings)
        assert run.metrics["ai_calls"] == provider.calls == 2
        assert run.metrics["degraded_rules"] == 0

        judged = [f for f in findings if f.rule_id == "AC-003"]
        assert judged and all(f.status == "pass" and f.ai_model == "fake-model" for f in judged)

        # every actionable finding is covered by exactly one task
        actionable = {f.id for f in findings if f.status in ("fail", "needs_review")}
        covered = [fid for t in tasks for fid in t.finding_ids]
        assert actionable and set(covered) == actionable
        assert len(covered) == len(set(covered))

    async def test_open_breaker_degrades_ai_rules_and_run_completes(self):
        provider = FakeProvider(fail=True)
        orchestrator = AnalysisOrchestrator(async_session, make_adapter(provider, failure_threshold=1), settings)
        snapshot_id = await _indexed_snapshot()

        run_id = await _start(orchestrator, snapshot_id)
        await orchestrator.execute_run(run_id)

        run, snapshot, findings, tasks = await _load(run_id)
        assert run.phase_status == "completed"
        assert snapshot.status == "analyzed"

        degraded = {f.rule_id: f for f in findings if f.status == "needs_review"}
        assert set(degraded) == {"AC-003", "DP-002"}
        assert all("degraded_reason" in f.evidence for f in degraded.values())
        # the breaker opened on the first call; the second rule never reached the provider
        assert provider.calls == 1
        assert run.metrics["ai_circuit_open"] is True
        assert run.metrics["degraded_rules"] == 2
        assert any(t.category == "missing_evidence" for t in tasks)

    async def test_ai_disabled_yields_needs_review(self):
        orchestrator = AnalysisOrchestrator(async_session, None, settings)
        snapshot_id = await _indexed_snapshot()

        run_id = await _start(orchestrator, snapshot_id)
        await orchestrator.execute_run(run_id)

        run, _, findings, _ = await _load(run_id)
        assert run.phase_status == "completed"
        assert {f.rule_id for f in findings if f.status == "needs_review"} == {"AC-003", "DP-002"}

    async def test_structure_only_skips_content_rules(self):
        orchestrator = AnalysisOrchestrator(async_session, None, settings)
        snapshot_id = await _indexed_snapshot()

        run_id = await _start(orchestrator, snapshot_id, depth="structure_only")
        await orchestrator.execute_run(run_id)

        run, _, findings, _ = await _load(run_id)
        assert run.phase_status == "completed"
        assert run.metrics["files_analyzed"] == 0
        assert "AC-001" not in {f.rule_id for f in findings}
        assert "DEP-001" in {f.rule_id for f in findings}

    async def test_failing_phase_fails_run_and_keeps_earlier_findings(self):
        engine = RuleEngine(rules=[AlwaysFailsRule(), ExplodingRule()])
        orchestrator = AnalysisOrchestrator(async_session, None, settings, rule_engine=engine)
        snapshot_id = await _indexed_snapshot()

        run_id = await _start(orchestrator, snapshot_id)
        await orchestrator.execute_run(run_id)

        run, snapshot, findings, tasks = await _load(run_id)
        assert run.phase_status == "failed"
        assert "Secrets & Credentials" in run.error
        assert "scanner crashed" in run.error
        assert snapshot.status == "error"
        assert snapshot.error_message == run.error
        assert [f.rule_id for f in findings] == ["T-001"]
        assert len(tasks) == 1
        # progress reflects the one committed phase and never went backwards
        assert run.progress == round(100 / 6)

    async def test_watchdog_fails_long_runs(self):
        config = settings.model_copy(update={"analysis_max_duration_seconds": 0.2})
        orchestrator = AnalysisOrchestrator(async_session, None, config, rule_engine=RuleEngine(rules=[SlowRule()]))
        snapshot_id = await _indexed_snapshot()

        run_id = await _start(orchestrator, snapshot_id)
        await orchestrator.execute_run(run_id)

        run, snapshot, _, _ = await _load(run_id)
        assert run.phase_status == "failed"
        assert run.error == "Analysis exceeded maximum duration of 0.2s"
        assert snapshot.status == "error"

    async def test_terminal_run_is_not_rewritten(self):
        engine = RuleEngine(rules=[AlwaysFailsRule()])
        orchestrator = AnalysisOrchestrator(async_session, None, settings, rule_engine=engine)
        snapshot_id = await _indexed_snapshot()

        run_id = await _start(orchestrator, snapshot_id)
        await orchestrator.execute_run(run_id)
        # a duplicate executor picking up the same run must not touch it
        await orchestrator.execute_run(run_id)

        run, snapshot, findings, _ = await _load(run_id)
        assert run.phase_status == "completed"
        assert snapshot.status == "analyzed"
        assert len(findings) == 1

    async def test_progress_never_decreases_between_phases(self):
        seen: list[int] = []
        engine = RuleEngine(rules=[ProgressRecorderRule(phase, seen) for phase in PHASES])
        orchestrator = AnalysisOrchestrator(async_session, None, settings, rule_engine=engine)
        snapshot_id = await _indexed_snapshot()

        run_id = await _start(orchestrator, snapshot_id)
        await orchestrator.execute_run(run_id)

        run, _, _, _ = await _load(run_id)
        assert run.phase_status == "completed"
        assert len(seen) == len(PHASES)
        assert seen[0] == 0
        assert seen == sorted(set(seen))
        assert seen[-1] < run.progress == 100

    async def test_fail_stale_runs(self):
        orchestrator = AnalysisOrchestrator(async_session, None, settings)
        snapshot_id = await _indexed_snapshot()
        run_id = await _start(orchestrator, snapshot_id)
        await _mark_running(run_id, age_seconds=settings.analysis_max_duration_seconds + 60)

        assert await orchestrator.fail_stale_runs() == 1
        run, snapshot, _, _ = await _load(run_id)
        assert run.phase_status == "failed"
        assert "maximum duration" in run.error
        assert snapshot.status == "error"

    async def test_periodic_sweep_fails_runs_that_go_stale_later(self):
        orchestrator = AnalysisOrchestrator(async_session, None, settings)
        orphaned_id = await _start(orchestrator, await _indexed_snapshot())
        healthy_id = await _start(orchestrator, await _indexed_snapshot())
        await _mark_running(orphaned_id, age_seconds=0)
        await _mark_running(healthy_id, age_seconds=0)

        sweeper = asyncio.create_task(orchestrator.sweep_stale_runs(0.05))
        try:
            await asyncio.sleep(0.2)
            assert (await _load(orphaned_id))[0].phase_status == "running"

            # the executor died; the run is now past its deadline
            await _mark_running(orphaned_id, age_seconds=settings.analysis_max_duration_seconds + 60)
            for _ in range(100):
                if (await _load(orphaned_id))[0].phase_status == "failed":
                    break
                await asyncio.sleep(0.05)
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)

        orphaned, snapshot, _, _ = await _load(orphaned_id)
        assert orphaned.phase_status == "failed"
        assert snapshot.status == "error"
        assert (await _load(healthy_id))[0].phase_status == "running"


# ── Start / CAS ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestStartAnalysis:
    async def test_second_start_conflicts(self):
        orchestrator = AnalysisOrchestrator(async_session, None, settings)
        snapshot_id = await _indexed_snapshot()

        await _start(orchestrator, snapshot_id)
        with pytest.raises(ConflictError):
            await _start(orchestrator, snapshot_id)

    async def test_concurrent_starts_admit_exactly_one(self):
        orchestrator = AnalysisOrchestrator(async_session, None, settings)
        snapshot_id = await _indexed_snapshot()

        results = await asyncio.gather(
            _start(orchestrator, snapshot_id),
            _start(orchestrator, snapshot_id),
            return_exceptions=True,
        )
        started = [r for r in results if isinstance(r, str)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(started) == 1 and len(conflicts) == 1

        async with async_session() as session:
            runs = list((await session.execute(select(AnalysisRun))).scalars())
        assert len(runs) == 1

    async def test_rejects_unknown_framework_and_depth(self):
        orchestrator = AnalysisOrchestrator(async_session, None, settings)
        snapshot_id = await _indexed_snapshot()
        with pytest.raises(ValidationError):
            await _start(orchestrator, snapshot_id, frameworks=("HIPAA",))
        with pytest.raises(ValidationError):
            await _start(orchestrator, snapshot_id, depth="deep")
        with pytest.raises(ValidationError):
            await _start(orchestrator, snapshot_id, frameworks=())

    async def test_foreign_snapshot_is_not_found(self):
        orchestrator = AnalysisOrchestrator(async_session, None, settings)
        snapshot_id = await _indexed_snapshot(org_id=ORG_B)
        with pytest.raises(NotFoundError):
            await _start(orchestrator, snapshot_id)
