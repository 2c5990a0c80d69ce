"""
Base rule class for all repository compliance rules.

Every rule belongs to one analysis phase, maps to a control in each
framework it covers, and implements `evaluate()` which takes a RuleContext
for the snapshot and returns a RuleEvaluation.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from app.models.enums import AnalysisDepth, FindingStatus, FileCategory, TaskCategory
from app.services.ai_judge import Judgment, JudgmentRequest, JudgmentUnavailable, RunJudgmentGate
from app.services.code_signals import SignalMatch, find_matches, read_text_file


# Phase names, in execution order
PHASE_DEPENDENCIES = "Dependencies"
PHASE_SECRETS = "Secrets & Credentials"
PHASE_ACCESS_CONTROL = "Access Control"
PHASE_BUILD = "Build & CI/CD"
PHASE_DATA_PROTECTION = "Data Protection"
PHASE_OPERATIONS = "Operational Controls"

PHASES = [
    PHASE_DEPENDENCIES,
    PHASE_SECRETS,
    PHASE_ACCESS_CONTROL,
    PHASE_BUILD,
    PHASE_DATA_PROTECTION,
    PHASE_OPERATIONS,
]

SCANNABLE_CATEGORIES = {FileCategory.CONFIG.value, FileCategory.CI_CD.value, FileCategory.IAC.value}


def controls(soc2: str, iso27001: str, nist: str) -> dict[str, str]:
    """Framework → control id. FedRAMP baselines use NIST 800-53 control ids."""
    return {"SOC2": soc2, "ISO27001": iso27001, "NIST80053": nist, "FedRAMP": nist}


@dataclass
class RuleEvaluation:
    """Result of evaluating a single rule against a snapshot."""
    rule_id: str
    status: str                          # FindingStatus value
    severity: str
    evidence: dict = field(default_factory=dict)
    details: str = ""
    ai_model: str | None = None


@dataclass
class IndexedFile:
    """The slice of a RepositoryFile row the rules need."""
    relative_path: str
    file_name: str
    category: str
    size: int
    is_security_relevant: bool
    is_oversized: bool
    language: str | None = None


class RuleContext:
    """
    Everything a rule may look at for one snapshot.

    File selection comes from the index, never from walking the directory.
    File contents are read off the event loop and cached per run.
    """

    def __init__(
        self,
        *,
        extracted_path: str,
        files: list[IndexedFile],
        technologies: list[str],
        depth: str,
        max_scan_bytes: int,
        judgment: RunJudgmentGate,
    ):
        self.root = Path(extracted_path)
        self.files = files
        self.technologies = set(technologies)
        self.depth = depth
        self.max_scan_bytes = max_scan_bytes
        self.judgment = judgment
        self._content_cache: dict[str, str | None] = {}
        self.files_read = 0

    def paths(self) -> list[str]:
        return [f.relative_path for f in self.files]

    def find(self, predicate: Callable[[IndexedFile], bool]) -> list[IndexedFile]:
        return [f for f in self.files if predicate(f)]

    def find_named(self, *names: str) -> list[IndexedFile]:
        lowered = {n.lower() for n in names}
        return self.find(lambda f: f.file_name.lower() in lowered)

    def scannable_files(self) -> list[IndexedFile]:
        """Files whose content this run's depth allows reading."""
        if self.depth == AnalysisDepth.STRUCTURE_ONLY.value:
            return []
        candidates = [f for f in self.files if not f.is_oversized]
        if self.depth == AnalysisDepth.FULL.value:
            return candidates
        return [f for f in candidates if f.is_security_relevant or f.category in SCANNABLE_CATEGORIES]

    async def read(self, file: IndexedFile) -> str | None:
        if file.relative_path not in self._content_cache:
            self._content_cache[file.relative_path] = await asyncio.to_thread(
                read_text_file, self.root / file.relative_path, self.max_scan_bytes,
            )
            self.files_read += 1
        return self._content_cache[file.relative_path]

    async def scan(self, patterns, files: list[IndexedFile] | None = None) -> list[SignalMatch]:
        """Pattern matches across `files` (default: every scannable file)."""
        matches: list[SignalMatch] = []
        for f in self.scannable_files() if files is None else files:
            content = await self.read(f)
            if content:
                matches.extend(find_matches(f.relative_path, content, patterns))
        return matches


class BaseRule(ABC):
    """Abstract base class for all compliance rules."""

    rule_id: str
    title: str
    phase: str
    severity: str                               # default severity of a failure
    controls: dict[str, str]                    # framework → control id
    remediation_category: str = TaskCategory.CODE_CHANGE.value
    recommendation: str = ""
    technologies: frozenset[str] = frozenset()  # empty = applies to every repository
    needs_content: bool = False
    requires_judgment: bool = False

    def applies_to(self, technologies: set[str], depth: str) -> bool:
        if self.needs_content and depth == AnalysisDepth.STRUCTURE_ONLY.value:
            return False
        if self.technologies and not (self.technologies & technologies):
            return False
        return True

    @abstractmethod
    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        """
        Evaluate this rule against the snapshot.

        Returns:
            RuleEvaluation with status (pass / fail / needs_review), severity, evidence
        """

    def _pass(self, evidence: dict, details: str = "") -> RuleEvaluation:
        return RuleEvaluation(
            rule_id=self.rule_id,
            status=FindingStatus.PASS.value,
            severity=self.severity,
            evidence=evidence,
            details=details,
        )

    def _fail(self, evidence: dict, details: str = "", severity: str | None = None) -> RuleEvaluation:
        return RuleEvaluation(
            rule_id=self.rule_id,
            status=FindingStatus.FAIL.value,
            severity=severity or self.severity,
            evidence=evidence,
            details=details,
        )

    def _needs_review(self, reason: str, evidence: dict | None = None) -> RuleEvaluation:
        return RuleEvaluation(
            rule_id=self.rule_id,
            status=FindingStatus.NEEDS_REVIEW.value,
            severity=self.severity,
            evidence={**(evidence or {}), "degraded_reason": reason},
            details=f"Automated judgment unavailable: {reason}",
        )

    async def _judged(self, ctx: RuleContext, question: str, matches: list[SignalMatch]) -> RuleEvaluation:
        """Ask the AI gate about the matched excerpts; degrade on any unavailability."""
        excerpts = await self._excerpts(ctx, matches)
        evidence = {"matches": [m.to_dict() for m in matches[:10]]}
        try:
            judgment: Judgment = await ctx.judgment.judge(
                JudgmentRequest(rule_id=self.rule_id, question=question, excerpts=excerpts),
            )
        except JudgmentUnavailable as e:
            return self._needs_review(e.reason, evidence)

        evidence.update({"rationale": judgment.rationale, "confidence": judgment.confidence})
        result = self._pass(evidence) if judgment.verdict == "pass" else self._fail(evidence)
        result.ai_model = judgment.model
        return result

    @staticmethod
    async def _excerpts(ctx: RuleContext, matches: list[SignalMatch], context_lines: int = 8) -> list[dict]:
        excerpts = []
        seen: set[str] = set()
        for m in matches:
            if m.path in seen or len(excerpts) >= 5:
                continue
            seen.add(m.path)
            file = next((f for f in ctx.files if f.relative_path == m.path), None)
            content = await ctx.read(file) if file else None
            if not content:
                continue
            lines = content.splitlines()
            start = max(m.line - 1 - context_lines, 0)
            excerpts.append({"path": m.path, "snippet": "\n".join(lines[start:m.line + context_lines])})
        return excerpts
