"""
Build & CI/CD phase: pipelines, security scanning, container hardening.
"""

import re

from app.models.enums import Severity, FileCategory, TaskCategory
from app.rules.base import BaseRule, RuleContext, RuleEvaluation, PHASE_BUILD, controls
from app.services.code_signals import SECURITY_SCANNER_PATTERNS

CI_TECHNOLOGIES = frozenset({"github_actions", "gitlab_ci", "jenkins", "circleci"})

_FROM_LINE = re.compile(r"^\s*FROM\s+(?:--platform=\S+\s+)?(\S+)", re.IGNORECASE)
_USER_LINE = re.compile(r"^\s*USER\s+(\S+)", re.IGNORECASE)


def _dockerfiles(ctx: RuleContext):
    return ctx.find(lambda f: f.file_name.lower().startswith("dockerfile"))


class ContinuousIntegrationRule(BaseRule):
    """Changes should be built and tested by a CI pipeline."""

    rule_id = "CI-001"
    title = "A CI pipeline is defined"
    phase = PHASE_BUILD
    severity = Severity.MEDIUM.value
    controls = controls("CC8.1", "A.14.2.2", "CM-3")
    remediation_category = TaskCategory.PROCEDURE_NEEDED.value
    recommendation = "Define a CI pipeline that builds and tests every change before it is merged."

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        pipelines = sorted(ctx.technologies & CI_TECHNOLOGIES)
        files = [f.relative_path for f in ctx.find(lambda f: f.category == FileCategory.CI_CD.value)]
        if pipelines:
            return self._pass({"systems": pipelines, "files": files[:20]})
        return self._fail({"systems": []}, "No CI configuration found")


class SecurityScanningRule(BaseRule):
    """The CI pipeline should run SAST, dependency or secret scanning."""

    rule_id = "CI-002"
    title = "CI runs security scanning"
    phase = PHASE_BUILD
    severity = Severity.MEDIUM.value
    controls = controls("CC7.1", "A.14.2.8", "SA-11")
    recommendation = "Add SAST, dependency and secret scanning steps (e.g. CodeQL, Trivy, gitleaks) to the CI pipeline."
    technologies = CI_TECHNOLOGIES
    needs_content = True

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        ci_files = ctx.find(lambda f: f.category == FileCategory.CI_CD.value and not f.is_oversized)
        matches = await ctx.scan(SECURITY_SCANNER_PATTERNS, ci_files)
        if matches:
            return self._pass({"matches": [m.to_dict() for m in matches[:10]]})
        return self._fail(
            {"ci_files": [f.relative_path for f in ci_files][:20]},
            "No security scanning step found in CI configuration",
        )


class ContainerNonRootRule(BaseRule):
    """Container images must not run as root."""

    rule_id = "CI-003"
    title = "Containers run as a non-root user"
    phase = PHASE_BUILD
    severity = Severity.MEDIUM.value
    controls = controls("CC6.8", "A.14.2.5", "CM-6")
    recommendation = "Add a USER instruction with a non-root user to the final stage of each Dockerfile."
    technologies = frozenset({"docker"})
    needs_content = True

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        offenders = []
        checked = []
        for f in _dockerfiles(ctx):
            content = await ctx.read(f)
            if content is None:
                continue
            checked.append(f.relative_path)
            user = None
            for line in content.splitlines():
                if _FROM_LINE.match(line):
                    user = None  # each stage starts as root
                m = _USER_LINE.match(line)
                if m:
                    user = m.group(1)
            if user is None or user.split(":")[0] in ("root", "0"):
                offenders.append({"path": f.relative_path, "user": user or "root"})

        if offenders:
            return self._fail({"dockerfiles": checked, "root_images": offenders}, "Containers run as root")
        return self._pass({"dockerfiles": checked})


class PinnedBaseImageRule(BaseRule):
    """Base images must be pinned to a tag or digest other than latest."""

    rule_id = "CI-004"
    title = "Container base images are pinned"
    phase = PHASE_BUILD
    severity = Severity.LOW.value
    controls = controls("CC8.1", "A.14.2.2", "CM-2")
    recommendation = "Pin base images to a specific version tag or sha256 digest instead of ':latest'."
    technologies = frozenset({"docker"})
    needs_content = True

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        unpinned = []
        stages: set[str] = set()
        for f in _dockerfiles(ctx):
            content = await ctx.read(f)
            if content is None:
                continue
            for line in content.splitlines():
                m = _FROM_LINE.match(line)
                if not m:
                    continue
                image = m.group(1)
                alias = re.search(r"\bAS\s+(\S+)", line, re.IGNORECASE)
                if alias:
                    stages.add(alias.group(1).lower())
                if image.lower() in stages or image.lower() == "scratch" or "@sha256:" in image:
                    continue
                tag = image.rsplit("/", 1)[-1].partition(":")[2]
                if not tag or tag == "latest":
                    unpinned.append({"path": f.relative_path, "image": image})

        if unpinned:
            return self._fail({"unpinned_images": unpinned}, f"{len(unpinned)} unpinned base images")
        return self._pass({"unpinned_images": []})
