"""
Dependencies phase: lockfiles, automated updates, version pinning.
"""

import json
import re

from app.models.enums import Severity, TaskCategory
from app.rules.base import BaseRule, RuleContext, RuleEvaluation, PHASE_DEPENDENCIES, controls

# ecosystem tag → (manifest names, lockfile names)
ECOSYSTEMS = {
    "node": (("package.json",), ("package-lock.json", "yarn.lock", "pnpm-lock.yaml", "npm-shrinkwrap.json")),
    "python": (("pyproject.toml", "Pipfile", "requirements.txt", "setup.py"),
               ("poetry.lock", "Pipfile.lock", "uv.lock", "pdm.lock", "requirements.txt")),
    "go": (("go.mod",), ("go.sum",)),
    "rust": (("Cargo.toml",), ("Cargo.lock",)),
    "ruby": (("Gemfile",), ("Gemfile.lock",)),
    "php": (("composer.json",), ("composer.lock",)),
}


class LockfilePresentRule(BaseRule):
    """Every detected package ecosystem must commit a lockfile."""

    rule_id = "DEP-001"
    title = "Dependency lockfiles are committed"
    phase = PHASE_DEPENDENCIES
    severity = Severity.MEDIUM.value
    controls = controls("CC8.1", "A.14.2.2", "CM-2")
    recommendation = "Commit the package manager's lockfile so builds resolve the same dependency versions."
    technologies = frozenset(ECOSYSTEMS)

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        names = {f.file_name for f in ctx.files}
        missing = []
        checked = []
        for tag, (_manifests, lockfiles) in ECOSYSTEMS.items():
            if tag not in ctx.technologies:
                continue
            checked.append(tag)
            if not names.intersection(lockfiles):
                missing.append(tag)

        evidence = {"ecosystems": checked, "missing_lockfiles": missing}
        if missing:
            return self._fail(evidence, f"No lockfile committed for: {', '.join(missing)}")
        return self._pass(evidence)


class AutomatedDependencyUpdatesRule(BaseRule):
    """Dependabot or Renovate keeps dependencies patched."""

    rule_id = "DEP-002"
    title = "Automated dependency updates are configured"
    phase = PHASE_DEPENDENCIES
    severity = Severity.LOW.value
    controls = controls("CC7.1", "A.12.6.1", "SI-2")
    remediation_category = TaskCategory.PROCEDURE_NEEDED.value
    recommendation = "Enable Dependabot or Renovate to raise pull requests for vulnerable or outdated dependencies."

    CONFIG_PATHS = (
        ".github/dependabot.yml", ".github/dependabot.yaml", "renovate.json", "renovate.json5",
        ".renovaterc", ".renovaterc.json", ".github/renovate.json",
    )

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        found = [p for p in ctx.paths() if any(p == c or p.endswith("/" + c) for c in self.CONFIG_PATHS)]
        if found:
            return self._pass({"config_files": found})
        return self._fail({"searched": list(self.CONFIG_PATHS)}, "No dependency update automation found")


class PinnedVersionsRule(BaseRule):
    """Dependencies must not float on '*', 'latest' or bare names."""

    rule_id = "DEP-003"
    title = "Dependency versions are pinned"
    phase = PHASE_DEPENDENCIES
    severity = Severity.MEDIUM.value
    controls = controls("CC8.1", "A.14.2.2", "CM-3")
    recommendation = "Pin dependency versions (exact or bounded ranges) instead of '*', 'latest' or unversioned names."
    technologies = frozenset({"node", "python"})
    needs_content = True

    _REQ_LINE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._\-\[\]]*)\s*(.*)$")

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        unpinned: list[dict] = []

        for f in ctx.find_named("package.json"):
            content = await ctx.read(f)
            if not content:
                continue
            try:
                data = json.loads(content)
            except ValueError:
                continue
            for section in ("dependencies", "devDependencies"):
                deps = data.get(section) or {}
                if not isinstance(deps, dict):
                    continue
                for name, spec in deps.items():
                    if str(spec).strip() in ("*", "latest", "", "x"):
                        unpinned.append({"path": f.relative_path, "package": name, "spec": spec})

        for f in ctx.find_named("requirements.txt"):
            content = await ctx.read(f)
            if not content:
                continue
            for line in content.splitlines():
                line = line.split("#", 1)[0].strip()
                if not line or line.startswith(("-", "git+", "http")):
                    continue
                m = self._REQ_LINE.match(line)
                if m and not m.group(2).strip():
                    unpinned.append({"path": f.relative_path, "package": m.group(1), "spec": ""})

        if unpinned:
            return self._fail(
                {"unpinned": unpinned[:50], "count": len(unpinned)},
                f"{len(unpinned)} unpinned dependencies",
            )
        return self._pass({"unpinned": []})
