"""
Secrets & Credentials phase: hardcoded secrets and committed credential files.
"""

import posixpath

from app.models.enums import Severity, SEVERITY_RANK
from app.rules.base import BaseRule, RuleContext, RuleEvaluation, PHASE_SECRETS, controls
from app.services.code_signals import find_secrets

CREDENTIAL_FILE_NAMES = {"id_rsa", "id_dsa", "id_ecdsa", "id_ed25519", ".npmrc", ".pypirc", "credentials.json"}
CREDENTIAL_EXTENSIONS = {".pem", ".key", ".p12", ".pfx", ".jks", ".keystore"}
ENV_EXAMPLE_SUFFIXES = (".example", ".sample", ".template", ".dist")


class HardcodedSecretsRule(BaseRule):
    """Source and config files must not embed keys, passwords or tokens."""

    rule_id = "SEC-001"
    title = "No hardcoded secrets in source"
    phase = PHASE_SECRETS
    severity = Severity.HIGH.value
    controls = controls("CC6.1", "A.9.4.3", "IA-5")
    recommendation = "Move secrets to a secrets manager or environment configuration and rotate any exposed values."
    needs_content = True

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        hits: list[dict] = []
        scanned = 0
        for f in ctx.scannable_files():
            content = await ctx.read(f)
            if content is None:
                continue
            scanned += 1
            hits.extend(find_secrets(f.relative_path, content))

        if not hits:
            return self._pass({"files_scanned": scanned, "secrets": []})

        worst = max((h["severity"] for h in hits), key=lambda s: SEVERITY_RANK[s])
        return self._fail(
            {"files_scanned": scanned, "secrets": hits[:50], "count": len(hits)},
            f"{len(hits)} potential hardcoded secrets found",
            severity=worst,
        )


class CommittedCredentialFilesRule(BaseRule):
    """Private keys and .env files must not be committed."""

    rule_id = "SEC-002"
    title = "No credential files committed"
    phase = PHASE_SECRETS
    severity = Severity.HIGH.value
    controls = controls("CC6.1", "A.10.1.2", "SC-12")
    recommendation = "Remove committed credential files from the repository, add them to .gitignore, and rotate the credentials."

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        committed = []
        for f in ctx.files:
            name = f.file_name.lower()
            ext = posixpath.splitext(name)[1]
            if name.startswith(".env") and not name.endswith(ENV_EXAMPLE_SUFFIXES):
                committed.append(f.relative_path)
            elif name in CREDENTIAL_FILE_NAMES or ext in CREDENTIAL_EXTENSIONS:
                committed.append(f.relative_path)

        if committed:
            return self._fail({"files": committed[:50]}, f"{len(committed)} credential files committed")
        return self._pass({"files": []})
