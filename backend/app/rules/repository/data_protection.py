"""
Data Protection phase: encryption in transit and at rest.
"""

from app.models.enums import Severity
from app.rules.base import BaseRule, RuleContext, RuleEvaluation, PHASE_DATA_PROTECTION, controls
from app.services.code_signals import ENCRYPTION_IN_TRANSIT_PATTERNS, ENCRYPTION_AT_REST_PATTERNS


class EncryptionInTransitRule(BaseRule):
    """Network traffic must be protected with TLS."""

    rule_id = "DP-001"
    title = "Data is encrypted in transit"
    phase = PHASE_DATA_PROTECTION
    severity = Severity.HIGH.value
    controls = controls("CC6.7", "A.10.1.1", "SC-8")
    recommendation = "Terminate TLS for all external traffic, enable HSTS, and use https for service-to-service calls."
    needs_content = True

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        matches = await ctx.scan(ENCRYPTION_IN_TRANSIT_PATTERNS)
        if matches:
            return self._pass({"matches": [m.to_dict() for m in matches[:10]]})
        return self._fail({"matches": []}, "No TLS configuration or https usage detected")


class EncryptionAtRestRule(BaseRule):
    """Stored secrets and sensitive data must be hashed or encrypted."""

    rule_id = "DP-002"
    title = "Sensitive data is protected at rest"
    phase = PHASE_DATA_PROTECTION
    severity = Severity.HIGH.value
    controls = controls("CC6.1", "A.10.1.1", "SC-28")
    recommendation = "Hash passwords with a slow KDF (bcrypt/argon2) and encrypt sensitive fields or volumes with managed keys."
    needs_content = True
    requires_judgment = True

    QUESTION = (
        "Do these excerpts show that passwords are hashed with a password KDF and that "
        "sensitive stored data is encrypted, using current algorithms?"
    )

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        matches = await ctx.scan(ENCRYPTION_AT_REST_PATTERNS)
        if not matches:
            return self._fail({"matches": []}, "No hashing or encryption of stored data detected")
        return await self._judged(ctx, self.QUESTION, matches)
