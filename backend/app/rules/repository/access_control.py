"""
Access Control phase: authentication, MFA, authorization enforcement.
"""

from app.models.enums import Severity
from app.rules.base import BaseRule, RuleContext, RuleEvaluation, PHASE_ACCESS_CONTROL, controls
from app.services.code_signals import AUTH_PATTERNS, MFA_PATTERNS, ACCESS_CONTROL_PATTERNS


class AuthenticationPresentRule(BaseRule):
    """The application must authenticate its users."""

    rule_id = "AC-001"
    title = "User authentication is implemented"
    phase = PHASE_ACCESS_CONTROL
    severity = Severity.HIGH.value
    controls = controls("CC6.1", "A.9.2.1", "IA-2")
    recommendation = "Authenticate every user-facing entry point (OIDC/SAML SSO, JWT or server sessions)."
    needs_content = True

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        mechanisms: dict[str, list[dict]] = {}
        for mechanism, patterns in AUTH_PATTERNS.items():
            matches = await ctx.scan(patterns)
            if matches:
                mechanisms[mechanism] = [m.to_dict() for m in matches[:5]]

        if mechanisms:
            return self._pass({"mechanisms": sorted(mechanisms), "matches": mechanisms})
        return self._fail({"mechanisms": []}, "No authentication mechanism detected")


class MultiFactorAuthRule(BaseRule):
    """Interactive logins should support a second factor."""

    rule_id = "AC-002"
    title = "Multi-factor authentication is supported"
    phase = PHASE_ACCESS_CONTROL
    severity = Severity.MEDIUM.value
    controls = controls("CC6.1", "A.9.4.2", "IA-2(1)")
    recommendation = "Support TOTP or WebAuthn second factors, or delegate login to an identity provider that enforces MFA."
    needs_content = True

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        matches = await ctx.scan(MFA_PATTERNS)
        if matches:
            return self._pass({"matches": [m.to_dict() for m in matches[:10]]})
        return self._fail({"matches": []}, "No multi-factor authentication support detected")


class AuthorizationEnforcementRule(BaseRule):
    """Authorization checks must actually guard protected operations."""

    rule_id = "AC-003"
    title = "Authorization is enforced on protected operations"
    phase = PHASE_ACCESS_CONTROL
    severity = Severity.HIGH.value
    controls = controls("CC6.3", "A.9.4.1", "AC-3")
    recommendation = "Enforce role or permission checks on every route that reads or changes protected data."
    needs_content = True
    requires_judgment = True

    QUESTION = (
        "Do these excerpts show role- or permission-based authorization checks that are "
        "applied to the application's protected routes or operations (not merely defined)?"
    )

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        matches = await ctx.scan(ACCESS_CONTROL_PATTERNS)
        if not matches:
            return self._fail({"matches": []}, "No authorization checks detected")
        return await self._judged(ctx, self.QUESTION, matches)
