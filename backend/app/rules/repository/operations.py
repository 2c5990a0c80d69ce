"""
Operational Controls phase: application logging and audit trails.
"""

from app.models.enums import Severity, TaskCategory
from app.rules.base import BaseRule, RuleContext, RuleEvaluation, PHASE_OPERATIONS, controls
from app.services.code_signals import LOGGING_PATTERNS, AUDIT_LOG_PATTERNS


class ApplicationLoggingRule(BaseRule):
    rule_id = "OPS-001"
    title = "Application events are logged"
    phase = PHASE_OPERATIONS
    severity = Severity.MEDIUM.value
    controls = controls("CC7.2", "A.12.4.1", "AU-2")
    recommendation = "Use a structured logging library and ship logs to central monitoring."
    needs_content = True

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        matches = await ctx.scan(LOGGING_PATTERNS)
        if matches:
            return self._pass({"matches": [m.to_dict() for m in matches[:10]]})
        return self._fail({"matches": []}, "No application logging detected")


class AuditTrailRule(BaseRule):
    rule_id = "OPS-002"
    title = "Security-relevant actions are audit logged"
    phase = PHASE_OPERATIONS
    severity = Severity.MEDIUM.value
    controls = controls("CC7.3", "A.12.4.3", "AU-12")
    remediation_category = TaskCategory.POLICY_NEEDED.value
    recommendation = "Record who did what and when for authentication, authorization and data changes in a tamper-evident audit log."
    needs_content = True

    async def evaluate(self, ctx: RuleContext) -> RuleEvaluation:
        matches = await ctx.scan(AUDIT_LOG_PATTERNS)
        if matches:
            return self._pass({"matches": [m.to_dict() for m in matches[:10]]})
        return self._fail({"matches": []}, "No audit logging detected")
