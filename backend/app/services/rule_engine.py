"""
Rule Engine

Discovers all registered compliance rules and evaluates the rules of one
analysis phase against a snapshot's RuleContext.
"""

import importlib
import logging
import pkgutil

from app.rules.base import BaseRule, RuleContext, RuleEvaluation

logger = logging.getLogger(__name__)

RULE_PACKAGES = ["app.rules.repository"]


class RuleEngine:
    """Orchestrates rule evaluation across all registered rules."""

    def __init__(self, rules: list[BaseRule] | None = None):
        self.rules: dict[str, BaseRule] = {}
        if rules is not None:
            self.rules = {r.rule_id: r for r in rules}

    def load_rules(self) -> None:
        """Discover and register all rule implementations from the rule packages."""
        self.rules = {}
        for package_name in RULE_PACKAGES:
            package = importlib.import_module(package_name)
            for _importer, modname, _ispkg in pkgutil.iter_modules(package.__path__):
                module = importlib.import_module(f"{package_name}.{modname}")
                for attr_name in dir(module):
                    attr = getattr(module, attr_name)
                    if (
                        isinstance(attr, type)
                        and issubclass(attr, BaseRule)
                        and attr is not BaseRule
                        and getattr(attr, "__module__", None) == module.__name__
                        and hasattr(attr, "rule_id")
                    ):
                        instance = attr()
                        self.rules[instance.rule_id] = instance
        logger.debug("Loaded %d compliance rules", len(self.rules))

    def rules_for_phase(self, phase: str) -> list[BaseRule]:
        if not self.rules:
            self.load_rules()
        return sorted((r for r in self.rules.values() if r.phase == phase), key=lambda r: r.rule_id)

    async def evaluate_phase(self, phase: str, ctx: RuleContext) -> list[tuple[BaseRule, RuleEvaluation]]:
        """
        Run every eligible rule of `phase`.

        Rules gated out by technology or depth are skipped. A rule that
        raises aborts the phase; AI unavailability never raises here, it
        comes back as a needs_review evaluation.
        """
        results: list[tuple[BaseRule, RuleEvaluation]] = []
        for rule in self.rules_for_phase(phase):
            if not rule.applies_to(ctx.technologies, ctx.depth):
                logger.debug("Skipping rule %s (not applicable)", rule.rule_id)
                continue
            evaluation = await rule.evaluate(ctx)
            results.append((rule, evaluation))
        return results


_registry: RuleEngine | None = None


def get_rule(rule_id: str) -> BaseRule | None:
    """Look up a registered rule by id (loads the registry on first use)."""
    global _registry
    if _registry is None:
        _registry = RuleEngine()
        _registry.load_rules()
    return _registry.rules.get(rule_id)
