"""Rules and the policy engine."""

from cloudsweep.policy.engine import PolicyEngine, classify
from cloudsweep.policy.rules import default_rules, rules_for

__all__ = ["PolicyEngine", "classify", "default_rules", "rules_for"]
