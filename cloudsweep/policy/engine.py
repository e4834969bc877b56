"""
Policy Engine Module
====================

Evaluates rules against resources and produces findings.

Classification is fanned out per resource on a thread pool; results are
gathered by index, so the output order is always input resource order,
then rule order, whatever the worker scheduling.

Example
-------
>>> from cloudsweep.policy import PolicyEngine, default_rules
>>>
>>> engine = PolicyEngine(default_rules())
>>> findings, errors = engine.classify(resources)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Sequence, Tuple

from cloudsweep.core.exceptions import ConfigError, PolicyError
from cloudsweep.core.models import ErrorRecord, Finding, Resource, Rule

# Module logger
logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


class PolicyEngine:
    """
    Classifies resources against an ordered rule list.

    Parameters
    ----------
    rules : sequence of Rule
        Rules in evaluation order. Names must be unique.
    max_workers : int, default=8
        Thread pool size.

    Raises
    ------
    ConfigError
        If two rules share a name.
    """

    def __init__(self, rules: Sequence[Rule], max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        names = [rule.name for rule in rules]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError("Duplicate rule names", details={"rules": ", ".join(duplicates)})
        self.rules = list(rules)
        self.max_workers = max(1, max_workers)

    def evaluate(self, resource: Resource) -> Tuple[List[Finding], List[ErrorRecord]]:
        """
        Evaluate every applicable rule against one resource.

        A predicate that raises is recorded as a PolicyError and skipped.
        """
        findings: List[Finding] = []
        errors: List[ErrorRecord] = []
        for rule in self.rules:
            if not rule.applies_to.matches(resource):
                continue
            try:
                if not rule.predicate(resource):
                    continue
                reason = rule.render_reason(resource)
            except Exception as e:
                error = PolicyError(
                    f"Rule {rule.name} failed on {resource.id}: {e!r}",
                    rule_name=rule.name,
                    resource_id=resource.id,
                )
                logger.warning("%s", error.message)
                errors.append(
                    ErrorRecord.from_exception(
                        error,
                        provider=resource.provider.value,
                        region=resource.region,
                        resource_kind=resource.kind.value,
                        resource_id=resource.id,
                        rule_name=rule.name,
                    )
                )
                continue
            findings.append(
                Finding(
                    resource=resource,
                    rule_name=rule.name,
                    severity=rule.severity,
                    reason=reason,
                    remediation=rule.remediation,
                )
            )
        return findings, errors

    def classify(self, resources: Sequence[Resource]) -> Tuple[List[Finding], List[ErrorRecord]]:
        """
        Classify resources.

        Returns
        -------
        tuple of (list of Finding, list of ErrorRecord)
            Findings in resource-then-rule order, and predicate failures.
        """
        if not resources:
            return [], []

        workers = min(self.max_workers, len(resources))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="classify") as pool:
            results = list(pool.map(self.evaluate, resources))

        findings: List[Finding] = []
        errors: List[ErrorRecord] = []
        for resource_findings, resource_errors in results:
            findings.extend(resource_findings)
            errors.extend(resource_errors)

        logger.info(
            "Classified %d resource(s) against %d rule(s): %d finding(s), %d error(s)",
            len(resources),
            len(self.rules),
            len(findings),
            len(errors),
        )
        return findings, errors

    def __repr__(self) -> str:
        """Return string representation."""
        return f"PolicyEngine(rules={len(self.rules)}, max_workers={self.max_workers})"


def classify(resources: Sequence[Resource], rules: Sequence[Rule]) -> List[Finding]:
    """
    Classify ``resources`` and return the findings.

    Predicate failures are logged and skipped; use
    :meth:`PolicyEngine.classify` to get them as records.
    """
    findings, _ = PolicyEngine(rules).classify(resources)
    return findings
