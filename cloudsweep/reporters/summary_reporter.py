"""Plain-text summary of an audit run."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from cloudsweep.core.models import ActionResult, AuditRun, Finding, Severity


class SummaryReporter:
    """
    Renders counts by severity, savings, action outcomes and errors,
    followed by one line per finding.

    Example
    -------
    >>> print(SummaryReporter().to_string(run))
    Provider: aws  Mode: dryRun
    Regions: us-east-1
    Resources scanned: 12
    Findings: 3 (critical 1, high 0, medium 0, low 2)
    ...
    Findings:
      - critical sg-0123 ssh-open-to-internet $- patch reported: Port 22 open to 0.0.0.0/0
    """

    def to_string(self, run: AuditRun) -> str:
        counts = run.severity_counts
        severities = ", ".join(f"{s.value} {counts[s.value]}" for s in reversed(list(Severity)))
        lines: List[str] = [
            f"Provider: {run.provider.value}  Mode: {run.mode.value}",
            f"Regions: {', '.join(run.regions_scanned) or '-'}",
            f"Resources scanned: {run.resources_scanned}",
            f"Findings: {len(run.findings)} ({severities})",
            f"Estimated monthly savings: ${run.total_estimated_monthly_savings}",
        ]
        if run.price_table_version:
            lines.append(f"Price table: {run.price_table_version}")

        actions = run.action_counts()
        if actions:
            lines.append("Actions: " + ", ".join(f"{state} {n}" for state, n in actions.items()))
        if run.cancelled:
            lines.append("Run was cancelled before completion")
        if run.listing_failed:
            lines.append("Nothing could be listed: every kind/region pair failed")
        lines.append(f"Errors: {len(run.errors)}")

        if run.findings:
            outcomes = {(r.finding.resource.id, r.finding.rule_name): r for r in run.action_results}
            lines.append("")
            lines.append("Findings:")
            for finding in run.findings:
                lines.append(f"  - {self._finding_line(finding, outcomes)}")

        if run.errors:
            lines.append("")
            lines.append("Errors encountered:")
            for error in run.errors:
                where = "/".join(p for p in (error.region, error.resource_kind, error.resource_id) if p)
                prefix = f"[{where}] " if where else ""
                lines.append(f"  - {error.kind.value}: {prefix}{error.message}")
        return "\n".join(lines)

    @staticmethod
    def _finding_line(finding: Finding, outcomes: Dict[Tuple[str, str], ActionResult]) -> str:
        cost = finding.estimated_monthly_cost
        result: Optional[ActionResult] = outcomes.get((finding.resource.id, finding.rule_name))
        if result is not None:
            action = result.action.value if result.action else "no action"
            outcome = f"{action} {result.state.value}"
        else:
            outcome = finding.remediation.value if finding.remediation else "no action"
        return (
            f"{finding.severity.value} {finding.resource.id} {finding.rule_name} "
            f"${cost if cost is not None else '-'} {outcome}: {finding.reason}"
        )
