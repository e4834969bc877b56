"""
Table Reporter Module
=====================

Rich terminal output for audit runs.

This module renders:
- A header panel with provider, mode and regions
- Summary statistics (resources, findings by severity, savings)
- A findings table with the action outcome of each finding
- A separate "Errors encountered" table

Classes
-------
TableReporter
    Reporter class for terminal output.

Example
-------
>>> from cloudsweep.reporters import TableReporter
>>>
>>> reporter = TableReporter()
>>> reporter.print(run)

See Also
--------
rich : Python library for rich text and formatting.
JSONReporter : For programmatic access.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cloudsweep.core.models import ActionResult, ActionState, AuditRun, ErrorRecord, Severity

# Module logger
logger = logging.getLogger(__name__)

SEVERITY_STYLES = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "dim",
}

# Plain-text reports are at least this wide
MIN_TEXT_WIDTH = 160

STATE_STYLES = {
    ActionState.APPLIED: "green",
    ActionState.REPORTED: "cyan",
    ActionState.SKIPPED: "dim",
    ActionState.FAILED: "red",
}


class TableReporter:
    """
    Reporter for displaying audit runs in the terminal.

    Parameters
    ----------
    console : Console, optional
        Rich Console instance. If not provided, creates a new one.
    reason_width : int, optional
        Column width at which reasons wrap (None: never wrap).

    Examples
    --------
    Render to a string (used by ``render(run, "table")``):

    >>> text = TableReporter().to_string(run)

    Printing each action as it finishes:

    >>> orchestrator = AuditOrchestrator(config, progress_callback=reporter.print_action)
    """

    def __init__(self, console: Optional[Console] = None, reason_width: Optional[int] = 60) -> None:
        """Initialize the table reporter with a Rich Console."""
        self.console = console or Console()
        self.reason_width = reason_width
        logger.debug("Initialized TableReporter")

    def print(self, run: AuditRun) -> None:
        """
        Print the full report of ``run`` to the console.

        Example
        -------
        >>> TableReporter().print(run)
        """
        self._print_header(run)
        self._print_summary(run)

        if run.findings:
            self._print_findings_table(run)
        else:
            self.console.print("\n[green]No findings.[/green]")

        if run.errors:
            self._print_errors(run.errors)

    def to_string(self, run: AuditRun, width: Optional[int] = None) -> str:
        """
        Render the report as plain text.

        Without an explicit ``width`` the text is made wide enough that no
        resource id or reason is wrapped.
        """
        if width is None:
            longest = max((len(f.resource.id) + len(f.reason) for f in run.findings), default=0)
            width = max(MIN_TEXT_WIDTH, longest + MIN_TEXT_WIDTH)
        console = Console(width=width, record=True, force_terminal=False, color_system=None)
        with console.capture() as capture:
            TableReporter(console, reason_width=None).print(run)
        return capture.get()

    # =========================================================================
    # Private Methods: Output Formatting
    # =========================================================================

    def _print_header(self, run: AuditRun) -> None:
        regions = run.regions_scanned
        region_text = ", ".join(regions) if len(regions) <= 5 else f"{len(regions)} regions"

        header_text = Text()
        header_text.append(f"\n{run.provider.value.upper()} Audit Report\n", style="bold blue")
        header_text.append(f"Mode: {run.mode.value}  Regions: {region_text or '-'}", style="dim")

        self.console.print(Panel(header_text, border_style="blue"))

    def _print_summary(self, run: AuditRun) -> None:
        summary = Table(show_header=False, box=None, padding=(0, 2))
        summary.add_column("Metric", style="cyan")
        summary.add_column("Value", style="white")

        summary.add_row("Resources Scanned:", str(run.resources_scanned))

        findings_style = "red" if run.findings else "green"
        summary.add_row("Findings:", f"[{findings_style}]{len(run.findings)}[/]")

        counts = run.severity_counts
        for severity in reversed(list(Severity)):
            if counts[severity.value]:
                summary.add_row(
                    f"  {severity.value.title()}:",
                    f"[{SEVERITY_STYLES[severity]}]{counts[severity.value]}[/]",
                )

        summary.add_row(
            "Est. Monthly Savings:",
            f"[green]${run.total_estimated_monthly_savings}[/]",
        )
        if run.price_table_version:
            summary.add_row("Price Table:", run.price_table_version)

        actions = run.action_counts()
        if actions:
            summary.add_row("Actions:", ", ".join(f"{s} {n}" for s, n in actions.items()))

        if run.finished_at:
            summary.add_row("Finished:", run.finished_at.strftime("%Y-%m-%d %H:%M:%S UTC"))

        if run.cancelled:
            summary.add_row("Status:", "[yellow]cancelled[/]")

        if run.errors:
            summary.add_row("Errors:", f"[yellow]{len(run.errors)} error(s)[/]")

        self.console.print("\n")
        self.console.print(summary)

    def _print_findings_table(self, run: AuditRun) -> None:
        outcomes = self._outcomes(run.action_results)

        table = Table(title="\nFindings", title_style="bold", show_lines=False)
        table.add_column("Resource ID", style="cyan", overflow="fold")
        table.add_column("Region", style="yellow", no_wrap=True)
        table.add_column("Kind", style="white")
        table.add_column("Rule", style="white")
        table.add_column("Severity")
        table.add_column("Reason", style="dim", max_width=self.reason_width)
        table.add_column("Est. Cost/mo", justify="right")
        table.add_column("Action")

        for finding in run.findings:
            cost = finding.estimated_monthly_cost
            outcome = outcomes.get((finding.resource.id, finding.rule_name))
            table.add_row(
                escape(finding.resource.id),
                finding.resource.region,
                finding.resource.kind.value,
                finding.rule_name,
                f"[{SEVERITY_STYLES[finding.severity]}]{finding.severity.value}[/]",
                Text(finding.reason),
                f"${cost}" if cost is not None else "-",
                self._format_outcome(outcome, finding.remediation.value if finding.remediation else None),
            )

        self.console.print(table)

    def _print_errors(self, errors: List[ErrorRecord]) -> None:
        table = Table(title="\nErrors encountered", title_style="yellow bold", show_lines=False)
        table.add_column("Kind", style="red", no_wrap=True)
        table.add_column("Region", style="yellow")
        table.add_column("Resource", style="cyan")
        table.add_column("Message", max_width=70)

        for error in errors:
            resource = error.resource_id or error.resource_kind or "-"
            table.add_row(error.kind.value, error.region or "-", escape(resource), Text(error.message))

        self.console.print(table)

    @staticmethod
    def _outcomes(results: List[ActionResult]) -> Dict[Tuple[str, str], ActionResult]:
        return {(r.finding.resource.id, r.finding.rule_name): r for r in results}

    @staticmethod
    def _format_outcome(result: Optional[ActionResult], remediation: Optional[str]) -> str:
        if result is None:
            return remediation or "-"
        label = f"{result.action.value} " if result.action else ""
        style = STATE_STYLES.get(result.state, "white")
        return f"{label}[{style}]{result.state.value}[/]"

    def print_action(self, result: ActionResult) -> None:
        """Print one line per finished action."""
        resource = result.finding.resource
        action = result.action.value if result.action else "no action"
        style = STATE_STYLES.get(result.state, "white")
        line = f"[{style}]{result.state.value}[/] {action} {resource.kind.value} {escape(resource.id)}"
        if result.undo_reference:
            line += f" [dim](backup {result.undo_reference})[/dim]"
        if result.error:
            line += f" [red]{escape(result.error.message)}[/red]"
        elif result.detail:
            line += f" [dim]{escape(result.detail)}[/dim]"
        self.console.print(line)

    def __repr__(self) -> str:
        """Return string representation."""
        return "TableReporter()"
