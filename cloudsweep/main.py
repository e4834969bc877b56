"""
Cloud-Sweep CLI - Multi-cloud resource audit

Main entry point for the command-line interface.

Exit codes: 0 when the audit completed without unresolved critical
findings, 1 when critical findings remain, 2 when the run was aborted by a
configuration or provider error, 130 when interrupted.
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .adapters.registry import AdapterFactory, registered_kinds
from .core.aws_client import AWSClient
from .core.cancel import CancelToken
from .core.config import AuditConfig, load_config
from .core.exceptions import ConfigError, ProviderError
from .core.logging import setup_logging
from .core.models import Finding, Mode, OutputFormat, Provider, ResourceKind, Severity
from .core.orchestrator import AuditOrchestrator
from .cost.estimator import PriceTable, bundled_versions
from .policy.rules import default_rules, rules_for
from .reporters import JSONReporter, TableReporter, render

EXIT_OK = 0
EXIT_CRITICAL = 1
EXIT_ABORTED = 2
EXIT_INTERRUPTED = 130

console = Console()
err_console = Console(stderr=True)


def _choices(enum_class) -> List[str]:
    return [member.value for member in enum_class]


def validate_regions(ctx, param, value: Optional[str]) -> Optional[List[str]]:
    """Validate and parse comma-separated region list."""
    if value is None:
        return None
    regions = [r.strip() for r in value.split(",") if r.strip()]
    if not regions:
        raise click.BadParameter("No valid regions specified")
    return regions


def _resolve_mode(mode: Optional[str], dry_run: bool, force: bool) -> Optional[str]:
    if dry_run and force:
        raise click.UsageError("--dry-run and --force are mutually exclusive")
    if mode and (dry_run or force):
        raise click.UsageError("--mode can't be combined with --dry-run or --force")
    if dry_run:
        return Mode.DRY_RUN.value
    if force:
        return Mode.APPLY_FORCE.value
    return mode


def _describe(finding: Finding) -> str:
    resource = finding.resource
    action = finding.remediation.value if finding.remediation else "act on"
    text = f"{action.title()} {resource.kind.value} {escape(resource.display_name)} in {resource.region}"
    if resource.display_name != resource.id:
        text += f" ({escape(resource.id)})"
    if finding.estimated_monthly_cost is not None:
        text += f", saves ~${finding.estimated_monthly_cost}/month"
    return text


def _prompt_confirm(finding: Finding) -> bool:
    return Confirm.ask(
        f"[yellow]{_describe(finding)}[/yellow] [dim][{finding.rule_name}][/dim]?",
        default=False,
        console=err_console,
    )


def _print_mode_banner(mode: Mode) -> None:
    if mode is Mode.DRY_RUN:
        err_console.print(
            Panel(
                "[yellow bold]DRY-RUN MODE[/yellow bold]\n"
                "Actions are reported, nothing is changed.",
                border_style="yellow",
            )
        )
    elif mode is Mode.APPLY_FORCE:
        err_console.print(
            Panel(
                "[red bold]FORCE MODE[/red bold]\n"
                "Actions are applied WITHOUT confirmation!",
                border_style="red",
            )
        )


def _write_output(run, output_format: OutputFormat, output: Optional[str]) -> None:
    if output:
        if output_format is OutputFormat.JSON:
            path = JSONReporter(output_path=output).report(run)
        else:
            Path(output).write_text(render(run, output_format), encoding="utf-8")
            path = output
        err_console.print(f"[dim]Results saved to: {path}[/dim]")
        return
    if output_format is OutputFormat.TABLE:
        TableReporter(console).print(run)
    else:
        click.echo(render(run, output_format))


@click.group()
@click.version_option(version=__version__, prog_name="cloudsweep")
def cli():
    """
    Cloud-Sweep: policy-driven cloud resource audit

    Lists resources across AWS, GCP and Azure, flags waste and risky
    exposure with built-in rules, estimates monthly cost and optionally
    remediates under an explicit execution mode.
    """
    pass


@cli.command("audit")
@click.option("--provider", type=click.Choice(_choices(Provider)), default=None, help="Cloud provider (default: aws)")
@click.option("--region", "-r", "region", multiple=True, help="Region to scan (repeatable)")
@click.option(
    "--regions",
    callback=validate_regions,
    help="Comma-separated list of regions (e.g., us-east-1,us-west-2)",
)
@click.option("--kind", "-k", "kinds", multiple=True, type=click.Choice(_choices(ResourceKind)), help="Resource kind to scan (repeatable)")
@click.option("--mode", type=click.Choice(_choices(Mode)), default=None, help="Execution mode (default: reportOnly)")
@click.option("--dry-run", is_flag=True, default=False, help="Report what would be done without changing anything")
@click.option("--force", is_flag=True, default=False, help="Apply actions without confirmation (dangerous!)")
@click.option("--yes", "-y", is_flag=True, default=False, help="Answer yes to every confirmation prompt")
@click.option("--min-severity", type=click.Choice(_choices(Severity)), default=None, help="Drop findings below this severity")
@click.option("--action-min-severity", type=click.Choice(_choices(Severity)), default=None, help="Only act on findings at or above this severity")
@click.option("--action-kind", "action_kinds", multiple=True, type=click.Choice(_choices(ResourceKind)), help="Only act on this kind (repeatable)")
@click.option("--format", "-f", "output_format", type=click.Choice(_choices(OutputFormat)), default=None, help="Output format (default: table)")
@click.option("--output", "-o", default=None, help="Write the report to this file")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), default=None, help="JSON configuration file")
@click.option("--profile", "-p", default=None, help="AWS profile name from ~/.aws/credentials")
@click.option("--project", default=None, help="GCP project id")
@click.option("--subscription", "subscription_id", default=None, help="Azure subscription id")
@click.option("--concurrency-listing", type=int, default=None, help="Parallel listing calls (default: 8)")
@click.option("--concurrency-action", type=int, default=None, help="Parallel actions (default: 2)")
@click.option("--price-table-version", default=None, help="Bundled price table version")
@click.option("--price-table", "price_table_path", type=click.Path(dir_okay=False), default=None, help="Price table JSON file")
@click.option("--snapshot-retention-days", type=int, default=None, help="Age after which snapshots are stale (default: 30)")
@click.option("--deadline", "deadline_seconds", type=float, default=None, help="Cancel the run after this many seconds")
@click.option("--history-file", default=None, help="Append the finished run to this JSON-lines file")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False), default=None)
@click.option("--log-file", default=None, help="Also write logs to this file")
def audit(
    provider: Optional[str],
    region: Tuple[str, ...],
    regions: Optional[List[str]],
    kinds: Tuple[str, ...],
    mode: Optional[str],
    dry_run: bool,
    force: bool,
    yes: bool,
    min_severity: Optional[str],
    action_min_severity: Optional[str],
    action_kinds: Tuple[str, ...],
    output_format: Optional[str],
    output: Optional[str],
    config_file: Optional[str],
    profile: Optional[str],
    project: Optional[str],
    subscription_id: Optional[str],
    concurrency_listing: Optional[int],
    concurrency_action: Optional[int],
    price_table_version: Optional[str],
    price_table_path: Optional[str],
    snapshot_retention_days: Optional[int],
    deadline_seconds: Optional[float],
    history_file: Optional[str],
    log_level: Optional[str],
    log_file: Optional[str],
):
    """
    Audit cloud resources against the built-in rules.

    Examples:

        # Report findings in two regions
        cloudsweep audit -r us-east-1 -r eu-west-1

        # Preview remediation (safe)
        cloudsweep audit --dry-run --min-severity high

        # Remediate with a prompt per action
        cloudsweep audit --mode applyWithConfirm --kind volume

        # GCP project, JSON report
        cloudsweep audit --provider gcp --project my-project -f json -o audit.json
    """
    all_regions = list(region) + list(regions or [])
    overrides: Dict[str, Any] = {
        "provider": provider,
        "regions": all_regions or None,
        "kinds": list(kinds) or None,
        "mode": _resolve_mode(mode, dry_run, force),
        "min_severity": min_severity,
        "action_min_severity": action_min_severity,
        "action_kinds": list(action_kinds) or None,
        "output_format": output_format,
        "profile": profile,
        "project": project,
        "subscription_id": subscription_id,
        "concurrency_listing": concurrency_listing,
        "concurrency_action": concurrency_action,
        "cost_price_table_version": price_table_version,
        "price_table_path": price_table_path,
        "snapshot_retention_days": snapshot_retention_days,
        "deadline_seconds": deadline_seconds,
        "history_file": history_file,
        "log_level": log_level,
        "log_file": log_file,
    }

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as e:
        err_console.print(f"\n[red bold]Configuration Error:[/red bold] {escape(str(e))}")
        sys.exit(EXIT_ABORTED)

    setup_logging(level=config.log_level, log_file=config.log_file, console=err_console)
    _print_mode_banner(config.mode)

    confirm = (lambda finding: True) if yes else _prompt_confirm
    reporter = TableReporter(err_console)
    orchestrator = AuditOrchestrator(
        config,
        confirm=confirm,
        progress_callback=reporter.print_action if config.mode.mutates else None,
    )
    cancel = CancelToken(config.deadline_seconds)

    try:
        if config.mode is Mode.APPLY_WITH_CONFIRM and not yes:
            run = orchestrator.run(cancel)
        else:
            with err_console.status(f"Auditing {config.provider.value}..."):
                run = orchestrator.run(cancel)
    except ConfigError as e:
        err_console.print(f"\n[red bold]Configuration Error:[/red bold] {escape(str(e))}")
        sys.exit(EXIT_ABORTED)
    except ProviderError as e:
        err_console.print(f"\n[red bold]{config.provider.value.upper()} Error:[/red bold] {escape(str(e))}")
        sys.exit(EXIT_ABORTED)
    except KeyboardInterrupt:
        cancel.cancel("interrupted")
        err_console.print("\n[yellow]Audit cancelled by user.[/yellow]")
        sys.exit(EXIT_INTERRUPTED)

    _write_output(run, config.output_format, output)

    if run.listing_failed:
        err_console.print(
            f"\n[red bold]Nothing could be listed:[/red bold] all {run.pairs_planned} "
            f"kind/region pair(s) failed. See the errors above."
        )
        sys.exit(EXIT_ABORTED)

    critical = run.unresolved_critical
    if critical:
        err_console.print(f"\n[red bold]{len(critical)} unresolved critical finding(s).[/red bold]")
        sys.exit(EXIT_CRITICAL)
    sys.exit(EXIT_OK)


@cli.command("rules")
@click.option("--provider", type=click.Choice(_choices(Provider)), default=None, help="Only rules that apply to this provider")
def list_rules(provider: Optional[str]):
    """List the built-in rules."""
    rules = default_rules()
    if provider:
        rules = rules_for(Provider.parse(provider), rules)

    table = Table(title="Built-in Rules", show_lines=False)
    table.add_column("Rule", style="cyan", no_wrap=True)
    table.add_column("Severity")
    table.add_column("Kinds", style="yellow")
    table.add_column("Providers", style="dim")
    table.add_column("Action", style="green")
    table.add_column("Description", style="dim", max_width=60)

    for rule in rules:
        target = rule.applies_to
        table.add_row(
            rule.name,
            rule.severity.value,
            ", ".join(sorted(k.value for k in target.kinds)),
            ", ".join(sorted(p.value for p in target.providers)) or "all",
            rule.remediation.value if rule.remediation else "-",
            rule.description,
        )

    console.print(table)


@cli.command("regions")
@click.option("--provider", type=click.Choice(_choices(Provider)), default="aws", help="Cloud provider (default: aws)")
@click.option("--profile", "-p", default=None, help="AWS profile name from ~/.aws/credentials")
@click.option("--project", default=None, help="GCP project id")
@click.option("--subscription", "subscription_id", default=None, help="Azure subscription id")
def list_regions(
    provider: str,
    profile: Optional[str],
    project: Optional[str],
    subscription_id: Optional[str],
):
    """List the regions an audit would scan."""
    try:
        config = AuditConfig().replace(
            provider=provider,
            profile=profile,
            project=project,
            subscription_id=subscription_id,
        ).validate()
        factory = AdapterFactory(config)
        adapters = [factory(kind) for kind in registered_kinds(config.provider)]
        regional = [a for a in adapters if not a.global_scope]
        regions = regional[0].discover_regions() if regional else []
    except (ConfigError, ProviderError) as e:
        err_console.print(f"\n[red bold]Error:[/red bold] {escape(str(e))}")
        sys.exit(EXIT_ABORTED)

    console.print(f"\n[bold]Available {provider.upper()} Regions ({len(regions)} total):[/bold]\n")
    for name in regions:
        console.print(f"  • {name}")
    console.print()


@cli.command("validate")
@click.option("--profile", "-p", default=None, help="AWS profile name from ~/.aws/credentials")
@click.option("--region", "-r", default="us-east-1", help="AWS region to use for validation")
def validate_credentials(profile: Optional[str], region: str):
    """Validate AWS credentials and show account info."""
    try:
        identity = AWSClient(region=region, profile=profile).caller_identity()
    except ProviderError as e:
        err_console.print(f"\n[red bold]Validation Failed:[/red bold] {escape(str(e))}")
        sys.exit(EXIT_ABORTED)

    console.print("\n[green bold]AWS credentials are valid![/green bold]")
    console.print(f"\n  Account ID: {identity['account']}")
    console.print(f"  Identity: {escape(identity['arn'])}")
    console.print(f"  Region: {region}")
    if profile:
        console.print(f"  Profile: {profile}")
    console.print()


@cli.command("price-table")
@click.option("--version", "version", default=None, help="Bundled table version (default: latest default)")
@click.option("--path", "path", type=click.Path(dir_okay=False), default=None, help="Price table JSON file")
@click.option("--format", "-f", "output_format", type=click.Choice(["table", "json"]), default="table")
def show_price_table(version: Optional[str], path: Optional[str], output_format: str):
    """Print the price table used for cost estimates."""
    try:
        table_data = PriceTable.load(version=version, path=path)
    except ConfigError as e:
        err_console.print(f"\n[red bold]Error:[/red bold] {escape(str(e))}")
        sys.exit(EXIT_ABORTED)

    if output_format == "json":
        click.echo(json.dumps(table_data.to_dict(), indent=2))
        return

    table = Table(title=f"Price Table {table_data.version} ({table_data.currency})", show_lines=False)
    table.add_column("Provider", style="yellow")
    table.add_column("Kind", style="cyan")
    table.add_column("Unit", style="dim")
    table.add_column("Default", justify="right")
    table.add_column("By Type", style="dim")

    for (provider, kind), entry in sorted(table_data.entries.items(), key=lambda item: (item[0][0].value, item[0][1].value)):
        table.add_row(
            provider.value,
            kind.value,
            entry.unit,
            str(entry.default),
            ", ".join(f"{t}={p}" for t, p in sorted(entry.by_type.items())) or "-",
        )

    console.print(table)
    if table_data.note:
        console.print(f"[dim]{escape(table_data.note)}[/dim]")
    console.print(f"[dim]Bundled versions: {', '.join(bundled_versions())}[/dim]")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
