"""
Tests for the command-line interface.
"""

import json

import pytest
from click.testing import CliRunner
from rich.console import Console

from cloudsweep import main
from cloudsweep.core.models import AuditRun, ErrorKind, ErrorRecord, Mode, Provider
from cloudsweep.main import cli
from cloudsweep.reporters import parse_run


@pytest.fixture
def runner(monkeypatch):
    """CliRunner with consoles wide enough that table cells never truncate."""
    monkeypatch.setattr(main, "console", Console(width=200))
    monkeypatch.setattr(main, "err_console", Console(width=200, stderr=True))
    return CliRunner()


class TestInfoCommands:
    """Tests for commands that make no provider calls."""

    def test_version(self, runner):
        """Test --version."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_rules(self, runner):
        """Test the rule listing."""
        result = runner.invoke(cli, ["rules"])
        assert result.exit_code == 0
        assert "Built-in Rules" in result.output
        assert "volume-unattached" in result.output

    def test_rules_for_gcp(self, runner):
        """Test that provider filtering hides AWS-only rules."""
        result = runner.invoke(cli, ["rules", "--provider", "gcp"])
        assert result.exit_code == 0
        assert "firewall-rule-untargeted" in result.output
        assert "volume-unencrypted" not in result.output

    def test_price_table_json(self, runner):
        """Test the bundled price table as JSON."""
        result = runner.invoke(cli, ["price-table", "--format", "json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["version"] == "2024.1"
        assert data["prices"]["aws"]["address"]["default"] == "3.65"

    def test_validate(self, runner, mock_aws_environment):
        """Test the credential check command."""
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 0
        assert "AWS credentials are valid" in result.output

    def test_price_table_unknown_version(self, runner):
        """Test that an unknown table version aborts."""
        result = runner.invoke(cli, ["price-table", "--version", "1999.9"])
        assert result.exit_code == 2


class TestAudit:
    """Tests for the audit command."""

    def test_dry_run_and_force_conflict(self, runner):
        """Test that --dry-run and --force are rejected together."""
        result = runner.invoke(cli, ["audit", "--dry-run", "--force"])
        assert result.exit_code == 2
        assert "mutually exclusive" in result.output

    def test_config_error_aborts(self, runner, aws_credentials):
        """Test that an invalid configuration exits with code 2."""
        result = runner.invoke(cli, ["audit", "--provider", "gcp", "-r", "us-central1"])
        assert result.exit_code == 2
        assert "project" in result.output

    def test_dry_run_report(self, runner, ec2_client, tmp_path):
        """Test a dry-run audit written as JSON."""
        volume_id = ec2_client.create_volume(AvailabilityZone="us-east-1a", Size=100, VolumeType="gp2")["VolumeId"]
        output = tmp_path / "audit.json"

        result = runner.invoke(
            cli,
            ["audit", "-r", "us-east-1", "-k", "volume", "--dry-run", "-f", "json", "-o", str(output)],
        )

        assert result.exit_code == 0, result.output
        run = parse_run(output.read_text())
        assert run.mode.value == "dryRun"
        assert volume_id in {f.resource.id for f in run.findings}
        described = ec2_client.describe_volumes(VolumeIds=[volume_id])["Volumes"]
        assert len(described) == 1

    def test_unresolved_critical_exit_code(self, runner, ec2_client, security_group, tmp_path):
        """Test that open SSH left in place exits with code 1."""
        ec2_client.authorize_security_group_ingress(
            GroupId=security_group,
            IpPermissions=[
                {"IpProtocol": "tcp", "FromPort": 22, "ToPort": 22, "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}
            ],
        )
        output = tmp_path / "summary.txt"

        result = runner.invoke(
            cli,
            ["audit", "-r", "us-east-1", "-k", "security-group", "-f", "summary", "-o", str(output)],
        )

        assert result.exit_code == 1
        assert "critical 1" in output.read_text()

    def test_nothing_listed_exits_aborted(self, runner, aws_credentials, monkeypatch, tmp_path):
        """Test that a run where every listing failed is not reported as clean."""
        failed = AuditRun(provider=Provider.AWS, mode=Mode.REPORT_ONLY, pairs_planned=2)
        failed.errors = [
            ErrorRecord(
                kind=ErrorKind.PARTIAL_FAILURE,
                message=f"Failed to list volume in {region}: AuthFailure",
                region=region,
                resource_kind="volume",
            )
            for region in ("us-east-1", "eu-west-1")
        ]

        class FailingOrchestrator:
            def __init__(self, config, **kwargs):
                self.config = config

            def run(self, cancel=None):
                failed.complete()
                return failed

        monkeypatch.setattr(main, "AuditOrchestrator", FailingOrchestrator)
        output = tmp_path / "audit.json"

        result = runner.invoke(
            cli, ["audit", "-r", "us-east-1", "-r", "eu-west-1", "-k", "volume", "-f", "json", "-o", str(output)]
        )

        assert result.exit_code == 2
        assert parse_run(output.read_text()).listing_failed
