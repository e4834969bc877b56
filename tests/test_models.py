"""
Tests for the data model.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cloudsweep.core.exceptions import PolicyError
from cloudsweep.core.models import (
    ActionResult,
    ActionState,
    ActionType,
    AuditRun,
    ErrorKind,
    ErrorRecord,
    Mode,
    Provider,
    Resource,
    ResourceKind,
    Rule,
    RuleTarget,
    Severity,
    is_world_source,
)

from fakes import make_finding, make_security_group, make_volume


class TestEnums:
    """Tests for enum parsing."""

    def test_parse_mode_variants(self):
        """Test that modes parse from values, names and dashed forms."""
        assert Mode.parse("dryRun") is Mode.DRY_RUN
        assert Mode.parse("dry-run") is Mode.DRY_RUN
        assert Mode.parse("APPLY_FORCE") is Mode.APPLY_FORCE
        assert Mode.parse(Mode.REPORT_ONLY) is Mode.REPORT_ONLY

    def test_parse_invalid_value(self):
        """Test that unknown values list the allowed ones."""
        with pytest.raises(ValueError, match="allowed"):
            Provider.parse("oracle")

    def test_severity_order(self):
        """Test severity ranking."""
        assert Severity.CRITICAL.at_least(Severity.HIGH)
        assert Severity.HIGH.at_least(Severity.HIGH)
        assert not Severity.LOW.at_least(Severity.MEDIUM)

    def test_mode_mutates(self):
        """Test which modes change resources."""
        assert Mode.APPLY_FORCE.mutates
        assert Mode.APPLY_WITH_CONFIRM.mutates
        assert not Mode.DRY_RUN.mutates
        assert not Mode.REPORT_ONLY.mutates

    @pytest.mark.parametrize("source", ["0.0.0.0/0", "::/0", "*", "Internet", " any "])
    def test_world_sources(self, source):
        """Test internet-wide source spellings."""
        assert is_world_source(source)

    def test_private_source_is_not_world(self):
        """Test that a private range is not world-open."""
        assert not is_world_source("10.0.0.0/8")


class TestRule:
    """Tests for Rule reason rendering."""

    def test_render_reason_uses_attributes(self):
        """Test reason templates see resource fields and raw attributes."""
        rule = Rule(
            name="r",
            applies_to=RuleTarget(kinds=frozenset({ResourceKind.VOLUME})),
            severity=Severity.LOW,
            predicate=lambda r: True,
            reason_template="{id} is {size_gb} GB of {volume_type}",
        )
        assert rule.render_reason(make_volume("vol-9", size_gb=8)) == "vol-9 is 8 GB of gp2"

    def test_render_reason_missing_key(self):
        """Test that unknown template keys render as '?'."""
        rule = Rule(
            name="r",
            applies_to=RuleTarget(kinds=frozenset({ResourceKind.VOLUME})),
            severity=Severity.LOW,
            predicate=lambda r: True,
            reason_template="{nope}",
        )
        assert rule.render_reason(make_volume("vol-9")) == "?"

    def test_target_provider_filter(self):
        """Test that a provider-restricted target ignores other providers."""
        target = RuleTarget(kinds=frozenset({ResourceKind.VOLUME}), providers=frozenset({Provider.GCP}))
        assert not target.matches(make_volume("vol-1"))


class TestErrorRecord:
    """Tests for ErrorRecord."""

    def test_from_exception_keeps_kind(self):
        """Test that the taxonomy kind of an exception is kept."""
        record = ErrorRecord.from_exception(
            PolicyError("predicate failed", rule_name="r1", resource_id="vol-1"),
            region="us-east-1",
        )
        assert record.kind is ErrorKind.POLICY_ERROR
        assert record.message == "predicate failed"
        assert record.details["rule_name"] == "r1"
        assert record.region == "us-east-1"

    def test_from_unknown_exception(self):
        """Test that foreign exceptions become ProviderError records."""
        record = ErrorRecord.from_exception(RuntimeError("kaboom"))
        assert record.kind is ErrorKind.PROVIDER_ERROR
        assert record.message == "kaboom"


class TestAuditRun:
    """Tests for AuditRun."""

    def _run(self, mode):
        return AuditRun(
            provider=Provider.AWS,
            mode=mode,
            started_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
            regions_scanned=["us-east-1"],
            kinds_scanned=[ResourceKind.VOLUME],
        )

    def test_savings_counts_potential_in_dry_run(self):
        """Test dry-run savings sum every cost-saving remediation."""
        run = self._run(Mode.DRY_RUN)
        run.findings = [
            make_finding(make_volume("vol-1"), cost="10.00"),
            make_finding(make_volume("vol-2"), cost="2.50"),
            make_finding(make_volume("vol-3"), rule_name="volume-unencrypted", remediation=None, cost="4.00"),
        ]
        assert run.total_estimated_monthly_savings == Decimal("12.50")

    def test_savings_counts_resource_once(self):
        """Test that two findings on one resource count its cost once."""
        run = self._run(Mode.REPORT_ONLY)
        volume = make_volume("vol-1")
        run.findings = [
            make_finding(volume, rule_name="a", cost="10.00"),
            make_finding(volume, rule_name="b", cost="10.00"),
        ]
        assert run.total_estimated_monthly_savings == Decimal("10.00")

    def test_savings_counts_only_applied_in_apply_modes(self):
        """Test that failed actions don't count as savings."""
        run = self._run(Mode.APPLY_FORCE)
        applied = make_finding(make_volume("vol-1"), cost="10.00")
        failed = make_finding(make_volume("vol-2"), cost="5.00")
        run.findings = [applied, failed]
        run.action_results = [
            ActionResult(applied, ActionType.DELETE, ActionState.APPLIED, attempted=True, succeeded=True),
            ActionResult(failed, ActionType.DELETE, ActionState.FAILED, attempted=True),
        ]
        assert run.total_estimated_monthly_savings == Decimal("10.00")

    def test_unresolved_critical(self):
        """Test that applied critical findings are resolved."""
        run = self._run(Mode.APPLY_FORCE)
        fixed = make_finding(make_security_group("sg-1", []), rule_name="ssh", severity=Severity.CRITICAL, remediation=ActionType.PATCH)
        open_ = make_finding(make_security_group("sg-2", []), rule_name="ssh", severity=Severity.CRITICAL, remediation=ActionType.PATCH)
        run.findings = [fixed, open_]
        run.action_results = [
            ActionResult(fixed, ActionType.PATCH, ActionState.APPLIED, attempted=True, succeeded=True),
        ]
        assert run.unresolved_critical == [open_]

    def test_json_round_trip(self):
        """Test that to_dict/from_dict through JSON is lossless."""
        run = self._run(Mode.APPLY_FORCE)
        volume = Resource(
            id="vol-1",
            kind=ResourceKind.VOLUME,
            provider=Provider.AWS,
            region="us-east-1",
            size_gb=100.0,
            created_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            tags={"Name": "data"},
            raw_attributes={"attachments": [], "volume_type": "gp2"},
            name="data",
        )
        finding = make_finding(volume, cost="10.00")
        run.findings = [finding]
        run.action_results = [
            ActionResult(
                finding,
                ActionType.DELETE,
                ActionState.APPLIED,
                attempted=True,
                succeeded=True,
                undo_reference="snap-1",
            )
        ]
        run.errors = [
            ErrorRecord(kind=ErrorKind.PARTIAL_FAILURE, message="eu-west-1 down", region="eu-west-1")
        ]
        run.complete()

        restored = AuditRun.from_dict(json.loads(json.dumps(run.to_dict())))

        assert restored == run
        assert restored.findings[0].estimated_monthly_cost == Decimal("10.00")
        assert restored.total_estimated_monthly_savings == Decimal("10.00")

    def test_summary_block(self):
        """Test derived totals in the serialized form."""
        run = self._run(Mode.DRY_RUN)
        run.findings = [make_finding(cost="10.00")]
        summary = run.to_dict()["summary"]
        assert summary["total_estimated_monthly_savings"] == "10.00"
        assert summary["severity_counts"]["medium"] == 1
