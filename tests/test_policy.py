"""
Tests for the built-in rules and the policy engine.
"""

from datetime import timedelta

import pytest

from cloudsweep.core.exceptions import ConfigError
from cloudsweep.core.models import (
    ActionType,
    ErrorKind,
    Provider,
    Resource,
    ResourceKind,
    Rule,
    RuleTarget,
    Severity,
)
from cloudsweep.policy.engine import PolicyEngine, classify
from cloudsweep.policy.rules import (
    covers_port,
    default_rules,
    rules_by_name,
    rules_for,
    snapshot_stale,
)

from fakes import make_security_group, make_volume


def _rule_names(findings):
    return [(f.resource.id, f.rule_name) for f in findings]


def _ssh(cidr="0.0.0.0/0", protocol="tcp", low=22, high=22):
    return {"cidrs": [cidr], "from_port": low, "to_port": high, "protocol": protocol}


def _snapshot(snapshot_id, created_at):
    return Resource(
        id=snapshot_id,
        kind=ResourceKind.SNAPSHOT,
        provider=Provider.AWS,
        region="us-east-1",
        size_gb=20,
        created_at=created_at,
        raw_attributes={"source_volume_id": "vol-1"},
    )


class TestRules:
    """Tests for individual rule predicates."""

    def test_unattached_volume(self, now):
        """Test that only unattached volumes match."""
        findings = classify(
            [make_volume("vol-free"), make_volume("vol-used", attached=True)],
            default_rules(now=now),
        )
        assert _rule_names(findings) == [("vol-free", "volume-unattached")]
        assert findings[0].remediation is ActionType.DELETE
        assert findings[0].severity is Severity.MEDIUM

    def test_attached_instance_tag_counts_as_attached(self, now):
        """Test the attached-instance tag override."""
        volume = make_volume("vol-tagged", tags={"attached-instance": "i-1"})
        assert classify([volume], default_rules(now=now)) == []

    def test_unencrypted_volume(self, now):
        """Test that an unencrypted, attached volume is a high finding."""
        findings = classify([make_volume("vol-1", attached=True, encrypted=False)], default_rules(now=now))
        assert _rule_names(findings) == [("vol-1", "volume-unencrypted")]
        assert findings[0].remediation is None

    def test_ssh_open_to_world(self, now):
        """Test SSH exposure on a security group."""
        findings = classify([make_security_group("sg-1", [_ssh()])], default_rules(now=now))
        names = {f.rule_name for f in findings}
        assert "ssh-open-to-internet" in names
        assert "ingress-open-to-internet" in names
        ssh = [f for f in findings if f.rule_name == "ssh-open-to-internet"][0]
        assert ssh.severity is Severity.CRITICAL
        assert ssh.remediation is ActionType.PATCH

    def test_ssh_from_private_range(self, now):
        """Test that a private source is not an exposure."""
        findings = classify([make_security_group("sg-1", [_ssh(cidr="10.0.0.0/8")])], default_rules(now=now))
        assert findings == []

    def test_ipv6_world_source(self, now):
        """Test that ::/0 counts as the internet."""
        findings = classify([make_security_group("sg-1", [_ssh(cidr="::/0")])], default_rules(now=now))
        assert "ssh-open-to-internet" in {f.rule_name for f in findings}

    def test_port_range_covering_rdp(self, now):
        """Test that a port range including 3389 triggers the RDP rule."""
        group = make_security_group("sg-1", [_ssh(low=3000, high=4000)])
        names = {f.rule_name for f in classify([group], default_rules(now=now))}
        assert "rdp-open-to-internet" in names
        assert "ssh-open-to-internet" not in names

    def test_udp_does_not_open_ssh(self):
        """Test that UDP on port 22 is not SSH."""
        assert not covers_port(_ssh(protocol="udp"), 22)
        assert covers_port({"protocol": "all", "from_port": None, "to_port": None}, 22)

    def test_unused_security_group(self, now):
        """Test the unused group rule and the default group exemption."""
        unused = make_security_group("sg-unused", [], attached=False)
        default = make_security_group("sg-default", [], attached=False, is_default=True)
        findings = classify([unused, default], default_rules(now=now))
        assert _rule_names(findings) == [("sg-unused", "security-group-unused")]

    def test_unknown_attachment_is_not_unused(self, now):
        """Test that a group with unresolved attachment is never reported unused."""
        group = make_security_group("sg-1", [], attached=None)
        assert classify([group], default_rules(now=now)) == []

    def test_stale_snapshot(self, now):
        """Test snapshot age against the retention window."""
        old = _snapshot("snap-old", now - timedelta(days=31))
        fresh = _snapshot("snap-new", now - timedelta(days=29))
        findings = classify([old, fresh], [snapshot_stale(now=now, retention_days=30)])
        assert _rule_names(findings) == [("snap-old", "snapshot-stale")]

    def test_rules_for_provider(self):
        """Test provider filtering of the rule set."""
        names = {r.name for r in rules_for(Provider.GCP, default_rules())}
        assert "firewall-rule-untargeted" in names
        assert "security-group-unused" not in names
        assert "volume-unattached" in names

    def test_rule_names_are_unique(self):
        """Test that the built-in rules have distinct names."""
        rules = default_rules()
        assert len(rules_by_name(rules)) == len(rules)


class TestManagedServiceRules:
    """Tests for load balancer, database, bucket and IAM user rules."""

    def _resource(self, resource_id, kind, region="us-east-1", **attributes):
        return Resource(
            id=resource_id,
            kind=kind,
            provider=Provider.AWS,
            region=region,
            name=resource_id,
            raw_attributes=attributes,
        )

    def test_load_balancer_without_targets(self, now):
        """Test that only load balancers with zero targets match."""
        empty = self._resource("lb-empty", ResourceKind.LOAD_BALANCER, lb_type="application", target_count=0)
        busy = self._resource("lb-busy", ResourceKind.LOAD_BALANCER, lb_type="network", target_count=3)
        unknown = self._resource("lb-unknown", ResourceKind.LOAD_BALANCER)

        findings = classify([empty, busy, unknown], default_rules(now=now))

        assert _rule_names(findings) == [("lb-empty", "load-balancer-no-targets")]
        assert findings[0].remediation is ActionType.DELETE
        assert findings[0].reason == "Load balancer lb-empty (application) has no registered targets"

    def test_database_encryption(self, now):
        """Test that public and private unencrypted databases get different severities."""
        private = self._resource(
            "orders", ResourceKind.DATABASE, engine="postgres", encrypted=False, publicly_accessible=False
        )
        public = self._resource(
            "legacy", ResourceKind.DATABASE, engine="mysql", encrypted=False, publicly_accessible=True
        )
        encrypted = self._resource("billing", ResourceKind.DATABASE, engine="postgres", encrypted=True)

        findings = classify([private, public, encrypted], default_rules(now=now))

        assert sorted((f.resource.id, f.rule_name, f.severity) for f in findings) == [
            ("legacy", "database-public-unencrypted", Severity.CRITICAL),
            ("orders", "database-unencrypted", Severity.HIGH),
        ]
        assert all(f.remediation is None for f in findings)

    def test_public_bucket(self, now):
        """Test the public access block and ACL rules."""
        exposed = self._resource(
            "site-assets", ResourceKind.BUCKET, region="global", public_access_blocked=False, public_acl=True
        )
        locked = self._resource(
            "audit-logs", ResourceKind.BUCKET, region="global", public_access_blocked=True, public_acl=False
        )

        findings = classify([exposed, locked], default_rules(now=now))

        assert sorted(f.rule_name for f in findings) == ["bucket-public-access-not-blocked", "bucket-public-acl"]
        assert {f.resource.id for f in findings} == {"site-assets"}
        assert {f.remediation for f in findings} == {ActionType.PATCH}

    def test_user_credentials(self, now):
        """Test MFA and access key age on IAM users."""
        old = (now - timedelta(days=120)).isoformat()
        recent = (now - timedelta(days=10)).isoformat()
        stale = self._resource(
            "deploy",
            ResourceKind.USER,
            region="global",
            mfa_devices=1,
            access_keys=[{"id": "AKIA1", "status": "Active", "created_at": old}],
        )
        inactive = self._resource(
            "retired",
            ResourceKind.USER,
            region="global",
            mfa_devices=1,
            access_keys=[{"id": "AKIA2", "status": "Inactive", "created_at": old}],
        )
        no_mfa = self._resource(
            "alice",
            ResourceKind.USER,
            region="global",
            mfa_devices=0,
            access_keys=[{"id": "AKIA3", "status": "Active", "created_at": recent}],
        )

        findings = classify([stale, inactive, no_mfa], default_rules(now=now))

        assert sorted(_rule_names(findings)) == [("alice", "user-without-mfa"), ("deploy", "access-key-stale")]

    def test_aws_only(self):
        """Test that the managed service rules never apply to other providers."""
        names = {r.name for r in rules_for(Provider.AZURE, default_rules())}
        assert "bucket-public-acl" not in names
        assert "load-balancer-no-targets" not in names


class TestPolicyEngine:
    """Tests for PolicyEngine."""

    def test_order_is_resource_then_rule(self, now):
        """Test deterministic output order across many resources."""
        volumes = [make_volume(f"vol-{i:03d}", encrypted=False) for i in range(50)]
        engine = PolicyEngine(default_rules(now=now), max_workers=8)

        findings, errors = engine.classify(volumes)

        assert errors == []
        expected = []
        for volume in volumes:
            expected.append((volume.id, "volume-unattached"))
            expected.append((volume.id, "volume-unencrypted"))
        assert _rule_names(findings) == expected

    def test_same_input_same_output(self, now):
        """Test that repeated classification gives equal findings."""
        volumes = [make_volume(f"vol-{i}") for i in range(20)]
        engine = PolicyEngine(default_rules(now=now))
        assert engine.classify(volumes) == engine.classify(volumes)

    def test_unmatched_kind_produces_nothing(self):
        """Test that rules are only evaluated on their kinds."""
        calls = []
        rule = Rule(
            name="volumes-only",
            applies_to=RuleTarget(kinds=frozenset({ResourceKind.VOLUME})),
            severity=Severity.LOW,
            predicate=lambda r: calls.append(r.id) or True,
            reason_template="{id}",
        )
        findings, _ = PolicyEngine([rule]).classify([make_security_group("sg-1", [])])
        assert findings == []
        assert calls == []

    def test_predicate_error_is_recorded(self):
        """Test that a raising predicate is skipped and recorded."""

        def broken(resource):
            raise KeyError("ingress_rules")

        rules = [
            Rule(
                name="broken",
                applies_to=RuleTarget(kinds=frozenset({ResourceKind.VOLUME})),
                severity=Severity.HIGH,
                predicate=broken,
                reason_template="{id}",
            ),
            Rule(
                name="always",
                applies_to=RuleTarget(kinds=frozenset({ResourceKind.VOLUME})),
                severity=Severity.LOW,
                predicate=lambda r: True,
                reason_template="{id}",
            ),
        ]
        findings, errors = PolicyEngine(rules).classify([make_volume("vol-1")])

        assert _rule_names(findings) == [("vol-1", "always")]
        assert len(errors) == 1
        assert errors[0].kind is ErrorKind.POLICY_ERROR
        assert errors[0].rule_name == "broken"
        assert errors[0].resource_id == "vol-1"

    def test_duplicate_rule_names(self):
        """Test that duplicate rule names are a config error."""
        rule = default_rules()[0]
        with pytest.raises(ConfigError, match="Duplicate"):
            PolicyEngine([rule, rule])

    def test_empty_input(self, now):
        """Test classification of no resources."""
        assert PolicyEngine(default_rules(now=now)).classify([]) == ([], [])
