"""
Built-in Rules
==============

Each rule is built by a factory so rules that depend on "now" capture a
reference time once, at construction, and stay pure afterwards.

Rules only read ``Resource`` fields and the normalized ``raw_attributes``
keys produced by the adapters (``attachments``, ``encrypted``,
``association_id``, ``ingress_rules``, ``attached``, ``state``,
``target_count``, ``public_access_blocked``, ``access_keys``, ...).

Example
-------
>>> from cloudsweep.policy.rules import default_rules
>>> for rule in default_rules():
...     print(rule.name, rule.severity.value)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from cloudsweep.core.models import (
    ActionType,
    Provider,
    Resource,
    ResourceKind,
    Rule,
    RuleTarget,
    Severity,
    is_world_source,
    utcnow,
)

SSH_PORT = 22
RDP_PORT = 3389

# Tag that marks a volume as in use even without a provider attachment
ATTACHED_INSTANCE_TAG = "attached-instance"
AUTO_STOP_TAG = "AutoStop"

_NETWORK_KINDS = frozenset({ResourceKind.SECURITY_GROUP, ResourceKind.FIREWALL_RULE})
_TCP_PROTOCOLS = frozenset({"tcp", "6", "all", "*"})


# =============================================================================
# Predicate helpers
# =============================================================================


def world_ingress(resource: Resource) -> List[Mapping[str, Any]]:
    """Ingress rules of ``resource`` that admit the whole internet."""
    return [
        rule
        for rule in resource.raw_attributes.get("ingress_rules") or []
        if any(is_world_source(c) for c in rule.get("cidrs") or [])
    ]


def covers_port(rule: Mapping[str, Any], port: int) -> bool:
    """
    Check whether a normalized ingress rule opens TCP ``port``.

    Missing port bounds mean every port.

    >>> covers_port({"protocol": "tcp", "from_port": 0, "to_port": 1024}, 22)
    True
    >>> covers_port({"protocol": "udp", "from_port": 22, "to_port": 22}, 22)
    False
    """
    if str(rule.get("protocol", "all")).lower() not in _TCP_PROTOCOLS:
        return False
    low = rule.get("from_port")
    high = rule.get("to_port")
    if low is None and high is None:
        return True
    low = 0 if low is None else int(low)
    high = 65535 if high is None else int(high)
    return low <= port <= high


def open_to_world_on(resource: Resource, port: int) -> bool:
    return any(covers_port(rule, port) for rule in world_ingress(resource))


def _state(resource: Resource) -> str:
    return str(resource.raw_attributes.get("state") or "").lower()


def _tag_is_true(resource: Resource, key: str) -> bool:
    for tag_key, value in resource.tags.items():
        if tag_key.lower() == key.lower():
            return str(value).strip().lower() == "true"
    return False


# =============================================================================
# Rule factories
# =============================================================================


def volume_unattached() -> Rule:
    def predicate(resource: Resource) -> bool:
        if resource.raw_attributes.get("attachments"):
            return False
        return ATTACHED_INSTANCE_TAG not in resource.tags

    return Rule(
        name="volume-unattached",
        applies_to=RuleTarget(kinds=frozenset({ResourceKind.VOLUME})),
        severity=Severity.MEDIUM,
        predicate=predicate,
        reason_template="Volume {name} ({size_gb} GB, {volume_type}) is not attached to any instance",
        remediation=ActionType.DELETE,
        description="Unattached block storage keeps being billed. Deleted after a backup snapshot.",
    )


def volume_unencrypted() -> Rule:
    return Rule(
        name="volume-unencrypted",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.VOLUME}),
            providers=frozenset({Provider.AWS, Provider.AZURE}),
        ),
        severity=Severity.HIGH,
        predicate=lambda r: r.raw_attributes.get("encrypted") is False,
        reason_template="Volume {name} is not encrypted at rest",
        description="Volumes should be encrypted. Report only: encryption can't be added in place.",
    )


def address_unassociated() -> Rule:
    def predicate(resource: Resource) -> bool:
        attrs = resource.raw_attributes
        return not attrs.get("association_id") and not attrs.get("nat_gateway_id")

    return Rule(
        name="address-unassociated",
        applies_to=RuleTarget(kinds=frozenset({ResourceKind.ADDRESS})),
        severity=Severity.LOW,
        predicate=predicate,
        reason_template="Address {public_ip} ({id}) is reserved but not associated",
        remediation=ActionType.DELETE,
        description="Reserved public IPs that are not in use are billed hourly.",
    )


def snapshot_stale(now: Optional[datetime] = None, retention_days: int = 30) -> Rule:
    """Snapshots older than ``retention_days`` relative to ``now``."""
    reference = now or utcnow()
    cutoff = reference - timedelta(days=retention_days)

    def predicate(resource: Resource) -> bool:
        return resource.created_at is not None and resource.created_at < cutoff

    return Rule(
        name="snapshot-stale",
        applies_to=RuleTarget(kinds=frozenset({ResourceKind.SNAPSHOT})),
        severity=Severity.LOW,
        predicate=predicate,
        reason_template=(
            "Snapshot {id} of {source_volume_id} is older than "
            f"{retention_days} days"
        ),
        remediation=ActionType.DELETE,
        description=f"Snapshots beyond the {retention_days}-day retention window.",
    )


def ssh_open_to_internet() -> Rule:
    return Rule(
        name="ssh-open-to-internet",
        applies_to=RuleTarget(kinds=_NETWORK_KINDS),
        severity=Severity.CRITICAL,
        predicate=lambda r: open_to_world_on(r, SSH_PORT),
        reason_template="SSH (port 22) is open to the internet on {name}",
        remediation=ActionType.PATCH,
        description="Ingress from 0.0.0.0/0 (or equivalent) reaching port 22.",
    )


def rdp_open_to_internet() -> Rule:
    return Rule(
        name="rdp-open-to-internet",
        applies_to=RuleTarget(kinds=_NETWORK_KINDS),
        severity=Severity.CRITICAL,
        predicate=lambda r: open_to_world_on(r, RDP_PORT),
        reason_template="RDP (port 3389) is open to the internet on {name}",
        remediation=ActionType.PATCH,
        description="Ingress from 0.0.0.0/0 (or equivalent) reaching port 3389.",
    )


def ingress_open_to_internet() -> Rule:
    return Rule(
        name="ingress-open-to-internet",
        applies_to=RuleTarget(kinds=_NETWORK_KINDS),
        severity=Severity.MEDIUM,
        predicate=lambda r: bool(world_ingress(r)),
        reason_template="{name} allows ingress from the whole internet",
        description="Any ingress rule with a world-open source.",
    )


def security_group_unused() -> Rule:
    def predicate(resource: Resource) -> bool:
        attrs = resource.raw_attributes
        return attrs.get("attached") is False and not attrs.get("is_default")

    return Rule(
        name="security-group-unused",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.SECURITY_GROUP}),
            providers=frozenset({Provider.AWS, Provider.AZURE}),
        ),
        severity=Severity.LOW,
        predicate=predicate,
        reason_template="Security group {name} ({id}) is not attached to anything",
        remediation=ActionType.DELETE,
        description="Groups not used by any interface, instance or other group.",
    )


def firewall_rule_untargeted() -> Rule:
    def predicate(resource: Resource) -> bool:
        attrs = resource.raw_attributes
        return bool(attrs.get("ingress_rules")) and not attrs.get("target_tags")

    return Rule(
        name="firewall-rule-untargeted",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.FIREWALL_RULE}),
            providers=frozenset({Provider.GCP}),
        ),
        severity=Severity.LOW,
        predicate=predicate,
        reason_template="Firewall rule {name} applies to every instance in network {network}",
        description="Ingress rules without target tags apply network-wide.",
    )


def instance_public_ip() -> Rule:
    return Rule(
        name="instance-public-ip",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.INSTANCE}),
            providers=frozenset({Provider.AWS}),
        ),
        severity=Severity.MEDIUM,
        predicate=lambda r: _state(r) == "running" and bool(r.raw_attributes.get("public_ip")),
        reason_template="Instance {name} is running with public IP {public_ip}",
        description="Running instances directly reachable from the internet.",
    )


def instance_scheduled_stop() -> Rule:
    return Rule(
        name="instance-scheduled-stop",
        applies_to=RuleTarget(kinds=frozenset({ResourceKind.INSTANCE})),
        severity=Severity.LOW,
        predicate=lambda r: _tag_is_true(r, AUTO_STOP_TAG) and _state(r) == "running",
        reason_template="Instance {name} is tagged AutoStop=true and still running",
        remediation=ActionType.STOP,
        description="Running instances opted in to scheduled stop with AutoStop=true.",
    )


def instance_deallocated() -> Rule:
    return Rule(
        name="instance-deallocated",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.INSTANCE}),
            providers=frozenset({Provider.AZURE}),
        ),
        severity=Severity.LOW,
        predicate=lambda r: _state(r) == "deallocated",
        reason_template="VM {name} is deallocated; its disks are still billed",
        description="Deallocated VMs stop compute billing but keep their storage.",
    )


def load_balancer_without_targets() -> Rule:
    return Rule(
        name="load-balancer-no-targets",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.LOAD_BALANCER}),
            providers=frozenset({Provider.AWS}),
        ),
        severity=Severity.MEDIUM,
        predicate=lambda r: r.raw_attributes.get("target_count") == 0,
        reason_template="Load balancer {name} ({lb_type}) has no registered targets",
        remediation=ActionType.DELETE,
        description="Load balancers bill hourly whether or not anything sits behind them.",
    )


def database_unencrypted() -> Rule:
    def predicate(resource: Resource) -> bool:
        attrs = resource.raw_attributes
        return attrs.get("encrypted") is False and not attrs.get("publicly_accessible")

    return Rule(
        name="database-unencrypted",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.DATABASE}),
            providers=frozenset({Provider.AWS}),
        ),
        severity=Severity.HIGH,
        predicate=predicate,
        reason_template="Database {name} ({engine}) does not encrypt its storage",
        description="Encryption can only be enabled by restoring an encrypted copy. Report only.",
    )


def database_public_unencrypted() -> Rule:
    def predicate(resource: Resource) -> bool:
        attrs = resource.raw_attributes
        return attrs.get("encrypted") is False and bool(attrs.get("publicly_accessible"))

    return Rule(
        name="database-public-unencrypted",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.DATABASE}),
            providers=frozenset({Provider.AWS}),
        ),
        severity=Severity.CRITICAL,
        predicate=predicate,
        reason_template="Database {name} ({engine}) is publicly accessible and unencrypted",
        description="Unencrypted storage on an instance reachable from outside its VPC.",
    )


def bucket_public_access_not_blocked() -> Rule:
    return Rule(
        name="bucket-public-access-not-blocked",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.BUCKET}),
            providers=frozenset({Provider.AWS}),
        ),
        severity=Severity.HIGH,
        predicate=lambda r: r.raw_attributes.get("public_access_blocked") is False,
        reason_template="Bucket {name} does not block public access",
        remediation=ActionType.PATCH,
        description="All four S3 public access block settings should be on. Patch turns them on.",
    )


def bucket_public_acl() -> Rule:
    return Rule(
        name="bucket-public-acl",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.BUCKET}),
            providers=frozenset({Provider.AWS}),
        ),
        severity=Severity.CRITICAL,
        predicate=lambda r: r.raw_attributes.get("public_acl") is True,
        reason_template="Bucket {name} grants access to everyone through its ACL",
        remediation=ActionType.PATCH,
        description="ACL grants to AllUsers. Blocking public access makes S3 ignore them.",
    )


def user_without_mfa() -> Rule:
    return Rule(
        name="user-without-mfa",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.USER}),
            providers=frozenset({Provider.AWS}),
        ),
        severity=Severity.HIGH,
        predicate=lambda r: r.raw_attributes.get("mfa_devices") == 0,
        reason_template="IAM user {name} has no MFA device",
        description="Users without a second factor. Report only.",
    )


def access_key_stale(now: Optional[datetime] = None, max_age_days: int = 90) -> Rule:
    """Active access keys created more than ``max_age_days`` before ``now``."""
    reference = now or utcnow()
    cutoff = reference - timedelta(days=max_age_days)

    def predicate(resource: Resource) -> bool:
        for key in resource.raw_attributes.get("access_keys") or []:
            created = key.get("created_at")
            if key.get("status") == "Active" and created and datetime.fromisoformat(created) < cutoff:
                return True
        return False

    return Rule(
        name="access-key-stale",
        applies_to=RuleTarget(
            kinds=frozenset({ResourceKind.USER}),
            providers=frozenset({Provider.AWS}),
        ),
        severity=Severity.MEDIUM,
        predicate=predicate,
        reason_template=f"IAM user {{name}} has an active access key older than {max_age_days} days",
        description=f"Active keys should be rotated within {max_age_days} days. Report only.",
    )


# =============================================================================
# Rule sets
# =============================================================================


def default_rules(
    now: Optional[datetime] = None,
    snapshot_retention_days: int = 30,
) -> List[Rule]:
    """
    Build the built-in rule set.

    Parameters
    ----------
    now : datetime, optional
        Reference time for age-based rules (default: current UTC time).
    snapshot_retention_days : int, default=30
        Age threshold of ``snapshot-stale``.

    Returns
    -------
    list of Rule
        Rules in evaluation order.
    """
    return [
        volume_unattached(),
        volume_unencrypted(),
        address_unassociated(),
        snapshot_stale(now, snapshot_retention_days),
        ssh_open_to_internet(),
        rdp_open_to_internet(),
        ingress_open_to_internet(),
        security_group_unused(),
        firewall_rule_untargeted(),
        instance_public_ip(),
        instance_scheduled_stop(),
        instance_deallocated(),
        load_balancer_without_targets(),
        database_unencrypted(),
        database_public_unencrypted(),
        bucket_public_access_not_blocked(),
        bucket_public_acl(),
        user_without_mfa(),
        access_key_stale(now),
    ]


def rules_for(provider: Provider, rules: Iterable[Rule]) -> List[Rule]:
    """Rules that can fire for ``provider``."""
    return [r for r in rules if not r.applies_to.providers or provider in r.applies_to.providers]


def rules_by_name(rules: Iterable[Rule]) -> Dict[str, Rule]:
    return {rule.name: rule for rule in rules}
