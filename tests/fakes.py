"""
In-memory adapter and record builders shared by the tests.
"""

import threading
import time
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal

from cloudsweep.adapters.base import Page, ProviderAdapter
from cloudsweep.core.exceptions import ProviderError, ResourceNotFoundError
from cloudsweep.core.models import (
    ActionType,
    Finding,
    Provider,
    Resource,
    ResourceKind,
    Severity,
)

# Reference time of every test that depends on "now"
NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeAdapter(ProviderAdapter):
    """
    Adapter serving canned resources and recording every mutation.

    Regions in ``failing_regions`` raise a ProviderError on listing;
    regions in ``crash_regions`` raise a plain RuntimeError.
    """

    provider = Provider.AWS
    kind = ResourceKind.VOLUME

    def __init__(
        self,
        kind=ResourceKind.VOLUME,
        resources_by_region=None,
        failing_regions=(),
        crash_regions=(),
        regions=("us-east-1",),
        discovery_error=None,
        snapshot_fails=False,
        fail_ids=(),
        mutation_delay=0.0,
        global_scope=False,
        supported_actions=frozenset({ActionType.DELETE, ActionType.STOP, ActionType.PATCH}),
        reversible_actions=frozenset({ActionType.DELETE}),
    ):
        super().__init__(session=None, sleep=lambda seconds: None)
        self.kind = kind
        self.global_scope = global_scope
        self.supported_actions = frozenset(supported_actions)
        self.reversible_actions = frozenset(reversible_actions)
        self.resources_by_region = dict(resources_by_region or {})
        self.failing_regions = set(failing_regions)
        self.crash_regions = set(crash_regions)
        self.regions = list(regions)
        self.discovery_error = discovery_error
        self.snapshot_fails = snapshot_fails
        self.fail_ids = set(fail_ids)
        self.mutation_delay = mutation_delay

        self.listed_regions = []
        self.mutations = []
        self.snapshots = []
        self.deleted = set()
        self.max_in_flight = defaultdict(int)
        self._in_flight = defaultdict(int)
        self._lock = threading.Lock()

    # Listing

    def fetch_page(self, region, token, filters):
        with self._lock:
            self.listed_regions.append(region)
        if region in self.crash_regions:
            raise RuntimeError(f"adapter crashed in {region}")
        if region in self.failing_regions:
            raise ProviderError(
                f"Service unavailable in {region}",
                provider="aws",
                region=region,
                code="InternalError",
            )
        return Page(records=list(self.resources_by_region.get(region, [])))

    def to_resource(self, record, region):
        return record

    def discover_regions(self):
        if self.discovery_error is not None:
            raise self.discovery_error
        return list(self.regions)

    # Mutations

    def create_reversible_artifact(self, resource):
        if self.snapshot_fails:
            raise ProviderError("Snapshot quota exceeded", provider="aws", code="SnapshotLimitExceeded")
        if resource.id in self.deleted:
            raise ResourceNotFoundError(
                f"The volume '{resource.id}' does not exist.",
                provider="aws",
                code="InvalidVolume.NotFound",
            )
        snapshot_id = f"snap-{resource.id}"
        with self._lock:
            self.snapshots.append(snapshot_id)
        return snapshot_id

    def _apply(self, resource, action, params):
        with self._lock:
            self._in_flight[resource.id] += 1
            self.max_in_flight[resource.id] = max(
                self.max_in_flight[resource.id], self._in_flight[resource.id]
            )
        try:
            if self.mutation_delay:
                time.sleep(self.mutation_delay)
            if resource.id in self.fail_ids:
                raise ProviderError(
                    f"The volume '{resource.id}' is currently attached",
                    provider="aws",
                    region=resource.region,
                    code="VolumeInUse",
                )
            with self._lock:
                if action is ActionType.DELETE and resource.id in self.deleted:
                    raise ResourceNotFoundError(
                        f"The volume '{resource.id}' does not exist.",
                        provider="aws",
                        code="InvalidVolume.NotFound",
                    )
                self.mutations.append((resource.id, action))
                if action is ActionType.DELETE:
                    self.deleted.add(resource.id)
            return f"{action.value} done"
        finally:
            with self._lock:
                self._in_flight[resource.id] -= 1


def make_volume(
    volume_id,
    region="us-east-1",
    size_gb=100,
    attached=False,
    volume_type="gp2",
    tags=None,
    encrypted=True,
):
    """Build an AWS volume resource."""
    attachments = [{"instance_id": "i-0123", "device": "/dev/sdf", "state": "attached"}] if attached else []
    return Resource(
        id=volume_id,
        kind=ResourceKind.VOLUME,
        provider=Provider.AWS,
        region=region,
        size_gb=size_gb,
        tags=dict(tags or {}),
        raw_attributes={
            "state": "in-use" if attached else "available",
            "attachments": attachments,
            "encrypted": encrypted,
            "volume_type": volume_type,
        },
    )


def make_security_group(group_id, ingress_rules, region="us-east-1", attached=True, is_default=False):
    """Build an AWS security group resource with normalized ingress rules."""
    return Resource(
        id=group_id,
        kind=ResourceKind.SECURITY_GROUP,
        provider=Provider.AWS,
        region=region,
        name=group_id,
        raw_attributes={
            "ingress_rules": list(ingress_rules),
            "attached": attached,
            "is_default": is_default,
        },
    )


def make_finding(
    resource=None,
    rule_name="volume-unattached",
    severity=Severity.MEDIUM,
    remediation=ActionType.DELETE,
    cost="10.00",
):
    """Build a finding over ``resource`` (a 100 GB volume by default)."""
    resource = resource or make_volume("vol-1")
    return Finding(
        resource=resource,
        rule_name=rule_name,
        severity=severity,
        reason=f"{rule_name} matched {resource.id}",
        estimated_monthly_cost=Decimal(cost) if cost is not None else None,
        remediation=remediation,
    )
