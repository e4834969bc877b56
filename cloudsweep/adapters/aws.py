"""
AWS Adapters Module
===================

EC2-backed adapters for volumes, Elastic IPs, snapshots, security groups
and instances, plus load balancers, RDS instances, S3 buckets and IAM users.

Classes
-------
AWSAdapter
    Shared plumbing: per-region service clients, error mapping, tag helpers.
VolumeAdapter
    EBS volumes. Delete takes a snapshot first.
AddressAdapter
    Elastic IP addresses. Delete releases the address.
SnapshotAdapter
    EBS snapshots owned by the account.
SecurityGroupAdapter
    Security groups with attachment detection.
InstanceAdapter
    EC2 instances (stop/start).
LoadBalancerAdapter
    ELBv2 load balancers with their registered target count.
DatabaseAdapter
    RDS instances (report only).
BucketAdapter
    S3 buckets with public access block and ACL exposure.
IAMUserAdapter
    IAM users with MFA devices and access keys (report only).

Example
-------
>>> from cloudsweep.core.aws_client import AWSClient
>>> from cloudsweep.adapters.aws import VolumeAdapter
>>>
>>> adapter = VolumeAdapter(AWSClient(profile="production"))
>>> result = adapter.list_resources("us-east-1")
>>> for volume in result.resources:
...     print(volume.id, volume.size_gb, volume.raw_attributes["state"])

Detection Logic
---------------
A security group is considered attached if any of the following are true:

1. **Network Interfaces (ENIs)** - Attached to any ENI, which covers
   instances, Lambda functions in VPC, ECS tasks, RDS, load balancers,
   VPC endpoints and NAT Gateways
2. **EC2 Instances** - Attached to any running or stopped EC2 instance
3. **Security Group References** - Referenced in another SG's rules
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from cloudsweep.adapters.base import GLOBAL_REGION, Page, ProviderAdapter, register
from cloudsweep.core.aws_client import AWSClient
from cloudsweep.core.cancel import CancelToken
from cloudsweep.core.exceptions import ProviderError, classify_client_error
from cloudsweep.core.models import (
    ActionType,
    Provider,
    Resource,
    ResourceKind,
    is_world_source,
)
from cloudsweep.core.retry import call_with_backoff

# Module logger
logger = logging.getLogger(__name__)

# Tag written on backup snapshots
SOURCE_VOLUME_TAG = "cloudsweep:source-volume"


def tags_to_dict(tags: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    """Convert an AWS ``[{"Key": ..., "Value": ...}]`` list into a dict."""
    return {tag["Key"]: tag.get("Value", "") for tag in tags or []}


def ec2_filters(filters: Mapping[str, str]) -> List[Dict[str, Any]]:
    """Turn pass-through filter keys into EC2 ``Filters``."""
    return [
        {"Name": key, "Values": [value]}
        for key, value in filters.items()
        if not key.startswith("tag:")
    ]


def normalize_ip_permissions(permissions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Normalize EC2 ``IpPermissions`` into provider-neutral ingress rules.

    Returns
    -------
    list of dict
        ``{"cidrs", "from_port", "to_port", "protocol"}`` per permission.
        Protocol ``-1`` becomes ``"all"`` with no port bounds.

    Example
    -------
    >>> normalize_ip_permissions([{
    ...     "IpProtocol": "tcp", "FromPort": 22, "ToPort": 22,
    ...     "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
    ... }])
    [{'cidrs': ['0.0.0.0/0'], 'from_port': 22, 'to_port': 22, 'protocol': 'tcp'}]
    """
    rules: List[Dict[str, Any]] = []
    for permission in permissions:
        protocol = str(permission.get("IpProtocol", "-1"))
        cidrs = [r["CidrIp"] for r in permission.get("IpRanges", []) if "CidrIp" in r]
        cidrs += [r["CidrIpv6"] for r in permission.get("Ipv6Ranges", []) if "CidrIpv6" in r]
        if protocol == "-1":
            rules.append({"cidrs": cidrs, "from_port": None, "to_port": None, "protocol": "all"})
            continue
        rules.append(
            {
                "cidrs": cidrs,
                "from_port": permission.get("FromPort"),
                "to_port": permission.get("ToPort"),
                "protocol": protocol,
            }
        )
    return rules


class AWSAdapter(ProviderAdapter):
    """
    Base class of the AWS adapters.

    Reads go through :meth:`call` and :meth:`paginate` (botocore retries on);
    every mutation goes through :meth:`change`, which uses the single-attempt
    client so nothing is replayed.

    Parameters
    ----------
    session : AWSClient
        Home-region client; per-region clients are derived from it.
    """

    provider = Provider.AWS
    service = "ec2"
    session: AWSClient

    def client(self, region: str, mutating: bool = False) -> Any:
        """Client of ``service`` in ``region``, shared with every adapter on ``session``."""
        if region == GLOBAL_REGION:
            region = self.session.region
        return self.session.regional(region).client(self.service, mutating=mutating)

    def call(self, region: str, operation: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Invoke one read operation, mapping botocore errors.

        Raises
        ------
        ProviderError
            Classified failure (see :func:`classify_client_error`).
        """
        return self._invoke(self.client(region), region, operation, kwargs)

    def change(self, region: str, operation: str, **kwargs: Any) -> Dict[str, Any]:
        """Invoke one mutating operation, exactly once."""
        return self._invoke(self.client(region, mutating=True), region, operation, kwargs)

    def paginate(self, region: str, operation: str, key: str, **kwargs: Any) -> List[Any]:
        """Collect ``key`` from every page of a paginated operation."""
        items: List[Any] = []
        try:
            paginator = self.client(region).get_paginator(operation)
            for page in paginator.paginate(**kwargs):
                items.extend(page.get(key, []))
        except (ClientError, BotoCoreError) as e:
            raise classify_client_error(e, region=region, service=self.service)
        return items

    def discover_regions(self) -> List[str]:
        return self.session.describe_regions()

    def _invoke(self, client: Any, region: str, operation: str, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return getattr(client, operation)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise classify_client_error(e, region=region, service=self.service)

    def _tag(self, resource: Resource, params: Mapping[str, Any]) -> str:
        tags = dict(params.get("tags") or {})
        if not tags:
            raise ProviderError(
                "Tag action needs a 'tags' parameter",
                provider=self.provider.value,
                region=resource.region,
            )
        self.change(
            resource.region,
            "create_tags",
            Resources=[resource.id],
            Tags=[{"Key": k, "Value": str(v)} for k, v in tags.items()],
        )
        return f"tagged {', '.join(sorted(tags))}"

    @staticmethod
    def _page_kwargs(token: Optional[str], filters: Mapping[str, str], max_results: int) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"MaxResults": max_results}
        if token:
            kwargs["NextToken"] = token
        extra = ec2_filters(filters)
        if extra:
            kwargs["Filters"] = extra
        return kwargs


# =============================================================================
# Volumes
# =============================================================================


@register
class VolumeAdapter(AWSAdapter):
    """EBS volumes."""

    kind = ResourceKind.VOLUME
    supported_actions = frozenset({ActionType.DELETE, ActionType.TAG})
    reversible_actions = frozenset({ActionType.DELETE})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        response = self.call(region, "describe_volumes", **self._page_kwargs(token, filters, 500))
        return Page(records=response.get("Volumes", []), next_token=response.get("NextToken"))

    def to_resource(self, record: Dict[str, Any], region: str) -> Resource:
        tags = tags_to_dict(record.get("Tags"))
        attachments = [
            {
                "instance_id": a.get("InstanceId"),
                "device": a.get("Device"),
                "state": a.get("State"),
            }
            for a in record.get("Attachments", [])
        ]
        return Resource(
            id=record["VolumeId"],
            kind=self.kind,
            provider=self.provider,
            region=region,
            size_gb=float(record["Size"]),
            created_at=record.get("CreateTime"),
            tags=tags,
            name=tags.get("Name"),
            raw_attributes={
                "state": record.get("State"),
                "attachments": attachments,
                "encrypted": bool(record.get("Encrypted", False)),
                "volume_type": record.get("VolumeType"),
                "availability_zone": record.get("AvailabilityZone"),
            },
        )

    def create_reversible_artifact(self, resource: Resource) -> str:
        """Snapshot the volume and return the snapshot id."""
        response = self.change(
            resource.region,
            "create_snapshot",
            VolumeId=resource.id,
            Description=f"Pre-deletion backup of {resource.id}",
            TagSpecifications=[
                {
                    "ResourceType": "snapshot",
                    "Tags": [{"Key": SOURCE_VOLUME_TAG, "Value": resource.id}],
                }
            ],
        )
        snapshot_id = response["SnapshotId"]
        logger.info("Created snapshot %s of volume %s", snapshot_id, resource.id)
        return snapshot_id

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        if action is ActionType.TAG:
            return self._tag(resource, params)
        self.change(resource.region, "delete_volume", VolumeId=resource.id)
        return "volume deleted"


# =============================================================================
# Elastic IPs
# =============================================================================


@register
class AddressAdapter(AWSAdapter):
    """
    Elastic IP addresses.

    ``describe_addresses`` is not paginated. Addresses held by an available
    or pending NAT gateway are marked with ``nat_gateway_id``.
    """

    kind = ResourceKind.ADDRESS
    supported_actions = frozenset({ActionType.DELETE, ActionType.TAG})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        kwargs: Dict[str, Any] = {}
        extra = ec2_filters(filters)
        if extra:
            kwargs["Filters"] = extra
        response = self.call(region, "describe_addresses", **kwargs)
        return Page(records=response.get("Addresses", []))

    def to_resource(self, record: Dict[str, Any], region: str) -> Resource:
        tags = tags_to_dict(record.get("Tags"))
        public_ip = record.get("PublicIp")
        return Resource(
            id=record.get("AllocationId") or public_ip,
            kind=self.kind,
            provider=self.provider,
            region=region,
            tags=tags,
            name=tags.get("Name", public_ip),
            raw_attributes={
                "public_ip": public_ip,
                "association_id": record.get("AssociationId"),
                "instance_id": record.get("InstanceId"),
                "network_interface_id": record.get("NetworkInterfaceId"),
                "domain": record.get("Domain", "vpc"),
            },
        )

    def finalize(
        self,
        resources: List[Resource],
        region: str,
        cancel: Optional[CancelToken] = None,
    ) -> List[Resource]:
        nat_addresses = call_with_backoff(
            lambda: self._nat_gateway_allocations(region),
            description=f"list NAT gateways in {region}",
            max_attempts=self.max_list_attempts,
            cancel=cancel,
            sleep=self._sleep,
        )
        if not nat_addresses:
            return resources
        marked: List[Resource] = []
        for resource in resources:
            nat_id = nat_addresses.get(resource.id)
            if nat_id is not None:
                resource = _with_attributes(resource, nat_gateway_id=nat_id)
            marked.append(resource)
        return marked

    def _nat_gateway_allocations(self, region: str) -> Dict[str, str]:
        allocations: Dict[str, str] = {}
        gateways = self.paginate(
            region,
            "describe_nat_gateways",
            "NatGateways",
            Filters=[{"Name": "state", "Values": ["available", "pending"]}],
        )
        for nat in gateways:
            for address in nat.get("NatGatewayAddresses", []):
                if address.get("AllocationId"):
                    allocations[address["AllocationId"]] = nat["NatGatewayId"]
        return allocations

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        if action is ActionType.TAG:
            return self._tag(resource, params)
        if resource.raw_attributes.get("domain") == "standard":
            self.change(resource.region, "release_address", PublicIp=resource.raw_attributes["public_ip"])
        else:
            self.change(resource.region, "release_address", AllocationId=resource.id)
        return f"released {resource.raw_attributes.get('public_ip')}"


# =============================================================================
# Snapshots
# =============================================================================


@register
class SnapshotAdapter(AWSAdapter):
    """EBS snapshots owned by the calling account."""

    kind = ResourceKind.SNAPSHOT
    supported_actions = frozenset({ActionType.DELETE, ActionType.TAG})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        kwargs = self._page_kwargs(token, filters, 1000)
        response = self.call(region, "describe_snapshots", OwnerIds=["self"], **kwargs)
        return Page(records=response.get("Snapshots", []), next_token=response.get("NextToken"))

    def to_resource(self, record: Dict[str, Any], region: str) -> Resource:
        tags = tags_to_dict(record.get("Tags"))
        return Resource(
            id=record["SnapshotId"],
            kind=self.kind,
            provider=self.provider,
            region=region,
            size_gb=float(record.get("VolumeSize") or 0),
            created_at=record.get("StartTime"),
            tags=tags,
            name=tags.get("Name"),
            raw_attributes={
                "state": record.get("State"),
                "source_volume_id": record.get("VolumeId"),
                "encrypted": bool(record.get("Encrypted", False)),
                "description": record.get("Description", ""),
            },
        )

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        if action is ActionType.TAG:
            return self._tag(resource, params)
        self.change(resource.region, "delete_snapshot", SnapshotId=resource.id)
        return "snapshot deleted"


# =============================================================================
# Security Groups
# =============================================================================


@register
class SecurityGroupAdapter(AWSAdapter):
    """
    Security groups.

    ``attached`` is resolved after listing from ENIs, instances and rule
    references of other groups. If that lookup fails, the region is
    reported as a partial failure and ``attached`` stays unset, so no
    group is ever reported unused on incomplete data.
    """

    kind = ResourceKind.SECURITY_GROUP
    supported_actions = frozenset({ActionType.DELETE, ActionType.PATCH, ActionType.TAG})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        kwargs = self._page_kwargs(token, filters, 1000)
        response = self.call(region, "describe_security_groups", **kwargs)
        return Page(records=response.get("SecurityGroups", []), next_token=response.get("NextToken"))

    def to_resource(self, record: Dict[str, Any], region: str) -> Resource:
        tags = tags_to_dict(record.get("Tags"))
        referenced = sorted(
            {
                pair["GroupId"]
                for rule in record.get("IpPermissions", []) + record.get("IpPermissionsEgress", [])
                for pair in rule.get("UserIdGroupPairs", [])
                if "GroupId" in pair
            }
        )
        return Resource(
            id=record["GroupId"],
            kind=self.kind,
            provider=self.provider,
            region=region,
            tags=tags,
            name=record.get("GroupName"),
            raw_attributes={
                "description": record.get("Description", ""),
                "vpc_id": record.get("VpcId"),
                "is_default": record.get("GroupName") == "default",
                "direction": "ingress",
                "ingress_rules": normalize_ip_permissions(record.get("IpPermissions", [])),
                "references": referenced,
            },
        )

    def finalize(
        self,
        resources: List[Resource],
        region: str,
        cancel: Optional[CancelToken] = None,
    ) -> List[Resource]:
        in_use = call_with_backoff(
            lambda: self._groups_in_use(region),
            description=f"resolve security group usage in {region}",
            max_attempts=self.max_list_attempts,
            cancel=cancel,
            sleep=self._sleep,
        )
        for resource in resources:
            in_use.update(g for g in resource.raw_attributes.get("references", []) if g != resource.id)
        return [_with_attributes(r, attached=r.id in in_use) for r in resources]

    def _groups_in_use(self, region: str) -> Set[str]:
        used: Set[str] = set()
        for eni in self.paginate(region, "describe_network_interfaces", "NetworkInterfaces"):
            used.update(g["GroupId"] for g in eni.get("Groups", []))
        for reservation in self.paginate(region, "describe_instances", "Reservations"):
            for instance in reservation.get("Instances", []):
                used.update(g["GroupId"] for g in instance.get("SecurityGroups", []))
        logger.debug("%d security group(s) in use in %s", len(used), region)
        return used

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        if action is ActionType.TAG:
            return self._tag(resource, params)
        if action is ActionType.DELETE:
            self.change(resource.region, "delete_security_group", GroupId=resource.id)
            return "security group deleted"
        return self._revoke_world_ingress(resource)

    def _revoke_world_ingress(self, resource: Resource) -> str:
        permissions: List[Dict[str, Any]] = []
        for rule in resource.raw_attributes.get("ingress_rules", []):
            world = [c for c in rule.get("cidrs", []) if is_world_source(c)]
            if not world:
                continue
            permission: Dict[str, Any] = {
                "IpProtocol": "-1" if rule["protocol"] == "all" else rule["protocol"],
            }
            if rule.get("from_port") is not None:
                permission["FromPort"] = rule["from_port"]
            if rule.get("to_port") is not None:
                permission["ToPort"] = rule["to_port"]
            v4 = [c for c in world if ":" not in c]
            v6 = [c for c in world if ":" in c]
            if v4:
                permission["IpRanges"] = [{"CidrIp": c} for c in v4]
            if v6:
                permission["Ipv6Ranges"] = [{"CidrIpv6": c} for c in v6]
            permissions.append(permission)

        if not permissions:
            return "no world-open ingress to revoke"
        self.change(
            resource.region,
            "revoke_security_group_ingress",
            GroupId=resource.id,
            IpPermissions=permissions,
        )
        return f"revoked {len(permissions)} world-open ingress rule(s)"


# =============================================================================
# Instances
# =============================================================================


@register
class InstanceAdapter(AWSAdapter):
    """EC2 instances."""

    kind = ResourceKind.INSTANCE
    supported_actions = frozenset({ActionType.STOP, ActionType.START, ActionType.TAG})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        response = self.call(region, "describe_instances", **self._page_kwargs(token, filters, 1000))
        instances = [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        return Page(records=instances, next_token=response.get("NextToken"))

    def to_resource(self, record: Dict[str, Any], region: str) -> Resource:
        tags = tags_to_dict(record.get("Tags"))
        return Resource(
            id=record["InstanceId"],
            kind=self.kind,
            provider=self.provider,
            region=region,
            created_at=record.get("LaunchTime"),
            tags=tags,
            name=tags.get("Name"),
            raw_attributes={
                "state": record.get("State", {}).get("Name"),
                "instance_type": record.get("InstanceType"),
                "public_ip": record.get("PublicIpAddress"),
                "security_groups": [g["GroupId"] for g in record.get("SecurityGroups", [])],
            },
        )

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        if action is ActionType.TAG:
            return self._tag(resource, params)
        if action is ActionType.STOP:
            response = self.change(resource.region, "stop_instances", InstanceIds=[resource.id])
            changes = response.get("StoppingInstances", [])
        else:
            response = self.change(resource.region, "start_instances", InstanceIds=[resource.id])
            changes = response.get("StartingInstances", [])
        if changes:
            return f"{changes[0]['PreviousState']['Name']} -> {changes[0]['CurrentState']['Name']}"
        return None

# =============================================================================
# Load Balancers
# =============================================================================

# describe_tags accepts at most this many ARNs
ELB_TAG_BATCH = 20


@register
class LoadBalancerAdapter(AWSAdapter):
    """
    Application, network and gateway load balancers (ELBv2).

    ``target_count`` is the number of targets registered across every
    target group of the load balancer; it stays unset when that lookup
    fails, so no load balancer is reported empty on incomplete data.
    """

    kind = ResourceKind.LOAD_BALANCER
    service = "elbv2"
    supported_actions = frozenset({ActionType.DELETE})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        kwargs: Dict[str, Any] = {"PageSize": 400}
        if token:
            kwargs["Marker"] = token
        response = self.call(region, "describe_load_balancers", **kwargs)
        balancers = response.get("LoadBalancers", [])
        tags = self._tags(region, [b["LoadBalancerArn"] for b in balancers])
        records = [{**b, "Tags": tags.get(b["LoadBalancerArn"], [])} for b in balancers]
        return Page(records=records, next_token=response.get("NextMarker"))

    def _tags(self, region: str, arns: List[str]) -> Dict[str, List[Dict[str, str]]]:
        tags: Dict[str, List[Dict[str, str]]] = {}
        for start in range(0, len(arns), ELB_TAG_BATCH):
            response = self.call(region, "describe_tags", ResourceArns=arns[start:start + ELB_TAG_BATCH])
            for description in response.get("TagDescriptions", []):
                tags[description["ResourceArn"]] = description.get("Tags", [])
        return tags

    def to_resource(self, record: Dict[str, Any], region: str) -> Resource:
        return Resource(
            id=record["LoadBalancerArn"],
            kind=self.kind,
            provider=self.provider,
            region=region,
            created_at=record.get("CreatedTime"),
            tags=tags_to_dict(record.get("Tags")),
            name=record.get("LoadBalancerName"),
            raw_attributes={
                "lb_type": record.get("Type"),
                "scheme": record.get("Scheme"),
                "state": record.get("State", {}).get("Code"),
                "dns_name": record.get("DNSName"),
                "vpc_id": record.get("VpcId"),
            },
        )

    def finalize(
        self,
        resources: List[Resource],
        region: str,
        cancel: Optional[CancelToken] = None,
    ) -> List[Resource]:
        counted: List[Resource] = []
        for resource in resources:
            if cancel is not None:
                cancel.raise_if_cancelled()
            groups, targets = call_with_backoff(
                lambda: self._count_targets(region, resource.id),
                description=f"count targets of {resource.name} in {region}",
                max_attempts=self.max_list_attempts,
                cancel=cancel,
                sleep=self._sleep,
            )
            counted.append(_with_attributes(resource, target_groups=groups, target_count=targets))
        return counted

    def _count_targets(self, region: str, arn: str) -> Tuple[int, int]:
        groups = self.paginate(region, "describe_target_groups", "TargetGroups", LoadBalancerArn=arn)
        targets = 0
        for group in groups:
            response = self.call(region, "describe_target_health", TargetGroupArn=group["TargetGroupArn"])
            targets += len(response.get("TargetHealthDescriptions", []))
        return len(groups), targets

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        self.change(resource.region, "delete_load_balancer", LoadBalancerArn=resource.id)
        return "load balancer deleted"


# =============================================================================
# RDS Instances
# =============================================================================


@register
class DatabaseAdapter(AWSAdapter):
    """RDS database instances. Report only."""

    kind = ResourceKind.DATABASE
    service = "rds"

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        kwargs: Dict[str, Any] = {"MaxRecords": 100}
        if token:
            kwargs["Marker"] = token
        response = self.call(region, "describe_db_instances", **kwargs)
        return Page(records=response.get("DBInstances", []), next_token=response.get("Marker"))

    def to_resource(self, record: Dict[str, Any], region: str) -> Resource:
        storage = record.get("AllocatedStorage")
        return Resource(
            id=record["DBInstanceIdentifier"],
            kind=self.kind,
            provider=self.provider,
            region=region,
            size_gb=float(storage) if storage is not None else None,
            created_at=record.get("InstanceCreateTime"),
            tags=tags_to_dict(record.get("TagList")),
            name=record["DBInstanceIdentifier"],
            raw_attributes={
                "state": record.get("DBInstanceStatus"),
                "engine": record.get("Engine"),
                "instance_class": record.get("DBInstanceClass"),
                "encrypted": bool(record.get("StorageEncrypted", False)),
                "publicly_accessible": bool(record.get("PubliclyAccessible", False)),
            },
        )


# =============================================================================
# S3 Buckets
# =============================================================================

ALL_USERS_URI = "http://acs.amazonaws.com/groups/global/AllUsers"
PUBLIC_ACCESS_BLOCK_FLAGS = ("BlockPublicAcls", "IgnorePublicAcls", "BlockPublicPolicy", "RestrictPublicBuckets")


def acl_is_public(grants: List[Dict[str, Any]]) -> bool:
    """
    Check whether a bucket ACL grants anything to everyone.

    >>> acl_is_public([{"Grantee": {"Type": "Group", "URI": ALL_USERS_URI}, "Permission": "READ"}])
    True
    """
    return any(grant.get("Grantee", {}).get("URI") == ALL_USERS_URI for grant in grants)


@register
class BucketAdapter(AWSAdapter):
    """
    S3 buckets, listed once for the account.

    ``public_access_blocked`` is True only when all four public access
    block settings are on; a bucket without a configuration counts as not
    blocked. Patch turns all four on.
    """

    kind = ResourceKind.BUCKET
    service = "s3"
    supported_actions = frozenset({ActionType.PATCH})
    global_scope = True

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        response = self.call(region, "list_buckets")
        records = [
            {**bucket, "Tags": self._bucket_tags(region, bucket["Name"])}
            for bucket in response.get("Buckets", [])
        ]
        return Page(records=records)

    def _bucket_tags(self, region: str, name: str) -> List[Dict[str, str]]:
        try:
            return self.call(region, "get_bucket_tagging", Bucket=name).get("TagSet", [])
        except ProviderError as e:
            if e.code == "NoSuchTagSet":
                return []
            raise

    def to_resource(self, record: Dict[str, Any], region: str) -> Resource:
        return Resource(
            id=record["Name"],
            kind=self.kind,
            provider=self.provider,
            region=GLOBAL_REGION,
            created_at=record.get("CreationDate"),
            tags=tags_to_dict(record.get("Tags")),
            name=record["Name"],
        )

    def discover_regions(self) -> List[str]:
        return [GLOBAL_REGION]

    def finalize(
        self,
        resources: List[Resource],
        region: str,
        cancel: Optional[CancelToken] = None,
    ) -> List[Resource]:
        described: List[Resource] = []
        for resource in resources:
            if cancel is not None:
                cancel.raise_if_cancelled()
            attributes = call_with_backoff(
                lambda: self._exposure(region, resource.id),
                description=f"read access settings of bucket {resource.id}",
                max_attempts=self.max_list_attempts,
                cancel=cancel,
                sleep=self._sleep,
            )
            described.append(_with_attributes(resource, **attributes))
        return described

    def _exposure(self, region: str, bucket: str) -> Dict[str, Any]:
        try:
            response = self.call(region, "get_public_access_block", Bucket=bucket)
            config = response.get("PublicAccessBlockConfiguration", {})
        except ProviderError as e:
            if e.code != "NoSuchPublicAccessBlockConfiguration":
                raise
            config = {}
        grants = self.call(region, "get_bucket_acl", Bucket=bucket).get("Grants", [])
        return {
            "public_access_blocked": all(config.get(flag) for flag in PUBLIC_ACCESS_BLOCK_FLAGS),
            "public_acl": acl_is_public(grants),
        }

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        self.change(
            resource.region,
            "put_public_access_block",
            Bucket=resource.id,
            PublicAccessBlockConfiguration={flag: True for flag in PUBLIC_ACCESS_BLOCK_FLAGS},
        )
        return "public access blocked"


# =============================================================================
# IAM Users
# =============================================================================


@register
class IAMUserAdapter(AWSAdapter):
    """
    IAM users with their MFA devices and access keys. Report only.

    Key creation dates are kept as ISO 8601 strings.
    """

    kind = ResourceKind.USER
    service = "iam"
    global_scope = True

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        kwargs: Dict[str, Any] = {"MaxItems": 1000}
        if token:
            kwargs["Marker"] = token
        response = self.call(region, "list_users", **kwargs)
        next_token = response.get("Marker") if response.get("IsTruncated") else None
        return Page(records=response.get("Users", []), next_token=next_token)

    def to_resource(self, record: Dict[str, Any], region: str) -> Resource:
        return Resource(
            id=record["UserName"],
            kind=self.kind,
            provider=self.provider,
            region=GLOBAL_REGION,
            created_at=record.get("CreateDate"),
            tags=tags_to_dict(record.get("Tags")),
            name=record["UserName"],
            raw_attributes={"arn": record.get("Arn")},
        )

    def discover_regions(self) -> List[str]:
        return [GLOBAL_REGION]

    def finalize(
        self,
        resources: List[Resource],
        region: str,
        cancel: Optional[CancelToken] = None,
    ) -> List[Resource]:
        described: List[Resource] = []
        for resource in resources:
            if cancel is not None:
                cancel.raise_if_cancelled()
            attributes = call_with_backoff(
                lambda: self._credentials(region, resource.id),
                description=f"read credentials of user {resource.id}",
                max_attempts=self.max_list_attempts,
                cancel=cancel,
                sleep=self._sleep,
            )
            described.append(_with_attributes(resource, **attributes))
        return described

    def _credentials(self, region: str, user: str) -> Dict[str, Any]:
        devices = self.paginate(region, "list_mfa_devices", "MFADevices", UserName=user)
        keys = self.paginate(region, "list_access_keys", "AccessKeyMetadata", UserName=user)
        return {
            "mfa_devices": len(devices),
            "access_keys": [
                {
                    "id": key["AccessKeyId"],
                    "status": key.get("Status"),
                    "created_at": key["CreateDate"].isoformat() if key.get("CreateDate") else None,
                }
                for key in keys
            ],
        }


def _with_attributes(resource: Resource, **attributes: Any) -> Resource:
    """Return a copy of ``resource`` with extra raw attributes."""
    return replace(resource, raw_attributes={**resource.raw_attributes, **attributes})
