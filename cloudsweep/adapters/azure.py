"""
Azure Adapters Module
=====================

Adapters for managed disks, public IP addresses, network security groups
and virtual machines.

Azure lists these subscription-wide; each adapter keeps only the records
whose ``location`` matches the requested region. The management SDKs are
imported when the session first needs them.

Example
-------
>>> session = AzureSession(subscription_id="00000000-0000-0000-0000-000000000000")
>>> result = DiskAdapter(session).list_resources("eastus")
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple

from azure.core import exceptions as azure_exceptions

from cloudsweep.adapters.base import Page, ProviderAdapter, register
from cloudsweep.core.exceptions import (
    CredentialsError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    ResourceNotFoundError,
)
from cloudsweep.core.models import (
    ActionType,
    Provider,
    Resource,
    ResourceKind,
    is_world_source,
    utcnow,
)

# Module logger
logger = logging.getLogger(__name__)

# Scanned when no regions are configured
DEFAULT_LOCATIONS = (
    "australiaeast",
    "brazilsouth",
    "canadacentral",
    "centralindia",
    "centralus",
    "eastasia",
    "eastus",
    "eastus2",
    "francecentral",
    "germanywestcentral",
    "japaneast",
    "koreacentral",
    "northeurope",
    "norwayeast",
    "southafricanorth",
    "southcentralus",
    "southeastasia",
    "swedencentral",
    "switzerlandnorth",
    "uksouth",
    "westeurope",
    "westus",
    "westus2",
    "westus3",
)


def classify_azure_error(exc: Exception, region: Optional[str] = None) -> ProviderError:
    """Map an ``azure.core.exceptions`` error onto the taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    kwargs: Dict[str, Any] = {"provider": "azure", "region": region}
    message = getattr(exc, "message", None) or str(exc)
    status = getattr(exc, "status_code", None)
    code = str(status) if status else None

    if isinstance(exc, azure_exceptions.ResourceNotFoundError):
        return ResourceNotFoundError(message, code=code, **kwargs)
    if isinstance(exc, azure_exceptions.ClientAuthenticationError):
        return CredentialsError(
            message,
            code=code,
            details={"hint": "Run 'az login' or set AZURE_CLIENT_ID/AZURE_CLIENT_SECRET/AZURE_TENANT_ID"},
            **kwargs,
        )
    if isinstance(exc, (azure_exceptions.ServiceRequestError, azure_exceptions.ServiceResponseError)):
        return ProviderTimeoutError(message, code="Timeout", **kwargs)
    if status == 429:
        return RateLimitError(message, code=code, **kwargs)
    if status in (500, 502, 503, 504):
        return ProviderTimeoutError(message, code=code, **kwargs)
    if status == 403:
        return CredentialsError(message, code=code, **kwargs)
    return ProviderError(message, code=code, **kwargs)


def parse_resource_id(resource_id: str) -> Tuple[str, str]:
    """
    Extract (resource group, name) from an ARM resource id.

    >>> parse_resource_id(
    ...     "/subscriptions/s/resourceGroups/rg-1/providers/Microsoft.Compute/disks/d1"
    ... )
    ('rg-1', 'd1')
    """
    parts = resource_id.strip("/").split("/")
    lowered = [p.lower() for p in parts]
    group = parts[lowered.index("resourcegroups") + 1]
    return group, parts[-1]


def enum_value(value: Any) -> Optional[str]:
    """Return the string value of an SDK enum (or plain string)."""
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _location(value: Optional[str]) -> str:
    return (value or "").replace(" ", "").lower()


class AzureSession:
    """
    Subscription id plus lazily created management clients.

    Parameters
    ----------
    subscription_id : str
        Azure subscription id.
    credential : TokenCredential, optional
        Defaults to ``DefaultAzureCredential``.
    """

    def __init__(self, subscription_id: str, credential: Any = None) -> None:
        self.subscription_id = subscription_id
        self._credential = credential
        self._compute: Any = None
        self._network: Any = None
        self._lock = threading.Lock()

    @property
    def credential(self) -> Any:
        if self._credential is None:
            from azure.identity import DefaultAzureCredential

            self._credential = DefaultAzureCredential()
        return self._credential

    @property
    def compute(self) -> Any:
        """ComputeManagementClient (lazy)."""
        with self._lock:
            if self._compute is None:
                from azure.mgmt.compute import ComputeManagementClient

                self._compute = ComputeManagementClient(self.credential, self.subscription_id)
                logger.debug("Created ComputeManagementClient for %s", self.subscription_id)
            return self._compute

    @property
    def network(self) -> Any:
        """NetworkManagementClient (lazy)."""
        with self._lock:
            if self._network is None:
                from azure.mgmt.network import NetworkManagementClient

                self._network = NetworkManagementClient(self.credential, self.subscription_id)
                logger.debug("Created NetworkManagementClient for %s", self.subscription_id)
            return self._network

    def __repr__(self) -> str:
        """Return string representation."""
        return f"AzureSession(subscription_id='{self.subscription_id}')"


class AzureAdapter(ProviderAdapter):
    """Base class of the Azure adapters."""

    provider = Provider.AZURE

    def invoke(self, region: Optional[str], func: Any, *args: Any, **kwargs: Any) -> Any:
        """Call an SDK function and map Azure errors."""
        try:
            return func(*args, **kwargs)
        except azure_exceptions.AzureError as e:
            raise classify_azure_error(e, region=region)

    def change(self, region: Optional[str], func: Any, *args: Any) -> Any:
        """Start a long-running mutation without pipeline retries."""
        return self.invoke(region, func, *args, retry_total=0)

    def list_page(self, region: str, item_paged_factory: Any) -> Page:
        """
        Records of ``region`` from a subscription-wide ``ItemPaged`` listing.

        Every page of the listing is read once per audit run; later
        locations filter the cached records.
        """

        def fetch() -> List[Any]:
            items: List[Any] = []
            token = None
            while True:
                pages = item_paged_factory().by_page(continuation_token=token)
                items.extend(next(pages, []))
                token = pages.continuation_token
                if not token:
                    return items

        records = self.shared_listing("subscription", lambda: self.invoke(region, fetch))
        return Page(records=[i for i in records if _location(i.location) == _location(region)])

    def wait(self, region: Optional[str], poller: Any) -> Any:
        """Block until a long-running operation finishes."""
        return self.invoke(region, poller.result)

    def discover_regions(self) -> List[str]:
        return list(DEFAULT_LOCATIONS)

    @staticmethod
    def base_resource(kind: ResourceKind, record: Any, region: str, **fields: Any) -> Resource:
        return Resource(
            id=record.id,
            kind=kind,
            provider=Provider.AZURE,
            region=region,
            tags=dict(record.tags or {}),
            name=record.name,
            **fields,
        )


# =============================================================================
# Managed Disks
# =============================================================================


@register
class DiskAdapter(AzureAdapter):
    """Managed disks. A disk is attached when ``managed_by`` is set."""

    kind = ResourceKind.VOLUME
    supported_actions = frozenset({ActionType.DELETE})
    reversible_actions = frozenset({ActionType.DELETE})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        return self.list_page(region, self.session.compute.disks.list)

    def to_resource(self, record: Any, region: str) -> Resource:
        encryption = getattr(record, "encryption", None)
        return self.base_resource(
            self.kind,
            record,
            region,
            size_gb=float(record.disk_size_gb) if record.disk_size_gb is not None else None,
            created_at=record.time_created,
            raw_attributes={
                "state": (enum_value(record.disk_state) or "").lower(),
                "attachments": [{"instance_id": record.managed_by}] if record.managed_by else [],
                "encrypted": bool(encryption is not None and encryption.type),
                "volume_type": enum_value(record.sku.name) if record.sku else None,
                "location": record.location,
            },
        )

    def create_reversible_artifact(self, resource: Resource) -> str:
        """Snapshot the disk and return the snapshot's ARM id."""
        group, name = parse_resource_id(resource.id)
        snapshot_name = f"{name}-predelete-{utcnow():%Y%m%d%H%M%S}"[:80]
        poller = self.change(
            resource.region,
            self.session.compute.snapshots.begin_create_or_update,
            group,
            snapshot_name,
            {
                "location": resource.raw_attributes.get("location") or resource.region,
                "creation_data": {"create_option": "Copy", "source_resource_id": resource.id},
                "tags": {"cloudsweep:source-volume": name},
            },
        )
        snapshot = self.wait(resource.region, poller)
        logger.info("Created snapshot %s of disk %s", snapshot_name, name)
        return snapshot.id

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        group, name = parse_resource_id(resource.id)
        poller = self.change(resource.region, self.session.compute.disks.begin_delete, group, name)
        self.wait(resource.region, poller)
        return "disk deleted"


# =============================================================================
# Public IP Addresses
# =============================================================================


@register
class PublicIPAdapter(AzureAdapter):
    """Public IP addresses. Associated when ``ip_configuration`` is set."""

    kind = ResourceKind.ADDRESS
    supported_actions = frozenset({ActionType.DELETE})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        return self.list_page(region, self.session.network.public_ip_addresses.list_all)

    def to_resource(self, record: Any, region: str) -> Resource:
        ip_configuration = getattr(record, "ip_configuration", None)
        nat_gateway = getattr(record, "nat_gateway", None)
        association = ip_configuration.id if ip_configuration else None
        if association is None and nat_gateway is not None:
            association = nat_gateway.id
        return self.base_resource(
            self.kind,
            record,
            region,
            raw_attributes={
                "public_ip": record.ip_address,
                "association_id": association,
                "state": (enum_value(record.provisioning_state) or "").lower(),
                "location": record.location,
            },
        )

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        group, name = parse_resource_id(resource.id)
        poller = self.change(
            resource.region, self.session.network.public_ip_addresses.begin_delete, group, name
        )
        self.wait(resource.region, poller)
        return f"released {resource.raw_attributes.get('public_ip')}"


# =============================================================================
# Network Security Groups
# =============================================================================


def _nsg_ports(rule: Any) -> List[Tuple[Optional[int], Optional[int]]]:
    specs = [rule.destination_port_range] if rule.destination_port_range else []
    specs += list(rule.destination_port_ranges or [])
    bounds: List[Tuple[Optional[int], Optional[int]]] = []
    for spec in specs:
        if spec == "*":
            bounds.append((None, None))
        elif "-" in spec:
            low, high = spec.split("-", 1)
            bounds.append((int(low), int(high)))
        else:
            bounds.append((int(spec), int(spec)))
    return bounds or [(None, None)]


def normalize_security_rules(rules: List[Any]) -> List[Dict[str, Any]]:
    """
    Normalize inbound ``Allow`` rules of an NSG.

    Each port range becomes one entry; the rule name is kept so a patch
    can remove it.
    """
    normalized: List[Dict[str, Any]] = []
    for rule in rules or []:
        if (enum_value(rule.direction) or "").lower() != "inbound":
            continue
        if (enum_value(rule.access) or "").lower() != "allow":
            continue
        cidrs = [rule.source_address_prefix] if rule.source_address_prefix else []
        cidrs += list(rule.source_address_prefixes or [])
        protocol = (enum_value(rule.protocol) or "*").lower()
        for low, high in _nsg_ports(rule):
            normalized.append(
                {
                    "cidrs": cidrs,
                    "from_port": low,
                    "to_port": high,
                    "protocol": "all" if protocol == "*" else protocol,
                    "name": rule.name,
                }
            )
    return normalized


@register
class NetworkSecurityGroupAdapter(AzureAdapter):
    """
    Network security groups.

    Patch deletes every inbound Allow rule open to the internet.
    """

    kind = ResourceKind.SECURITY_GROUP
    supported_actions = frozenset({ActionType.DELETE, ActionType.PATCH})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        return self.list_page(region, self.session.network.network_security_groups.list_all)

    def to_resource(self, record: Any, region: str) -> Resource:
        return self.base_resource(
            self.kind,
            record,
            region,
            raw_attributes={
                "direction": "ingress",
                "is_default": False,
                "attached": bool(record.network_interfaces or record.subnets),
                "ingress_rules": normalize_security_rules(record.security_rules),
                "location": record.location,
            },
        )

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        group, name = parse_resource_id(resource.id)
        network = self.session.network
        if action is ActionType.DELETE:
            poller = self.change(resource.region, network.network_security_groups.begin_delete, group, name)
            self.wait(resource.region, poller)
            return "network security group deleted"

        open_rules = sorted(
            {
                rule["name"]
                for rule in resource.raw_attributes.get("ingress_rules", [])
                if any(is_world_source(c) for c in rule.get("cidrs", []))
            }
        )
        if not open_rules:
            return "no internet-open rules to remove"
        for rule_name in open_rules:
            poller = self.change(
                resource.region, network.security_rules.begin_delete, group, name, rule_name
            )
            self.wait(resource.region, poller)
        return f"removed rule(s) {', '.join(open_rules)}"


# =============================================================================
# Virtual Machines
# =============================================================================


def power_state(instance_view: Any) -> Optional[str]:
    """Extract ``running``/``deallocated``/... from a VM instance view."""
    for status in getattr(instance_view, "statuses", None) or []:
        code = status.code or ""
        if code.startswith("PowerState/"):
            return code.split("/", 1)[1]
    return None


@register
class VirtualMachineAdapter(AzureAdapter):
    """
    Virtual machines. Power state comes from one ``instance_view`` call
    per VM. Stop deallocates, so compute billing stops too.
    """

    kind = ResourceKind.INSTANCE
    supported_actions = frozenset({ActionType.STOP, ActionType.START})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        compute = self.session.compute
        page = self.list_page(region, compute.virtual_machines.list_all)
        records = []
        for vm in page.records:
            group, name = parse_resource_id(vm.id)
            view = self.invoke(region, compute.virtual_machines.instance_view, group, name)
            records.append((vm, power_state(view)))
        return Page(records=records)

    def to_resource(self, record: Tuple[Any, Optional[str]], region: str) -> Resource:
        vm, state = record
        hardware = getattr(vm, "hardware_profile", None)
        return self.base_resource(
            self.kind,
            vm,
            region,
            created_at=getattr(vm, "time_created", None),
            raw_attributes={
                "state": state,
                "instance_type": enum_value(hardware.vm_size) if hardware else None,
                "location": vm.location,
            },
        )

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        group, name = parse_resource_id(resource.id)
        machines = self.session.compute.virtual_machines
        if action is ActionType.STOP:
            self.wait(resource.region, self.change(resource.region, machines.begin_deallocate, group, name))
            return "deallocated"
        self.wait(resource.region, self.change(resource.region, machines.begin_start, group, name))
        return "started"
