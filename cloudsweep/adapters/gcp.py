"""
GCP Adapters Module
===================

Compute Engine adapters for persistent disks, addresses and firewall rules.

Classes
-------
GCPSession
    Project id plus lazily created ``compute_v1`` clients.
DiskAdapter
    Zonal and regional persistent disks. Delete takes a snapshot first.
AddressAdapter
    Regional static addresses.
FirewallRuleAdapter
    VPC firewall rules (global, listed under region ``global``).

Example
-------
>>> session = GCPSession(project="my-project")
>>> adapter = FirewallRuleAdapter(session)
>>> result = adapter.list_resources("global")

Notes
-----
Credentials come from Application Default Credentials unless a
credentials object is passed to :class:`GCPSession`.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from google.api_core import exceptions as gapi_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import compute_v1

from cloudsweep.adapters.base import GLOBAL_REGION, Page, ProviderAdapter, register
from cloudsweep.core.exceptions import (
    CredentialsError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    ResourceNotFoundError,
)
from cloudsweep.core.models import ActionType, Provider, Resource, ResourceKind, utcnow

# Module logger
logger = logging.getLogger(__name__)

PAGE_SIZE = 500
OPERATION_TIMEOUT = 300


def classify_gcp_error(exc: Exception, region: Optional[str] = None) -> ProviderError:
    """
    Map a ``google.api_core`` / ``google.auth`` exception onto the taxonomy.

    Example
    -------
    >>> classify_gcp_error(gapi_exceptions.NotFound("disk gone"))
    ResourceNotFoundError('disk gone')
    """
    if isinstance(exc, ProviderError):
        return exc
    kwargs: Dict[str, Any] = {"provider": "gcp", "region": region, "service": "compute"}
    message = getattr(exc, "message", None) or str(exc)
    code = getattr(exc, "code", None)
    code = str(int(code)) if isinstance(code, int) else None

    if isinstance(exc, auth_exceptions.DefaultCredentialsError):
        return CredentialsError(
            "Google credentials not found",
            details={"hint": "Run 'gcloud auth application-default login'"},
            **kwargs,
        )
    if isinstance(exc, gapi_exceptions.NotFound):
        return ResourceNotFoundError(message, code=code, **kwargs)
    if isinstance(exc, (gapi_exceptions.TooManyRequests, gapi_exceptions.ResourceExhausted)):
        return RateLimitError(message, code=code, **kwargs)
    if isinstance(
        exc,
        (
            gapi_exceptions.DeadlineExceeded,
            gapi_exceptions.ServiceUnavailable,
            gapi_exceptions.GatewayTimeout,
        ),
    ):
        return ProviderTimeoutError(message, code=code, **kwargs)
    if isinstance(
        exc,
        (
            gapi_exceptions.Unauthenticated,
            gapi_exceptions.PermissionDenied,
            gapi_exceptions.Forbidden,
        ),
    ):
        return CredentialsError(message, code=code, **kwargs)
    return ProviderError(message, code=code, **kwargs)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a Compute Engine RFC 3339 timestamp."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def last_segment(url: Optional[str]) -> Optional[str]:
    """Return the last path segment of a Compute Engine resource URL."""
    if not url:
        return None
    return url.rstrip("/").rsplit("/", 1)[-1]


class GCPSession:
    """
    Project id plus lazily created, thread-safe ``compute_v1`` clients.

    Parameters
    ----------
    project : str
        GCP project id.
    credentials : google.auth.credentials.Credentials, optional
        Explicit credentials (default: Application Default Credentials).
    """

    def __init__(self, project: str, credentials: Any = None) -> None:
        self.project = project
        self.credentials = credentials
        self._clients: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def client(self, name: str) -> Any:
        """Get or create the ``compute_v1.<name>`` client."""
        with self._lock:
            if name not in self._clients:
                try:
                    self._clients[name] = getattr(compute_v1, name)(credentials=self.credentials)
                except (auth_exceptions.GoogleAuthError, gapi_exceptions.GoogleAPIError) as e:
                    raise classify_gcp_error(e)
                logger.debug("Created %s for project %s", name, self.project)
            return self._clients[name]

    def __repr__(self) -> str:
        """Return string representation."""
        return f"GCPSession(project='{self.project}')"


class GCPAdapter(ProviderAdapter):
    """Base class of the Compute Engine adapters."""

    provider = Provider.GCP

    @property
    def project(self) -> str:
        return self.session.project

    def invoke(self, region: Optional[str], func: Any, **kwargs: Any) -> Any:
        """Call a client method and map GCP errors."""
        try:
            return func(**kwargs)
        except (gapi_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError) as e:
            raise classify_gcp_error(e, region=region)

    def change(self, region: Optional[str], func: Any, **kwargs: Any) -> Any:
        """Issue a mutation with the client-side retry policy turned off."""
        return self.invoke(region, func, retry=None, **kwargs)

    def first_page(self, region: Optional[str], client_method: Any, request: Any) -> Any:
        """Fetch exactly one page of a ``compute_v1`` pager."""

        def fetch() -> Any:
            pager = client_method(request=request)
            return next(iter(pager.pages))

        return self.invoke(region, fetch)

    def wait(self, region: Optional[str], operation: Any) -> None:
        """Block until a long-running operation finishes."""
        self.invoke(region, operation.result, timeout=OPERATION_TIMEOUT)

    def discover_regions(self) -> List[str]:
        regions_client = self.session.client("RegionsClient")

        def fetch() -> List[str]:
            return sorted(r.name for r in regions_client.list(project=self.project))

        regions = self.invoke(None, fetch)
        logger.info("Discovered %d GCP regions", len(regions))
        return regions


# =============================================================================
# Persistent Disks
# =============================================================================


def _scope_location(scope: str) -> Tuple[str, str]:
    """Split ``zones/us-central1-a`` or ``regions/us-central1`` into (type, name)."""
    scope_type, _, name = scope.partition("/")
    return scope_type, name


def _zone_region(zone: str) -> str:
    return zone.rsplit("-", 1)[0]


def _scope_region(scope: str) -> str:
    scope_type, location = _scope_location(scope)
    return _zone_region(location) if scope_type == "zones" else location


@register
class DiskAdapter(GCPAdapter):
    """
    Persistent disks, listed with ``aggregated_list`` and kept when their
    zone (or regional scope) belongs to the requested region.

    The aggregated list covers the whole project, so it is fetched once
    per audit run and shared by every region.
    """

    kind = ResourceKind.VOLUME
    supported_actions = frozenset({ActionType.DELETE})
    reversible_actions = frozenset({ActionType.DELETE})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        records = [
            (scope, disk)
            for scope, disk in self.shared_listing("aggregated", lambda: self._all_disks(region))
            if _scope_region(scope) == region
        ]
        return Page(records=records)

    def _all_disks(self, region: str) -> List[Tuple[str, Any]]:
        client = self.session.client("DisksClient")

        def fetch() -> List[Tuple[str, Any]]:
            records: List[Tuple[str, Any]] = []
            token = ""
            while True:
                request = compute_v1.AggregatedListDisksRequest(
                    project=self.project,
                    max_results=PAGE_SIZE,
                    page_token=token,
                )
                page = next(iter(client.aggregated_list(request=request).pages))
                for scope, scoped in page.items.items():
                    records.extend((scope, disk) for disk in scoped.disks)
                token = page.next_page_token
                if not token:
                    return records

        return self.invoke(region, fetch)

    def to_resource(self, record: Tuple[str, Any], region: str) -> Resource:
        scope, disk = record
        scope_type, location = _scope_location(scope)
        users = list(disk.users or [])
        return Resource(
            id=f"{scope}/disks/{disk.name}",
            kind=self.kind,
            provider=self.provider,
            region=region,
            size_gb=float(disk.size_gb),
            created_at=parse_timestamp(disk.creation_timestamp),
            tags=dict(disk.labels or {}),
            name=disk.name,
            raw_attributes={
                "state": str(disk.status).lower(),
                "attachments": [{"instance_id": last_segment(u)} for u in users],
                "encrypted": True,
                "volume_type": last_segment(disk.type_),
                "zone": location if scope_type == "zones" else None,
                "regional": scope_type == "regions",
            },
        )

    def create_reversible_artifact(self, resource: Resource) -> str:
        """Snapshot the disk and return the snapshot name."""
        snapshot_name = f"{resource.name}-predelete-{utcnow():%Y%m%d%H%M%S}"[:63]
        snapshot = compute_v1.Snapshot(
            name=snapshot_name,
            description=f"Pre-deletion backup of {resource.name}",
        )
        attrs = resource.raw_attributes
        if attrs.get("regional"):
            operation = self.change(
                resource.region,
                self.session.client("RegionDisksClient").create_snapshot,
                project=self.project,
                region=resource.region,
                disk=resource.name,
                snapshot_resource=snapshot,
            )
        else:
            operation = self.change(
                resource.region,
                self.session.client("DisksClient").create_snapshot,
                project=self.project,
                zone=attrs["zone"],
                disk=resource.name,
                snapshot_resource=snapshot,
            )
        self.wait(resource.region, operation)
        logger.info("Created snapshot %s of disk %s", snapshot_name, resource.name)
        return snapshot_name

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        attrs = resource.raw_attributes
        if attrs.get("regional"):
            operation = self.change(
                resource.region,
                self.session.client("RegionDisksClient").delete,
                project=self.project,
                region=resource.region,
                disk=resource.name,
            )
        else:
            operation = self.change(
                resource.region,
                self.session.client("DisksClient").delete,
                project=self.project,
                zone=attrs["zone"],
                disk=resource.name,
            )
        self.wait(resource.region, operation)
        return "disk deleted"


# =============================================================================
# Addresses
# =============================================================================


@register
class AddressAdapter(GCPAdapter):
    """Regional static IP addresses."""

    kind = ResourceKind.ADDRESS
    supported_actions = frozenset({ActionType.DELETE})

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        request = compute_v1.ListAddressesRequest(
            project=self.project,
            region=region,
            max_results=PAGE_SIZE,
            page_token=token or "",
        )
        page = self.first_page(region, self.session.client("AddressesClient").list, request)
        return Page(records=list(page.items), next_token=page.next_page_token or None)

    def to_resource(self, record: Any, region: str) -> Resource:
        users = list(record.users or [])
        return Resource(
            id=f"regions/{region}/addresses/{record.name}",
            kind=self.kind,
            provider=self.provider,
            region=region,
            created_at=parse_timestamp(record.creation_timestamp),
            tags=dict(record.labels or {}),
            name=record.name,
            raw_attributes={
                "public_ip": record.address,
                "state": str(record.status).lower(),
                "association_id": last_segment(users[0]) if users else None,
                "address_type": str(record.address_type),
            },
        )

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        operation = self.change(
            resource.region,
            self.session.client("AddressesClient").delete,
            project=self.project,
            region=resource.region,
            address=resource.name,
        )
        self.wait(resource.region, operation)
        return f"released {resource.raw_attributes.get('public_ip')}"


# =============================================================================
# Firewall Rules
# =============================================================================


def _port_bounds(spec: str) -> Tuple[Optional[int], Optional[int]]:
    if "-" in spec:
        low, high = spec.split("-", 1)
        return int(low), int(high)
    return int(spec), int(spec)


def normalize_firewall(firewall: Any) -> List[Dict[str, Any]]:
    """
    Effective ingress of a firewall rule as normalized ingress rules.

    Disabled rules and egress rules admit nothing. An ``allowed`` entry
    without ports covers every port.
    """
    if firewall.disabled or str(firewall.direction).upper() != "INGRESS":
        return []
    cidrs = list(firewall.source_ranges or [])
    rules: List[Dict[str, Any]] = []
    for allowed in firewall.allowed or []:
        protocol = str(allowed.I_p_protocol).lower()
        if protocol == "all":
            rules.append({"cidrs": cidrs, "from_port": None, "to_port": None, "protocol": "all"})
            continue
        ports = list(allowed.ports or [])
        if not ports:
            rules.append({"cidrs": cidrs, "from_port": None, "to_port": None, "protocol": protocol})
        for spec in ports:
            low, high = _port_bounds(spec)
            rules.append({"cidrs": cidrs, "from_port": low, "to_port": high, "protocol": protocol})
    return rules


@register
class FirewallRuleAdapter(GCPAdapter):
    """VPC firewall rules. Patch disables the rule instead of deleting it."""

    kind = ResourceKind.FIREWALL_RULE
    supported_actions = frozenset({ActionType.DELETE, ActionType.PATCH})
    global_scope = True

    def fetch_page(self, region: str, token: Optional[str], filters: Mapping[str, str]) -> Page:
        request = compute_v1.ListFirewallsRequest(
            project=self.project,
            max_results=PAGE_SIZE,
            page_token=token or "",
        )
        page = self.first_page(region, self.session.client("FirewallsClient").list, request)
        return Page(records=list(page.items), next_token=page.next_page_token or None)

    def to_resource(self, record: Any, region: str) -> Resource:
        return Resource(
            id=f"global/firewalls/{record.name}",
            kind=self.kind,
            provider=self.provider,
            region=GLOBAL_REGION,
            created_at=parse_timestamp(record.creation_timestamp),
            name=record.name,
            raw_attributes={
                "direction": str(record.direction).lower(),
                "disabled": bool(record.disabled),
                "network": last_segment(record.network),
                "priority": int(record.priority),
                "target_tags": list(record.target_tags or []),
                "ingress_rules": normalize_firewall(record),
            },
        )

    def discover_regions(self) -> List[str]:
        return [GLOBAL_REGION]

    def _apply(self, resource: Resource, action: ActionType, params: Mapping[str, Any]) -> Optional[str]:
        client = self.session.client("FirewallsClient")
        if action is ActionType.DELETE:
            operation = self.change(None, client.delete, project=self.project, firewall=resource.name)
            self.wait(None, operation)
            return "firewall rule deleted"
        operation = self.change(
            None,
            client.patch,
            project=self.project,
            firewall=resource.name,
            firewall_resource=compute_v1.Firewall(disabled=True),
        )
        self.wait(None, operation)
        return "firewall rule disabled"
