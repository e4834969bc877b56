"""
Data Model
==========

Typed records that flow through the audit pipeline.

Classes
-------
Resource
    A provider-tagged entity under audit.
Rule
    A named, pure predicate over a Resource.
Finding
    One rule matching one resource.
ActionResult
    Outcome of attempting remediation on a Finding.
ErrorRecord
    One entry of a run's error log.
AuditRun
    Top-level aggregate rendered by the reporters.

Notes
-----
Everything except :class:`AuditRun` is frozen. ``AuditRun.to_dict`` and
``AuditRun.from_dict`` give a lossless JSON form as long as
``raw_attributes`` only holds JSON-compatible values.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional


def _normalize(value: str) -> str:
    return value.replace("-", "").replace("_", "").replace(" ", "").lower()


class _ParseableEnum(Enum):
    """Enum accepting case, dash and underscore variants of its values."""

    @classmethod
    def parse(cls, value: Any):
        """
        Parse a value or name into a member.

        Raises
        ------
        ValueError
            If the value matches no member.
        """
        if isinstance(value, cls):
            return value
        wanted = _normalize(str(value))
        for member in cls:
            if wanted in (_normalize(member.value), _normalize(member.name)):
                return member
        allowed = ", ".join(m.value for m in cls)
        raise ValueError(f"Invalid {cls.__name__} '{value}' (allowed: {allowed})")


class Provider(_ParseableEnum):
    """Supported cloud providers."""

    AWS = "aws"
    GCP = "gcp"
    AZURE = "azure"


class ResourceKind(_ParseableEnum):
    """Resource kinds the engine knows how to audit."""

    VOLUME = "volume"
    ADDRESS = "address"
    INSTANCE = "instance"
    FIREWALL_RULE = "firewall-rule"
    SECURITY_GROUP = "security-group"
    SNAPSHOT = "snapshot"
    LOAD_BALANCER = "load-balancer"
    DATABASE = "database"
    BUCKET = "bucket"
    USER = "user"


class Severity(_ParseableEnum):
    """Finding severity, ordered from low to critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def at_least(self, other: "Severity") -> bool:
        """Return True if this severity is ``other`` or above."""
        return self.rank >= other.rank


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class Mode(_ParseableEnum):
    """Execution mode of an audit run."""

    REPORT_ONLY = "reportOnly"
    DRY_RUN = "dryRun"
    APPLY_WITH_CONFIRM = "applyWithConfirm"
    APPLY_FORCE = "applyForce"

    @property
    def mutates(self) -> bool:
        return self in (Mode.APPLY_WITH_CONFIRM, Mode.APPLY_FORCE)


class OutputFormat(_ParseableEnum):
    """Reporter output formats."""

    TABLE = "table"
    JSON = "json"
    SUMMARY = "summary"


class ActionType(_ParseableEnum):
    """Remediation actions an adapter may support."""

    DELETE = "delete"
    STOP = "stop"
    START = "start"
    TAG = "tag"
    PATCH = "patch"

    @property
    def destructive(self) -> bool:
        return self is ActionType.DELETE

    @property
    def saves_cost(self) -> bool:
        return self in (ActionType.DELETE, ActionType.STOP)


class ActionState(_ParseableEnum):
    """Terminal and intermediate states of the executor state machine."""

    PENDING = "pending"
    REPORTED = "reported"
    AWAITING_CONFIRM = "awaiting_confirm"
    APPLYING = "applying"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class ErrorKind(_ParseableEnum):
    """Error taxonomy recorded on an audit run."""

    CONFIG_ERROR = "ConfigError"
    PROVIDER_ERROR = "ProviderError"
    POLICY_ERROR = "PolicyError"
    PRECHECK_FAILED = "PrecheckFailed"
    PARTIAL_FAILURE = "PartialFailure"


# Ingress sources meaning "anyone on the internet" (AWS, GCP and Azure spellings)
WORLD_SOURCES = frozenset({"0.0.0.0/0", "::/0", "*", "internet", "any"})


def is_world_source(source: Any) -> bool:
    """Return True if an ingress source admits the whole internet."""
    return str(source).strip().lower() in WORLD_SOURCES


# =============================================================================
# Serialization Helpers
# =============================================================================


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dec_to_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _dec_from_str(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _enum_value(value: Optional[Enum]) -> Optional[str]:
    return value.value if value is not None else None


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class Resource:
    """
    A provider-tagged entity under audit.

    Parameters
    ----------
    id : str
        Provider-unique identifier (dedupe key).
    kind : ResourceKind
        Resource kind.
    provider : Provider
        Owning provider.
    region : str
        Region or zone ('global' for global resources).
    size_gb : float, optional
        Size in GiB for storage kinds.
    created_at : datetime, optional
        Creation time (aware).
    tags : dict
        Tag key-value pairs.
    raw_attributes : dict
        Provider-specific attributes consumed by rules.
    name : str, optional
        Human-friendly name.

    Example
    -------
    >>> Resource(
    ...     id="vol-1",
    ...     kind=ResourceKind.VOLUME,
    ...     provider=Provider.AWS,
    ...     region="us-east-1",
    ...     size_gb=100,
    ... )
    """

    id: str
    kind: ResourceKind
    provider: Provider
    region: str
    size_gb: Optional[float] = None
    created_at: Optional[datetime] = None
    tags: Mapping[str, str] = field(default_factory=dict)
    raw_attributes: Mapping[str, Any] = field(default_factory=dict)
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.tags.get("Name") or self.id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "provider": self.provider.value,
            "region": self.region,
            "size_gb": self.size_gb,
            "created_at": _dt_to_str(self.created_at),
            "tags": dict(self.tags),
            "raw_attributes": dict(self.raw_attributes),
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Resource":
        """Rebuild a Resource from :meth:`to_dict` output."""
        return cls(
            id=data["id"],
            kind=ResourceKind.parse(data["kind"]),
            provider=Provider.parse(data["provider"]),
            region=data["region"],
            size_gb=data.get("size_gb"),
            created_at=_dt_from_str(data.get("created_at")),
            tags=dict(data.get("tags") or {}),
            raw_attributes=dict(data.get("raw_attributes") or {}),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class RuleTarget:
    """Kind and provider filter of a rule. An empty provider set means all."""

    kinds: FrozenSet[ResourceKind]
    providers: FrozenSet[Provider] = frozenset()

    def matches(self, resource: Resource) -> bool:
        if resource.kind not in self.kinds:
            return False
        return not self.providers or resource.provider in self.providers


@dataclass(frozen=True)
class Rule:
    """
    A named predicate over a Resource.

    The predicate must be pure: no I/O, no shared mutable state.

    Parameters
    ----------
    name : str
        Unique rule name.
    applies_to : RuleTarget
        Kind/provider filter.
    severity : Severity
        Severity of findings produced by this rule.
    predicate : callable
        ``Resource -> bool``.
    reason_template : str
        ``str.format`` template for the finding reason.
    remediation : ActionType, optional
        Action the executor applies; None for report-only rules.
    description : str
        Longer explanation, shown by ``cloudsweep rules``.
    """

    name: str
    applies_to: RuleTarget
    severity: Severity
    predicate: Callable[[Resource], bool] = field(compare=False)
    reason_template: str
    remediation: Optional[ActionType] = None
    description: str = ""

    def render_reason(self, resource: Resource) -> str:
        """Render the reason template for a resource."""
        context: Dict[str, Any] = {str(k): v for k, v in resource.raw_attributes.items()}
        context.update(
            id=resource.id,
            name=resource.display_name,
            region=resource.region,
            kind=resource.kind.value,
            provider=resource.provider.value,
            size_gb=resource.size_gb,
            tags=dict(resource.tags),
        )
        return self.reason_template.format_map(_DefaultDict(context))


class _DefaultDict(dict):
    def __missing__(self, key: str) -> str:
        return "?"


@dataclass(frozen=True)
class Finding:
    """
    Result of one rule matching one resource.

    ``rule_name`` references the rule; the rule itself holds a callable and
    is not serialized.
    """

    resource: Resource
    rule_name: str
    severity: Severity
    reason: str
    estimated_monthly_cost: Optional[Decimal] = None
    remediation: Optional[ActionType] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "resource": self.resource.to_dict(),
            "rule_name": self.rule_name,
            "severity": self.severity.value,
            "reason": self.reason,
            "estimated_monthly_cost": _dec_to_str(self.estimated_monthly_cost),
            "remediation": _enum_value(self.remediation),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Finding":
        """Rebuild a Finding from :meth:`to_dict` output."""
        remediation = data.get("remediation")
        return cls(
            resource=Resource.from_dict(data["resource"]),
            rule_name=data["rule_name"],
            severity=Severity.parse(data["severity"]),
            reason=data["reason"],
            estimated_monthly_cost=_dec_from_str(data.get("estimated_monthly_cost")),
            remediation=ActionType.parse(remediation) if remediation else None,
        )


@dataclass(frozen=True)
class ErrorRecord:
    """One entry of an audit run's error log."""

    kind: ErrorKind
    message: str
    provider: Optional[str] = None
    region: Optional[str] = None
    resource_kind: Optional[str] = None
    resource_id: Optional[str] = None
    rule_name: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: Exception, **context: Any) -> "ErrorRecord":
        """
        Build a record from an exception of the error taxonomy.

        Parameters
        ----------
        exc : Exception
            Any exception; unknown types are recorded as ProviderError.
        **context
            Extra fields (region, resource_kind, resource_id, ...).
        """
        kind_name = getattr(exc, "kind", ErrorKind.PROVIDER_ERROR.value)
        try:
            kind = ErrorKind.parse(kind_name)
        except ValueError:
            kind = ErrorKind.PROVIDER_ERROR
        details = {
            str(k): v
            for k, v in (getattr(exc, "details", None) or {}).items()
            if isinstance(v, (str, int, float, bool)) or v is None
        }
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        return cls(kind=kind, message=message, details=details, **context)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "provider": self.provider,
            "region": self.region,
            "resource_kind": self.resource_kind,
            "resource_id": self.resource_id,
            "rule_name": self.rule_name,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ErrorRecord":
        """Rebuild an ErrorRecord from :meth:`to_dict` output."""
        return cls(
            kind=ErrorKind.parse(data["kind"]),
            message=data["message"],
            provider=data.get("provider"),
            region=data.get("region"),
            resource_kind=data.get("resource_kind"),
            resource_id=data.get("resource_id"),
            rule_name=data.get("rule_name"),
            details=dict(data.get("details") or {}),
        )


@dataclass(frozen=True)
class ActionResult:
    """
    Outcome of attempting remediation on a Finding. Terminal once created.

    Attributes
    ----------
    finding : Finding
        The finding acted upon.
    action : ActionType or None
        Action attempted (None when the finding has no remediation).
    state : ActionState
        Final state of the executor state machine.
    attempted : bool
        True if a mutating call was issued.
    succeeded : bool
        True if the action was applied (or the resource was already gone).
    dry_run : bool
        True when produced in dry-run mode.
    error : ErrorRecord, optional
        Error captured for failed actions.
    undo_reference : str, optional
        Identifier of the reversible artifact (e.g. snapshot id).
    """

    finding: Finding
    action: Optional[ActionType]
    state: ActionState
    attempted: bool = False
    succeeded: bool = False
    dry_run: bool = False
    error: Optional[ErrorRecord] = None
    undo_reference: Optional[str] = None
    detail: Optional[str] = None
    finished_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "finding": self.finding.to_dict(),
            "action": _enum_value(self.action),
            "state": self.state.value,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "dry_run": self.dry_run,
            "error": self.error.to_dict() if self.error else None,
            "undo_reference": self.undo_reference,
            "detail": self.detail,
            "finished_at": _dt_to_str(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ActionResult":
        """Rebuild an ActionResult from :meth:`to_dict` output."""
        action = data.get("action")
        error = data.get("error")
        return cls(
            finding=Finding.from_dict(data["finding"]),
            action=ActionType.parse(action) if action else None,
            state=ActionState.parse(data["state"]),
            attempted=bool(data.get("attempted")),
            succeeded=bool(data.get("succeeded")),
            dry_run=bool(data.get("dry_run")),
            error=ErrorRecord.from_dict(error) if error else None,
            undo_reference=data.get("undo_reference"),
            detail=data.get("detail"),
            finished_at=_dt_from_str(data.get("finished_at")) or utcnow(),
        )


@dataclass
class AuditRun:
    """
    Top-level aggregate of one audit run.

    Owned by the orchestrator while the run executes, read-only afterwards.

    Examples
    --------
    >>> run = orchestrator.run()
    >>> print(f"{len(run.findings)} findings, {len(run.errors)} errors")
    >>> print(f"Savings: ${run.total_estimated_monthly_savings}/month")
    """

    provider: Provider
    mode: Mode
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    regions_scanned: List[str] = field(default_factory=list)
    kinds_scanned: List[ResourceKind] = field(default_factory=list)
    resources_scanned: int = 0
    findings: List[Finding] = field(default_factory=list)
    action_results: List[ActionResult] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)
    cancelled: bool = False
    price_table_version: Optional[str] = None
    pairs_planned: int = 0

    def complete(self) -> None:
        """Mark the run as finished."""
        self.finished_at = utcnow()

    # -------------------------------------------------------------------------
    # Derived values
    # -------------------------------------------------------------------------

    @property
    def total_estimated_monthly_savings(self) -> Decimal:
        """
        Estimated monthly savings of the run.

        For report-only and dry-run modes this is the potential savings of
        every cost-saving remediation; for apply modes only actions that
        actually succeeded count. A resource is counted once.
        """
        if self.mode.mutates:
            candidates: Iterable[Finding] = (
                r.finding
                for r in self.action_results
                if r.succeeded and not r.dry_run and r.action is not None and r.action.saves_cost
            )
        else:
            candidates = (
                f for f in self.findings if f.remediation is not None and f.remediation.saves_cost
            )
        return _sum_costs_once_per_resource(candidates)

    @property
    def severity_counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for finding in self.findings:
            counts[finding.severity.value] += 1
        return counts

    @property
    def partial_failures(self) -> List[ErrorRecord]:
        return [e for e in self.errors if e.kind is ErrorKind.PARTIAL_FAILURE]

    @property
    def listing_failed(self) -> bool:
        """
        True when every planned (kind, region) pair failed to list.

        Such a run scanned nothing, so an empty findings list says nothing
        about the account. Cancelled runs are reported as cancelled instead.
        """
        if self.cancelled or self.pairs_planned == 0 or self.resources_scanned:
            return False
        failed = {(e.resource_kind, e.region) for e in self.partial_failures}
        return len(failed) >= self.pairs_planned

    @property
    def unresolved_critical(self) -> List[Finding]:
        """Critical findings without a successfully applied action."""
        resolved = {
            (r.finding.resource.id, r.finding.rule_name)
            for r in self.action_results
            if r.succeeded and not r.dry_run
        }
        return [
            f
            for f in self.findings
            if f.severity is Severity.CRITICAL and (f.resource.id, f.rule_name) not in resolved
        ]

    def action_counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in ActionState}
        for result in self.action_results:
            counts[result.state.value] += 1
        return {k: v for k, v in counts.items() if v}

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for serialization.

        Derived totals are included under ``summary`` for consumers and are
        ignored by :meth:`from_dict`.
        """
        return {
            "run_id": self.run_id,
            "provider": self.provider.value,
            "mode": self.mode.value,
            "started_at": _dt_to_str(self.started_at),
            "finished_at": _dt_to_str(self.finished_at),
            "regions_scanned": list(self.regions_scanned),
            "kinds_scanned": [k.value for k in self.kinds_scanned],
            "resources_scanned": self.resources_scanned,
            "cancelled": self.cancelled,
            "price_table_version": self.price_table_version,
            "pairs_planned": self.pairs_planned,
            "findings": [f.to_dict() for f in self.findings],
            "action_results": [r.to_dict() for r in self.action_results],
            "errors": [e.to_dict() for e in self.errors],
            "summary": {
                "total_estimated_monthly_savings": str(self.total_estimated_monthly_savings),
                "severity_counts": self.severity_counts,
                "action_counts": self.action_counts(),
                "unresolved_critical": len(self.unresolved_critical),
                "partial_failures": len(self.partial_failures),
                "listing_failed": self.listing_failed,
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditRun":
        """Rebuild an AuditRun from :meth:`to_dict` output."""
        return cls(
            run_id=data["run_id"],
            provider=Provider.parse(data["provider"]),
            mode=Mode.parse(data["mode"]),
            started_at=_dt_from_str(data["started_at"]) or utcnow(),
            finished_at=_dt_from_str(data.get("finished_at")),
            regions_scanned=list(data.get("regions_scanned") or []),
            kinds_scanned=[ResourceKind.parse(k) for k in data.get("kinds_scanned") or []],
            resources_scanned=int(data.get("resources_scanned") or 0),
            cancelled=bool(data.get("cancelled")),
            price_table_version=data.get("price_table_version"),
            pairs_planned=int(data.get("pairs_planned") or 0),
            findings=[Finding.from_dict(f) for f in data.get("findings") or []],
            action_results=[ActionResult.from_dict(r) for r in data.get("action_results") or []],
            errors=[ErrorRecord.from_dict(e) for e in data.get("errors") or []],
        )

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"AuditRun(provider='{self.provider.value}', mode='{self.mode.value}', "
            f"findings={len(self.findings)}, errors={len(self.errors)})"
        )


def _sum_costs_once_per_resource(findings: Iterable[Finding]) -> Decimal:
    seen = set()
    total = Decimal("0.00")
    for finding in findings:
        if finding.resource.id in seen or finding.estimated_monthly_cost is None:
            continue
        seen.add(finding.resource.id)
        total += finding.estimated_monthly_cost
    return total
