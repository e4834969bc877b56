"""
Base Adapter Module
===================

Provides the abstract base class for all provider adapters.

An adapter is the only component that talks to a cloud. There is one
adapter per (provider, resource kind) pair; each one turns provider
records into :class:`~cloudsweep.core.models.Resource` objects and applies
remediation actions to them.

Classes
-------
Page
    One page of raw provider records.
ListResult
    Resources listed for one region plus the errors met on the way.
MutationResult
    Outcome of one remote mutation.
ProviderAdapter
    Abstract base class for adapters.

Example
-------
>>> class MyAdapter(ProviderAdapter):
...     provider = Provider.AWS
...     kind = ResourceKind.VOLUME
...
...     def fetch_page(self, region, token, filters):
...         return Page(records=[{"VolumeId": "vol-1"}], next_token=None)
...
...     def to_resource(self, record, region):
...         return Resource(id=record["VolumeId"], kind=self.kind,
...                         provider=self.provider, region=region)

Notes
-----
The base class owns pagination, retries of transient failures,
cancellation checkpoints, deduplication by id and error capture, so a
concrete adapter only describes how to fetch one page and how to convert
one record.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
)

from cloudsweep.core.cancel import CancelToken, RunCancelled
from cloudsweep.core.exceptions import (
    PartialFailure,
    ProviderError,
    ResourceNotFoundError,
)
from cloudsweep.core.models import (
    ActionType,
    ErrorKind,
    ErrorRecord,
    Provider,
    Resource,
    ResourceKind,
)
from cloudsweep.core.retry import DEFAULT_MAX_ATTEMPTS, call_with_backoff

# Module logger
logger = logging.getLogger(__name__)

# Tag that shields a resource from every remediation action
PROTECT_TAG = "cloudsweep:protect"

# Region label of kinds that are not regional
GLOBAL_REGION = "global"

# Populated by the @register decorator
ADAPTERS: Dict[Tuple[Provider, ResourceKind], Type["ProviderAdapter"]] = {}


def register(cls: Type["ProviderAdapter"]) -> Type["ProviderAdapter"]:
    """Class decorator adding an adapter to the registry."""
    ADAPTERS[(cls.provider, cls.kind)] = cls
    return cls


@dataclass
class Page:
    """One page of raw provider records."""

    records: List[Any]
    next_token: Optional[str] = None


@dataclass
class ListResult:
    """
    Resources listed for one (kind, region) pair.

    ``errors`` is non-empty when the listing failed part-way or entirely;
    ``resources`` then holds whatever was fetched before the failure.
    """

    resources: List[Resource] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class MutationResult:
    """Outcome of one remote mutation."""

    resource_id: str
    action: ActionType
    succeeded: bool
    already_absent: bool = False
    detail: Optional[str] = None


def dedupe_by_id(resources: Iterable[Resource]) -> List[Resource]:
    """
    Drop repeated ids, keeping the first occurrence and input order.

    >>> [r.id for r in dedupe_by_id([a, b, a2])]  # a and a2 share an id
    ['a', 'b']
    """
    seen = set()
    unique: List[Resource] = []
    for resource in resources:
        if resource.id in seen:
            continue
        seen.add(resource.id)
        unique.append(resource)
    return unique


def matches_filters(resource: Resource, filters: Optional[Mapping[str, str]]) -> bool:
    """
    Check ``tag:Key`` filters against a resource's tags.

    Keys without the ``tag:`` prefix are adapter pass-through filters and
    are ignored here.
    """
    if not filters:
        return True
    for key, expected in filters.items():
        if not key.startswith("tag:"):
            continue
        if resource.tags.get(key[4:]) != expected:
            return False
    return True


def is_protected(resource: Resource) -> bool:
    """Return True for resources no action may touch."""
    if str(resource.tags.get(PROTECT_TAG, "")).lower() == "true":
        return True
    return bool(resource.raw_attributes.get("is_default"))


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Parameters
    ----------
    session : object
        Provider session (AWSClient, GCPSession or AzureSession).
    max_list_attempts : int, default=4
        Attempt cap for transient listing failures.
    sleep : callable, optional
        Replacement for ``time.sleep`` in retries (tests).

    Attributes
    ----------
    provider : Provider
        Provider handled by the adapter.
    kind : ResourceKind
        Resource kind handled by the adapter.
    supported_actions : frozenset of ActionType
        Actions :meth:`mutate` accepts.

    Methods
    -------
    list_resources(region, filters, cancel)
        List one region, with pagination, retries and dedupe.
    mutate(resource, action, params)
        Apply one action. Never retried.
    create_reversible_artifact(resource)
        Backup taken before a destructive action.
    """

    provider: Provider
    kind: ResourceKind
    supported_actions: FrozenSet[ActionType] = frozenset()
    reversible_actions: FrozenSet[ActionType] = frozenset()
    # Global kinds are listed once, under the region "global"
    global_scope = False

    def __init__(
        self,
        session: Any,
        max_list_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.session = session
        self.max_list_attempts = max_list_attempts
        self._sleep = sleep
        self._listings: Dict[str, Any] = {}
        self._listing_lock = threading.Lock()
        logger.debug("Initialized %s", self.__class__.__name__)

    # =========================================================================
    # Hooks for concrete adapters
    # =========================================================================

    @abstractmethod
    def fetch_page(
        self,
        region: str,
        token: Optional[str],
        filters: Mapping[str, str],
    ) -> Page:
        """
        Fetch one page of raw records.

        Raises
        ------
        ProviderError
            Classified provider failure (transient ones get retried).
        """

    @abstractmethod
    def to_resource(self, record: Any, region: str) -> Resource:
        """Convert one raw record into a Resource."""

    def finalize(
        self,
        resources: List[Resource],
        region: str,
        cancel: Optional[CancelToken] = None,
    ) -> List[Resource]:
        """Post-process a fully listed region (e.g. attachment lookups)."""
        return resources

    def discover_regions(self) -> List[str]:
        """
        Return every region this provider can be scanned in.

        Raises
        ------
        ProviderError
            If discovery fails.
        """
        raise NotImplementedError(f"{self.__class__.__name__} can't discover regions")

    def _apply(
        self,
        resource: Resource,
        action: ActionType,
        params: Mapping[str, Any],
    ) -> Optional[str]:
        """Issue the remote mutation; return an optional detail string."""
        raise NotImplementedError

    def create_reversible_artifact(self, resource: Resource) -> str:
        """
        Create a backup of ``resource`` and return its identifier.

        Raises
        ------
        ProviderError
            If the backup can't be created.
        """
        raise NotImplementedError(
            f"{self.__class__.__name__} has no reversible artifact"
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def supports(self, action: ActionType) -> bool:
        return action in self.supported_actions

    def supports_reversible_artifact(self, action: ActionType) -> bool:
        return action in self.reversible_actions

    def shared_listing(self, key: str, fetch: Callable[[], List[Any]]) -> List[Any]:
        """
        Return the records of an account-wide listing, fetching them once.

        Providers that only list across every region at once (GCP
        aggregated lists, Azure subscription listings) call this from
        ``fetch_page`` and keep the records of the requested region. The
        result lives as long as the adapter, which is one audit run.
        Concurrent callers wait for the first fetch; a failed fetch is not
        stored, so the next region tries again.
        """
        with self._listing_lock:
            if key not in self._listings:
                self._listings[key] = fetch()
                logger.debug("Cached %d %s record(s) under %r", len(self._listings[key]), self.kind.value, key)
            return self._listings[key]

    def list_resources(
        self,
        region: str,
        filters: Optional[Mapping[str, str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ListResult:
        """
        List every resource of this kind in one region.

        Transient failures are retried per page with exponential backoff.
        Failures that remain are captured into ``ListResult.errors`` as a
        PartialFailure for this region instead of being raised.

        Parameters
        ----------
        region : str
            Region (or zone/location) to list.
        filters : mapping, optional
            ``tag:Key`` filters plus adapter pass-through keys.
        cancel : CancelToken, optional
            Checked between pages.

        Returns
        -------
        ListResult
            Deduplicated resources and any errors.

        Example
        -------
        >>> result = adapter.list_resources("us-east-1", {"tag:Team": "data"})
        >>> print(len(result.resources), result.errors)
        """
        filters = dict(filters or {})
        result = ListResult()
        resources: List[Resource] = []
        token: Optional[str] = None
        pages = 0

        logger.debug("Listing %s/%s in %s", self.provider.value, self.kind.value, region)

        try:
            while True:
                page = call_with_backoff(
                    lambda: self.fetch_page(region, token, filters),
                    description=f"list {self.kind.value} in {region}",
                    max_attempts=self.max_list_attempts,
                    cancel=cancel,
                    sleep=self._sleep,
                )
                pages += 1
                for record in page.records:
                    resource = self._convert(record, region, result)
                    if resource is not None and matches_filters(resource, filters):
                        resources.append(resource)
                token = page.next_token
                if not token:
                    break
                if cancel is not None:
                    cancel.raise_if_cancelled()

            resources = self.finalize(dedupe_by_id(resources), region, cancel)

        except (ProviderError, RunCancelled) as e:
            logger.warning(
                "Listing %s in %s failed after %d page(s): %s",
                self.kind.value,
                region,
                pages,
                e,
            )
            failure = PartialFailure(
                f"Failed to list {self.kind.value} in {region}: {getattr(e, 'message', e)}",
                region=region,
                resource_kind=self.kind.value,
                details={**getattr(e, "details", {}), "cause": e.__class__.__name__},
            )
            result.errors.append(
                ErrorRecord.from_exception(
                    failure,
                    provider=self.provider.value,
                    region=region,
                    resource_kind=self.kind.value,
                )
            )

        result.resources = dedupe_by_id(resources)
        logger.info(
            "Listed %d %s resource(s) in %s",
            len(result.resources),
            self.kind.value,
            region,
        )
        return result

    def mutate(
        self,
        resource: Resource,
        action: ActionType,
        params: Optional[Mapping[str, Any]] = None,
    ) -> MutationResult:
        """
        Apply ``action`` to ``resource``.

        Deleting a resource that no longer exists counts as success, so
        repeated deletes are idempotent. Never retried.

        Raises
        ------
        ProviderError
            If the action is unsupported or the remote call fails.
        """
        if not self.supports(action):
            raise ProviderError(
                f"{self.kind.value} does not support '{action.value}'",
                provider=self.provider.value,
                region=resource.region,
            )
        try:
            detail = self._apply(resource, action, params or {})
        except ResourceNotFoundError as e:
            if action is ActionType.DELETE:
                logger.info("%s %s already gone, treating delete as done", self.kind.value, resource.id)
                return MutationResult(
                    resource_id=resource.id,
                    action=action,
                    succeeded=True,
                    already_absent=True,
                    detail=e.message,
                )
            raise
        logger.info("Applied %s to %s %s", action.value, self.kind.value, resource.id)
        return MutationResult(
            resource_id=resource.id,
            action=action,
            succeeded=True,
            detail=detail,
        )

    # =========================================================================
    # Private Methods
    # =========================================================================

    def _convert(self, record: Any, region: str, result: ListResult) -> Optional[Resource]:
        try:
            return self.to_resource(record, region)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Skipping malformed %s record in %s: %r", self.kind.value, region, e)
            result.errors.append(
                ErrorRecord(
                    kind=ErrorKind.PROVIDER_ERROR,
                    message=f"Malformed {self.kind.value} record: {e!r}",
                    provider=self.provider.value,
                    region=region,
                    resource_kind=self.kind.value,
                )
            )
            return None

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"{self.__class__.__name__}("
            f"provider='{self.provider.value}', kind='{self.kind.value}')"
        )
