"""
Audit Orchestrator Module
=========================

Runs one audit end to end:

1. Validate the configuration
2. Resolve kinds and regions
3. List every (kind, region) pair in parallel
4. Classify resources and estimate costs
5. Filter by severity and execute actions when the mode allows it
6. Assemble the :class:`~cloudsweep.core.models.AuditRun`

A failing (kind, region) pair never aborts the run: it is recorded as a
PartialFailure and the other pairs are still reported. Only configuration
errors and a failed region discovery abort.

Classes
-------
AuditOrchestrator
    Drives the pipeline for one configuration.

Example
-------
>>> from cloudsweep.core.config import load_config
>>> from cloudsweep.core.orchestrator import AuditOrchestrator
>>>
>>> config = load_config(overrides={"regions": ["us-east-1"], "mode": "dryRun"})
>>> run = AuditOrchestrator(config).run()
>>> print(f"{len(run.findings)} findings, ${run.total_estimated_monthly_savings}/month")

Notes
-----
Listing uses a ThreadPoolExecutor of ``concurrency_listing`` workers, one
task per (kind, region) pair. Results are gathered in submission order,
so the merged resource list does not depend on thread scheduling.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from cloudsweep.actions.executor import ActionExecutor, ConfirmCallback, ProgressCallback
from cloudsweep.adapters.base import GLOBAL_REGION, ListResult, ProviderAdapter, dedupe_by_id
from cloudsweep.adapters.registry import AdapterFactory, registered_kinds
from cloudsweep.core.cancel import CancelToken
from cloudsweep.core.config import AuditConfig
from cloudsweep.core.exceptions import ConfigError, PartialFailure, ProviderError
from cloudsweep.core.logging import bind_run
from cloudsweep.core.models import (
    AuditRun,
    ErrorRecord,
    Finding,
    Mode,
    Resource,
    ResourceKind,
    Rule,
    utcnow,
)
from cloudsweep.cost.estimator import CostEstimator, PriceTable
from cloudsweep.policy.engine import PolicyEngine
from cloudsweep.policy.rules import default_rules, rules_for
from cloudsweep.reporters.history import RunHistory

# Module logger
logger = logging.getLogger(__name__)

Pair = Tuple[ResourceKind, str]


class AuditOrchestrator:
    """
    Drives one audit run.

    Parameters
    ----------
    config : AuditConfig
        Run configuration.
    adapter_factory : callable, optional
        ``ResourceKind -> ProviderAdapter``. Defaults to an
        :class:`~cloudsweep.adapters.registry.AdapterFactory` for ``config``.
    confirm : callable, optional
        Confirmation callback for applyWithConfirm mode.
    estimator : CostEstimator, optional
        Defaults to the price table named by the configuration.
    rules : sequence of Rule, optional
        Defaults to the built-in rule set.
    clock : callable, optional
        Returns the current aware datetime (reference time of age rules).
    progress_callback : callable, optional
        Called with every finished ActionResult.

    Examples
    --------
    Injecting fakes in tests:

    >>> orchestrator = AuditOrchestrator(
    ...     config,
    ...     adapter_factory=lambda kind: fake_adapters[kind],
    ...     estimator=CostEstimator(table),
    ... )
    >>> run = orchestrator.run()
    """

    def __init__(
        self,
        config: AuditConfig,
        adapter_factory: Optional[Callable[[ResourceKind], ProviderAdapter]] = None,
        confirm: Optional[ConfirmCallback] = None,
        estimator: Optional[CostEstimator] = None,
        rules: Optional[Sequence[Rule]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.config = config
        self.adapter_factory = adapter_factory
        self.confirm = confirm
        self.estimator = estimator
        self.rules = rules
        self.clock = clock or utcnow
        self.progress_callback = progress_callback

    # =========================================================================
    # Public API
    # =========================================================================

    def run(self, cancel: Optional[CancelToken] = None) -> AuditRun:
        """
        Execute the audit.

        Parameters
        ----------
        cancel : CancelToken, optional
            Cancellation signal. Defaults to a token with the configured
            deadline.

        Returns
        -------
        AuditRun
            The finished run.

        Raises
        ------
        ConfigError
            Invalid configuration, before any provider call.
        ProviderError
            Region discovery failed.
        """
        config = self.config.validate()
        cancel = cancel or CancelToken(config.deadline_seconds)

        estimator = self.estimator or CostEstimator(
            PriceTable.load(config.cost_price_table_version, config.price_table_path)
        )
        now = self.clock()
        rules = list(self.rules) if self.rules is not None else default_rules(
            now=now, snapshot_retention_days=config.snapshot_retention_days
        )
        engine = PolicyEngine(rules_for(config.provider, rules), max_workers=config.concurrency_listing)

        kinds = list(config.kinds) or registered_kinds(config.provider)
        if not kinds:
            raise ConfigError(f"No resource kinds available for {config.provider.value}")
        factory = self.adapter_factory or AdapterFactory(config)
        adapters = {kind: factory(kind) for kind in kinds}

        run = AuditRun(
            provider=config.provider,
            mode=config.mode,
            started_at=now,
            kinds_scanned=kinds,
            price_table_version=estimator.version,
        )
        with bind_run(run.run_id):
            self._audit(run, config, engine, estimator, adapters, cancel)
        return run

    def _audit(
        self,
        run: AuditRun,
        config: AuditConfig,
        engine: PolicyEngine,
        estimator: CostEstimator,
        adapters: Dict[ResourceKind, ProviderAdapter],
        cancel: CancelToken,
    ) -> None:
        pairs = self._plan(adapters, self._resolve_regions(adapters))
        run.regions_scanned = sorted({region for _, region in pairs})
        run.pairs_planned = len(pairs)
        logger.info(
            "Auditing %s: %d kind(s) across %d region(s), mode=%s",
            config.provider.value,
            len(run.kinds_scanned),
            len(run.regions_scanned),
            config.mode.value,
        )

        resources = self._list_all(adapters, pairs, cancel, run.errors)
        run.resources_scanned = len(resources)

        findings, policy_errors = engine.classify(resources)
        run.errors.extend(policy_errors)
        findings = estimator.annotate(findings)
        run.findings = [f for f in findings if f.severity.at_least(config.min_severity)]
        dropped = len(findings) - len(run.findings)
        if dropped:
            logger.debug("Dropped %d finding(s) below %s", dropped, config.min_severity.value)

        if config.mode is not Mode.REPORT_ONLY:
            executor = ActionExecutor(
                adapters,
                max_workers=config.concurrency_action,
                confirm=self.confirm,
                cancel=cancel,
                progress_callback=self.progress_callback,
            )
            run.action_results = executor.execute_all(self._actionable(run.findings), config.mode)
            run.errors.extend(r.error for r in run.action_results if r.error is not None)

        run.cancelled = cancel.cancelled
        run.complete()
        logger.info(
            "Audit finished: %d resource(s), %d finding(s), %d error(s)%s",
            run.resources_scanned,
            len(run.findings),
            len(run.errors),
            " (cancelled)" if run.cancelled else "",
        )

        if config.history_file:
            RunHistory(config.history_file).append(run)

    # =========================================================================
    # Planning
    # =========================================================================

    def _resolve_regions(self, adapters: Dict[ResourceKind, ProviderAdapter]) -> List[str]:
        if self.config.regions:
            return list(self.config.regions)
        regional = [a for a in adapters.values() if not a.global_scope]
        if not regional:
            return []
        try:
            regions = regional[0].discover_regions()
        except ProviderError:
            logger.error("Region discovery failed for %s", self.config.provider.value)
            raise
        logger.info("Discovered %d %s region(s)", len(regions), self.config.provider.value)
        return regions

    @staticmethod
    def _plan(adapters: Dict[ResourceKind, ProviderAdapter], regions: List[str]) -> List[Pair]:
        pairs: List[Pair] = []
        for kind, adapter in adapters.items():
            if adapter.global_scope:
                pairs.append((kind, GLOBAL_REGION))
            else:
                pairs.extend((kind, region) for region in regions)
        return pairs

    def _actionable(self, findings: List[Finding]) -> List[Finding]:
        config = self.config
        selected = [f for f in findings if f.remediation is not None]
        if config.action_kinds:
            selected = [f for f in selected if f.resource.kind in config.action_kinds]
        if config.action_min_severity is not None:
            selected = [f for f in selected if f.severity.at_least(config.action_min_severity)]
        return selected

    # =========================================================================
    # Listing
    # =========================================================================

    def _list_pair(
        self,
        adapter: ProviderAdapter,
        kind: ResourceKind,
        region: str,
        cancel: CancelToken,
    ) -> ListResult:
        if cancel.cancelled:
            return ListResult(errors=[self._cancelled_record(kind, region, cancel)])
        try:
            return adapter.list_resources(region, cancel=cancel)
        except Exception as e:
            logger.exception("Unexpected error listing %s in %s", kind.value, region)
            failure = PartialFailure(
                f"Failed to list {kind.value} in {region}: {e!r}", region=region, resource_kind=kind.value
            )
            return ListResult(errors=[self._failure_record(failure)])

    def _list_all(
        self,
        adapters: Dict[ResourceKind, ProviderAdapter],
        pairs: List[Pair],
        cancel: CancelToken,
        errors: List[ErrorRecord],
    ) -> List[Resource]:
        if not pairs:
            return []
        workers = min(self.config.concurrency_listing, len(pairs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="list") as pool:
            futures = [
                pool.submit(self._list_pair, adapters[kind], kind, region, cancel)
                for kind, region in pairs
            ]
            results = [future.result() for future in futures]

        resources: List[Resource] = []
        for (kind, region), result in zip(pairs, results):
            resources.extend(result.resources)
            errors.extend(result.errors)
            if result.errors:
                logger.warning("%s in %s: %d error(s)", kind.value, region, len(result.errors))
        return dedupe_by_id(resources)

    def _cancelled_record(self, kind: ResourceKind, region: str, cancel: CancelToken) -> ErrorRecord:
        failure = PartialFailure(
            f"Listing {kind.value} in {region} skipped: cancelled",
            region=region,
            resource_kind=kind.value,
            details={"reason": cancel.reason or "cancelled"},
        )
        return self._failure_record(failure)

    def _failure_record(self, failure: PartialFailure) -> ErrorRecord:
        return ErrorRecord.from_exception(
            failure,
            provider=self.config.provider.value,
            region=failure.region,
            resource_kind=failure.resource_kind,
        )

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"AuditOrchestrator(provider='{self.config.provider.value}', "
            f"mode='{self.config.mode.value}')"
        )
