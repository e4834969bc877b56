"""
Action Executor Module
======================

Applies remediation actions to findings under the run's mode.

State machine per finding::

    dryRun            pending -> reported
    applyWithConfirm  pending -> awaiting_confirm -> applying -> applied | failed
                                                  -> skipped (declined)
    applyForce        pending -> applying -> applied | failed

Findings without a remediation, with an action the adapter does not
support, or on protected resources end ``skipped``.

Safety rules:

- Destructive actions create a reversible artifact first when the adapter
  supports one; if that fails the action is not attempted (PrecheckFailed).
  A resource that is gone before its backup counts as deleted.
- Mutations are never retried.
- At most one mutation per resource id is in flight.
- Once cancellation is observed no new mutation starts.

Example
-------
>>> executor = ActionExecutor(adapters, max_workers=2, confirm=ask_user)
>>> results = executor.execute_all(findings, Mode.APPLY_WITH_CONFIRM)
>>> for result in results:
...     print(result.finding.resource.id, result.state.value)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Mapping, Optional, Sequence

from cloudsweep.actions.locks import KeyedLock
from cloudsweep.adapters.base import ProviderAdapter, is_protected
from cloudsweep.core.cancel import CancelToken
from cloudsweep.core.exceptions import PrecheckFailed, ProviderError, ResourceNotFoundError
from cloudsweep.core.models import (
    ActionResult,
    ActionState,
    ActionType,
    ErrorRecord,
    Finding,
    Mode,
    ResourceKind,
)

# Module logger
logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 2

ConfirmCallback = Callable[[Finding], bool]
ProgressCallback = Callable[[ActionResult], None]


class ActionExecutor:
    """
    Executes remediation actions.

    Parameters
    ----------
    adapters : mapping
        ``ResourceKind -> ProviderAdapter`` used for mutations.
    max_workers : int, default=2
        Size of the action pool.
    confirm : callable, optional
        ``Finding -> bool`` asked before each action in applyWithConfirm
        mode. Calls are serialized. Without it every action is declined.
    cancel : CancelToken, optional
        Checked before each mutation.
    progress_callback : callable, optional
        Called with every finished ActionResult.
    """

    # Friendlier messages for common provider error codes
    ERROR_MESSAGES = {
        "DependencyViolation": "Resource is still in use by another resource",
        "InvalidGroup.InUse": "Security group is referenced by another security group",
        "VolumeInUse": "Volume is attached to an instance",
        "InvalidSnapshot.InUse": "Snapshot is used by a registered image",
        "UnauthorizedOperation": "Insufficient permissions for this action",
        "AuthFailure": "Credentials were rejected",
    }

    def __init__(
        self,
        adapters: Mapping[ResourceKind, ProviderAdapter],
        max_workers: int = DEFAULT_MAX_WORKERS,
        confirm: Optional[ConfirmCallback] = None,
        cancel: Optional[CancelToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.adapters = dict(adapters)
        self.max_workers = max(1, max_workers)
        self.confirm = confirm
        self.cancel = cancel
        self.progress_callback = progress_callback
        self._locks = KeyedLock()
        self._confirm_lock = threading.Lock()

    # =========================================================================
    # Public API
    # =========================================================================

    def execute(self, finding: Finding, mode: Mode) -> ActionResult:
        """
        Run the state machine for one finding.

        Never raises for provider failures; they end in ``failed``.
        """
        result = self._execute(finding, mode)
        logger.debug(
            "%s on %s: %s",
            result.action.value if result.action else "no action",
            finding.resource.id,
            result.state.value,
        )
        if self.progress_callback:
            self.progress_callback(result)
        return result

    def execute_all(self, findings: Sequence[Finding], mode: Mode) -> List[ActionResult]:
        """
        Execute every finding on the action pool.

        Returns
        -------
        list of ActionResult
            One result per finding, in finding order.
        """
        if not findings:
            return []
        workers = min(self.max_workers, len(findings))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="action") as pool:
            results = list(pool.map(lambda f: self.execute(f, mode), findings))

        applied = sum(1 for r in results if r.state is ActionState.APPLIED)
        failed = sum(1 for r in results if r.state is ActionState.FAILED)
        logger.info(
            "Actions finished (%s): %d applied, %d failed, %d total",
            mode.value,
            applied,
            failed,
            len(results),
        )
        return results

    # =========================================================================
    # State machine
    # =========================================================================

    def _execute(self, finding: Finding, mode: Mode) -> ActionResult:
        resource = finding.resource
        action = finding.remediation

        if action is None:
            return self._skipped(finding, None, "rule has no remediation")
        if mode is Mode.REPORT_ONLY:
            return ActionResult(finding=finding, action=action, state=ActionState.REPORTED, detail="report only")

        adapter = self.adapters.get(resource.kind)
        if adapter is None or not adapter.supports(action):
            return self._skipped(finding, action, f"{action.value} not supported for {resource.kind.value}")
        if is_protected(resource):
            return self._skipped(finding, action, "resource is protected")

        if mode is Mode.DRY_RUN:
            detail = f"would {action.value} {resource.id}"
            if action.destructive and adapter.supports_reversible_artifact(action):
                detail += " after taking a backup"
            return ActionResult(
                finding=finding,
                action=action,
                state=ActionState.REPORTED,
                dry_run=True,
                detail=detail,
            )

        with self._locks.hold(resource.id):
            if self._cancelled():
                return self._skipped(finding, action, "cancelled")
            if mode is Mode.APPLY_WITH_CONFIRM:
                if not self._ask(finding):
                    return self._skipped(finding, action, "declined")
                if self._cancelled():
                    return self._skipped(finding, action, "cancelled")
            return self._apply(finding, adapter, action)

    def _apply(self, finding: Finding, adapter: ProviderAdapter, action: ActionType) -> ActionResult:
        resource = finding.resource
        undo_reference: Optional[str] = None

        if action.destructive and adapter.supports_reversible_artifact(action):
            try:
                undo_reference = adapter.create_reversible_artifact(resource)
            except ResourceNotFoundError:
                logger.info("%s %s is already gone, nothing to back up", resource.kind.value, resource.id)
                return ActionResult(
                    finding=finding,
                    action=action,
                    state=ActionState.APPLIED,
                    attempted=True,
                    succeeded=True,
                    detail="already absent",
                )
            except ProviderError as e:
                error = PrecheckFailed(
                    f"Backup of {resource.id} failed, {action.value} not attempted: {e.message}",
                    resource_id=resource.id,
                )
                logger.error("%s", error.message)
                return ActionResult(
                    finding=finding,
                    action=action,
                    state=ActionState.FAILED,
                    error=self._record(error, finding),
                )

        logger.info("Applying %s to %s %s", action.value, resource.kind.value, resource.id)
        try:
            mutation = adapter.mutate(resource, action)
        except ProviderError as e:
            message = self.ERROR_MESSAGES.get(e.code or "", e.message)
            logger.error("Failed to %s %s: %s", action.value, resource.id, message)
            return ActionResult(
                finding=finding,
                action=action,
                state=ActionState.FAILED,
                attempted=True,
                undo_reference=undo_reference,
                error=self._record(e, finding, message=message),
            )
        except Exception as e:
            logger.exception("Unexpected error applying %s to %s", action.value, resource.id)
            return ActionResult(
                finding=finding,
                action=action,
                state=ActionState.FAILED,
                attempted=True,
                undo_reference=undo_reference,
                error=self._record(ProviderError(str(e) or e.__class__.__name__), finding),
            )

        detail = mutation.detail
        if mutation.already_absent:
            detail = "already absent"
        return ActionResult(
            finding=finding,
            action=action,
            state=ActionState.APPLIED,
            attempted=True,
            succeeded=mutation.succeeded,
            undo_reference=undo_reference,
            detail=detail,
        )

    # =========================================================================
    # Private Methods
    # =========================================================================

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled

    def _ask(self, finding: Finding) -> bool:
        if self.confirm is None:
            return False
        with self._confirm_lock:
            return bool(self.confirm(finding))

    @staticmethod
    def _skipped(finding: Finding, action: Optional[ActionType], reason: str) -> ActionResult:
        return ActionResult(finding=finding, action=action, state=ActionState.SKIPPED, detail=reason)

    @staticmethod
    def _record(exc: Exception, finding: Finding, message: Optional[str] = None) -> ErrorRecord:
        record = ErrorRecord.from_exception(
            exc,
            provider=finding.resource.provider.value,
            region=finding.resource.region,
            resource_kind=finding.resource.kind.value,
            resource_id=finding.resource.id,
            rule_name=finding.rule_name,
        )
        if message and message != record.message:
            record = ErrorRecord(
                kind=record.kind,
                message=message,
                provider=record.provider,
                region=record.region,
                resource_kind=record.resource_kind,
                resource_id=record.resource_id,
                rule_name=record.rule_name,
                details={**record.details, "provider_message": record.message},
            )
        return record

    def __repr__(self) -> str:
        """Return string representation."""
        return f"ActionExecutor(kinds={len(self.adapters)}, max_workers={self.max_workers})"
