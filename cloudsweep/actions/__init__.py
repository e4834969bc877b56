"""Remediation: the action executor and its per-resource locks."""

from cloudsweep.actions.executor import ActionExecutor
from cloudsweep.actions.locks import KeyedLock

__all__ = ["ActionExecutor", "KeyedLock"]
