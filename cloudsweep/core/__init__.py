"""
Core Infrastructure Components
==============================

This module provides the foundational components for Cloud-Sweep:

- :mod:`~cloudsweep.core.models` - Resource, Rule, Finding, ActionResult, AuditRun
- :mod:`~cloudsweep.core.config` - Immutable run configuration
- :class:`AWSClient` - Manages AWS connections and client creation
- :class:`CancelToken` - Cooperative cancellation with optional deadline
- Exception hierarchy for error handling

The audit orchestrator lives in :mod:`cloudsweep.core.orchestrator` and is
imported from there directly, since it depends on the adapter layer.

Example
-------
>>> from cloudsweep.core import AuditConfig, Provider
>>> config = AuditConfig(provider=Provider.AWS, regions=("us-east-1",))

See Also
--------
cloudsweep.adapters : Provider adapters.
cloudsweep.policy : Rules and the policy engine.
cloudsweep.reporters : Output formatters.
"""

from cloudsweep.core.aws_client import AWSClient
from cloudsweep.core.cancel import CancelToken, RunCancelled
from cloudsweep.core.config import AuditConfig, load_config
from cloudsweep.core.exceptions import (
    CloudSweepError,
    ConfigError,
    CredentialsError,
    PartialFailure,
    PolicyError,
    PrecheckFailed,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    ResourceNotFoundError,
    TransientProviderError,
)
from cloudsweep.core.models import (
    ActionResult,
    ActionState,
    ActionType,
    AuditRun,
    ErrorKind,
    ErrorRecord,
    Finding,
    Mode,
    OutputFormat,
    Provider,
    Resource,
    ResourceKind,
    Rule,
    RuleTarget,
    Severity,
)

__all__ = [
    # Client
    "AWSClient",
    # Configuration
    "AuditConfig",
    "load_config",
    # Cancellation
    "CancelToken",
    "RunCancelled",
    # Data model
    "ActionResult",
    "ActionState",
    "ActionType",
    "AuditRun",
    "ErrorKind",
    "ErrorRecord",
    "Finding",
    "Mode",
    "OutputFormat",
    "Provider",
    "Resource",
    "ResourceKind",
    "Rule",
    "RuleTarget",
    "Severity",
    # Exceptions
    "CloudSweepError",
    "ConfigError",
    "CredentialsError",
    "PartialFailure",
    "PolicyError",
    "PrecheckFailed",
    "ProviderError",
    "ProviderTimeoutError",
    "RateLimitError",
    "ResourceNotFoundError",
    "TransientProviderError",
]
