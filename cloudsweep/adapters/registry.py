"""
Adapter registry: maps (provider, kind) to adapter classes and builds
provider sessions from an :class:`~cloudsweep.core.config.AuditConfig`.

Provider modules are imported on first use, so only the SDK of the
audited provider has to be installed.
"""

from __future__ import annotations

import importlib
import logging
from types import ModuleType
from typing import Any, Dict, List

from cloudsweep.adapters.base import ADAPTERS, ProviderAdapter
from cloudsweep.core.aws_client import AWSClient
from cloudsweep.core.config import AuditConfig
from cloudsweep.core.exceptions import ConfigError
from cloudsweep.core.models import Provider, ResourceKind

# Module logger
logger = logging.getLogger(__name__)

PROVIDER_MODULES = {
    Provider.AWS: "cloudsweep.adapters.aws",
    Provider.GCP: "cloudsweep.adapters.gcp",
    Provider.AZURE: "cloudsweep.adapters.azure",
}

PROVIDER_PACKAGES = {
    Provider.AWS: "boto3",
    Provider.GCP: "'cloudsweep[gcp]'",
    Provider.AZURE: "'cloudsweep[azure]'",
}


def load_provider(provider: Provider) -> ModuleType:
    """
    Import the adapter module of ``provider``, registering its adapters.

    Raises
    ------
    ConfigError
        If the provider SDK is not installed.
    """
    try:
        return importlib.import_module(PROVIDER_MODULES[provider])
    except ImportError as e:
        raise ConfigError(
            f"{provider.value} support is not available: {e}",
            details={"hint": f"pip install {PROVIDER_PACKAGES[provider]}"},
        )


def registered_kinds(provider: Provider) -> List[ResourceKind]:
    """Kinds with an adapter for ``provider``, in declaration order."""
    load_provider(provider)
    return [kind for kind in ResourceKind if (provider, kind) in ADAPTERS]


def create_session(config: AuditConfig) -> Any:
    """
    Build the provider session described by ``config``.

    Returns
    -------
    AWSClient, GCPSession or AzureSession
    """
    if config.provider is Provider.AWS:
        return AWSClient(profile=config.profile)
    module = load_provider(config.provider)
    if config.provider is Provider.GCP:
        return module.GCPSession(project=config.project)
    return module.AzureSession(subscription_id=config.subscription_id)


def create_adapter(
    provider: Provider,
    kind: ResourceKind,
    session: Any,
    **kwargs: Any,
) -> ProviderAdapter:
    """
    Instantiate the adapter registered for ``(provider, kind)``.

    Raises
    ------
    ConfigError
        If no adapter is registered for the pair, or the provider SDK is
        not installed.
    """
    load_provider(provider)
    try:
        adapter_class = ADAPTERS[(provider, kind)]
    except KeyError:
        supported = ", ".join(k.value for k in registered_kinds(provider))
        raise ConfigError(
            f"Resource kind '{kind.value}' is not supported on {provider.value}",
            details={"supported": supported},
        )
    return adapter_class(session, **kwargs)


class AdapterFactory:
    """
    Creates adapters for one run, sharing a single provider session.

    Parameters
    ----------
    config : AuditConfig
        Run configuration.
    session : object, optional
        Pre-built session (tests); built from ``config`` otherwise.
    """

    def __init__(self, config: AuditConfig, session: Any = None) -> None:
        self.config = config
        self.session = session if session is not None else create_session(config)
        self._adapters: Dict[ResourceKind, ProviderAdapter] = {}

    def __call__(self, kind: ResourceKind) -> ProviderAdapter:
        if kind not in self._adapters:
            self._adapters[kind] = create_adapter(
                self.config.provider,
                kind,
                self.session,
                max_list_attempts=self.config.max_list_attempts,
            )
        return self._adapters[kind]
