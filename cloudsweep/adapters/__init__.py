"""
Provider adapters: the only layer that talks to a cloud.

One adapter class per (provider, resource kind); see
:mod:`cloudsweep.adapters.registry` for lookup.
"""

from cloudsweep.adapters.base import ListResult, MutationResult, Page, ProviderAdapter
from cloudsweep.adapters.registry import (
    AdapterFactory,
    create_adapter,
    create_session,
    load_provider,
    registered_kinds,
)

__all__ = [
    "AdapterFactory",
    "ListResult",
    "MutationResult",
    "Page",
    "ProviderAdapter",
    "create_adapter",
    "create_session",
    "load_provider",
    "registered_kinds",
]
