"""
Configuration Module
====================

Immutable run configuration for the audit engine.

Values are resolved from, lowest to highest precedence:

1. Defaults declared on :class:`AuditConfig`
2. A JSON config file (snake_case or camelCase keys)
3. Environment variables (``CLOUDSWEEP_*`` plus a few legacy names)
4. Explicit overrides (CLI options)

Example
-------
>>> from cloudsweep.core.config import load_config
>>>
>>> config = load_config(
...     config_file="audit.json",
...     overrides={"mode": "dryRun", "regions": ["us-east-1"]},
... )
>>> config.mode
<Mode.DRY_RUN: 'dryRun'>
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from cloudsweep.core.exceptions import ConfigError
from cloudsweep.core.models import Mode, OutputFormat, Provider, ResourceKind, Severity

# Module logger
logger = logging.getLogger(__name__)

ENV_PREFIX = "CLOUDSWEEP_"
DEFAULT_PRICE_TABLE_VERSION = "2024.1"

# Unprefixed variables accepted for compatibility with existing shell setups
LEGACY_ENV = {
    "GCP_PROJECT": "project",
    "AZURE_SUBSCRIPTION": "subscription_id",
    "AWS_PROFILE": "profile",
}


@dataclass(frozen=True)
class AuditConfig:
    """
    Immutable configuration of one audit run.

    Parameters
    ----------
    provider : Provider, default=aws
        Cloud provider to audit.
    regions : tuple of str
        Regions to scan. Empty means every discoverable region.
    kinds : tuple of ResourceKind
        Kinds to scan. Empty means every kind registered for the provider.
    mode : Mode, default=reportOnly
        Execution mode.
    min_severity : Severity, default=low
        Findings below this severity are dropped.
    output_format : OutputFormat, default=table
        Reporter format.
    concurrency_listing : int, default=8
        Worker pool size for listing calls.
    concurrency_action : int, default=2
        Worker pool size for mutations.
    cost_price_table_version : str
        Bundled price table version.
    price_table_path : str, optional
        Explicit price table file, overrides the version.
    profile : str, optional
        AWS profile name.
    project : str, optional
        GCP project id (required for gcp).
    subscription_id : str, optional
        Azure subscription id (required for azure).
    max_list_attempts : int, default=4
        Attempt cap for transient listing failures.
    deadline_seconds : float, optional
        Cancel the run after this many seconds.
    history_file : str, optional
        JSON-lines file each finished run is appended to.
    snapshot_retention_days : int, default=30
        Age after which snapshots are considered stale.
    action_min_severity : Severity, optional
        Only act on findings at or above this severity.
    action_kinds : tuple of ResourceKind
        Only act on findings of these kinds. Empty means every kind.
    log_level : str, default="INFO"
        Logging level.
    log_file : str, optional
        Optional log file.
    """

    provider: Provider = Provider.AWS
    regions: Tuple[str, ...] = ()
    kinds: Tuple[ResourceKind, ...] = ()
    mode: Mode = Mode.REPORT_ONLY
    min_severity: Severity = Severity.LOW
    output_format: OutputFormat = OutputFormat.TABLE
    concurrency_listing: int = 8
    concurrency_action: int = 2
    cost_price_table_version: str = DEFAULT_PRICE_TABLE_VERSION
    price_table_path: Optional[str] = None
    profile: Optional[str] = None
    project: Optional[str] = None
    subscription_id: Optional[str] = None
    max_list_attempts: int = 4
    deadline_seconds: Optional[float] = None
    history_file: Optional[str] = None
    snapshot_retention_days: int = 30
    action_min_severity: Optional[Severity] = None
    action_kinds: Tuple[ResourceKind, ...] = ()
    log_level: str = "INFO"
    log_file: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def validate(self) -> "AuditConfig":
        """
        Check cross-field constraints.

        Returns
        -------
        AuditConfig
            ``self``, for chaining.

        Raises
        ------
        ConfigError
            If any value is out of range or a provider setting is missing.
        """
        if self.concurrency_listing < 1:
            raise ConfigError("concurrency_listing must be >= 1")
        if self.concurrency_action < 1:
            raise ConfigError("concurrency_action must be >= 1")
        if self.max_list_attempts < 1:
            raise ConfigError("max_list_attempts must be >= 1")
        if self.snapshot_retention_days < 0:
            raise ConfigError("snapshot_retention_days must be >= 0")
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            raise ConfigError("deadline_seconds must be > 0")
        if self.provider is Provider.GCP and not self.project:
            raise ConfigError(
                "GCP audits need a project",
                details={"hint": "Set --project or GCP_PROJECT"},
            )
        if self.provider is Provider.AZURE and not self.subscription_id:
            raise ConfigError(
                "Azure audits need a subscription id",
                details={"hint": "Set --subscription or AZURE_SUBSCRIPTION"},
            )
        return self

    def replace(self, **changes: Any) -> "AuditConfig":
        """Return a copy with ``changes`` applied (values are coerced)."""
        coerced = {name: _coerce(name, value) for name, value in changes.items()}
        return dataclasses.replace(self, **coerced)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = [getattr(v, "value", v) for v in value]
            else:
                value = getattr(value, "value", value)
            data[f.name] = value
        return data


# =============================================================================
# Coercion
# =============================================================================

_FIELD_NAMES = {f.name for f in fields(AuditConfig) if f.name != "extra"}
_KEY_ALIASES = {name.replace("_", "").lower(): name for name in _FIELD_NAMES}
_KEY_ALIASES.update(
    {
        "pricetableversion": "cost_price_table_version",
        "pricetable": "price_table_path",
        "format": "output_format",
        "subscription": "subscription_id",
    }
)

_INT_FIELDS = {
    "concurrency_listing",
    "concurrency_action",
    "max_list_attempts",
    "snapshot_retention_days",
}


def _canonical_key(key: str) -> Optional[str]:
    return _KEY_ALIASES.get(key.replace("_", "").replace("-", "").lower())


def _split_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return tuple(str(v).strip() for v in value if str(v).strip())


def _coerce(name: str, value: Any) -> Any:
    """Coerce a raw value into the type of field ``name``."""
    try:
        if name == "provider":
            return Provider.parse(value)
        if name == "mode":
            return Mode.parse(value)
        if name == "min_severity":
            return Severity.parse(value)
        if name == "action_min_severity":
            return Severity.parse(value) if value not in (None, "") else None
        if name == "output_format":
            return OutputFormat.parse(value)
        if name == "regions":
            return _split_list(value)
        if name in ("kinds", "action_kinds"):
            return tuple(ResourceKind.parse(k) for k in _split_list(value))
        if name in _INT_FIELDS:
            return int(value)
        if name == "deadline_seconds":
            return float(value) if value not in (None, "") else None
        if name == "cost_price_table_version":
            return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for '{name}': {e}", details={"value": str(value)})
    if value == "":
        return None
    return value


def _normalize_mapping(data: Mapping[str, Any], source: str) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        name = _canonical_key(str(key))
        if name is None:
            raise ConfigError(
                f"Unknown configuration key '{key}' in {source}",
                details={"allowed": sorted(_FIELD_NAMES)},
            )
        normalized[name] = _coerce(name, value)
    return normalized


# =============================================================================
# Sources
# =============================================================================


def read_config_file(path: str) -> Dict[str, Any]:
    """
    Read a JSON configuration file.

    Raises
    ------
    ConfigError
        If the file is missing, unreadable or not a JSON object.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return _normalize_mapping(data, path)


def read_environment(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Read ``CLOUDSWEEP_*`` and legacy environment variables.

    ``DRY_RUN`` is honored only when no mode is set through
    ``CLOUDSWEEP_MODE``: ``true`` maps to dryRun, ``false`` to
    applyWithConfirm.
    """
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    for legacy, name in LEGACY_ENV.items():
        if env.get(legacy):
            values[name] = env[legacy]

    for key, value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = _canonical_key(key[len(ENV_PREFIX):])
        if name is None:
            logger.debug("Ignoring unknown environment variable %s", key)
            continue
        values[name] = value

    if "mode" not in values and env.get("DRY_RUN"):
        dry_run = env["DRY_RUN"].strip().lower()
        if dry_run in ("true", "1", "yes"):
            values["mode"] = Mode.DRY_RUN
        elif dry_run in ("false", "0", "no"):
            values["mode"] = Mode.APPLY_WITH_CONFIRM
        else:
            raise ConfigError(f"Invalid DRY_RUN value '{env['DRY_RUN']}'")

    return {name: _coerce(name, value) for name, value in values.items()}


def load_config(
    config_file: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> AuditConfig:
    """
    Resolve an :class:`AuditConfig` from all sources.

    Parameters
    ----------
    config_file : str, optional
        JSON config file path.
    env : mapping, optional
        Environment to read (defaults to ``os.environ``).
    overrides : mapping, optional
        Highest-precedence values; ``None`` values are ignored.

    Returns
    -------
    AuditConfig
        Validated configuration.

    Raises
    ------
    ConfigError
        On any unknown key, invalid value or failed validation.
    """
    values: Dict[str, Any] = {}
    if config_file:
        values.update(read_config_file(config_file))
    values.update(read_environment(env))
    if overrides:
        values.update(
            _normalize_mapping(
                {k: v for k, v in overrides.items() if v is not None}, "overrides"
            )
        )

    config = AuditConfig(**values).validate()
    logger.debug("Resolved configuration: %s", config.to_dict())
    return config
