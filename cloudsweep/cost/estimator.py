"""
Cost Estimator Module
=====================

Estimates the monthly cost of resources from a versioned price table.

Price tables are JSON files bundled under ``cloudsweep/cost/price_tables``
(or any file passed explicitly). Each provider/kind entry has a ``unit``
(``gb_month`` or ``flat_month``), a ``default`` price and optional
``by_type`` overrides keyed by the resource's ``volume_type``.

Example
-------
>>> from cloudsweep.cost import CostEstimator, PriceTable
>>>
>>> estimator = CostEstimator(PriceTable.load("2024.1"))
>>> estimator.estimate(volume)  # 100 GB gp2 volume
Decimal('10.00')

Notes
-----
Purely local, no pricing API is called. Bundled prices are approximate.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from importlib import resources
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from cloudsweep.core.config import DEFAULT_PRICE_TABLE_VERSION
from cloudsweep.core.exceptions import ConfigError
from cloudsweep.core.models import Finding, Provider, Resource, ResourceKind

# Module logger
logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
UNIT_GB_MONTH = "gb_month"
UNIT_FLAT_MONTH = "flat_month"
_UNITS = (UNIT_GB_MONTH, UNIT_FLAT_MONTH)


def _price(value: Any, where: str) -> Decimal:
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise ConfigError(f"Invalid price {value!r} at {where}")
    if price < 0:
        raise ConfigError(f"Negative price {value!r} at {where}")
    return price


@dataclass(frozen=True)
class PriceEntry:
    """Price model of one (provider, kind)."""

    unit: str
    default: Decimal
    by_type: Mapping[str, Decimal] = field(default_factory=dict)

    def price_for(self, volume_type: Optional[str]) -> Decimal:
        if volume_type and volume_type in self.by_type:
            return self.by_type[volume_type]
        return self.default

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"unit": self.unit, "default": str(self.default)}
        if self.by_type:
            data["by_type"] = {k: str(v) for k, v in self.by_type.items()}
        return data


@dataclass(frozen=True)
class PriceTable:
    """
    Versioned price table.

    Parameters
    ----------
    version : str
        Table version label.
    entries : dict
        ``(Provider, ResourceKind) -> PriceEntry``.
    currency : str, default="USD"
    note : str
        Free-form disclaimer.
    """

    version: str
    entries: Mapping[Tuple[Provider, ResourceKind], PriceEntry]
    currency: str = "USD"
    note: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PriceTable":
        """
        Build a table from its JSON form.

        Raises
        ------
        ConfigError
            On unknown providers, kinds or units, or invalid prices.
        """
        if "version" not in data or "prices" not in data:
            raise ConfigError("Price table needs 'version' and 'prices'")
        entries: Dict[Tuple[Provider, ResourceKind], PriceEntry] = {}
        try:
            for provider_name, kinds in data["prices"].items():
                provider = Provider.parse(provider_name)
                for kind_name, raw in kinds.items():
                    kind = ResourceKind.parse(kind_name)
                    where = f"{provider_name}.{kind_name}"
                    unit = raw.get("unit")
                    if unit not in _UNITS:
                        raise ConfigError(f"Invalid unit {unit!r} at {where}", details={"allowed": list(_UNITS)})
                    entries[(provider, kind)] = PriceEntry(
                        unit=unit,
                        default=_price(raw.get("default"), where),
                        by_type={
                            str(t): _price(p, f"{where}.by_type.{t}")
                            for t, p in (raw.get("by_type") or {}).items()
                        },
                    )
        except ValueError as e:
            raise ConfigError(f"Invalid price table: {e}")
        return cls(
            version=str(data["version"]),
            entries=entries,
            currency=data.get("currency", "USD"),
            note=data.get("note", ""),
        )

    @classmethod
    def load(cls, version: Optional[str] = None, path: Optional[str] = None) -> "PriceTable":
        """
        Load a bundled table by version, or a table file by path.

        Raises
        ------
        ConfigError
            If the table doesn't exist or is invalid.
        """
        if path:
            source = path
            try:
                text = Path(path).read_text(encoding="utf-8")
            except OSError as e:
                raise ConfigError(f"Cannot read price table {path}: {e}")
        else:
            version = version or DEFAULT_PRICE_TABLE_VERSION
            source = f"bundled {version}"
            bundled = resources.files("cloudsweep.cost") / "price_tables" / f"{version}.json"
            if not bundled.is_file():
                raise ConfigError(
                    f"Unknown price table version '{version}'",
                    details={"available": ", ".join(bundled_versions())},
                )
            text = bundled.read_text(encoding="utf-8")

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Price table {source} is not valid JSON: {e}")
        table = cls.from_dict(data)
        logger.debug("Loaded price table %s (%d entries)", table.version, len(table.entries))
        return table

    def entry(self, provider: Provider, kind: ResourceKind) -> Optional[PriceEntry]:
        return self.entries.get((provider, kind))

    def to_dict(self) -> Dict[str, Any]:
        """Convert back to the JSON form."""
        prices: Dict[str, Dict[str, Any]] = {}
        for (provider, kind), entry in self.entries.items():
            prices.setdefault(provider.value, {})[kind.value] = entry.to_dict()
        return {
            "version": self.version,
            "currency": self.currency,
            "note": self.note,
            "prices": prices,
        }


def bundled_versions() -> List[str]:
    """Versions of the price tables shipped with the package."""
    folder = resources.files("cloudsweep.cost") / "price_tables"
    return sorted(
        item.name[: -len(".json")] for item in folder.iterdir() if item.name.endswith(".json")
    )


class CostEstimator:
    """
    Estimates monthly cost from a :class:`PriceTable`.

    Parameters
    ----------
    price_table : PriceTable, optional
        Defaults to the bundled default version.
    """

    def __init__(self, price_table: Optional[PriceTable] = None) -> None:
        self.price_table = price_table or PriceTable.load()

    @property
    def version(self) -> str:
        return self.price_table.version

    def estimate(self, resource: Resource) -> Optional[Decimal]:
        """
        Estimated monthly cost of ``resource``, rounded to cents.

        Returns
        -------
        Decimal or None
            None when the table has no model for the resource, or the
            model is per-GB and the resource has no size.
        """
        entry = self.price_table.entry(resource.provider, resource.kind)
        if entry is None:
            return None
        price = entry.price_for(resource.raw_attributes.get("volume_type"))
        if entry.unit == UNIT_GB_MONTH:
            if resource.size_gb is None:
                return None
            cost = price * Decimal(str(resource.size_gb))
        else:
            cost = price
        return cost.quantize(CENTS, rounding=ROUND_HALF_UP)

    def annotate(self, findings: Iterable[Finding]) -> List[Finding]:
        """Return copies of ``findings`` with ``estimated_monthly_cost`` set."""
        return [
            replace(finding, estimated_monthly_cost=self.estimate(finding.resource))
            for finding in findings
        ]

    def __repr__(self) -> str:
        """Return string representation."""
        return f"CostEstimator(version='{self.version}')"
