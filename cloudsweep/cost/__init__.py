"""Price tables and the cost estimator."""

from cloudsweep.cost.estimator import CostEstimator, PriceEntry, PriceTable, bundled_versions

__all__ = ["CostEstimator", "PriceEntry", "PriceTable", "bundled_versions"]
