"""
Dataset diagnostics. Not available in this release.
"""

from typing import Any

from clusterkit.errors import NotImplementedFeature


def estimate_intrinsic_dimension(rows: Any, k_neighbors: int = 10) -> float:
    raise NotImplementedFeature("Intrinsic dimension estimation is not implemented yet")


def estimate_hubness(rows: Any) -> dict[str, float]:
    raise NotImplementedFeature("Hubness estimation is not implemented yet")
