"""
Column and row normalization applied before embedding or clustering.
"""

from typing import Any

import numpy as np

from clusterkit.errors import InvalidArgument
from clusterkit.geometry import as_matrix

METHODS = ("standard", "minmax", "l2")


def _safe(divisor: np.ndarray) -> np.ndarray:
    return np.where(divisor == 0, 1.0, divisor)


def normalize(rows: Any, method: str = "standard") -> np.ndarray:
    """Normalize a matrix.

    standard: zero mean, unit population std per column.
    minmax: each column scaled to [0, 1].
    l2: each row scaled to unit length.

    Columns (or rows, for l2) with no spread are divided by 1.
    """
    if method not in METHODS:
        raise InvalidArgument(f"Unknown normalization method: {method}")
    data = as_matrix(rows)

    if method == "standard":
        return (data - data.mean(axis=0)) / _safe(data.std(axis=0))
    if method == "minmax":
        mins = data.min(axis=0)
        return (data - mins) / _safe(data.max(axis=0) - mins)
    return data / _safe(np.linalg.norm(data, axis=1))[:, None]
