"""
Distance functions and input validation shared by the index, the embedding
pipeline and the clustering engine.

All public operations accept either nested Python sequences or numpy arrays.
Integers are widened to floating point.
"""

import numbers
from collections.abc import Sequence
from typing import Any

import numpy as np

from clusterkit.errors import DimensionMismatch, InvalidArgument, RowLengthMismatch


def pairwise_squared(rows: np.ndarray, centers: np.ndarray) -> np.ndarray:
    """Squared euclidean distances, shape (len(rows), len(centers)).

    Computed from explicit differences rather than the dot-product expansion
    so that identical points come out as exactly 0.0.
    """
    diff = rows[:, None, :] - centers[None, :, :]
    return np.einsum("ijk,ijk->ij", diff, diff)


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, (bool, np.bool_))


def _is_row(value: Any) -> bool:
    if isinstance(value, np.ndarray):
        return value.ndim == 1
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def as_matrix(rows: Any, dtype=np.float64, check_finite: bool = False) -> np.ndarray:
    """Validate a rectangular numeric matrix and return it as a 2D array.

    Raises InvalidArgument for empty or non-numeric input and
    RowLengthMismatch on the first row whose length differs from row 0.
    """
    if isinstance(rows, np.ndarray) and rows.ndim == 2 and rows.dtype.kind in "iuf":
        if rows.shape[0] == 0:
            raise InvalidArgument("Data cannot be empty")
        matrix = rows.astype(dtype, copy=True)
    else:
        if isinstance(rows, (str, bytes)) or not hasattr(rows, "__len__"):
            raise InvalidArgument(f"Data must be a 2D array, got {type(rows).__name__}")
        if len(rows) == 0:
            raise InvalidArgument("Data cannot be empty")

        rows = list(rows)
        if not _is_row(rows[0]):
            raise InvalidArgument("Data must be a 2D array (array of arrays)")
        width = len(rows[0])

        for i, row in enumerate(rows):
            if not _is_row(row):
                raise InvalidArgument(f"Row {i} is not an array")
            if len(row) != width:
                raise RowLengthMismatch(
                    f"All rows must have the same length "
                    f"(row {i} has {len(row)} elements, expected {width})",
                    details={"row": i, "length": len(row), "expected": width},
                )
            for j, value in enumerate(row):
                if not _is_number(value):
                    raise InvalidArgument(
                        f"Element at position [{i}, {j}] is not numeric",
                        details={"row": i, "column": j},
                    )

        matrix = np.asarray(rows, dtype=dtype)

    if matrix.shape[1] == 0:
        raise InvalidArgument("Data rows cannot be empty")
    if check_finite and not np.all(np.isfinite(matrix)):
        bad = np.argwhere(~np.isfinite(matrix))[0]
        raise InvalidArgument(
            f"Element at position [{bad[0]}, {bad[1]}] is NaN or Infinite",
            details={"row": int(bad[0]), "column": int(bad[1])},
        )
    return matrix


def as_vector(vector: Any, dim: int, dtype=np.float32) -> np.ndarray:
    """Validate a single vector of length dim."""
    if isinstance(vector, np.ndarray):
        if vector.dtype.kind not in "iuf":
            raise InvalidArgument("Vector elements must be numeric")
        arr = vector.astype(dtype).reshape(-1)
    else:
        if not _is_row(vector):
            raise InvalidArgument(f"Vector must be a sequence, got {type(vector).__name__}")
        for value in vector:
            if not _is_number(value):
                raise InvalidArgument("Vector elements must be numeric")
        arr = np.asarray(vector, dtype=dtype).reshape(-1)

    if arr.shape[0] != dim:
        raise DimensionMismatch(
            f"Vector dimension mismatch: expected {dim}, got {arr.shape[0]}",
            details={"expected": dim, "got": int(arr.shape[0])},
        )
    return arr


def data_statistics(rows: Any) -> dict[str, Any]:
    matrix = np.asarray(rows, dtype=np.float64)
    if matrix.size == 0:
        return {"n_samples": 0, "n_features": 0, "data_range": 0.0}
    min_value = float(matrix.min())
    max_value = float(matrix.max())
    return {
        "n_samples": int(matrix.shape[0]),
        "n_features": int(matrix.shape[1]),
        "data_range": max_value - min_value,
        "min_value": min_value,
        "max_value": max_value,
    }
