"""
Truncated SVD entry point. Not available in this release.
"""

from typing import Any

from clusterkit.errors import NotImplementedFeature


def svd(matrix: Any, k: int, n_iter: int = 2) -> tuple[Any, Any, Any]:
    """Randomized truncated SVD returning (U, S, V)."""
    raise NotImplementedFeature(
        "SVD is not implemented yet", details={"k": k, "n_iter": n_iter}
    )
