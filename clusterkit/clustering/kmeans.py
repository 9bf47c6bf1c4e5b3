"""
K-means clustering with K-means++ initialization.

kmeans() and kmeans_predict() are the stateless core; KMeans wraps them in
an estimator with fit/predict and elbow-based selection of k.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import numpy as np
from sklearn.metrics import silhouette_score as _sklearn_silhouette

from clusterkit.errors import DimensionMismatch, InvalidArgument, ModelNotFitted
from clusterkit.geometry import as_matrix, pairwise_squared

logger = logging.getLogger(__name__)


@dataclass
class KMeansResult:
    labels: np.ndarray  # int64, one cluster index per row
    centroids: np.ndarray  # float64, (k, n_features)
    inertia: float


def kmeans_plusplus(data: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """Pick k initial centroids.

    The first is uniform over the rows. Each later one is drawn with
    probability proportional to the squared distance to the nearest centroid
    chosen so far. If every such distance is zero, row i is taken instead
    (row 0 once the rows run out).
    """
    n_samples = data.shape[0]
    centroids = np.empty((k, data.shape[1]), dtype=np.float64)
    centroids[0] = data[rng.integers(n_samples)]

    closest = pairwise_squared(data, centroids[:1])[:, 0]
    for i in range(1, k):
        total = float(closest.sum())
        if total == 0.0:
            centroids[i] = data[i] if i < n_samples else data[0]
        else:
            cumulative = np.cumsum(closest)
            target = rng.random() * cumulative[-1]
            # side="right" never lands on a zero-weight row
            chosen = int(np.searchsorted(cumulative, target, side="right"))
            if chosen >= n_samples:
                chosen = int(np.flatnonzero(closest)[-1])
            centroids[i] = data[chosen]
        closest = np.minimum(closest, pairwise_squared(data, centroids[i:i + 1])[:, 0])

    return centroids


def _assign(data: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    # argmin returns the first minimum, so ties go to the lowest centroid index
    return np.argmin(pairwise_squared(data, centroids), axis=1).astype(np.int64)


def kmeans(
    rows: Any,
    k: int,
    max_iter: int = 300,
    random_seed: Optional[int] = None,
) -> KMeansResult:
    """Cluster rows into k groups.

    Args:
        rows: Rectangular numeric matrix.
        k: Number of clusters, 1 <= k <= n_samples.
        max_iter: Upper bound on assignment/update rounds.
        random_seed: Seed for K-means++; None draws fresh entropy.

    Returns:
        KMeansResult with labels, centroids and inertia (sum of squared
        distances from each row to its centroid).
    """
    data = as_matrix(rows)
    n_samples = data.shape[0]

    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
        raise InvalidArgument(f"k must be positive (got {k!r})")
    if k > n_samples:
        raise InvalidArgument(
            f"k ({k}) cannot be larger than number of samples ({n_samples})",
            details={"k": k, "n_samples": n_samples},
        )
    if max_iter < 1:
        raise InvalidArgument(f"max_iter must be positive (got {max_iter})")

    rng = np.random.default_rng(random_seed)
    centroids = kmeans_plusplus(data, k, rng)
    labels = np.zeros(n_samples, dtype=np.int64)

    n_iter = 0
    for iteration in range(max_iter):
        n_iter = iteration + 1
        new_labels = _assign(data, centroids)
        changed = not np.array_equal(new_labels, labels)
        labels = new_labels
        if not changed and iteration > 0:
            break

        for j in range(k):
            members = labels == j
            if members.any():
                centroids[j] = data[members].mean(axis=0)

    diff = data - centroids[labels]
    inertia = float(np.einsum("ij,ij->", diff, diff))
    logger.debug("kmeans k=%d finished after %d iterations, inertia=%.6f", k, n_iter, inertia)
    return KMeansResult(labels=labels, centroids=centroids, inertia=inertia)


def kmeans_predict(rows: Any, centroids: Any) -> np.ndarray:
    """Nearest-centroid label for each row."""
    data = as_matrix(rows)
    centers = as_matrix(centroids)
    if data.shape[1] != centers.shape[1]:
        raise DimensionMismatch(
            f"Vector dimension mismatch: expected {centers.shape[1]}, got {data.shape[1]}",
            details={"expected": centers.shape[1], "got": data.shape[1]},
        )
    return _assign(data, centers)


def silhouette_score(rows: Any, labels: Any) -> float:
    """Mean silhouette coefficient; 0.0 when it is undefined."""
    data = as_matrix(rows)
    labels = np.asarray(labels)
    if len(labels) != data.shape[0]:
        raise InvalidArgument(
            f"Number of labels ({len(labels)}) must match number of rows ({data.shape[0]})"
        )
    n_labels = len(np.unique(labels))
    if n_labels < 2 or n_labels >= data.shape[0]:
        return 0.0
    return float(_sklearn_silhouette(data, labels, metric="euclidean"))


class KMeans:
    """K-means estimator.

    Usage:
        model = KMeans(k=3, random_seed=42).fit(rows)
        labels = model.predict(new_rows)
    """

    def __init__(self, k: int, max_iter: int = 300, random_seed: Optional[int] = None):
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
            raise InvalidArgument("k must be positive")
        self.k = int(k)
        self.max_iter = max_iter
        self.random_seed = random_seed
        self._result: Optional[KMeansResult] = None

    @property
    def fitted(self) -> bool:
        return self._result is not None

    def _require_fitted(self) -> KMeansResult:
        if self._result is None:
            raise ModelNotFitted("Model must be fitted before predict")
        return self._result

    @property
    def cluster_centers_(self) -> np.ndarray:
        return self._require_fitted().centroids

    @property
    def labels_(self) -> np.ndarray:
        return self._require_fitted().labels

    @property
    def inertia_(self) -> float:
        return self._require_fitted().inertia

    def fit(self, rows: Any) -> "KMeans":
        self._result = kmeans(rows, self.k, max_iter=self.max_iter, random_seed=self.random_seed)
        return self

    def predict(self, rows: Any) -> np.ndarray:
        return kmeans_predict(rows, self._require_fitted().centroids)

    def fit_predict(self, rows: Any) -> np.ndarray:
        return self.fit(rows).labels_

    @classmethod
    def elbow_method(
        cls,
        rows: Any,
        k_range: Iterable[int] = range(2, 11),
        max_iter: int = 300,
        random_seed: Optional[int] = None,
    ) -> dict[int, float]:
        """Inertia for every k in k_range."""
        data = as_matrix(rows)
        return {
            k: cls(k, max_iter=max_iter, random_seed=random_seed).fit(data).inertia_
            for k in k_range
        }

    @staticmethod
    def detect_optimal_k(elbow_results: Optional[dict[int, float]], fallback_k: int = 3) -> int:
        """The k right after the largest drop in inertia."""
        if not elbow_results:
            return fallback_k

        k_values = sorted(elbow_results)
        if len(k_values) == 1:
            return k_values[0]

        max_drop = 0.0
        optimal = k_values[0]
        for k1, k2 in zip(k_values, k_values[1:]):
            drop = elbow_results[k1] - elbow_results[k2]
            if drop > max_drop:
                max_drop = drop
                optimal = k2
        return optimal

    @classmethod
    def optimal_k(
        cls,
        rows: Any,
        k_range: Iterable[int] = range(2, 11),
        max_iter: int = 300,
        random_seed: Optional[int] = None,
    ) -> int:
        return cls.detect_optimal_k(
            cls.elbow_method(rows, k_range=k_range, max_iter=max_iter, random_seed=random_seed)
        )
