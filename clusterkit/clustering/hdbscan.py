"""
Density-based clustering through scikit-learn's HDBSCAN.

The wrapper clamps min_samples and min_cluster_size to what the sample count
allows, then shapes the labels into the result dict. Label -1 is noise.
"""

import logging
from typing import Any, Optional

import numpy as np
from sklearn.cluster import HDBSCAN as SklearnHDBSCAN

from clusterkit.errors import ClusteringFailed, InvalidArgument, NotImplementedFeature
from clusterkit.geometry import as_matrix

logger = logging.getLogger(__name__)

NOISE = -1
VALID_METRICS = ("euclidean", "l2", "manhattan", "l1", "cosine")


def clamp_parameters(min_samples: int, min_cluster_size: int, n_samples: int) -> tuple[int, int]:
    """Bring min_samples into [1, n_samples - 1] and min_cluster_size into [2, n_samples]."""
    adjusted_min_samples = max(1, min(min_samples, n_samples - 1))
    adjusted_min_cluster_size = max(2, min(min_cluster_size, n_samples))
    return adjusted_min_samples, adjusted_min_cluster_size


def _check_parameters(min_samples: int, min_cluster_size: int, metric: str) -> None:
    if min_samples < 1:
        raise InvalidArgument("min_samples must be positive")
    if min_cluster_size < 1:
        raise InvalidArgument("min_cluster_size must be positive")
    if metric not in VALID_METRICS:
        raise InvalidArgument(f"metric must be one of: {', '.join(VALID_METRICS)}")


class HDBSCAN:
    """
    HDBSCAN estimator with the same surface as KMeans.

    Only euclidean distance is computed; other metrics are accepted and
    logged. probabilities_ and outlier_scores_ are placeholders derived from
    the labels (1.0/0.0 and 0.0/1.0).
    """

    def __init__(self, min_samples: int = 5, min_cluster_size: int = 5, metric: str = "euclidean"):
        _check_parameters(min_samples, min_cluster_size, metric)
        self.min_samples = min_samples
        self.min_cluster_size = min_cluster_size
        self.metric = metric

        self.labels_: Optional[np.ndarray] = None
        self.probabilities_: Optional[np.ndarray] = None
        self.outlier_scores_: Optional[np.ndarray] = None
        self.cluster_persistence_: dict[int, float] = {}
        self.effective_min_samples_: Optional[int] = None
        self.effective_min_cluster_size_: Optional[int] = None

    @property
    def fitted(self) -> bool:
        return self.labels_ is not None

    def fit(self, rows: Any) -> "HDBSCAN":
        data = as_matrix(rows)
        n_samples = data.shape[0]

        if self.metric not in ("euclidean", "l2"):
            logger.warning(
                "HDBSCAN only supports euclidean distance; using euclidean instead of %s",
                self.metric,
            )

        min_samples, min_cluster_size = clamp_parameters(
            self.min_samples, self.min_cluster_size, n_samples
        )
        if (min_samples, min_cluster_size) != (self.min_samples, self.min_cluster_size):
            logger.debug(
                "clamped min_samples %d -> %d, min_cluster_size %d -> %d for %d samples",
                self.min_samples,
                min_samples,
                self.min_cluster_size,
                min_cluster_size,
                n_samples,
            )

        try:
            clusterer = SklearnHDBSCAN(
                min_cluster_size=min_cluster_size,
                min_samples=min_samples,
                metric="euclidean",
            )
            clusterer.fit(data)
        except Exception as e:
            raise ClusteringFailed(
                f"HDBSCAN clustering failed: {e}",
                details={"n_samples": n_samples},
            ) from e

        labels = np.asarray(clusterer.labels_, dtype=np.int64)
        noise = labels == NOISE
        self.labels_ = labels
        self.probabilities_ = np.where(noise, 0.0, 1.0)
        self.outlier_scores_ = np.where(noise, 1.0, 0.0)
        self.cluster_persistence_ = {}
        self.effective_min_samples_ = min_samples
        self.effective_min_cluster_size_ = min_cluster_size
        return self

    def fit_predict(self, rows: Any) -> np.ndarray:
        return self.fit(rows).labels_

    def predict(self, rows: Any) -> np.ndarray:
        raise NotImplementedFeature("HDBSCAN does not support prediction on new data")

    @property
    def n_clusters(self) -> int:
        if self.labels_ is None:
            return 0
        return int(len(np.unique(self.labels_[self.labels_ != NOISE])))

    @property
    def n_noise_points(self) -> int:
        if self.labels_ is None:
            return 0
        return int(np.count_nonzero(self.labels_ == NOISE))

    @property
    def noise_ratio(self) -> float:
        if self.labels_ is None or len(self.labels_) == 0:
            return 0.0
        return self.n_noise_points / len(self.labels_)

    @property
    def noise_indices(self) -> list[int]:
        if self.labels_ is None:
            return []
        return np.flatnonzero(self.labels_ == NOISE).tolist()

    @property
    def cluster_indices(self) -> dict[int, list[int]]:
        """Row indices per cluster label, noise excluded."""
        if self.labels_ is None:
            return {}
        result: dict[int, list[int]] = {}
        for idx, label in enumerate(self.labels_.tolist()):
            if label == NOISE:
                continue
            result.setdefault(label, []).append(idx)
        return result

    def summary(self) -> dict[str, Any]:
        if self.labels_ is None:
            return {}
        return {
            "n_clusters": self.n_clusters,
            "n_noise_points": self.n_noise_points,
            "noise_ratio": self.noise_ratio,
            "cluster_sizes": {label: len(idx) for label, idx in self.cluster_indices.items()},
            "cluster_persistence": self.cluster_persistence_,
        }


def hdbscan(
    rows: Any,
    min_samples: int = 5,
    min_cluster_size: int = 5,
    metric: str = "euclidean",
) -> dict[str, Any]:
    """Run HDBSCAN and return labels, placeholder scores and summary counts."""
    clusterer = HDBSCAN(min_samples=min_samples, min_cluster_size=min_cluster_size, metric=metric)
    clusterer.fit(rows)
    return {
        "labels": clusterer.labels_,
        "probabilities": clusterer.probabilities_,
        "outlier_scores": clusterer.outlier_scores_,
        "n_clusters": clusterer.n_clusters,
        "noise_ratio": clusterer.noise_ratio,
        "cluster_persistence": clusterer.cluster_persistence_,
    }
