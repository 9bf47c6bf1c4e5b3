"""
clusterkit - vector search, UMAP embedding and clustering for numeric datasets.

clusterkit provides a thread-safe HNSW vector index with labels and metadata,
a UMAP embedding pipeline built on that index, and K-means / HDBSCAN
clustering.
"""

from typing import Any, Optional

from clusterkit.__version__ import __version__
from clusterkit.clustering import HDBSCAN, KMeans, KMeansResult, silhouette_score
from clusterkit.clustering.hdbscan import hdbscan as _hdbscan
from clusterkit.clustering.kmeans import kmeans as _kmeans
from clusterkit.config import Settings, configure, configure_logging, get_settings
from clusterkit.embedding import UMAP
from clusterkit.errors import (
    ClusterKitError,
    ClusteringFailed,
    ConvergenceFailed,
    CorruptPersistedState,
    DimensionMismatch,
    DuplicateLabel,
    EmbeddingFailed,
    InsufficientData,
    InvalidArgument,
    InvalidDimension,
    IsolatedPoints,
    ModelNotFitted,
    NotImplementedFeature,
    PersistenceIOError,
    RowLengthMismatch,
    UnsupportedCapability,
)
from clusterkit.preprocessing import normalize
from clusterkit.svd import svd as _svd
from clusterkit.utils import estimate_intrinsic_dimension
from clusterkit.vector import DistanceSpace, VectorIndex


def umap(rows: Any, n_components: int = 2, n_neighbors: int = 15, random_seed: Optional[int] = None):
    """Embed rows with a fresh UMAP model."""
    return UMAP(n_components=n_components, n_neighbors=n_neighbors, random_seed=random_seed).fit_transform(rows)


def kmeans(rows: Any, k: int, max_iter: int = 300, random_seed: Optional[int] = None) -> KMeansResult:
    return _kmeans(rows, k, max_iter=max_iter, random_seed=random_seed)


def hdbscan(rows: Any, min_samples: int = 5, min_cluster_size: int = 5, metric: str = "euclidean") -> dict:
    return _hdbscan(rows, min_samples=min_samples, min_cluster_size=min_cluster_size, metric=metric)


def svd(matrix: Any, k: int, n_iter: int = 2):
    return _svd(matrix, k, n_iter=n_iter)


def estimate_dimension(rows: Any, k_neighbors: int = 10) -> float:
    return estimate_intrinsic_dimension(rows, k_neighbors=k_neighbors)


__all__ = [
    "VectorIndex",
    "DistanceSpace",
    "UMAP",
    "KMeans",
    "KMeansResult",
    "HDBSCAN",
    "umap",
    "kmeans",
    "hdbscan",
    "svd",
    "estimate_dimension",
    "silhouette_score",
    "normalize",
    "Settings",
    "configure",
    "configure_logging",
    "get_settings",
    "ClusterKitError",
    "ClusteringFailed",
    "ConvergenceFailed",
    "CorruptPersistedState",
    "DimensionMismatch",
    "DuplicateLabel",
    "EmbeddingFailed",
    "InsufficientData",
    "InvalidArgument",
    "InvalidDimension",
    "IsolatedPoints",
    "ModelNotFitted",
    "NotImplementedFeature",
    "PersistenceIOError",
    "RowLengthMismatch",
    "UnsupportedCapability",
    "__version__",
]
