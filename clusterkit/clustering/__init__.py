"""
Clustering: K-means (K-means++ seeding) and HDBSCAN.

The functional entry points live in the submodules
(clusterkit.clustering.kmeans.kmeans, clusterkit.clustering.hdbscan.hdbscan)
and at package level as clusterkit.kmeans / clusterkit.hdbscan.
"""

from clusterkit.clustering.hdbscan import HDBSCAN, clamp_parameters
from clusterkit.clustering.kmeans import KMeans, KMeansResult, kmeans_predict, silhouette_score

__all__ = [
    "KMeans",
    "KMeansResult",
    "kmeans_predict",
    "silhouette_score",
    "HDBSCAN",
    "clamp_parameters",
]
