"""
Approximate nearest neighbor search.

VectorIndex wraps an in-process HNSW graph with label and metadata
bookkeeping, thread-safe inserts and searches, and save/load.
"""

from clusterkit.vector.base import DistanceSpace
from clusterkit.vector.graph import HNSWGraph
from clusterkit.vector.index import VectorIndex

__all__ = ["VectorIndex", "DistanceSpace", "HNSWGraph"]
