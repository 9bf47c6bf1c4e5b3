"""
Distance spaces and the protocol the vector index expects from its graph.
"""

from enum import Enum
from typing import Iterable, Protocol, Union

import numpy as np

from clusterkit.errors import InvalidArgument, UnsupportedCapability


class DistanceSpace(str, Enum):
    EUCLIDEAN = "euclidean"
    COSINE = "cosine"
    INNER_PRODUCT = "inner_product"


SUPPORTED_SPACES = frozenset({DistanceSpace.EUCLIDEAN})


def parse_space(space: Union[str, DistanceSpace]) -> DistanceSpace:
    """Resolve a space name, rejecting unknown and not-yet-implemented kinds."""
    try:
        resolved = DistanceSpace(space)
    except ValueError:
        valid = ", ".join(s.value for s in DistanceSpace)
        raise InvalidArgument(f"space must be one of {valid} (got: {space})") from None

    if resolved not in SUPPORTED_SPACES:
        raise UnsupportedCapability(
            f"{resolved.value} distance is not yet implemented, please use euclidean",
            details={"space": resolved.value},
        )
    return resolved


class NeighborGraph(Protocol):
    """Protocol for the approximate neighbor graph owned by a VectorIndex.

    Implementations are not required to be thread-safe; the index serializes
    every call behind its own lock.
    """

    dim: int
    ef_construction: int

    def __len__(self) -> int:
        ...

    def insert(self, vector: np.ndarray, node_id: int) -> None:
        """Insert one vector under a caller-assigned id."""
        ...

    def serial_insert(self, items: Iterable[tuple[np.ndarray, int]]) -> None:
        """Insert in the given order (reproducible with a seed)."""
        ...

    def parallel_insert(self, items: Iterable[tuple[np.ndarray, int]]) -> None:
        """Insert using worker threads; resulting structure is not reproducible."""
        ...

    def search(self, query: np.ndarray, k: int, ef: int) -> list[tuple[float, int]]:
        """Return up to k (distance, id) pairs in ascending distance order."""
        ...

    def neighbors_graph(self, k: int) -> tuple[np.ndarray, np.ndarray]:
        """k nearest neighbors of every stored node, as (ids, distances) matrices."""
        ...

    def stats(self) -> dict:
        ...

    def dumps(self) -> bytes:
        ...
