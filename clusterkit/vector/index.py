"""
VectorIndex - thread-safe approximate nearest neighbor index with labels and metadata.

API:
- __init__(dim, space="euclidean", max_elements=10_000, m=16, ef_construction=200, seed=None)
- add_item(vector, label=None, metadata=None) - Add a single vector
- add_batch(vectors, labels=None, parallel=True) - Add many vectors
- search(query, k=10, ef=None, include_distances=False)
- search_with_metadata(query, k=10, ef=None)
- save(path) / VectorIndex.load(path)
"""

import logging
import os
import pickle
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Union

import numpy as np

from clusterkit.config import get_settings
from clusterkit.errors import (
    CorruptPersistedState,
    DuplicateLabel,
    InvalidArgument,
    InvalidDimension,
    PersistenceIOError,
)
from clusterkit.geometry import as_vector
from clusterkit.vector.base import DistanceSpace, NeighborGraph, parse_space
from clusterkit.vector.graph import HNSWGraph

logger = logging.getLogger(__name__)

GRAPH_DIR_SUFFIX = "_hnsw_data"
GRAPH_FILENAME = "hnsw.graph"
SIDECAR_SUFFIX = ".metadata"


@dataclass(frozen=True)
class ItemRecord:
    label: str
    metadata: Optional[dict[str, str]] = None


class LabelRegistry:
    """Label <-> internal id bookkeeping and per-id metadata behind one lock.

    Ids are handed out monotonically from 0 and never reused.
    """

    def __init__(
        self,
        records: Optional[dict[int, ItemRecord]] = None,
        label_to_id: Optional[dict[str, int]] = None,
        next_id: int = 0,
    ):
        self._lock = threading.Lock()
        self._records: dict[int, ItemRecord] = dict(records or {})
        self._label_to_id: dict[str, int] = dict(label_to_id or {})
        self._next_id = next_id

    def register(
        self,
        label: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> tuple[int, str]:
        """Allocate an id for label (generated from the counter when None)."""
        with self._lock:
            internal_id = self._next_id
            if label is None:
                label = str(internal_id)
            if label in self._label_to_id:
                raise DuplicateLabel(
                    f"Label '{label}' already exists in index", details={"label": label}
                )
            self._label_to_id[label] = internal_id
            self._records[internal_id] = ItemRecord(label=label, metadata=metadata)
            self._next_id = internal_id + 1
            return internal_id, label

    def get(self, internal_id: int) -> Optional[ItemRecord]:
        with self._lock:
            return self._records.get(internal_id)

    def id_for(self, label: str) -> Optional[int]:
        with self._lock:
            return self._label_to_id.get(label)

    def __contains__(self, label: object) -> bool:
        with self._lock:
            return label in self._label_to_id

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def next_id(self) -> int:
        with self._lock:
            return self._next_id

    def snapshot(self) -> tuple[dict[int, dict[str, Any]], dict[str, int], int]:
        """Copy of (metadata table, label table, next id) taken atomically."""
        with self._lock:
            table = {
                internal_id: {"label": record.label, "metadata": record.metadata}
                for internal_id, record in self._records.items()
            }
            return table, dict(self._label_to_id), self._next_id

    @classmethod
    def from_snapshot(
        cls,
        table: dict[int, dict[str, Any]],
        label_to_id: dict[str, int],
        next_id: int,
    ) -> "LabelRegistry":
        records = {
            int(internal_id): ItemRecord(label=str(entry["label"]), metadata=entry.get("metadata"))
            for internal_id, entry in table.items()
        }
        return cls(records, {str(k): int(v) for k, v in label_to_id.items()}, int(next_id))


def _coerce_metadata(metadata: Optional[Mapping[Any, Any]]) -> Optional[dict[str, str]]:
    if metadata is None:
        return None
    if not isinstance(metadata, Mapping):
        raise InvalidArgument("Metadata must be a mapping")
    return {str(key): str(value) for key, value in metadata.items()}


class VectorIndex:
    """
    An in-memory approximate nearest neighbor index.

    Entries carry a unique string label and optional string metadata. The
    index only grows; there is no delete or update of individual entries.

    Locking: the graph, the label registry and the search breadth (ef) each
    have their own lock. Writers register a label and link its node under the
    graph lock, so save() and size() never see a label without a node. Lock
    order is graph, then registry. A search holds the graph lock for its whole
    traversal, so writers and readers are serialized against each other.
    """

    def __init__(
        self,
        dim: int,
        space: Union[str, DistanceSpace] = "euclidean",
        max_elements: int = 10_000,
        m: Optional[int] = None,
        ef_construction: Optional[int] = None,
        seed: Optional[int] = None,
    ):
        if isinstance(dim, bool) or not isinstance(dim, (int, np.integer)) or dim <= 0:
            raise InvalidDimension(f"dim must be a positive integer (got {dim!r})")

        settings = get_settings()
        m = settings.default_m if m is None else m
        ef_construction = settings.default_ef_construction if ef_construction is None else ef_construction
        if m < 2:
            raise InvalidArgument(f"m must be at least 2 (got {m})")
        if ef_construction < 1:
            raise InvalidArgument(f"ef_construction must be positive (got {ef_construction})")

        self.dim = int(dim)
        self.space = parse_space(space)
        self.seed = seed
        self._graph: Optional[NeighborGraph] = HNSWGraph(
            self.dim, m=m, max_elements=max_elements, ef_construction=ef_construction, seed=seed
        )
        self._graph_lock = threading.Lock()
        self._registry = LabelRegistry()
        self._ef = ef_construction
        self._ef_lock = threading.Lock()

    @classmethod
    def _restore(
        cls,
        dim: int,
        space: DistanceSpace,
        graph: NeighborGraph,
        registry: LabelRegistry,
    ) -> "VectorIndex":
        index = cls.__new__(cls)
        index.dim = dim
        index.space = space
        index.seed = None
        index._graph = graph
        index._graph_lock = threading.Lock()
        index._registry = registry
        index._ef = graph.ef_construction
        index._ef_lock = threading.Lock()
        return index

    def _require_graph(self) -> NeighborGraph:
        if self._graph is None:
            raise InvalidArgument("Index has been closed")
        return self._graph

    # --- Insertion ---

    def add_item(
        self,
        vector: Any,
        label: Optional[Union[str, int]] = None,
        metadata: Optional[Mapping[Any, Any]] = None,
    ) -> str:
        """Add one vector. Returns the label it was stored under."""
        graph = self._require_graph()
        vec = as_vector(vector, self.dim)
        meta = _coerce_metadata(metadata)

        with self._graph_lock:
            internal_id, label = self._registry.register(None if label is None else str(label), meta)
            graph.insert(vec, internal_id)
        return label

    def add_batch(
        self,
        vectors: Any,
        labels: Optional[Sequence[Union[str, int]]] = None,
        parallel: bool = True,
    ) -> list[str]:
        """Add many vectors.

        Not atomic: rows are registered one by one, and if a duplicate label
        aborts the batch, the rows registered before it stay in the index.
        Indexes built with a seed always insert serially.
        """
        graph = self._require_graph()
        rows = [as_vector(row, self.dim) for row in vectors]

        if labels is not None:
            labels = list(labels)
            if len(labels) != len(rows):
                raise InvalidArgument(
                    f"Number of labels ({len(labels)}) must match number of vectors ({len(rows)})"
                )

        committed: list[tuple[np.ndarray, int]] = []
        stored_labels: list[str] = []
        with self._graph_lock:
            try:
                for i, vec in enumerate(rows):
                    label = None if labels is None else str(labels[i])
                    internal_id, label = self._registry.register(label)
                    committed.append((vec, internal_id))
                    stored_labels.append(label)
            finally:
                if committed:
                    self._link_locked(graph, committed, parallel)

        return stored_labels

    def _link_locked(
        self,
        graph: NeighborGraph,
        items: list[tuple[np.ndarray, int]],
        parallel: bool,
    ) -> None:
        """Insert registered rows into the graph. Caller holds the graph lock."""
        t0 = time.perf_counter()
        use_parallel = parallel and self.seed is None and len(items) > 1
        if use_parallel:
            graph.parallel_insert(items)
        else:
            graph.serial_insert(items)
        logger.debug(
            "inserted %d vectors (%s) in %.3fs",
            len(items),
            "parallel" if use_parallel else "serial",
            time.perf_counter() - t0,
        )

    def fit(self, vectors: Any, labels: Optional[Sequence[Union[str, int]]] = None) -> "VectorIndex":
        self.add_batch(vectors, labels=labels)
        return self

    # --- Search ---

    def set_ef(self, ef: int) -> None:
        if ef < 1:
            raise InvalidArgument(f"ef must be positive (got {ef})")
        with self._ef_lock:
            self._ef = int(ef)

    @property
    def ef(self) -> int:
        with self._ef_lock:
            return self._ef

    def _search(self, query: Any, k: int, ef: Optional[int]) -> list[tuple[float, ItemRecord]]:
        graph = self._require_graph()
        q_vec = as_vector(query, self.dim)
        if k < 0:
            raise InvalidArgument(f"k must be non-negative (got {k})")
        if ef is not None:
            self.set_ef(ef)

        with self._graph_lock:
            with self._ef_lock:
                current_ef = self._ef
            hits = graph.search(q_vec, k, current_ef)

        results = []
        for distance, internal_id in hits:
            record = self._registry.get(internal_id)
            if record is None:
                logger.warning("search hit id %d has no label record; skipping it", internal_id)
                continue
            results.append((distance, record))
        return results

    def search(
        self,
        query: Any,
        k: int = 10,
        ef: Optional[int] = None,
        include_distances: bool = False,
    ) -> Union[list[str], tuple[list[str], list[float]]]:
        """Labels of the k nearest entries, closest first.

        A given ef also becomes the new default for later searches.
        """
        results = self._search(query, k, ef)
        labels = [record.label for _, record in results]
        if include_distances:
            return labels, [float(distance) for distance, _ in results]
        return labels

    def search_with_metadata(
        self,
        query: Any,
        k: int = 10,
        ef: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        results = []
        for distance, record in self._search(query, k, ef):
            hit: dict[str, Any] = {"label": record.label, "distance": float(distance)}
            if record.metadata is not None:
                hit["metadata"] = dict(record.metadata)
            results.append(hit)
        return results

    def knn_query(self, query: Any, k: int = 10, ef: Optional[int] = None) -> tuple[list[str], list[float]]:
        return self.search(query, k=k, ef=ef, include_distances=True)

    def batch_search(self, queries: Any, k: int = 10, parallel: bool = True) -> list[list[str]]:
        queries = list(queries)
        if parallel and len(queries) > 1:
            with ThreadPoolExecutor() as pool:
                return list(pool.map(lambda q: self.search(q, k=k), queries))
        return [self.search(q, k=k) for q in queries]

    def range_search(self, query: Any, radius: float, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Entries within radius of query, closest first."""
        k = self.size() if limit is None else min(limit, self.size())
        hits = self.search_with_metadata(query, k=k)
        return [hit for hit in hits if hit["distance"] <= radius]

    def neighbor_graph(self, n_neighbors: int) -> tuple[np.ndarray, np.ndarray]:
        """k-NN graph over every entry: (internal id matrix, distance matrix).

        Each row starts with the entry itself at distance 0.
        """
        graph = self._require_graph()
        if n_neighbors < 1:
            raise InvalidArgument(f"n_neighbors must be positive (got {n_neighbors})")
        with self._graph_lock:
            return graph.neighbors_graph(n_neighbors)

    def recall(self, test_queries: Any, ground_truth: Sequence[Sequence[str]], k: int = 10) -> float:
        """Fraction of ground-truth labels found in the top k results."""
        total_correct = 0
        total_possible = 0
        for i, query in enumerate(test_queries):
            predicted = set(self.search(query, k=k))
            actual = {str(label) for label in list(ground_truth[i])[:k]}
            total_correct += len(predicted & actual)
            total_possible += min(k, len(actual))
        return total_correct / total_possible if total_possible > 0 else 0.0

    # --- Introspection ---

    def size(self) -> int:
        with self._graph_lock:
            return len(self._registry)

    def empty(self) -> bool:
        return self.size() == 0

    def __len__(self) -> int:
        return self.size()

    def contains(self, label: Union[str, int]) -> bool:
        return str(label) in self._registry

    def __contains__(self, label: object) -> bool:
        return isinstance(label, (str, int)) and self.contains(label)

    def get_metadata(self, label: Union[str, int]) -> Optional[dict[str, str]]:
        internal_id = self._registry.id_for(str(label))
        if internal_id is None:
            return None
        record = self._registry.get(internal_id)
        return dict(record.metadata) if record and record.metadata else None

    def config(self) -> dict[str, Any]:
        return {"dim": self.dim, "space": self.space.value, "ef": self.ef, "size": self.size()}

    def stats(self) -> dict[str, Any]:
        graph = self._require_graph()
        with self._graph_lock:
            graph_stats = graph.stats()
        return {
            "size": self.size(),
            "dim": self.dim,
            "ef_search": self.ef,
            "max_layer": graph_stats["max_layer"],
            "entry_point": graph_stats["entry_point"],
            "layer0_edges": graph_stats["layer0_edges"],
        }

    # --- Persistence ---

    @staticmethod
    def _artifact_paths(path: Union[str, os.PathLike]) -> tuple[str, str]:
        base = os.fspath(path)
        return os.path.join(base + GRAPH_DIR_SUFFIX, GRAPH_FILENAME), base + SIDECAR_SUFFIX

    def save(self, path: Union[str, os.PathLike]) -> None:
        """Write the graph blob to <path>_hnsw_data/ and the sidecar to <path>.metadata."""
        graph = self._require_graph()
        graph_path, sidecar_path = self._artifact_paths(path)

        # Snapshot both under the graph lock so the artifacts agree
        with self._graph_lock:
            blob = graph.dumps()
            table, label_to_id, next_id = self._registry.snapshot()
        sidecar = (table, label_to_id, next_id, self.dim, self.space.value)

        try:
            os.makedirs(os.path.dirname(graph_path), exist_ok=True)
            with open(graph_path, "wb") as f:
                f.write(blob)
            with open(sidecar_path, "wb") as f:
                pickle.dump(sidecar, f, protocol=pickle.HIGHEST_PROTOCOL)
        except OSError as e:
            raise PersistenceIOError(f"Failed to save index: {e}", details={"path": os.fspath(path)}) from e

        logger.debug("saved index with %d entries to %s", len(table), os.fspath(path))

    @classmethod
    def load(cls, path: Union[str, os.PathLike]) -> "VectorIndex":
        graph_path, sidecar_path = cls._artifact_paths(path)

        for artifact in (sidecar_path, graph_path):
            if not os.path.isfile(artifact):
                raise PersistenceIOError(
                    f"Missing index artifact: {artifact}", details={"path": artifact}
                )

        try:
            with open(sidecar_path, "rb") as f:
                raw_sidecar = f.read()
            with open(graph_path, "rb") as f:
                blob = f.read()
        except OSError as e:
            raise PersistenceIOError(f"Failed to read index: {e}", details={"path": os.fspath(path)}) from e

        try:
            sidecar = pickle.loads(raw_sidecar)
            table, label_to_id, next_id, dim, space_name = sidecar
            registry = LabelRegistry.from_snapshot(table, label_to_id, next_id)
        except Exception as e:
            raise CorruptPersistedState(f"Failed to load metadata: {e}") from e

        try:
            space = parse_space(space_name)
        except InvalidArgument as e:
            raise CorruptPersistedState(
                f"Unknown distance type in saved file: {space_name!r}"
            ) from e

        try:
            graph = HNSWGraph.loads(blob)
        except Exception as e:
            raise CorruptPersistedState(f"Failed to load HNSW graph: {e}") from e

        if graph.dim != dim:
            raise CorruptPersistedState(
                f"Graph dimension {graph.dim} does not match metadata dimension {dim}"
            )

        logger.debug("loaded index with %d entries from %s", len(registry), os.fspath(path))
        return cls._restore(int(dim), space, graph, registry)

    @classmethod
    def from_embedding(cls, embeddings: Any, **kwargs: Any) -> "VectorIndex":
        rows = list(embeddings)
        if not rows:
            raise InvalidArgument("Embeddings cannot be empty")
        index = cls(dim=len(rows[0]), **kwargs)
        index.fit(rows)
        return index

    def close(self) -> None:
        """Release the graph. The index cannot be used afterwards."""
        with self._graph_lock:
            self._graph = None

    def __enter__(self) -> "VectorIndex":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
