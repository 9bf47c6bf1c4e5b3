"""
HNSW (Hierarchical Navigable Small World) proximity graph with L2 distance.

Layer 0 uses pre-allocated numpy arrays for fast neighbor lookups.
Upper layers use dicts (sparse, few nodes). Node ids are chosen by the caller
and mapped to dense row positions internally.
"""

import heapq
import logging
import math
import pickle
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

import numpy as np

logger = logging.getLogger(__name__)

GRAPH_BLOB_VERSION = 1


class HNSWGraph:
    """Hierarchical proximity graph over float32 vectors."""

    def __init__(
        self,
        dim: int,
        m: int = 16,
        max_elements: int = 10_000,
        ef_construction: int = 200,
        seed: Optional[int] = None,
    ):
        self.dim = dim
        self.m = m
        self.m_max0 = m * 2  # max connections at layer 0
        self.max_elements = max_elements
        self.ef_construction = ef_construction
        self._seed = seed
        self._rng = np.random.default_rng(seed)
        self._ml = 1.0 / math.log(m) if m > 1 else 1.0

        self._entry_point: Optional[int] = None
        self._max_layer: int = 0

        # Layer 0: numpy arrays (hot path)
        self._vectors = np.zeros((0, dim), dtype=np.float32)
        self._adj = np.full((0, self.m_max0), -1, dtype=np.int32)
        self._adj_count = np.zeros(0, dtype=np.int32)
        self._capacity: int = 0
        self._n_nodes: int = 0

        # Upper layers: dict (sparse, rarely accessed)
        self._upper: dict[int, dict[int, list[int]]] = {}
        self._node_layers: dict[int, int] = {}

        # Row position -> caller id
        self._node_ids: list[int] = []

        # Serializes the link phase of parallel inserts
        self._link_lock = threading.Lock()
        self._capacity_warned = False

    def __len__(self) -> int:
        return self._n_nodes

    @property
    def max_layer(self) -> int:
        return self._max_layer

    @property
    def entry_point(self) -> Optional[int]:
        if self._entry_point is None:
            return None
        return self._node_ids[self._entry_point]

    # --- Insertion ---

    def insert(self, vector: np.ndarray, node_id: int) -> None:
        idx = self._allocate(np.asarray(vector, dtype=np.float32).reshape(1, -1), [node_id])
        self._link(idx, self._draw_level(self._rng))

    def serial_insert(self, items: Iterable[tuple[np.ndarray, int]]) -> None:
        for vector, node_id in items:
            self.insert(vector, node_id)

    def parallel_insert(
        self,
        items: Iterable[tuple[np.ndarray, int]],
        max_workers: Optional[int] = None,
    ) -> None:
        """Insert a batch with worker threads.

        Neighbor candidates are searched concurrently; only the edge updates
        take the link lock. Insertion order, and so the graph, varies run to run.
        """
        items = list(items)
        if not items:
            return

        if self._entry_point is None:
            vector, node_id = items[0]
            self.insert(vector, node_id)
            items = items[1:]
            if not items:
                return

        vectors = np.stack([np.asarray(v, dtype=np.float32).reshape(-1) for v, _ in items])
        start = self._allocate(vectors, [node_id for _, node_id in items])
        level_rng = np.random.default_rng()
        levels = [self._draw_level(level_rng) for _ in items]

        t0 = time.perf_counter()
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            list(pool.map(self._link, range(start, start + len(items)), levels))
        logger.debug("parallel insert of %d nodes took %.3fs", len(items), time.perf_counter() - t0)

    def _draw_level(self, rng: np.random.Generator) -> int:
        return int(-math.log(rng.random() + 1e-10) * self._ml)

    def _allocate(self, vectors: np.ndarray, node_ids: list[int]) -> int:
        """Store vectors at the next free rows. Returns the first row position."""
        start = self._n_nodes
        new_total = start + len(node_ids)
        self._ensure_capacity(new_total)
        self._vectors[start:new_total] = vectors
        self._node_ids.extend(int(i) for i in node_ids)
        self._n_nodes = new_total
        return start

    def _ensure_capacity(self, n: int) -> None:
        """Ensure layer 0 arrays can hold at least n nodes."""
        if n > self.max_elements and not self._capacity_warned:
            logger.warning(
                "HNSW graph grew past max_elements=%d; arrays will be resized",
                self.max_elements,
            )
            self._capacity_warned = True
        if self._capacity >= n:
            return

        new_cap = max(n, int(self._capacity * 1.5), 64)
        new_vectors = np.zeros((new_cap, self.dim), dtype=np.float32)
        new_vectors[:self._capacity] = self._vectors
        new_adj = np.full((new_cap, self.m_max0), -1, dtype=np.int32)
        new_adj[:self._capacity] = self._adj
        new_count = np.zeros(new_cap, dtype=np.int32)
        new_count[:self._capacity] = self._adj_count

        self._vectors = new_vectors
        self._adj = new_adj
        self._adj_count = new_count
        self._capacity = new_cap

    def _link(self, idx: int, level: int) -> None:
        """Connect an allocated node into every layer up to its level."""
        with self._link_lock:
            self._node_layers[idx] = level
            if self._entry_point is None:
                self._entry_point = idx
                self._max_layer = level
                for layer in range(1, level + 1):
                    self._upper.setdefault(layer, {})[idx] = []
                return
            entry = self._entry_point
            max_layer = self._max_layer

        q_vec = self._vectors[idx]
        current = entry

        # Greedy descent through upper layers
        for layer in range(max_layer, level, -1):
            current = self._greedy_search_upper(q_vec, current, layer)

        upper_neighbors: dict[int, list[int]] = {}
        for layer in range(min(level, max_layer), 0, -1):
            candidates = self._beam_search_upper(q_vec, current, layer, self.ef_construction)
            upper_neighbors[layer] = [nid for _, nid in candidates if nid != idx][:self.m]
            if candidates:
                current = candidates[0][1]

        candidates = self._beam_search_0(q_vec, current, self.ef_construction)
        layer0 = [nid for _, nid in candidates if nid != idx][:self.m_max0]

        with self._link_lock:
            for layer, neighbors in upper_neighbors.items():
                self._connect_upper(idx, layer, neighbors)
            for layer in range(max_layer + 1, level + 1):
                self._upper.setdefault(layer, {})[idx] = []
            self._connect_0(idx, layer0)

            if level > self._max_layer:
                self._max_layer = level
                self._entry_point = idx

    def _connect_upper(self, idx: int, layer: int, neighbors: list[int]) -> None:
        layer_graph = self._upper.setdefault(layer, {})
        layer_graph[idx] = list(neighbors)
        vecs = self._vectors

        for neighbor in neighbors:
            nbr_list = layer_graph.get(neighbor)
            if nbr_list is None:
                layer_graph[neighbor] = [idx]
                continue
            nbr_list.append(idx)
            if len(nbr_list) > self.m:
                nbr_arr = np.array(nbr_list, dtype=np.int64)
                dists = self._sq_dists(vecs[nbr_arr], vecs[neighbor])
                keep = np.argsort(dists, kind="stable")[:self.m]
                layer_graph[neighbor] = nbr_arr[keep].tolist()

    def _connect_0(self, idx: int, neighbors: list[int]) -> None:
        adj = self._adj
        adj_count = self._adj_count
        m_max0 = self.m_max0
        vecs = self._vectors

        count = len(neighbors)
        adj[idx, :count] = neighbors
        adj_count[idx] = count

        # Reverse edges; when full, replace the farthest neighbor if the new edge is shorter
        for nbr in neighbors:
            c = adj_count[nbr]
            if c < m_max0:
                adj[nbr, c] = idx
                adj_count[nbr] = c + 1
            else:
                nbrs_arr = adj[nbr, :m_max0]
                dists = self._sq_dists(vecs[nbrs_arr], vecs[nbr])
                worst_pos = int(np.argmax(dists))
                new_dist = float(self._sq_dists(vecs[idx:idx + 1], vecs[nbr])[0])
                if new_dist < dists[worst_pos]:
                    adj[nbr, worst_pos] = idx

    # --- Search ---

    def search(self, query: np.ndarray, k: int, ef: int) -> list[tuple[float, int]]:
        """Return up to k (distance, node_id) pairs sorted by ascending distance.

        When the graph holds no more than ef nodes every node is scored, so
        small indexes always return exact results.
        """
        if self._entry_point is None or k <= 0:
            return []

        q_vec = np.asarray(query, dtype=np.float32).reshape(-1)
        ef = max(ef, k)

        if self._n_nodes <= ef:
            results = self._exact_search(q_vec)
        else:
            current = self._entry_point
            for layer in range(self._max_layer, 0, -1):
                current = self._greedy_search_upper(q_vec, current, layer)
            results = self._beam_search_0(q_vec, current, ef)

        return [(math.sqrt(max(d, 0.0)), self._node_ids[idx]) for d, idx in results[:k]]

    def neighbors_graph(self, k: int) -> tuple[np.ndarray, np.ndarray]:
        """k-NN table for every stored node, in insertion order.

        Row i lists node i itself first (distance 0), then its nearest
        neighbors. Rows with fewer than k reachable nodes are padded with
        id -1 and distance inf.
        """
        n = self._n_nodes
        ids = np.full((n, k), -1, dtype=np.int64)
        dists = np.full((n, k), np.inf, dtype=np.float32)
        ef = max(self.ef_construction, k + 1)

        for idx in range(n):
            node_id = self._node_ids[idx]
            hits = self.search(self._vectors[idx], k + 1, ef)
            row = [(0.0, node_id)] + [(d, nid) for d, nid in hits if nid != node_id]
            row = row[:k]
            ids[idx, :len(row)] = [nid for _, nid in row]
            dists[idx, :len(row)] = [d for d, _ in row]

        return ids, dists

    @staticmethod
    def _sq_dists(rows: np.ndarray, q_vec: np.ndarray) -> np.ndarray:
        diff = rows - q_vec
        return np.einsum("ij,ij->i", diff, diff)

    def _exact_search(self, q_vec: np.ndarray) -> list[tuple[float, int]]:
        dists = self._sq_dists(self._vectors[:self._n_nodes], q_vec)
        order = np.argsort(dists, kind="stable")
        return [(float(dists[i]), int(i)) for i in order]

    def _greedy_search_upper(self, q_vec: np.ndarray, entry: int, layer: int) -> int:
        """Greedy search on upper layers (dict-based)."""
        vecs = self._vectors
        current = entry
        current_dist = float(self._sq_dists(vecs[current:current + 1], q_vec)[0])
        layer_graph = self._upper.get(layer, {})

        while True:
            neighbors = layer_graph.get(current)
            if not neighbors:
                break
            nbr_arr = np.array(neighbors, dtype=np.int64)
            dists = self._sq_dists(vecs[nbr_arr], q_vec)
            best_i = int(np.argmin(dists))
            if dists[best_i] < current_dist:
                current = int(nbr_arr[best_i])
                current_dist = float(dists[best_i])
            else:
                break
        return current

    def _beam_search_upper(
        self, q_vec: np.ndarray, entry: int, layer: int, ef: int
    ) -> list[tuple[float, int]]:
        """Beam search on upper layers (dict-based)."""
        vecs = self._vectors
        entry_dist = float(self._sq_dists(vecs[entry:entry + 1], q_vec)[0])
        visited: set[int] = {entry}
        candidates = [(entry_dist, entry)]
        results = [(-entry_dist, entry)]
        worst_dist = entry_dist
        layer_graph = self._upper.get(layer, {})

        while candidates:
            dist, current = heapq.heappop(candidates)
            if dist > worst_dist and len(results) >= ef:
                break
            neighbors = layer_graph.get(current)
            if not neighbors:
                continue
            new_nbrs = [n for n in list(neighbors) if n not in visited]
            if not new_nbrs:
                continue
            visited.update(new_nbrs)
            dists = self._sq_dists(vecs[np.array(new_nbrs, dtype=np.int64)], q_vec)
            for i, nbr in enumerate(new_nbrs):
                d = float(dists[i])
                if len(results) < ef or d < worst_dist:
                    heapq.heappush(candidates, (d, nbr))
                    heapq.heappush(results, (-d, nbr))
                    if len(results) > ef:
                        heapq.heappop(results)
                    worst_dist = -results[0][0]

        return sorted((-neg, nid) for neg, nid in results)

    def _beam_search_0(self, q_vec: np.ndarray, entry: int, ef: int) -> list[tuple[float, int]]:
        """Beam search on layer 0 using numpy arrays for speed."""
        adj = self._adj
        adj_count = self._adj_count
        vecs = self._vectors

        entry_dist = float(self._sq_dists(vecs[entry:entry + 1], q_vec)[0])
        visited = np.zeros(len(adj_count), dtype=bool)
        visited[entry] = True

        candidates = [(entry_dist, entry)]
        results = [(-entry_dist, entry)]
        worst_dist = entry_dist

        while candidates:
            dist, current = heapq.heappop(candidates)
            if dist > worst_dist and len(results) >= ef:
                break

            count = adj_count[current]
            if count == 0:
                continue

            nbrs = adj[current, :count]
            nbrs = nbrs[nbrs >= 0]
            new_nbrs = nbrs[~visited[nbrs]]
            if len(new_nbrs) == 0:
                continue
            visited[new_nbrs] = True

            dists = self._sq_dists(vecs[new_nbrs], q_vec)

            # Only process candidates closer than the current worst result
            if len(results) >= ef:
                good_idx = np.where(dists < worst_dist)[0]
            else:
                good_idx = np.arange(len(new_nbrs))

            for i in good_idx:
                d = float(dists[i])
                nbr = int(new_nbrs[i])
                heapq.heappush(candidates, (d, nbr))
                heapq.heappush(results, (-d, nbr))
                if len(results) > ef:
                    heapq.heappop(results)
                worst_dist = -results[0][0]

        return sorted((-neg, nid) for neg, nid in results)

    # --- Persistence ---

    def stats(self) -> dict:
        n = self._n_nodes
        return {
            "nodes": n,
            "max_layer": self._max_layer,
            "entry_point": self.entry_point,
            "m": self.m,
            "ef_construction": self.ef_construction,
            "layer0_edges": int(self._adj_count[:n].sum()),
        }

    def dumps(self) -> bytes:
        """Serialize the graph to an opaque blob."""
        n = self._n_nodes
        state = {
            "version": GRAPH_BLOB_VERSION,
            "dim": self.dim,
            "m": self.m,
            "max_elements": self.max_elements,
            "ef_construction": self.ef_construction,
            "seed": self._seed,
            "entry_point": self._entry_point,
            "max_layer": self._max_layer,
            "vectors": self._vectors[:n].tobytes(),
            "adj": self._adj[:n].tobytes(),
            "adj_count": self._adj_count[:n].tobytes(),
            "upper": self._upper,
            "node_layers": self._node_layers,
            "node_ids": self._node_ids,
        }
        return pickle.dumps(state, protocol=pickle.HIGHEST_PROTOCOL)

    @classmethod
    def loads(cls, blob: bytes) -> "HNSWGraph":
        """Rebuild a graph from dumps() output. Raises ValueError on a malformed blob."""
        state = pickle.loads(blob)
        if not isinstance(state, dict) or state.get("version") != GRAPH_BLOB_VERSION:
            raise ValueError("unrecognized HNSW graph blob")

        graph = cls(
            dim=state["dim"],
            m=state["m"],
            max_elements=state["max_elements"],
            ef_construction=state["ef_construction"],
            seed=state["seed"],
        )
        n = len(state["node_ids"])
        graph._ensure_capacity(n)
        graph._vectors[:n] = np.frombuffer(state["vectors"], dtype=np.float32).reshape(n, graph.dim)
        graph._adj[:n] = np.frombuffer(state["adj"], dtype=np.int32).reshape(n, graph.m_max0)
        graph._adj_count[:n] = np.frombuffer(state["adj_count"], dtype=np.int32)
        graph._n_nodes = n
        graph._node_ids = list(state["node_ids"])
        graph._upper = state["upper"]
        graph._node_layers = state["node_layers"]
        graph._entry_point = state["entry_point"]
        graph._max_layer = state["max_layer"]
        return graph
