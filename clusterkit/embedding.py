"""
UMAP embedding built on the package's own neighbor index.

fit_transform() builds a private VectorIndex over the input rows, reads the
k-nearest-neighbor graph back out of it and hands that graph to umap-learn.
transform() projects new rows by inverse-distance weighting of the stored
training embeddings; it is an approximation, not a re-run of the solver.
"""

import json
import logging
import os
import pickle
import re
import time
import warnings
from dataclasses import dataclass
from typing import Any, Optional, Union

import numpy as np
import umap

from clusterkit.config import get_settings
from clusterkit.errors import (
    ConvergenceFailed,
    CorruptPersistedState,
    DimensionMismatch,
    EmbeddingFailed,
    InsufficientData,
    InvalidArgument,
    IsolatedPoints,
    ModelNotFitted,
    PersistenceIOError,
)
from clusterkit.geometry import as_matrix, data_statistics, pairwise_squared
from clusterkit.vector.index import VectorIndex

logger = logging.getLogger(__name__)

# Smoothing term in the transform weights; keeps an exact match finite
TRANSFORM_EPSILON = 0.001

# Private neighbor index parameters
GRAPH_M = 70
GRAPH_EF_CONSTRUCTION = 50

EPOCHS_PER_GRAD_BATCH = 20

# Smallest training set fit_transform accepts
MIN_SAMPLES = 10

_ISOLATED_POINTS = re.compile(r"isolated point|graph will not be connected", re.IGNORECASE)
_BOX_SIZE = re.compile(r"assertion failed.*box_size", re.IGNORECASE)
_TOO_MANY_NEIGHBORS = re.compile(r"n_neighbors.*larger than|too many neighbors", re.IGNORECASE)


def classify_solver_error(error: Exception, n_samples: int, n_features: int, n_neighbors: int) -> EmbeddingFailed:
    """Turn a solver exception into an EmbeddingFailed carrying guidance for the caller."""
    message = str(error)
    details = {
        "n_samples": n_samples,
        "n_features": n_features,
        "n_neighbors": n_neighbors,
        "error": message,
    }

    if _ISOLATED_POINTS.search(message):
        return IsolatedPoints(
            "UMAP found isolated points that are too far from the rest of the data. "
            f"Reduce n_neighbors (currently {n_neighbors}, try 5 or 3), remove outliers, "
            "or make sure the data has some structure.",
            details=details,
        )
    if _BOX_SIZE.search(message):
        return ConvergenceFailed(
            "UMAP failed to converge due to numerical instability. "
            "Normalize the data, use a smaller n_neighbors, and remove duplicate points.",
            details=details,
        )
    if _TOO_MANY_NEIGHBORS.search(message):
        suggested = max(5, int(n_samples * 0.1))
        return EmbeddingFailed(
            f"n_neighbors ({n_neighbors}) is too large for {n_samples} samples. "
            f"Suggested value: {suggested}.",
            details={**details, "suggested_n_neighbors": suggested},
        )
    return EmbeddingFailed(
        f"UMAP encountered an error: {message}. Try reducing n_neighbors, "
        "normalizing the data, or checking for duplicate points.",
        details=details,
    )


@dataclass
class EmbeddingModel:
    """Training state kept after a successful fit."""

    n_components: int
    n_neighbors: int
    nb_grad_batch: int
    nb_sampling_by_edge: int
    embeddings: np.ndarray  # float64, (n_samples, n_components)
    vectors: np.ndarray  # float32, (n_samples, n_features)

    def to_blob(self) -> bytes:
        fields = (
            self.n_components,
            self.n_neighbors,
            self.nb_grad_batch,
            self.nb_sampling_by_edge,
            self.embeddings.tolist(),
            self.vectors.tolist(),
        )
        return pickle.dumps(fields, protocol=pickle.HIGHEST_PROTOCOL)

    @classmethod
    def from_blob(cls, blob: bytes) -> "EmbeddingModel":
        n_components, n_neighbors, nb_grad_batch, nb_sampling_by_edge, embeddings, vectors = pickle.loads(blob)
        embeddings = np.asarray(embeddings, dtype=np.float64)
        vectors = np.asarray(vectors, dtype=np.float32)
        if embeddings.ndim != 2 or vectors.ndim != 2 or len(embeddings) != len(vectors):
            raise ValueError("embeddings and vectors must be aligned 2D matrices")
        return cls(
            n_components=int(n_components),
            n_neighbors=int(n_neighbors),
            nb_grad_batch=int(nb_grad_batch),
            nb_sampling_by_edge=int(nb_sampling_by_edge),
            embeddings=embeddings,
            vectors=vectors,
        )


def adjust_n_neighbors(n_neighbors: int, n_samples: int) -> int:
    """Shrink n_neighbors when it is too large for the dataset.

    Requests above max(n_samples - 1, 2) fall back to min(15, n_samples // 4),
    bounded to [2, n_samples - 1].
    """
    max_neighbors = max(n_samples - 1, 2)
    if n_neighbors <= max_neighbors:
        return n_neighbors
    suggested = max(min(15, n_samples // 4), 2)
    return min(suggested, max_neighbors)


class UMAP:
    """
    Uniform Manifold Approximation and Projection.

    Args:
        n_components: Output dimensionality.
        n_neighbors: Neighbors per point in the k-NN graph.
        random_seed: Makes the neighbor graph and the solver reproducible.
            Seeded fits insert serially and are slower.
        nb_grad_batch: Gradient batches; the solver runs 20 epochs per batch.
        nb_sampling_by_edge: Negative samples per positive edge.
    """

    def __init__(
        self,
        n_components: int = 2,
        n_neighbors: int = 15,
        random_seed: Optional[int] = None,
        nb_grad_batch: int = 10,
        nb_sampling_by_edge: int = 8,
    ):
        for name, value in (
            ("n_components", n_components),
            ("n_neighbors", n_neighbors),
            ("nb_grad_batch", nb_grad_batch),
            ("nb_sampling_by_edge", nb_sampling_by_edge),
        ):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise InvalidArgument(f"{name} must be a positive integer (got {value!r})")

        self.n_components = n_components
        self.n_neighbors = n_neighbors
        self.random_seed = random_seed
        self.nb_grad_batch = nb_grad_batch
        self.nb_sampling_by_edge = nb_sampling_by_edge
        self._model: Optional[EmbeddingModel] = None

    @property
    def fitted(self) -> bool:
        return self._model is not None

    @property
    def model(self) -> Optional[EmbeddingModel]:
        return self._model

    def fit(self, rows: Any) -> "UMAP":
        """Train on rows. The embedding is computed and kept in the model."""
        self.fit_transform(rows)
        return self

    def fit_transform(self, rows: Any) -> np.ndarray:
        """Train on rows and return their embedding, one output row per input row."""
        self._model = None
        data = as_matrix(rows, check_finite=True)
        n_samples = data.shape[0]
        if n_samples < MIN_SAMPLES:
            raise InsufficientData(
                f"UMAP requires at least {MIN_SAMPLES} data points, but only {n_samples} provided. "
                "Collect more data points or use a simpler visualization method.",
                details={"n_samples": n_samples},
            )

        stats = data_statistics(data)
        if stats["data_range"] > 1000:
            logger.warning(
                "Large data range detected (%.2f). Consider normalizing your data.",
                stats["data_range"],
            )

        n_neighbors = adjust_n_neighbors(self.n_neighbors, n_samples)
        if n_neighbors != self.n_neighbors:
            logger.info(
                "Adjusted n_neighbors from %d to %d for dataset with %d samples",
                self.n_neighbors,
                n_neighbors,
                n_samples,
            )

        knn_ids, knn_dists = self._neighbor_graph(data, n_neighbors)
        embeddings = self._embed(data, knn_ids, knn_dists, n_neighbors)

        self._model = EmbeddingModel(
            n_components=self.n_components,
            n_neighbors=n_neighbors,
            nb_grad_batch=self.nb_grad_batch,
            nb_sampling_by_edge=self.nb_sampling_by_edge,
            embeddings=embeddings,
            vectors=data.astype(np.float32),
        )
        return embeddings.copy()

    def _neighbor_graph(self, data: np.ndarray, n_neighbors: int) -> tuple[np.ndarray, np.ndarray]:
        t0 = time.perf_counter()
        with VectorIndex(
            dim=data.shape[1],
            max_elements=data.shape[0],
            m=GRAPH_M,
            ef_construction=GRAPH_EF_CONSTRUCTION,
            seed=self.random_seed,
        ) as index:
            index.add_batch(data, parallel=self.random_seed is None)
            knn_ids, knn_dists = index.neighbor_graph(n_neighbors)
        logger.debug(
            "built %d-NN graph over %d points in %.3fs",
            n_neighbors,
            data.shape[0],
            time.perf_counter() - t0,
        )
        return knn_ids, knn_dists

    def _embed(
        self,
        data: np.ndarray,
        knn_ids: np.ndarray,
        knn_dists: np.ndarray,
        n_neighbors: int,
    ) -> np.ndarray:
        n_samples = data.shape[0]
        verbose = get_settings().verbose
        solver = umap.UMAP(
            n_components=self.n_components,
            n_neighbors=n_neighbors,
            n_epochs=EPOCHS_PER_GRAD_BATCH * self.nb_grad_batch,
            negative_sample_rate=self.nb_sampling_by_edge,
            random_state=self.random_seed,
            precomputed_knn=(knn_ids, knn_dists, None),
            force_approximation_algorithm=True,
            verbose=verbose,
        )

        t0 = time.perf_counter()
        try:
            with warnings.catch_warnings():
                if not verbose:
                    warnings.simplefilter("ignore")
                result = solver.fit_transform(data.astype(np.float32))
        except Exception as e:
            raise classify_solver_error(e, n_samples, data.shape[1], n_neighbors) from e

        embeddings = np.asarray(result, dtype=np.float64)
        if embeddings.ndim != 2 or embeddings.shape[0] == 0:
            raise EmbeddingFailed("Embedding solver returned no points")
        if embeddings.shape[0] != n_samples:
            raise EmbeddingFailed(
                f"Embedding solver returned {embeddings.shape[0]} points for {n_samples} inputs"
            )
        logger.debug("embedded %d points in %.3fs", n_samples, time.perf_counter() - t0)
        return embeddings

    def transform(self, rows: Any) -> np.ndarray:
        """Project new rows into the fitted embedding.

        Each output row is the inverse-distance weighted mean of the
        embeddings of its nearest training points, with weight
        1 / (distance + 0.001). Deterministic for a given model.
        """
        if self._model is None:
            raise ModelNotFitted("Model must be fitted before transform. Call fit or fit_transform first.")
        model = self._model

        data = as_matrix(rows)
        if data.shape[1] != model.vectors.shape[1]:
            raise DimensionMismatch(
                f"Vector dimension mismatch: expected {model.vectors.shape[1]}, got {data.shape[1]}",
                details={"expected": model.vectors.shape[1], "got": data.shape[1]},
            )

        # Compare at the precision the training vectors were stored with
        queries = data.astype(np.float32).astype(np.float64)
        training = model.vectors.astype(np.float64)
        k = min(model.n_neighbors, len(training))

        result = np.empty((len(queries), model.embeddings.shape[1]), dtype=np.float64)
        for i, query in enumerate(queries):
            dists = np.sqrt(pairwise_squared(query[None, :], training)[0])
            nearest = np.argsort(dists, kind="stable")[:k]
            weights = 1.0 / (dists[nearest] + TRANSFORM_EPSILON)
            weights /= weights.sum()
            result[i] = weights @ model.embeddings[nearest]
        return result

    # --- Persistence ---

    def save_model(self, path: Union[str, os.PathLike]) -> None:
        if self._model is None:
            raise ModelNotFitted("No model to save. Call fit or fit_transform first.")

        path = os.fspath(path)
        try:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(path, "wb") as f:
                f.write(self._model.to_blob())
        except OSError as e:
            raise PersistenceIOError(f"Failed to save model: {e}", details={"path": path}) from e

    @classmethod
    def load_model(cls, path: Union[str, os.PathLike]) -> "UMAP":
        """Load a saved model. The seed is not stored, so random_seed is None."""
        path = os.fspath(path)
        if not os.path.isfile(path):
            raise PersistenceIOError(f"File not found: {path}", details={"path": path})
        try:
            with open(path, "rb") as f:
                blob = f.read()
        except OSError as e:
            raise PersistenceIOError(f"Failed to read model: {e}", details={"path": path}) from e

        try:
            model = EmbeddingModel.from_blob(blob)
        except Exception as e:
            raise CorruptPersistedState(f"Failed to load model: {e}", details={"path": path}) from e

        instance = cls(
            n_components=model.n_components,
            n_neighbors=model.n_neighbors,
            random_seed=None,
            nb_grad_batch=model.nb_grad_batch,
            nb_sampling_by_edge=model.nb_sampling_by_edge,
        )
        instance._model = model
        return instance

    @staticmethod
    def export_data(data: Any, path: Union[str, os.PathLike]) -> None:
        """Write an embedding to JSON (for caching results)."""
        rows = np.asarray(data, dtype=np.float64).tolist()
        with open(path, "w") as f:
            json.dump(rows, f, indent=2)

    @staticmethod
    def import_data(path: Union[str, os.PathLike]) -> list[list[float]]:
        with open(path) as f:
            return json.load(f)
