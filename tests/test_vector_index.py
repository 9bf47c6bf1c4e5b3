"""
Tests for the HNSW-backed VectorIndex.
"""

import os
import pickle
import threading

import numpy as np
import pytest

from clusterkit import VectorIndex
from clusterkit.errors import (
    CorruptPersistedState,
    DimensionMismatch,
    DuplicateLabel,
    InvalidArgument,
    InvalidDimension,
    PersistenceIOError,
    UnsupportedCapability,
)


@pytest.fixture
def index_path(tmp_path):
    return str(tmp_path / "index")


def brute_force_labels(vectors, query, k):
    dists = np.linalg.norm(vectors.astype(np.float64) - query, axis=1)
    return [str(i) for i in np.argsort(dists, kind="stable")[:k]]


class TestCreate:
    def test_zero_dim(self):
        with pytest.raises(InvalidDimension):
            VectorIndex(dim=0)

    def test_invalid_dim_is_invalid_argument(self):
        with pytest.raises(InvalidArgument):
            VectorIndex(dim=-3)

    def test_unknown_space(self):
        with pytest.raises(InvalidArgument):
            VectorIndex(dim=4, space="hamming")

    @pytest.mark.parametrize("space", ["cosine", "inner_product"])
    def test_recognized_but_unsupported_space(self, space):
        with pytest.raises(UnsupportedCapability):
            VectorIndex(dim=4, space=space)

    def test_new_index_is_empty(self):
        index = VectorIndex(dim=8)
        assert index.empty()
        assert index.size() == 0
        assert index.search(np.zeros(8)) == []

    def test_config(self):
        index = VectorIndex(dim=8, ef_construction=64)
        assert index.config() == {"dim": 8, "space": "euclidean", "ef": 64, "size": 0}


class TestInsert:
    def test_add_item_grows_by_one(self):
        index = VectorIndex(dim=3)
        index.add_item([1.0, 2.0, 3.0], label="a")
        assert index.size() == 1
        index.add_item([1, 2, 4])
        assert index.size() == 2

    def test_dimension_mismatch(self):
        index = VectorIndex(dim=3)
        with pytest.raises(DimensionMismatch):
            index.add_item([1.0, 2.0])
        assert index.size() == 0

    def test_non_numeric_vector(self):
        index = VectorIndex(dim=2)
        with pytest.raises(InvalidArgument):
            index.add_item([1.0, "x"])

    def test_duplicate_label(self):
        index = VectorIndex(dim=2)
        index.add_item([0.0, 0.0], label="p")
        with pytest.raises(DuplicateLabel):
            index.add_item([1.0, 1.0], label="p")
        assert index.size() == 1

    def test_generated_labels_follow_counter(self):
        index = VectorIndex(dim=2)
        assert index.add_item([0.0, 0.0]) == "0"
        assert index.add_item([1.0, 0.0], label="x") == "x"
        assert index.add_item([2.0, 0.0]) == "2"

    def test_generated_label_collides_with_explicit(self):
        index = VectorIndex(dim=2)
        index.add_item([0.0, 0.0], label="1")
        with pytest.raises(DuplicateLabel):
            index.add_item([1.0, 0.0])

    def test_batch_labels_length(self):
        index = VectorIndex(dim=2)
        with pytest.raises(InvalidArgument):
            index.add_batch([[0, 0], [1, 1]], labels=["a"])

    def test_batch_dimension_checked_before_commit(self):
        index = VectorIndex(dim=2)
        with pytest.raises(DimensionMismatch):
            index.add_batch([[0, 0], [1, 1, 1]])
        assert index.size() == 0

    def test_batch_is_not_atomic(self):
        index = VectorIndex(dim=2, seed=1)
        index.add_item([5.0, 5.0], label="c")
        with pytest.raises(DuplicateLabel):
            index.add_batch([[0, 0], [1, 1], [2, 2]], labels=["a", "b", "c"])
        assert index.size() == 3
        assert "a" in index
        assert "b" in index
        assert index.search([1.0, 1.0], k=1) == ["b"]

    def test_duplicate_within_batch(self):
        index = VectorIndex(dim=2)
        with pytest.raises(DuplicateLabel):
            index.add_batch([[0, 0], [1, 1]], labels=["a", "a"])
        assert index.size() == 1

    def test_metadata(self):
        index = VectorIndex(dim=2)
        index.add_item([0.0, 0.0], label="origin", metadata={"kind": "center", "rank": 1})
        index.add_item([1.0, 1.0], label="plain")
        assert index.get_metadata("origin") == {"kind": "center", "rank": "1"}
        assert index.get_metadata("plain") is None
        assert index.get_metadata("missing") is None

        hits = index.search_with_metadata([0.0, 0.0], k=2)
        assert hits[0] == {"label": "origin", "distance": 0.0, "metadata": {"kind": "center", "rank": "1"}}
        assert hits[1]["label"] == "plain"
        assert "metadata" not in hits[1]


class TestSearch:
    def test_fit_and_search(self):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((100, 64)).astype(np.float32)

        index = VectorIndex(dim=64, m=16, ef_construction=100)
        index.fit(vectors)

        results = index.search(vectors[0], k=10)
        assert len(results) == 10
        assert results[0] == "0"

    def test_k_larger_than_size(self):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((7, 16)).astype(np.float32)
        index = VectorIndex(dim=16)
        index.add_batch(vectors)

        labels, distances = index.search(vectors[3], k=50, include_distances=True)
        assert len(labels) == 7
        assert sorted(labels) == [str(i) for i in range(7)]
        assert distances == sorted(distances)
        assert labels[0] == "3"
        assert distances[0] == pytest.approx(0.0)

    def test_distances_are_euclidean(self):
        index = VectorIndex(dim=2)
        index.add_batch([[0, 0], [3, 4]], labels=["a", "b"])
        labels, distances = index.knn_query([0, 0], k=2)
        assert labels == ["a", "b"]
        assert distances == pytest.approx([0.0, 5.0])

    def test_query_dimension_mismatch(self):
        index = VectorIndex(dim=3)
        index.add_item([0, 0, 0])
        with pytest.raises(DimensionMismatch):
            index.search([0, 0])

    def test_ef_override_persists(self):
        index = VectorIndex(dim=2, ef_construction=20)
        index.add_item([0, 0])
        index.search([0, 0], k=1, ef=77)
        assert index.ef == 77
        index.set_ef(5)
        assert index.config()["ef"] == 5
        with pytest.raises(InvalidArgument):
            index.set_ef(0)

    def test_range_search(self):
        index = VectorIndex(dim=1)
        index.add_batch([[0], [1], [2], [10]], labels=["a", "b", "c", "d"])
        hits = index.range_search([0], radius=2.0)
        assert [h["label"] for h in hits] == ["a", "b", "c"]

    def test_batch_search(self):
        rng = np.random.default_rng(0)
        vectors = rng.standard_normal((50, 8)).astype(np.float32)
        index = VectorIndex(dim=8)
        index.add_batch(vectors)
        results = index.batch_search(vectors[:5], k=3)
        assert [r[0] for r in results] == ["0", "1", "2", "3", "4"]

    def test_missing_record_is_skipped(self, caplog):
        index = VectorIndex(dim=2)
        index.add_batch([[0, 0], [1, 1]], labels=["a", "b"])
        del index._registry._records[0]
        with caplog.at_level("WARNING", logger="clusterkit.vector.index"):
            assert index.search([0, 0], k=2) == ["b"]
        assert "no label record" in caplog.text


class TestRecall:
    def test_recall_on_random_vectors(self):
        rng = np.random.default_rng(42)
        n, dim = 500, 32
        vectors = rng.standard_normal((n, dim)).astype(np.float32)

        index = VectorIndex(dim=dim, m=16, ef_construction=100)
        index.fit(vectors)
        index.set_ef(100)

        queries = rng.standard_normal((20, dim)).astype(np.float32)
        truth = [brute_force_labels(vectors, q, 10) for q in queries]
        assert index.recall(queries, truth, k=10) >= 0.9

    def test_seeded_build_is_reproducible(self):
        rng = np.random.default_rng(7)
        vectors = rng.standard_normal((300, 16)).astype(np.float32)
        query = rng.standard_normal(16).astype(np.float32)

        a = VectorIndex(dim=16, ef_construction=40, seed=3)
        b = VectorIndex(dim=16, ef_construction=40, seed=3)
        a.add_batch(vectors)
        b.add_batch(vectors)
        a.set_ef(10)
        b.set_ef(10)
        assert a.search(query, k=10) == b.search(query, k=10)
        assert a.stats() == b.stats()


class TestPersistence:
    def test_round_trip(self, index_path):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((200, 16)).astype(np.float32)
        index = VectorIndex(dim=16, ef_construction=50)
        index.add_batch(vectors, labels=[f"v{i}" for i in range(200)])
        index.add_item(np.ones(16), label="ones", metadata={"k": "v"})
        query = rng.standard_normal(16)
        before = index.search(query, k=10)
        index.save(index_path)

        assert os.path.isfile(index_path + ".metadata")
        assert os.path.isfile(os.path.join(index_path + "_hnsw_data", "hnsw.graph"))

        loaded = VectorIndex.load(index_path)
        assert loaded.size() == 201
        assert loaded.dim == 16
        assert loaded.search(query, k=10) == before
        assert loaded.get_metadata("ones") == {"k": "v"}

    def test_loaded_index_keeps_counter(self, index_path):
        index = VectorIndex(dim=2)
        index.add_batch([[0, 0], [1, 1]])
        index.save(index_path)

        loaded = VectorIndex.load(index_path)
        assert loaded.add_item([2, 2]) == "2"
        with pytest.raises(DuplicateLabel):
            loaded.add_item([3, 3], label="0")

    def test_sidecar_field_order(self, index_path):
        index = VectorIndex(dim=2)
        index.add_item([0, 0], label="a", metadata={"x": "y"})
        index.save(index_path)

        with open(index_path + ".metadata", "rb") as f:
            table, label_to_id, next_id, dim, space = pickle.load(f)
        assert table == {0: {"label": "a", "metadata": {"x": "y"}}}
        assert label_to_id == {"a": 0}
        assert next_id == 1
        assert dim == 2
        assert space == "euclidean"

    def test_missing_artifacts(self, index_path):
        with pytest.raises(PersistenceIOError):
            VectorIndex.load(index_path)

        index = VectorIndex(dim=2)
        index.add_item([0, 0])
        index.save(index_path)
        os.remove(os.path.join(index_path + "_hnsw_data", "hnsw.graph"))
        with pytest.raises(PersistenceIOError):
            VectorIndex.load(index_path)

    def test_unknown_space_in_sidecar(self, index_path):
        index = VectorIndex(dim=2)
        index.add_item([0, 0])
        index.save(index_path)
        with open(index_path + ".metadata", "rb") as f:
            table, label_to_id, next_id, dim, _ = pickle.load(f)
        with open(index_path + ".metadata", "wb") as f:
            pickle.dump((table, label_to_id, next_id, dim, "chebyshev"), f)

        with pytest.raises(CorruptPersistedState):
            VectorIndex.load(index_path)

    def test_garbage_sidecar(self, index_path):
        index = VectorIndex(dim=2)
        index.add_item([0, 0])
        index.save(index_path)
        with open(index_path + ".metadata", "wb") as f:
            f.write(b"not a pickle")

        with pytest.raises(CorruptPersistedState):
            VectorIndex.load(index_path)

    def test_close(self, index_path):
        with VectorIndex(dim=2) as index:
            index.add_item([0, 0])
        with pytest.raises(InvalidArgument):
            index.search([0, 0])


class TestConcurrency:
    def test_concurrent_inserts_get_unique_ids(self):
        index = VectorIndex(dim=4)
        rng = np.random.default_rng(1)
        vectors = rng.standard_normal((8, 50, 4)).astype(np.float32)
        errors = []

        def worker(t):
            try:
                for i, vec in enumerate(vectors[t]):
                    index.add_item(vec, label=f"t{t}-{i}")
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(t,)) for t in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert index.size() == 400
        table, label_to_id, next_id = index._registry.snapshot()
        assert next_id == 400
        assert sorted(label_to_id.values()) == list(range(400))

    def test_concurrent_duplicate_label_accepted_once(self):
        index = VectorIndex(dim=2)
        barrier = threading.Barrier(6)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                index.add_item([0.0, 0.0], label="same")
                outcomes.append("ok")
            except DuplicateLabel:
                outcomes.append("dup")

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert index.size() == 1

    def test_search_during_inserts(self):
        index = VectorIndex(dim=8)
        rng = np.random.default_rng(3)
        index.add_batch(rng.standard_normal((50, 8)).astype(np.float32))
        stop = threading.Event()
        failures = []

        def reader():
            while not stop.is_set():
                results = index.search(np.zeros(8), k=5)
                if len(results) != 5:
                    failures.append(results)

        readers = [threading.Thread(target=reader) for _ in range(3)]
        for t in readers:
            t.start()
        index.add_batch(rng.standard_normal((200, 8)).astype(np.float32))
        stop.set()
        for t in readers:
            t.join()

        assert failures == []
        assert index.size() == 250

    @staticmethod
    def _pause_after_register(monkeypatch, index):
        registered = threading.Event()
        release = threading.Event()
        original = index._registry.register

        def register(*args, **kwargs):
            result = original(*args, **kwargs)
            registered.set()
            release.wait(timeout=5)
            return result

        monkeypatch.setattr(index._registry, "register", register)
        return registered, release

    @pytest.mark.parametrize("insert", ["item", "batch"])
    def test_save_waits_for_pending_insert(self, monkeypatch, index_path, insert):
        index = VectorIndex(dim=2, seed=1)
        index.add_item([0.0, 0.0], label="a")
        registered, release = self._pause_after_register(monkeypatch, index)

        if insert == "item":
            writer = threading.Thread(target=index.add_item, args=([1.0, 1.0],), kwargs={"label": "b"})
        else:
            writer = threading.Thread(target=index.add_batch, args=([[1.0, 1.0]],), kwargs={"labels": ["b"]})
        writer.start()
        assert registered.wait(timeout=5)

        saver = threading.Thread(target=index.save, args=(index_path,))
        saver.start()
        saver.join(timeout=0.2)
        assert saver.is_alive()

        release.set()
        writer.join()
        saver.join()

        loaded = VectorIndex.load(index_path)
        assert loaded.size() == 2
        assert len(loaded._graph) == 2
        assert loaded.search([1.0, 1.0], k=1) == ["b"]

    def test_size_counts_only_linked_entries(self, monkeypatch):
        index = VectorIndex(dim=2, seed=1)
        registered, release = self._pause_after_register(monkeypatch, index)
        sizes = []

        writer = threading.Thread(target=index.add_item, args=([1.0, 1.0],))
        writer.start()
        assert registered.wait(timeout=5)

        reader = threading.Thread(target=lambda: sizes.append((index.size(), len(index._graph))))
        reader.start()
        reader.join(timeout=0.2)
        assert reader.is_alive()

        release.set()
        writer.join()
        reader.join()
        assert sizes == [(1, 1)]


class TestFromEmbedding:
    def test_from_embedding(self):
        index = VectorIndex.from_embedding([[0.0, 0.0], [5.0, 5.0]], seed=1)
        assert index.dim == 2
        assert index.search([4.0, 4.0], k=1) == ["1"]
        assert "0" in index
        assert index.contains(1)
