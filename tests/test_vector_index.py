# tests/test_vector_index.py

import threading
import time

import numpy as np
import pytest

from core import vector_index
from core.errors import EmptyIndexError, NotFound, ValidationError
from core.vector_index import VectorIndex


@pytest.fixture
def small_index():
    index = VectorIndex(dimension=3)
    index.insert(1, [1.0, 0.0, 0.0])  # A
    index.insert(2, [0.9, 0.1, 0.0])  # B
    index.insert(3, [0.5, 0.5, 0.0])  # C
    return index


def random_vectors(n, dimension, seed=0):
    rng = np.random.default_rng(seed)
    return rng.standard_normal((n, dimension)).astype(np.float32)


def test_similar_to_excludes_query_and_orders_by_distance(small_index):
    results = small_index.query_similar_to(1, 2)

    assert [image_id for image_id, _ in results] == [2, 3]
    assert results[0][1] < results[1][1]


def test_query_includes_exact_match_first(small_index):
    results = small_index.query([2.0, 0.0, 0.0], 3)

    assert results[0][0] == 1
    assert results[0][1] == pytest.approx(0.0, abs=1e-6)
    distances = [d for _, d in results]
    assert distances == sorted(distances)


def test_k_zero_returns_empty(small_index):
    assert small_index.query([1.0, 0.0, 0.0], 0) == []
    assert small_index.query_similar_to(1, 0) == []


def test_negative_k_rejected(small_index):
    with pytest.raises(ValidationError):
        small_index.query([1.0, 0.0, 0.0], -1)


def test_k_larger_than_index(small_index):
    assert len(small_index.query([0.0, 1.0, 0.0], 10)) == 3
    assert len(small_index.query_similar_to(3, 10)) == 2


def test_empty_index_raises():
    index = VectorIndex(dimension=3)
    with pytest.raises(EmptyIndexError):
        index.query([1.0, 0.0, 0.0], 5)


def test_similar_to_unknown_id(small_index):
    with pytest.raises(NotFound):
        small_index.query_similar_to(99, 5)


def test_dimension_mismatch_rejected(small_index):
    with pytest.raises(ValidationError):
        small_index.insert(4, [1.0, 0.0])
    with pytest.raises(ValidationError):
        small_index.query([1.0, 0.0, 0.0, 0.0], 1)
    assert len(small_index) == 3


def test_zero_vector_rejected(small_index):
    with pytest.raises(ValidationError):
        small_index.insert(4, [0.0, 0.0, 0.0])


def test_ties_broken_by_id():
    index = VectorIndex(dimension=2)
    for image_id in (7, 3, 5):
        index.insert(image_id, [1.0, 1.0])

    results = index.query([1.0, 1.0], 2)
    assert [image_id for image_id, _ in results] == [3, 5]


def test_reinsert_replaces_vector(small_index):
    small_index.insert(3, [1.0, 0.0, 0.0])

    assert len(small_index) == 3
    results = small_index.query_similar_to(1, 1)
    assert results[0][0] == 3


def test_remove(small_index):
    small_index.remove(2)
    small_index.remove(42)  # unknown ids are ignored

    assert 2 not in small_index
    assert len(small_index) == 2
    assert all(image_id != 2 for image_id, _ in small_index.query([1.0, 0.0, 0.0], 5))


def test_cosine_ignores_magnitude():
    index = VectorIndex(dimension=2)
    index.insert(1, [10.0, 0.0])
    index.insert(2, [0.0, 0.1])

    results = index.query([0.5, 0.0], 2)
    assert results[0] == (1, pytest.approx(0.0, abs=1e-6))
    assert results[1][1] == pytest.approx(1.0, abs=1e-6)


def test_rebuild_matches_incremental():
    vectors = random_vectors(300, 16, seed=1)
    incremental = VectorIndex(dimension=16)
    for image_id, vector in enumerate(vectors):
        incremental.insert(image_id, vector)

    rebuilt = VectorIndex(dimension=16)
    rebuilt.insert(999, vectors[0])
    count = rebuilt.rebuild(enumerate(vectors))

    assert count == 300
    assert 999 not in rebuilt
    assert rebuilt.ids() == incremental.ids()
    for query in random_vectors(10, 16, seed=2):
        expected = incremental.query(query, 5)
        actual = rebuilt.query(query, 5)
        assert [i for i, _ in actual] == [i for i, _ in expected]
        assert [d for _, d in actual] == pytest.approx([d for _, d in expected], abs=1e-6)


class TestApproximateIndex:
    """HNSW-backed queries once the index passes exact_threshold"""

    DIM = 32

    @pytest.fixture
    def vectors(self):
        return random_vectors(1500, self.DIM, seed=3)

    @pytest.fixture
    def indexes(self, vectors):
        exact = VectorIndex(dimension=self.DIM, exact_threshold=10000)
        approximate = VectorIndex(dimension=self.DIM, exact_threshold=500)
        exact.rebuild(enumerate(vectors))
        approximate.rebuild(enumerate(vectors))
        return exact, approximate

    def test_graph_built_above_threshold(self, indexes):
        exact, approximate = indexes
        assert not exact.is_approximate
        assert approximate.is_approximate

    def test_recall_against_brute_force(self, indexes):
        exact, approximate = indexes
        k = 10
        recalls = []
        for query in random_vectors(50, self.DIM, seed=4):
            truth = {i for i, _ in exact.query(query, k)}
            found = {i for i, _ in approximate.query(query, k)}
            recalls.append(len(truth & found) / k)

        assert np.mean(recalls) >= 0.95

    def test_fresh_insert_visible_before_graph_refresh(self, indexes):
        _, approximate = indexes
        target = np.zeros(self.DIM, dtype=np.float32)
        target[0] = 1.0
        approximate.insert(10_000, target)

        results = approximate.query(target, 1)
        assert results[0][0] == 10_000

    def test_removed_entry_never_returned(self, indexes, vectors):
        _, approximate = indexes
        approximate.remove(0)

        results = approximate.query(vectors[0], 10)
        assert all(image_id != 0 for image_id, _ in results)

    def test_dropping_below_threshold_returns_to_exact(self):
        index = VectorIndex(dimension=4, exact_threshold=10)
        for image_id, vector in enumerate(random_vectors(10, 4, seed=5)):
            index.insert(image_id, vector)
        assert index.wait_for_refresh(timeout=10)
        assert index.is_approximate

        index.remove(0)
        assert not index.is_approximate
        assert len(index.query(np.ones(4), 20)) == 9


def test_concurrent_inserts_and_queries():
    index = VectorIndex(dimension=8)
    vectors = random_vectors(400, 8, seed=6)
    index.insert(-1, vectors[0])
    errors = []

    def writer(offset):
        try:
            for i in range(offset, 400, 4):
                index.insert(i, vectors[i])
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    def reader():
        try:
            for query in vectors[:100]:
                results = index.query(query, 5)
                distances = [d for _, d in results]
                assert distances == sorted(distances)
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(4)]
    threads += [threading.Thread(target=reader) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(index) == 401


def test_opposite_vector_ranks_last():
    index = VectorIndex(dimension=2)
    index.insert(1, [1.0, 0.0])   # A
    index.insert(2, [0.9, 0.1])   # B
    index.insert(3, [-1.0, 0.0])  # C

    results = index.query_similar_to(1, 2)
    assert [image_id for image_id, _ in results] == [2, 3]
    assert results[1][1] == pytest.approx(2.0, abs=1e-6)


def test_insert_remove_query_never_returns_id(small_index):
    small_index.insert(4, [0.0, 0.0, 1.0])
    small_index.remove(4)

    assert all(image_id != 4 for image_id, _ in small_index.query([0.0, 0.0, 1.0], 3))


def test_queries_not_blocked_by_graph_refresh(monkeypatch):
    vectors = random_vectors(300, 8, seed=7)
    index = VectorIndex(dimension=8, exact_threshold=200, rebuild_fraction=0.05)
    index.rebuild(enumerate(vectors[:250]))
    assert index.is_approximate

    build = vector_index.build_hnsw
    started, release = threading.Event(), threading.Event()

    def slow_build(*args, **kwargs):
        started.set()
        release.wait(10)
        return build(*args, **kwargs)

    monkeypatch.setattr(vector_index, "build_hnsw", slow_build)

    # Enough churn to schedule a background refresh
    for image_id in range(250, 270):
        index.insert(image_id, vectors[image_id])
    assert started.wait(5)

    began = time.perf_counter()
    nearest = index.query(vectors[260], 1)
    index.insert(500, vectors[0])
    index.remove(5)
    elapsed = time.perf_counter() - began

    assert elapsed < 0.5
    assert nearest[0][0] == 260
    assert index.is_approximate

    release.set()
    assert index.wait_for_refresh(timeout=10)

    # Changes made while the graph was building stay visible after the swap
    assert [i for i, _ in index.query(vectors[0], 2)] == [0, 500]
    assert all(i != 5 for i, _ in index.query(vectors[5], 10))
    assert len(index) == 270


def test_rebuild_serves_old_contents_and_replays_concurrent_writes():
    index = VectorIndex(dimension=2)
    index.insert(1, [1.0, 0.0])
    index.insert(2, [0.0, 1.0])

    halfway, resume = threading.Event(), threading.Event()

    def entries():
        yield 10, [1.0, 0.0]
        yield 11, [0.0, 1.0]
        halfway.set()
        resume.wait(10)
        yield 12, [1.0, 1.0]

    rebuilder = threading.Thread(target=index.rebuild, args=(entries(),))
    rebuilder.start()
    try:
        assert halfway.wait(5)
        assert index.ids() == [1, 2]
        assert [i for i, _ in index.query([1.0, 0.0], 5)] == [1, 2]

        index.insert(20, [1.0, 0.1])
        index.remove(11)
        assert index.ids() == [1, 2, 20]
    finally:
        resume.set()
        rebuilder.join(10)

    assert not rebuilder.is_alive()
    assert index.ids() == [10, 12, 20]
    assert [i for i, _ in index.query([1.0, 0.0], 3)] == [10, 20, 12]
