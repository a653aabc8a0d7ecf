# core/vector_index.py

import logging
import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

import faiss
import numpy as np

from core.errors import EmptyIndexError, NotFound, ValidationError
from core.locks import ReadWriteLock

logger = logging.getLogger(__name__)


def build_hnsw(vectors: np.ndarray, hnsw_m: int, ef_construction: int,
               ef_search: int) -> faiss.Index:
    """Build an inner-product HNSW graph over unit vectors"""
    graph = faiss.IndexHNSWFlat(vectors.shape[1], hnsw_m, faiss.METRIC_INNER_PRODUCT)
    graph.hnsw.efConstruction = ef_construction
    graph.add(np.ascontiguousarray(vectors, dtype=np.float32))
    graph.hnsw.efSearch = ef_search
    return graph


class _VectorTable:
    """
    Dense storage of unit vectors plus an optional HNSW graph over them.

    Not thread-safe on its own; VectorIndex guards every access.
    """

    def __init__(self, dimension: int, exact_threshold: int, hnsw_m: int,
                 ef_construction: int, ef_search: int, rebuild_fraction: float):
        self.dimension = dimension
        self.exact_threshold = exact_threshold
        self.hnsw_m = hnsw_m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self.rebuild_fraction = rebuild_fraction

        self.vectors = np.zeros((16, dimension), dtype=np.float32)
        self.ids = np.zeros(16, dtype=np.int64)
        self.size = 0
        self.positions: Dict[int, int] = {}

        # Approximate graph state; None while below exact_threshold
        self.graph: Optional[faiss.Index] = None
        self.graph_ids = np.zeros(0, dtype=np.int64)
        self.stale: Set[int] = set()  # graph entries that no longer match
        self.fresh: Set[int] = set()  # entries the graph does not cover
        # Ids touched since a background snapshot was taken; None when no build is pending
        self.changes: Optional[Set[int]] = None

    def insert(self, image_id: int, vector: np.ndarray):
        pos = self.positions.get(image_id)
        if pos is None:
            if self.size == self.vectors.shape[0]:
                self._grow()
            pos = self.size
            self.size += 1
            self.ids[pos] = image_id
            self.positions[image_id] = pos
        elif self.graph is not None:
            self.stale.add(image_id)
        self.vectors[pos] = vector
        if self.graph is not None:
            self.fresh.add(image_id)
        if self.changes is not None:
            self.changes.add(image_id)

    def remove(self, image_id: int) -> bool:
        pos = self.positions.pop(image_id, None)
        if pos is None:
            return False
        last = self.size - 1
        if pos != last:
            moved = int(self.ids[last])
            self.vectors[pos] = self.vectors[last]
            self.ids[pos] = moved
            self.positions[moved] = pos
        self.size -= 1
        if self.graph is not None:
            self.stale.add(image_id)
            self.fresh.discard(image_id)
        if self.changes is not None:
            self.changes.add(image_id)
        return True

    def _grow(self):
        capacity = self.vectors.shape[0] * 2
        vectors = np.zeros((capacity, self.dimension), dtype=np.float32)
        vectors[:self.size] = self.vectors[:self.size]
        ids = np.zeros(capacity, dtype=np.int64)
        ids[:self.size] = self.ids[:self.size]
        self.vectors, self.ids = vectors, ids

    def maintain_graph(self) -> bool:
        """
        Drop the graph once below exact_threshold.

        Returns:
            True when a graph (re)build is due; the caller schedules it
        """
        if self.size < self.exact_threshold:
            if self.graph is not None:
                logger.info("Index below %d entries, dropping HNSW graph", self.exact_threshold)
            self.graph = None
            self.graph_ids = np.zeros(0, dtype=np.int64)
            self.stale.clear()
            self.fresh.clear()
            self.changes = None
            return False
        return self.graph is None or len(self.stale) + len(self.fresh) > self.rebuild_fraction * self.size

    def build_graph(self):
        """Build the graph in place; only for tables nobody else can see yet"""
        logger.info("Building HNSW graph over %d vectors", self.size)
        self.graph = build_hnsw(self.vectors[:self.size], self.hnsw_m,
                                self.ef_construction, self.ef_search)
        self.graph_ids = self.ids[:self.size].copy()
        self.stale.clear()
        self.fresh.clear()
        self.changes = None

    def snapshot(self) -> Tuple[np.ndarray, np.ndarray]:
        """Copy the live vectors and start recording changes made after the copy"""
        self.changes = set()
        return self.vectors[:self.size].copy(), self.ids[:self.size].copy()

    def install_graph(self, graph: faiss.Index, graph_ids: np.ndarray):
        """Swap in a graph built from a snapshot, covering later changes exactly"""
        changes = self.changes or set()
        self.graph = graph
        self.graph_ids = graph_ids
        self.stale = set(changes)
        self.fresh = {image_id for image_id in changes if image_id in self.positions}
        self.changes = None

    def search(self, query: np.ndarray, k: int, exclude: Optional[int],
               candidate_multiplier: int, max_candidates: int) -> List[Tuple[int, float]]:
        if self.graph is None:
            ids = self.ids[:self.size]
            vectors = self.vectors[:self.size]
        else:
            rows = self._graph_candidates(query, k, candidate_multiplier, max_candidates)
            ids = self.ids[rows]
            vectors = self.vectors[rows]

        sims = (vectors @ query).astype(np.float64)
        distances = np.clip(1.0 - sims, 0.0, 2.0)

        if exclude is not None:
            keep = ids != exclude
            ids, distances = ids[keep], distances[keep]
        if ids.size == 0:
            return []

        if k < ids.size:
            # Keep everything tied with the k-th distance so id tie-breaking is exact
            kth = np.partition(distances, k - 1)[k - 1]
            keep = distances <= kth
            ids, distances = ids[keep], distances[keep]

        order = np.lexsort((ids, distances))[:k]
        return [(int(ids[i]), float(distances[i])) for i in order]

    def _graph_candidates(self, query: np.ndarray, k: int, candidate_multiplier: int,
                          max_candidates: int) -> np.ndarray:
        # Oversample to survive stale hits, bounded by max_candidates
        want = min(max_candidates, k * candidate_multiplier) + len(self.stale) + 1
        want = min(self.graph.ntotal, max(want, k + 1))
        _, labels = self.graph.search(query.reshape(1, -1), want)
        hits = self.graph_ids[labels[0][labels[0] >= 0]]

        candidates = {int(i) for i in hits if int(i) not in self.stale}
        candidates.update(self.fresh)
        rows = [self.positions[i] for i in candidates if i in self.positions]
        return np.asarray(sorted(rows), dtype=np.int64)


class VectorIndex:
    """
    k-nearest-neighbour index over feature vectors under cosine distance.

    Vectors are stored unit-normalised, so cosine distance is 1 - dot product.
    Below ``exact_threshold`` entries every query is an exact scan; at or
    above it an HNSW graph (faiss, inner product) proposes candidates that are
    then re-ranked exactly, with entries changed since the last graph build
    handled by an exact scan of that delta.

    Queries share a read lock, mutations take the write lock. Graphs are
    built on a background thread from a snapshot and only swapped in under
    the write lock, so queries never wait for a graph build. The index is
    derived state: FeatureStore is authoritative and ``rebuild`` restores the
    index from it after a crash.
    """

    def __init__(self, dimension: int, exact_threshold: int = 50000,
                 hnsw_m: int = 32, ef_construction: int = 200, ef_search: int = 128,
                 candidate_multiplier: int = 4, max_candidates: int = 4096,
                 rebuild_fraction: float = 0.1):
        self.dimension = dimension
        self.candidate_multiplier = candidate_multiplier
        self.max_candidates = max_candidates
        self._table_args = dict(
            dimension=dimension,
            exact_threshold=exact_threshold,
            hnsw_m=hnsw_m,
            ef_construction=ef_construction,
            ef_search=ef_search,
            rebuild_fraction=rebuild_fraction,
        )
        self._table = _VectorTable(**self._table_args)
        self._lock = ReadWriteLock()
        self._rebuild_lock = threading.Lock()
        self._journal: Optional[List[Tuple[str, int, Optional[np.ndarray]]]] = None
        self._refresh_guard = threading.Lock()
        self._refresh_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, dimension: int, config) -> 'VectorIndex':
        return cls(
            dimension=dimension,
            exact_threshold=config.exact_threshold,
            hnsw_m=config.hnsw_m,
            ef_construction=config.ef_construction,
            ef_search=config.ef_search,
            candidate_multiplier=config.candidate_multiplier,
            max_candidates=config.max_candidates,
            rebuild_fraction=config.rebuild_fraction,
        )

    def _prepare(self, vector) -> np.ndarray:
        """Validate dimension and normalise to unit length"""
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != self.dimension:
            raise ValidationError(
                f"Vector dimension {array.shape[0]} does not match index dimension {self.dimension}"
            )
        norm = float(np.linalg.norm(array))
        if not np.isfinite(norm) or norm == 0.0:
            raise ValidationError("Vector must be finite and non-zero")
        return array / norm

    @staticmethod
    def _check_k(k: int):
        if k < 0:
            raise ValidationError("k must be >= 0")

    def insert(self, image_id: int, vector):
        """Add a vector, replacing any previous vector for image_id"""
        prepared = self._prepare(vector)
        with self._lock.write():
            self._table.insert(int(image_id), prepared)
            if self._journal is not None:
                self._journal.append(('insert', int(image_id), prepared))
            refresh = self._table.maintain_graph()
        if refresh:
            self._schedule_refresh()

    def remove(self, image_id: int):
        """Delete image_id; absent ids are ignored"""
        with self._lock.write():
            self._table.remove(int(image_id))
            if self._journal is not None:
                self._journal.append(('remove', int(image_id), None))
            refresh = self._table.maintain_graph()
        if refresh:
            self._schedule_refresh()

    def _schedule_refresh(self):
        with self._refresh_guard:
            if self._refresh_thread is not None and self._refresh_thread.is_alive():
                return
            self._refresh_thread = threading.Thread(
                target=self._refresh_graph, name="hnsw-refresh", daemon=True
            )
            self._refresh_thread.start()

    def _refresh_graph(self):
        """Rebuild the HNSW graph off-lock until churn is back under the limit"""
        while True:
            with self._lock.write():
                table = self._table
                if not table.maintain_graph():
                    return
                vectors, graph_ids = table.snapshot()

            logger.info("Refreshing HNSW graph over %d vectors", len(graph_ids))
            try:
                graph = build_hnsw(vectors, table.hnsw_m, table.ef_construction, table.ef_search)
            except Exception as e:  # noqa: BLE001
                logger.error("HNSW graph refresh failed: %s", e)
                with self._lock.write():
                    table.changes = None
                return

            with self._lock.write():
                if self._table is not table or table.changes is None:
                    # Replaced by rebuild() or dropped below threshold meanwhile
                    logger.debug("Discarding HNSW graph built for a superseded table")
                    return
                table.install_graph(graph, graph_ids)

    def wait_for_refresh(self, timeout: Optional[float] = None) -> bool:
        """Block until a running graph refresh finishes; False on timeout"""
        with self._refresh_guard:
            thread = self._refresh_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def query(self, vector, k: int) -> List[Tuple[int, float]]:
        """
        Find the k entries closest to vector.

        Args:
            vector: Query vector of the index dimension
            k: Number of results; 0 returns an empty list

        Returns:
            (image_id, cosine distance) pairs, ascending by distance then id

        Raises:
            EmptyIndexError: the index has no entries and k > 0
        """
        self._check_k(k)
        if k == 0:
            return []
        prepared = self._prepare(vector)
        with self._lock.read():
            if self._table.size == 0:
                raise EmptyIndexError("Vector index is empty")
            return self._table.search(prepared, k, None,
                                      self.candidate_multiplier, self.max_candidates)

    def query_similar_to(self, image_id: int, k: int) -> List[Tuple[int, float]]:
        """Like query, using image_id's stored vector and leaving image_id out"""
        self._check_k(k)
        image_id = int(image_id)
        with self._lock.read():
            pos = self._table.positions.get(image_id)
            if pos is None:
                raise NotFound(image_id)
            if k == 0:
                return []
            vector = self._table.vectors[pos].copy()
            return self._table.search(vector, k, image_id,
                                      self.candidate_multiplier, self.max_candidates)

    def rebuild(self, entries: Iterable[Tuple[int, np.ndarray]]) -> int:
        """
        Replace the whole index with entries.

        The replacement is built while queries keep reading the current
        index; mutations arriving meanwhile are journalled and replayed onto
        the new table before it is swapped in.

        Returns:
            Number of entries in the rebuilt index
        """
        with self._rebuild_lock:
            with self._lock.write():
                self._journal = []
            try:
                table = _VectorTable(**self._table_args)
                for image_id, vector in entries:
                    try:
                        table.insert(int(image_id), self._prepare(vector))
                    except ValidationError as e:
                        logger.warning("Skipping image %s during rebuild: %s", image_id, e)
                if table.size >= table.exact_threshold:
                    table.build_graph()

                with self._lock.write():
                    for op, image_id, vector in self._journal:
                        if op == 'insert':
                            table.insert(image_id, vector)
                        else:
                            table.remove(image_id)
                    refresh = table.maintain_graph()
                    self._table = table
            finally:
                with self._lock.write():
                    self._journal = None
        if refresh:
            self._schedule_refresh()

        logger.info("Vector index rebuilt with %d entries", len(self))
        return len(self)

    def ids(self) -> List[int]:
        with self._lock.read():
            return sorted(int(i) for i in self._table.ids[:self._table.size])

    @property
    def is_approximate(self) -> bool:
        with self._lock.read():
            return self._table.graph is not None

    def __len__(self) -> int:
        with self._lock.read():
            return self._table.size

    def __contains__(self, image_id) -> bool:
        with self._lock.read():
            return int(image_id) in self._table.positions
