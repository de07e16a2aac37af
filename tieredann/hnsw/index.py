"""
Public HNSW graph index.

HNSWIndex wires together the graph container, the builder and the searcher,
and is the only place caller input is validated. Every check runs before the
graph is touched, so a rejected call leaves the index unchanged.

Example:
    >>> import numpy as np
    >>> from tieredann import HNSWIndex
    >>>
    >>> index = HNSWIndex(M=16, ef_construction=200, seed=7)
    >>> vectors = np.random.default_rng(0).random((1000, 64), dtype=np.float32)
    >>> index.build_index(enumerate(vectors))
    >>>
    >>> index.search(vectors[3], k=5)[0]["id"]
    3
"""

import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import numpy.typing as npt

from tieredann.config import HNSWConfig, get_default_hnsw_config
from tieredann.errors import DuplicateIdError, InvalidIdError, UnknownIdError
from tieredann.graph_validator import GraphValidator
from tieredann.hnsw.builder import HNSWBuilder
from tieredann.hnsw.graph import HNSWGraph
from tieredann.hnsw.searcher import HNSWSearcher
from tieredann.hnsw.utils import HeapPool, select_level, to_vector
from tieredann.profiling import SearchMetrics, SearchProfiler

logger = logging.getLogger(__name__)

Vector = npt.NDArray[np.float32]

# Progress callbacks fire every this many inserted points
PROGRESS_INTERVAL = 100


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_pairs(points: Any) -> List[Tuple[Any, Any]]:
    """Accept a mapping, (id, vector) pairs, or {"id", "vector"} dicts."""
    if isinstance(points, Mapping):
        return list(points.items())

    pairs = []
    for point in points:
        if isinstance(point, Mapping):
            pairs.append((point.get("id"), point.get("vector")))
        else:
            point_id, vector = point
            pairs.append((point_id, vector))
    return pairs


class HNSWIndex:
    """
    Hierarchical navigable small-world graph over integer ids.

    Deletion is lazy: delete_point() tombstones a node, which stops it from
    being returned or traversed, and prune_deleted_nodes() removes tombstones
    for good.
    """

    def __init__(
        self,
        M: Optional[int] = None,
        ef_construction: Optional[int] = None,
        metric: Optional[str] = None,
        level_mult: Optional[float] = None,
        seed: Optional[int] = None,
        config: Optional[HNSWConfig] = None,
    ) -> None:
        """
        Initialize an empty index.

        Args:
            M: Neighbor slots per node and layer (default 16)
            ef_construction: Candidate breadth while inserting (default 200)
            metric: "cosine" (default) or "euclidean"
            level_mult: Level generation multiplier (default 1/ln(M))
            seed: Seed for level sampling
            config: HNSWConfig to start from; explicit arguments take precedence

        Raises:
            ConfigurationInvalidError: If the resulting parameters are invalid
        """
        if config is None:
            config = get_default_hnsw_config()

        overrides = {
            name: value
            for name, value in (
                ("M", M),
                ("ef_construction", ef_construction),
                ("metric", metric),
                ("level_mult", level_mult),
                ("seed", seed),
            )
            if value is not None
        }
        # replace() re-runs __post_init__ validation
        self.config = replace(config, **overrides) if overrides else config

        self._graph = HNSWGraph(
            M=self.config.M,
            ef_construction=self.config.ef_construction,
            metric=self.config.metric,
            level_mult=self.config.level_mult,
        )
        self._pool = HeapPool()
        self._builder = HNSWBuilder(self._graph, pool=self._pool)
        self._searcher = HNSWSearcher(
            self._graph, default_ef_search=self.config.default_ef_search, pool=self._pool
        )
        self._validator = GraphValidator(self._graph)
        self._rng = np.random.default_rng(self.config.seed)

        self._profiler = SearchProfiler()
        self._profiling_enabled = False
        self._build_progress: Optional[Dict[str, float]] = None

        self.created_at = _utc_now()
        self.updated_at = self.created_at

    # Read-only views of the graph parameters

    @property
    def graph(self) -> HNSWGraph:
        return self._graph

    @property
    def M(self) -> int:
        return self._graph.M

    @property
    def ef_construction(self) -> int:
        return self._graph.ef_construction

    @property
    def metric(self) -> str:
        return self._graph.metric

    @property
    def dimension(self) -> Optional[int]:
        return self._graph.dimension

    @property
    def level_max(self) -> int:
        return self._graph.level_max

    @property
    def entry_point_id(self) -> int:
        return self._graph.entry_point_id

    # Validation helpers

    def _check_id(self, node_id: Any) -> int:
        if (
            isinstance(node_id, bool)
            or not isinstance(node_id, (int, np.integer))
            or node_id < 0
        ):
            raise InvalidIdError(
                f"Invalid ID {node_id!r}: must be a non-negative integer",
                context={"id": node_id},
            )
        return int(node_id)

    def _check_new_point(self, node_id: Any, vector: Any) -> Tuple[int, Vector]:
        node_id = self._check_id(node_id)
        if node_id in self._graph.nodes:
            raise DuplicateIdError(
                f"Point with ID {node_id} already exists", context={"id": node_id}
            )
        return node_id, to_vector(vector, self._graph.dimension, node_id)

    def _touch(self) -> None:
        self.updated_at = _utc_now()

    def _insert_validated(self, node_id: int, vector: Vector) -> None:
        # The first point of an empty node map always stays at layer 0
        if not self._graph.nodes:
            level = 0
        else:
            level = select_level(self._graph.probs, self._rng)
        self._builder.insert(node_id, vector, level)

    # Mutation

    def insert(self, node_id: int, vector: Any) -> None:
        """
        Insert one point.

        Args:
            node_id: Non-negative integer id, unique within the index
            vector: Sequence or array; the first insert fixes the dimension

        Raises:
            InvalidIdError: If the id is not a non-negative integer
            DuplicateIdError: If the id is already present (tombstoned included)
            EmptyVectorError: If the vector has no components
            DimensionMismatchError: If the vector length differs from the index
        """
        node_id, array = self._check_new_point(node_id, vector)
        self._insert_validated(node_id, array)
        self._touch()

    add_point = insert

    def delete_point(self, node_id: int) -> None:
        """
        Tombstone a point.

        Raises:
            UnknownIdError: If the id was never inserted (or was pruned)
        """
        if node_id not in self._graph.nodes:
            raise UnknownIdError(
                f"Point with ID {node_id} not found", context={"id": node_id}
            )
        self._graph.mark_deleted(node_id)
        self._touch()

    def retire_point(self, node_id: int, replacement_ids: Iterable[int]) -> None:
        """
        Tombstone a point after handing its edges to already inserted replacements.

        Searches do not traverse tombstones; the handover keeps nodes reachable
        whose only in-edges came from the retired point.

        Raises:
            UnknownIdError: If node_id or any replacement is not a live point
        """
        replacement_ids = list(replacement_ids)
        for point_id in [node_id] + replacement_ids:
            if not self._graph.is_live(point_id):
                raise UnknownIdError(
                    f"Point with ID {point_id} not found", context={"id": point_id}
                )
        self._graph.mark_deleted(node_id)
        self._builder.relink(node_id, replacement_ids)
        self._touch()

    def prune_deleted_nodes(self) -> int:
        """Physically remove tombstoned points. Returns how many were removed."""
        removed = self._graph.prune_deleted_nodes()
        if removed:
            logger.debug("Pruned %d deleted nodes (%d remain)", removed, self._graph.size())
            self._touch()
        return removed

    def clear(self) -> None:
        """Remove every point; the next insert fixes a new dimension."""
        self._graph.clear()
        self._touch()

    def update_vector(self, node_id: int, vector: Any) -> None:
        """
        Replace a point's vector in place without relinking it.

        The neighbor slots keep pointing where they did, so this suits small
        drifts (e.g. a centroid moving after a membership change).
        """
        node = self._graph.get_node(node_id)
        if node is None:
            raise UnknownIdError(
                f"Point with ID {node_id} not found", context={"id": node_id}
            )
        node.set_vector(to_vector(vector, self._graph.dimension, node_id))
        self._touch()

    def build_index(
        self,
        points: Iterable[Any],
        on_progress: Optional[Callable[[float, float], None]] = None,
    ) -> None:
        """
        Clear the index and insert every point.

        Args:
            points: Mapping id -> vector, (id, vector) pairs or {"id", "vector"} dicts
            on_progress: Called as on_progress(fraction, eta_seconds) every 100
                points and once at completion

        The whole input is validated before the index is cleared.
        """
        validated = self._validate_batch(_as_pairs(points), check_index=False)
        self._graph.clear()

        total = len(validated)
        start_time = time.time()
        self._build_progress = {
            "total": total,
            "current": 0,
            "start_time": start_time,
            "estimated_time_remaining": 0.0,
        }

        try:
            for i, (node_id, vector) in enumerate(validated, start=1):
                self._insert_validated(node_id, vector)

                if i % PROGRESS_INTERVAL == 0 or i == total:
                    elapsed = time.time() - start_time
                    eta = elapsed / i * (total - i)
                    self._build_progress["current"] = i
                    self._build_progress["estimated_time_remaining"] = eta
                    if on_progress is not None:
                        on_progress(i / total, eta)
        finally:
            self._build_progress = None
            self._touch()

        logger.info(
            "Built graph index: %d points, level_max=%d in %.2fs",
            total, self._graph.level_max, time.time() - start_time,
        )

    def get_build_progress(self) -> Optional[Dict[str, float]]:
        """Snapshot of the running build, or None when no build is running."""
        if self._build_progress is None:
            return None
        return dict(self._build_progress)

    def _validate_batch(
        self, pairs: List[Tuple[Any, Any]], check_index: bool = True
    ) -> List[Tuple[int, Vector]]:
        """Validate ids and vectors of a whole batch without touching the graph."""
        dimension = self._graph.dimension if check_index else None
        seen = set()
        validated = []

        for raw_id, raw_vector in pairs:
            node_id = self._check_id(raw_id)
            if node_id in seen or (check_index and node_id in self._graph.nodes):
                raise DuplicateIdError(
                    f"Point with ID {node_id} already exists", context={"id": node_id}
                )
            seen.add(node_id)

            vector = to_vector(raw_vector, dimension, node_id)
            if dimension is None:
                dimension = len(vector)
            validated.append((node_id, vector))

        return validated

    def add_points_batch(
        self,
        points: Iterable[Any],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> int:
        """
        Insert many points; a bad batch leaves the index untouched.

        Args:
            points: Same shapes as build_index()
            on_progress: Called as on_progress(done, total) every 100 points
                and once at completion

        Returns:
            Number of points inserted
        """
        validated = self._validate_batch(_as_pairs(points))
        total = len(validated)

        for i, (node_id, vector) in enumerate(validated, start=1):
            self._insert_validated(node_id, vector)
            if on_progress is not None and (i % PROGRESS_INTERVAL == 0 or i == total):
                on_progress(i, total)

        if total:
            self._touch()
        return total

    def delete_points_batch(self, node_ids: Iterable[int]) -> int:
        """Tombstone the ids that exist and are live; others are ignored."""
        deleted = 0
        for node_id in node_ids:
            if self._graph.is_live(node_id):
                self._graph.mark_deleted(node_id)
                deleted += 1

        if deleted:
            self._touch()
        return deleted

    # Search

    def search(
        self, query: Any, k: int = 10, ef_search: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Find the k most similar live points.

        Args:
            query: Query vector
            k: Number of results (>= 1)
            ef_search: Layer-0 breadth; widening is capped at max(k, ef_search)
                when given, at max(k, ef_construction) otherwise

        Returns:
            [{"id": int, "score": float}, ...] most similar first

        Raises:
            ValueError: If k < 1 or ef_search < 1
            EmptyVectorError: If the query has no components
            DimensionMismatchError: If the query length differs from the index
        """
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")
        if ef_search is not None and ef_search < 1:
            raise ValueError(f"ef_search must be >= 1, got {ef_search}")

        array = to_vector(query, self._graph.dimension)

        metrics = SearchMetrics() if self._profiling_enabled else None
        start = time.perf_counter()
        results = self._searcher.search(array, k, ef_search=ef_search, metrics=metrics)

        if metrics is not None:
            metrics.duration_ms = (time.perf_counter() - start) * 1000.0
            self._profiler.record(metrics)

        return [{"id": node_id, "score": float(score)} for node_id, score in results]

    search_knn = search

    def search_batch(
        self, queries: Iterable[Any], k: int = 10, ef_search: Optional[int] = None
    ) -> List[List[Dict[str, Any]]]:
        """Run search() for each query, in order."""
        return [self.search(query, k, ef_search) for query in queries]

    def get_optimal_ef_search(self, k: int = 10) -> int:
        """Suggested ef_search for the current number of live points."""
        n = self._graph.active_count()
        if n < 1000:
            base = 32
        elif n < 10000:
            base = 64
        elif n < 100000:
            base = 128
        else:
            base = 256
        return max(k, base)

    # Introspection

    def compute_graph_stats(self) -> Dict[str, Any]:
        return self._validator.compute_graph_stats()

    def suggest_optimal_m(self) -> int:
        return self._validator.suggest_optimal_m()

    def should_reindex(self) -> bool:
        return self._validator.should_reindex()

    def validate(self) -> bool:
        """True when the graph has no dangling slots and a consistent entry point."""
        return self._validator.is_valid()

    def enable_profiling(self, enabled: bool = True) -> None:
        """Start (or stop) recording per-search metrics."""
        self._profiling_enabled = enabled
        if not enabled:
            self._profiler.reset()

    def get_search_metrics(self) -> Dict[str, float]:
        """Summary of profiled searches (all zeros when profiling is off)."""
        return self._profiler.get_summary()

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the index.

        Returns:
            Dictionary with sizes, parameters and (when enabled) search profiling
        """
        graph = self._graph
        active = graph.active_count()
        stats = {
            "total_nodes": graph.size(),
            "active_nodes": active,
            "deleted_nodes": graph.size() - active,
            "dimension": graph.dimension,
            "M": graph.M,
            "ef_construction": graph.ef_construction,
            "metric": graph.metric,
            "level_max": graph.level_max,
            "entry_point_id": graph.entry_point_id,
            "profiling_enabled": self._profiling_enabled,
        }
        if self._profiling_enabled:
            stats["search"] = self._profiler.get_summary()
        return stats

    def active_count(self) -> int:
        return self._graph.active_count()

    def contains(self, node_id: int) -> bool:
        """True for live points (tombstoned ids are not contained)."""
        return self._graph.is_live(node_id)

    def __contains__(self, node_id: int) -> bool:
        return self.contains(node_id)

    def __len__(self) -> int:
        return self._graph.size()

    def __repr__(self) -> str:
        return (
            f"HNSWIndex(nodes={self._graph.size()}, M={self.M}, "
            f"ef_construction={self.ef_construction}, metric={self.metric})"
        )

    # Serialization (see tieredann.serialization for the document layout)

    def to_json(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible document."""
        from tieredann.serialization import serialize_graph

        return serialize_graph(self)

    @classmethod
    def from_json(cls, document: Dict[str, Any]) -> "HNSWIndex":
        """Rebuild an index from a document (legacy layouts are migrated)."""
        from tieredann.serialization import deserialize_graph

        return deserialize_graph(document)

    def stringify(self, indent: Optional[int] = None) -> str:
        from tieredann.serialization import stringify

        return stringify(self.to_json(), indent=indent)

    @classmethod
    def parse(cls, text: str) -> "HNSWIndex":
        from tieredann.serialization import parse

        return cls.from_json(parse(text))

    def to_bytes(self, compress: bool = False) -> bytes:
        from tieredann.serialization import to_bytes

        return to_bytes(self.to_json(), compress=compress)

    @classmethod
    def from_bytes(cls, data: bytes) -> "HNSWIndex":
        from tieredann.serialization import from_bytes

        return cls.from_json(from_bytes(data))

    def save(self, filepath: str, compress: bool = False) -> None:
        """
        Save the index to disk.

        Args:
            filepath: Destination path (e.g. "index.json" or "index.json.gz")
            compress: Gzip the JSON payload
        """
        with open(filepath, "wb") as f:
            f.write(self.to_bytes(compress=compress))

    @classmethod
    def load(cls, filepath: str) -> "HNSWIndex":
        """Load an index saved with save(); gzip is detected automatically."""
        with open(filepath, "rb") as f:
            return cls.from_bytes(f.read())
