"""
Cluster router: a DiskANN-inspired partitioned index.

Vectors are partitioned into clusters around normalized centroids. A small
HNSW graph over the centroids routes each query to a handful of clusters,
whose members are then scored exhaustively.

Example:
    >>> from tieredann import ClusterRouter
    >>>
    >>> router = ClusterRouter(num_clusters=64, seed=1)
    >>> router.build_index(
    ...     {"id": f"doc-{i}", "vector": v, "metadata": {"row": i}}
    ...     for i, v in enumerate(vectors)
    ... )
    >>> router.search(vectors[0], k=5)[0]["id"]
    'doc-0'
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np
import numpy.typing as npt

from tieredann.config import RouterConfig, get_default_router_config
from tieredann.errors import (
    BuildRequiredError,
    DuplicateIdError,
    EmptyVectorError,
    InvalidIdError,
    UnknownIdError,
)
from tieredann.hnsw.distance import normalize_vector
from tieredann.hnsw.index import HNSWIndex
from tieredann.hnsw.utils import to_vector
from tieredann.profiling import SearchMetrics, SearchProfiler
from tieredann.router.cache import LRUCache
from tieredann.router.clustering import (
    assign_to_centroids,
    bounding_radius,
    centroid_mean,
    kmeans_plus_plus,
    nearest_centroid,
    split_by_seeds,
)
from tieredann.router.quantizer import VectorQuantizer

logger = logging.getLogger(__name__)

Vector = npt.NDArray[np.float32]

# Adaptive probing never scans fewer clusters than this (when available)
MIN_ADAPTIVE_PROBES = 3


@dataclass
class Centroid:
    """A cluster's routing point."""

    id: int
    vector: Vector
    member_count: int = 0
    bounding_radius: float = 0.0


@dataclass
class VectorRecord:
    """An indexed vector. Exactly one of vector/codes is set."""

    id: str
    vector: Optional[Vector]
    cluster_id: int
    metadata: Optional[Dict[str, Any]] = None
    codes: Optional[npt.NDArray[np.uint8]] = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_id(item_id: Any) -> str:
    if not isinstance(item_id, str) or not item_id:
        raise InvalidIdError(
            f"Invalid ID {item_id!r}: must be a non-empty string",
            context={"id": item_id},
        )
    return item_id


class ClusterRouter:
    """
    Partitioned vector index with an HNSW routing layer.

    The router starts unbuilt; build_index() creates the partition and every
    other data operation requires it. Scores are cosine similarities (dot
    products of normalized vectors).
    """

    def __init__(self, config: Optional[RouterConfig] = None, **overrides: Any) -> None:
        """
        Initialize an unbuilt router.

        Args:
            config: RouterConfig to start from (defaults when None)
            **overrides: RouterConfig fields that take precedence over config

        Raises:
            ConfigurationInvalidError: If the resulting configuration is invalid
        """
        if config is None:
            config = get_default_router_config()
        self.config = replace(config, **overrides) if overrides else config

        self._rng = np.random.default_rng(self.config.seed)
        self._cache = LRUCache(self.config.cache_size)
        self._profiler = SearchProfiler()
        self._reset_state()

    def _reset_state(self) -> None:
        self._dimension: Optional[int] = None
        self._records: Dict[str, VectorRecord] = {}
        self._centroids: Dict[int, Centroid] = {}
        self._members: Dict[int, Set[str]] = {}
        self._routing: Optional[HNSWIndex] = None
        self._quantizer: Optional[VectorQuantizer] = None
        self._built = False
        self._cache.clear()
        self._profiler.reset()
        self.created_at = _utc_now()
        self.updated_at = self.created_at

    # Read-only views used by the serializer and for inspection

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    @property
    def centroids(self) -> Dict[int, Centroid]:
        return self._centroids

    @property
    def members(self) -> Dict[int, Set[str]]:
        return self._members

    @property
    def records(self) -> Dict[str, VectorRecord]:
        return self._records

    @property
    def routing_index(self) -> Optional[HNSWIndex]:
        return self._routing

    @property
    def quantizer(self) -> Optional[VectorQuantizer]:
        return self._quantizer

    def is_ready(self) -> bool:
        return self._built

    def _require_built(self, operation: str) -> None:
        if not self._built:
            raise BuildRequiredError(
                f"Index must be built before {operation}",
                context={"operation": operation},
            )

    def _touch(self) -> None:
        self.updated_at = _utc_now()

    def _new_routing_index(self) -> HNSWIndex:
        return HNSWIndex(
            M=self.config.hnsw_m,
            ef_construction=self.config.hnsw_ef_construction,
            metric="cosine",
            seed=self.config.seed,
        )

    def _make_record(
        self,
        item_id: str,
        vector: Vector,
        cluster_id: int,
        metadata: Optional[Dict[str, Any]],
        quantizer: Optional[VectorQuantizer],
    ) -> VectorRecord:
        if quantizer is not None:
            return VectorRecord(item_id, None, cluster_id, metadata, quantizer.compress(vector))
        return VectorRecord(item_id, vector, cluster_id, metadata)

    def _record_vector(self, record: VectorRecord) -> Vector:
        if record.codes is not None:
            return self._quantizer.decompress(record.codes)
        return record.vector

    def _member_vector(self, item_id: str) -> Vector:
        """Vector used for scoring, through the hot-vector cache."""
        vector = self._cache.get(item_id)
        if vector is None:
            vector = self._record_vector(self._records[item_id])
            self._cache.put(item_id, vector)
        return vector

    def _prepare(
        self,
        items: Iterable[Dict[str, Any]],
        dimension: Optional[int],
        allow_repeats: bool = False,
    ):
        """Validate ids and vectors of a whole batch; returns normalized triples.

        A repeated id raises DuplicateIdError unless allow_repeats is set.
        """
        prepared: List[Tuple[str, Vector, Optional[Dict[str, Any]]]] = []
        seen = set()

        for item in items:
            item_id = _check_id(item.get("id"))
            if item_id in seen and not allow_repeats:
                raise DuplicateIdError(
                    f"ID {item_id!r} appears more than once", context={"id": item_id}
                )
            seen.add(item_id)

            vector = to_vector(item.get("vector"), dimension, item_id)
            if dimension is None:
                dimension = len(vector)

            prepared.append(
                (item_id, normalize_vector(vector).astype(np.float32), item.get("metadata"))
            )

        return prepared, dimension

    # Build

    def build_index(self, vectors: Iterable[Dict[str, Any]]) -> None:
        """
        Partition a collection and build the routing graph.

        Replaces any previous state. Everything is built into fresh structures
        and swapped in at the end, so a failure leaves the router as it was.

        Args:
            vectors: Iterable of {"id": str, "vector": ..., "metadata": dict?}

        Raises:
            EmptyVectorError: If the collection is empty
            DimensionMismatchError: If vectors disagree on dimension
            InvalidIdError: If an id is not a non-empty string or repeats
        """
        start_time = time.time()
        prepared, dimension = self._prepare(vectors, None)
        if not prepared:
            raise EmptyVectorError("Cannot build index from empty vector list")

        matrix = np.vstack([vector for _, vector, _ in prepared])

        quantizer = None
        if self.config.enable_quantization:
            quantizer = VectorQuantizer()
            quantizer.calibrate(matrix)

        seeds = kmeans_plus_plus(matrix, min(self.config.num_clusters, len(prepared)), self._rng)
        labels = assign_to_centroids(matrix, matrix[seeds])

        centroids: Dict[int, Centroid] = {}
        members: Dict[int, Set[str]] = {}
        for cluster_id, seed_row in enumerate(seeds):
            rows = np.flatnonzero(labels == cluster_id)
            if len(rows):
                vector = centroid_mean(matrix[rows])
            else:
                vector = matrix[seed_row].copy()
            centroids[cluster_id] = Centroid(
                cluster_id, vector, len(rows), bounding_radius(vector, matrix[rows])
            )
            members[cluster_id] = {prepared[row][0] for row in rows}

        records = {
            item_id: self._make_record(item_id, vector, int(labels[row]), metadata, quantizer)
            for row, (item_id, vector, metadata) in enumerate(prepared)
        }

        routing = self._new_routing_index()
        routing.build_index((c.id, c.vector) for c in centroids.values())

        self._dimension = dimension
        self._records = records
        self._centroids = centroids
        self._members = members
        self._routing = routing
        self._quantizer = quantizer
        self._cache.clear()
        self._built = True
        self._touch()

        logger.info(
            "Built cluster index: %d vectors in %d clusters (dim=%d) in %.2fs",
            len(records), len(centroids), dimension, time.time() - start_time,
        )

    # Search

    def _select_clusters(self, query: Vector) -> List[int]:
        """Cluster ids to scan for a query, most promising first.

        Empty clusters keep their routing node but never take a probe slot.
        """
        empty = sum(1 for c in self._centroids if not self._members.get(c))
        filled_clusters = len(self._centroids) - empty
        if self.config.adaptive_probing:
            probe = min(2 * self.config.search_probe_count, filled_clusters)
        else:
            probe = min(self.config.search_probe_count, filled_clusters)
        if probe < 1:
            return []

        breadth = min(probe + empty, self._routing.active_count())
        hits = [
            hit for hit in self._routing.search(
                query, k=breadth, ef_search=max(self.config.hnsw_ef_search, breadth)
            )
            if self._members.get(hit["id"])
        ][:probe]
        cluster_ids = [hit["id"] for hit in hits]
        if not self.config.adaptive_probing or not hits:
            return cluster_ids

        cutoff = hits[0]["score"] * self.config.probe_threshold
        count = 1
        for hit in hits[1:]:
            if hit["score"] < cutoff:
                break
            count += 1

        count = max(count, min(MIN_ADAPTIVE_PROBES, len(hits)))
        return cluster_ids[:count]

    def search(self, query: Any, k: int = 10) -> List[Dict[str, Any]]:
        """
        Find the k most similar vectors.

        Args:
            query: Query vector
            k: Number of results (>= 1)

        Returns:
            [{"id": str, "score": float, "metadata": dict | None}, ...] best first

        Raises:
            BuildRequiredError: If build_index() has not run
            ValueError: If k < 1
            EmptyVectorError, DimensionMismatchError: For a bad query
        """
        self._require_built("search")
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")

        start = time.perf_counter()
        query_vector = normalize_vector(to_vector(query, self._dimension)).astype(np.float32)
        cluster_ids = self._select_clusters(query_vector)

        metrics = SearchMetrics(nodes_visited=len(cluster_ids), layers_traversed=1)
        scored: List[Tuple[float, str]] = []
        for cluster_id in cluster_ids:
            member_ids = sorted(self._members.get(cluster_id, ()))
            if not member_ids:
                continue
            block = np.vstack([self._member_vector(item_id) for item_id in member_ids])
            scores = block @ query_vector
            metrics.candidates_evaluated += len(member_ids)
            scored.extend(zip(scores.tolist(), member_ids))

        scored.sort(key=lambda x: (-x[0], x[1]))

        metrics.duration_ms = (time.perf_counter() - start) * 1000.0
        self._profiler.record(metrics)

        return [
            {"id": item_id, "score": float(score), "metadata": self._records[item_id].metadata}
            for score, item_id in scored[:k]
        ]

    # Mutation

    def _refresh_centroid(self, cluster_id: int) -> None:
        """Recompute a centroid over its current members and move its routing node."""
        centroid = self._centroids[cluster_id]
        member_ids = self._members.get(cluster_id, set())
        centroid.member_count = len(member_ids)

        if not member_ids:
            centroid.bounding_radius = 0.0
            return

        block = np.vstack([self._record_vector(self._records[m]) for m in member_ids])
        centroid.vector = centroid_mean(block)
        centroid.bounding_radius = bounding_radius(centroid.vector, block)
        self._routing.update_vector(cluster_id, centroid.vector)

    def _detach(self, item_id: str, cluster_id: int) -> Set[int]:
        """
        Drop an id from its membership set; returns the existing clusters it left.

        A record loaded from an inconsistent document may point at a cluster
        that has no membership set, or sit in another cluster's set. In that
        case every set holding the id is cleaned.
        """
        members = self._members.get(cluster_id)
        if members is not None and item_id in members:
            members.discard(item_id)
            left = {cluster_id}
        else:
            left = set()
            for other_id, other_members in self._members.items():
                if item_id in other_members:
                    other_members.discard(item_id)
                    left.add(other_id)
        return {c for c in left if c in self._centroids}

    def _nearest_cluster(self, vector: Vector) -> int:
        cluster_ids = list(self._centroids)
        matrix = np.vstack([self._centroids[c].vector for c in cluster_ids])
        return cluster_ids[nearest_centroid(vector, matrix)]

    def upsert(self, item_id: str, vector: Any, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Insert a vector or replace an existing one.

        The vector joins its nearest cluster; the previous and the new cluster
        centroids are recomputed, and the cluster is split if it outgrows
        max_cluster_size.

        Raises:
            BuildRequiredError: If build_index() has not run
            InvalidIdError: If the id is not a non-empty string
            EmptyVectorError, DimensionMismatchError: For a bad vector
        """
        self._require_built("upsert")
        item_id = _check_id(item_id)
        normalized = normalize_vector(to_vector(vector, self._dimension, item_id)).astype(np.float32)

        previous = self._records.get(item_id)
        left: Set[int] = set()
        if previous is not None:
            left = self._detach(item_id, previous.cluster_id)

        cluster_id = self._nearest_cluster(normalized)
        record = self._make_record(item_id, normalized, cluster_id, metadata, self._quantizer)
        self._records[item_id] = record
        self._members.setdefault(cluster_id, set()).add(item_id)

        for old_cluster_id in sorted(left - {cluster_id}):
            self._refresh_centroid(old_cluster_id)
        self._refresh_centroid(cluster_id)

        self._cache.put(item_id, self._record_vector(record))
        self._touch()

        if len(self._members[cluster_id]) > self.config.max_cluster_size:
            self.split_cluster(cluster_id)

    def upsert_batch(
        self,
        items: Iterable[Dict[str, Any]],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> int:
        """
        Upsert many vectors in chunks of batch_size.

        The whole batch is validated first. An id may repeat; later items
        overwrite earlier ones as successive upsert() calls would.
        on_progress(done, total) runs after every chunk; raising from it stops
        the batch there.

        Returns:
            Number of vectors upserted
        """
        self._require_built("upsert")
        items = list(items)
        self._prepare(items, self._dimension, allow_repeats=True)

        total = len(items)
        batch_size = self.config.batch_size
        for start in range(0, total, batch_size):
            for item in items[start:start + batch_size]:
                self.upsert(item["id"], item["vector"], item.get("metadata"))
            if on_progress is not None:
                on_progress(min(start + batch_size, total), total)

        return total

    def _next_cluster_id(self) -> int:
        used = list(self._centroids) + list(self._routing.graph.nodes)
        return max(used) + 1 if used else 0

    def split_cluster(self, cluster_id: int) -> Optional[Tuple[int, int]]:
        """
        Split a cluster in two around two random members.

        Every member goes to the nearer seed (euclidean) in a single pass. The
        old cluster is replaced by two clusters with fresh ids, and its routing
        node hands its edges to the two new nodes before being tombstoned.

        Returns:
            The new (id_a, id_b) pair, or None when the cluster has fewer
            than two members

        Raises:
            BuildRequiredError: If build_index() has not run
            UnknownIdError: If the cluster does not exist
        """
        self._require_built("split_cluster")
        if cluster_id not in self._centroids:
            raise UnknownIdError(
                f"Cluster {cluster_id} not found", context={"cluster_id": cluster_id}
            )

        member_ids = sorted(self._members.get(cluster_id, ()))
        if len(member_ids) < 2:
            return None

        block = np.vstack([self._record_vector(self._records[m]) for m in member_ids])
        i, j = self._rng.choice(len(member_ids), size=2, replace=False)
        goes_to_a = split_by_seeds(block, block[i], block[j])

        id_a = self._next_cluster_id()
        id_b = id_a + 1
        self._members[id_a] = {m for m, to_a in zip(member_ids, goes_to_a) if to_a}
        self._members[id_b] = {m for m, to_a in zip(member_ids, goes_to_a) if not to_a}

        for new_id, seed_row in ((id_a, i), (id_b, j)):
            self._centroids[new_id] = Centroid(new_id, block[seed_row].copy())
            for member_id in self._members[new_id]:
                self._records[member_id].cluster_id = new_id

        del self._centroids[cluster_id]
        del self._members[cluster_id]

        for new_id in (id_a, id_b):
            self._routing.insert(new_id, self._centroids[new_id].vector)
            self._refresh_centroid(new_id)
        self._routing.retire_point(cluster_id, (id_a, id_b))
        self._touch()

        logger.debug(
            "Split cluster %d (%d members) into %d (%d) and %d (%d)",
            cluster_id, len(member_ids),
            id_a, len(self._members[id_a]), id_b, len(self._members[id_b]),
        )
        return id_a, id_b

    def remove(self, item_id: str) -> bool:
        """
        Remove a vector.

        Returns:
            False if the id is not indexed

        Raises:
            BuildRequiredError: If build_index() has not run
        """
        self._require_built("remove")
        record = self._records.pop(item_id, None)
        if record is None:
            return False

        left = self._detach(item_id, record.cluster_id)
        self._cache.remove(item_id)
        for cluster_id in sorted(left):
            self._refresh_centroid(cluster_id)
        self._touch()
        return True

    def clear(self) -> None:
        """Drop everything and return to the unbuilt state."""
        self._reset_state()

    def compact_routing_graph(self) -> int:
        """Prune tombstoned centroids from the routing graph. Returns how many."""
        self._require_built("compact_routing_graph")
        return self._routing.prune_deleted_nodes()

    # Introspection

    def get(self, item_id: str) -> Optional[VectorRecord]:
        return self._records.get(item_id)

    def check_partition(self) -> bool:
        """True when every record is in exactly the cluster it points at."""
        seen: Set[str] = set()
        for cluster_id, member_ids in self._members.items():
            if cluster_id not in self._centroids or seen & member_ids:
                return False
            for member_id in member_ids:
                record = self._records.get(member_id)
                if record is None or record.cluster_id != cluster_id:
                    return False
            seen |= member_ids

        return seen == set(self._records)

    def _estimate_memory_bytes(self) -> int:
        if not self._built:
            return 0

        dim = self._dimension
        vector_bytes = dim if self._quantizer is not None else dim * 4
        routing_nodes = self._routing.graph.nodes.values()
        slots = sum(len(node.neighbors) for node in routing_nodes) * self._routing.M

        return (
            len(self._records) * vector_bytes
            + len(self._centroids) * dim * 4
            + len(self._routing) * dim * 4
            + slots * 4
        )

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the router.

        Returns:
            Dictionary with totals, cluster size distribution, cache and search
            statistics and a memory estimate in bytes
        """
        sizes = {cluster_id: len(m) for cluster_id, m in self._members.items()}
        size_values = list(sizes.values())
        search = self._profiler.get_summary()

        return {
            "built": self._built,
            "total_vectors": len(self._records),
            "total_clusters": len(self._centroids),
            "dimension": self._dimension,
            "avg_cluster_size": float(np.mean(size_values)) if size_values else 0.0,
            "min_cluster_size": min(size_values) if size_values else 0,
            "max_cluster_size": max(size_values) if size_values else 0,
            "cluster_sizes": sizes,
            "quantized": self._quantizer is not None,
            "cache": self._cache.get_stats(),
            "cache_hit_rate": self._cache.hit_rate(),
            "total_searches": int(search["total_searches"]),
            "avg_search_time_ms": search["avg_search_time_ms"],
            "memory_usage_bytes": self._estimate_memory_bytes(),
        }

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._records

    def __repr__(self) -> str:
        return (
            f"ClusterRouter(vectors={len(self._records)}, "
            f"clusters={len(self._centroids)}, built={self._built})"
        )

    @classmethod
    def _restore(
        cls,
        config: RouterConfig,
        dimension: int,
        records: Dict[str, VectorRecord],
        centroids: Dict[int, Centroid],
        members: Dict[int, Set[str]],
        routing: HNSWIndex,
        quantizer: Optional[VectorQuantizer],
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> "ClusterRouter":
        """Assemble a built router from deserialized parts."""
        router = cls(config)
        router._dimension = dimension
        router._records = records
        router._centroids = centroids
        router._members = members
        router._routing = routing
        router._quantizer = quantizer
        router._built = True
        if created_at is not None:
            router.created_at = created_at
        if updated_at is not None:
            router.updated_at = updated_at
        return router

    # Serialization (see tieredann.serialization for the document layout)

    def to_json(self) -> Dict[str, Any]:
        from tieredann.serialization import serialize_router

        self._require_built("serialization")
        return serialize_router(self)

    @classmethod
    def from_json(cls, document: Dict[str, Any]) -> "ClusterRouter":
        from tieredann.serialization import deserialize_router

        return deserialize_router(document)

    def stringify(self, indent: Optional[int] = None) -> str:
        from tieredann.serialization import stringify

        return stringify(self.to_json(), indent=indent)

    @classmethod
    def parse(cls, text: str) -> "ClusterRouter":
        from tieredann.serialization import parse

        return cls.from_json(parse(text))

    def to_bytes(self, compress: bool = False) -> bytes:
        from tieredann.serialization import to_bytes

        return to_bytes(self.to_json(), compress=compress)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ClusterRouter":
        from tieredann.serialization import from_bytes

        return cls.from_json(from_bytes(data))

    def save(self, filepath: str, compress: bool = False) -> None:
        with open(filepath, "wb") as f:
            f.write(self.to_bytes(compress=compress))

    @classmethod
    def load(cls, filepath: str) -> "ClusterRouter":
        with open(filepath, "rb") as f:
            return cls.from_bytes(f.read())
