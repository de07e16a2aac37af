"""
HNSW search algorithm.

This module handles querying the HNSW graph to find approximate nearest neighbors.
The search algorithm:
1. Picks a few mutually dissimilar entry points on large graphs (multi-branch)
2. Descends through the upper layers with a beam as wide as the entry set
3. At layer 0, runs a bounded search whose breadth is widened adaptively
4. Returns the k most similar live nodes

search_layer() is shared with the builder, which uses it to gather insertion
candidates.
"""

import heapq
import logging
from typing import List, Optional, Tuple

import numpy as np
import numpy.typing as npt

from tieredann.hnsw.graph import HNSWGraph, EMPTY_SLOT
from tieredann.hnsw.distance import vector_magnitude
from tieredann.hnsw.utils import HeapPool, recover_entry_point
from tieredann.profiling import SearchMetrics

logger = logging.getLogger(__name__)

Vector = npt.NDArray[np.float32]

# Multi-branch entry selection
MAX_BRANCHES = 3
DIVERSITY_SIMILARITY_THRESHOLD = 0.9

# Layer-0 breadth when the caller gives no ef_search
DEFAULT_EF_SEARCH = 32

# Layer-0 attempts (initial breadth + one widening)
MAX_SEARCH_ATTEMPTS = 2

_shared_pool = HeapPool()


def search_layer(
    graph: HNSWGraph,
    query: Vector,
    entry_points: List[int],
    layer: int,
    num_to_keep: int,
    query_magnitude: Optional[float] = None,
    metrics: Optional[SearchMetrics] = None,
    pool: Optional[HeapPool] = None,
) -> Tuple[List[Tuple[float, int]], bool]:
    """
    Best-first search for the most similar nodes at a single layer.

    Tombstoned nodes are never scored or expanded, so stale neighbor slots are
    harmless here.

    Args:
        graph: Graph to search
        query: Query vector
        entry_points: Starting node IDs
        layer: Which layer's adjacency to follow
        num_to_keep: Size of the bounded result set
        query_magnitude: Precomputed query norm (cosine only)
        metrics: Counters to update, if profiling
        pool: Heap pool to borrow the worklist/result heaps from

    Returns:
        ([(similarity, node_id), ...] most similar first, terminated_early)
    """
    pool = pool if pool is not None else _shared_pool
    nodes = graph.nodes

    visited = set()
    worklist = pool.acquire("worklist")  # max-heap via (-similarity, id)
    results = pool.acquire("results")  # min-heap of (similarity, id); [0] is the worst kept
    terminated_early = False

    try:
        for node_id in entry_points:
            node = nodes.get(node_id)
            if node is None or node.deleted or node_id in visited:
                continue

            visited.add(node_id)
            sim = graph.query_similarity(query, node, query_magnitude)
            if metrics is not None:
                metrics.nodes_visited += 1
                metrics.candidates_evaluated += 1

            heapq.heappush(worklist, (-sim, node_id))
            if len(results) < num_to_keep:
                heapq.heappush(results, (sim, node_id))
            elif sim > results[0][0]:
                heapq.heapreplace(results, (sim, node_id))

        while worklist:
            neg_sim, current_id = heapq.heappop(worklist)

            # Best remaining candidate is worse than everything kept
            if len(results) >= num_to_keep and -neg_sim < results[0][0]:
                terminated_early = True
                if metrics is not None:
                    metrics.early_terminations += 1
                break

            current = nodes.get(current_id)
            if current is None or current.deleted or layer > current.level:
                continue

            for neighbor_id in current.neighbors[layer]:
                if neighbor_id == EMPTY_SLOT or neighbor_id in visited:
                    continue

                neighbor = nodes.get(neighbor_id)
                if neighbor is None or neighbor.deleted:
                    continue

                visited.add(neighbor_id)
                sim = graph.query_similarity(query, neighbor, query_magnitude)
                if metrics is not None:
                    metrics.nodes_visited += 1
                    metrics.candidates_evaluated += 1

                if len(results) < num_to_keep:
                    heapq.heappush(results, (sim, neighbor_id))
                elif sim > results[0][0]:
                    heapq.heapreplace(results, (sim, neighbor_id))
                heapq.heappush(worklist, (-sim, neighbor_id))

        ranked = sorted(results, key=lambda x: (-x[0], x[1]))
    finally:
        pool.release(worklist, "worklist")
        pool.release(results, "results")

    return ranked, terminated_early


class HNSWSearcher:
    """
    Handles k-NN queries on the HNSW graph.

    The searcher never mutates the graph, so concurrent searches are safe as
    long as nothing inserts or deletes at the same time.
    """

    def __init__(
        self,
        graph: HNSWGraph,
        default_ef_search: int = DEFAULT_EF_SEARCH,
        pool: Optional[HeapPool] = None,
    ) -> None:
        """
        Initialize searcher with a graph.

        Args:
            graph: The HNSWGraph to search in
            default_ef_search: Starting layer-0 breadth when no ef_search is given
            pool: Heap pool for layer searches (a private one by default)
        """
        self.graph = graph
        self.default_ef_search = default_ef_search
        self.pool = pool if pool is not None else HeapPool()

    def _layer(self, query, entry_points, layer, num_to_keep, query_magnitude, metrics):
        return search_layer(
            self.graph, query, entry_points, layer, num_to_keep,
            query_magnitude=query_magnitude, metrics=metrics, pool=self.pool,
        )

    def _resolve_entry_point(self) -> int:
        """The stored entry point if usable, else a recovered one (not persisted)."""
        entry_id = self.graph.entry_point_id
        if self.graph.is_live(entry_id):
            return entry_id

        recovered, _ = recover_entry_point(self.graph.nodes)
        if recovered != -1:
            logger.warning(
                "Entry point %s is unusable; searching from recovered node %s",
                entry_id, recovered,
            )
        return recovered

    def _diverse_entry_points(
        self,
        query: Vector,
        entry_id: int,
        top_level: int,
        query_magnitude: Optional[float],
        metrics: Optional[SearchMetrics],
    ) -> List[int]:
        """
        Probe the top layer and keep up to MAX_BRANCHES dissimilar entry points.

        Starting the descent from several far-apart roots lowers the chance of
        the whole search converging into one local optimum.
        """
        graph = self.graph
        probe, _ = self._layer(query, [entry_id], top_level, graph.M, query_magnitude, metrics)

        candidate_pool = [entry_id]
        for _, node_id in probe:
            if len(candidate_pool) >= graph.M:
                break
            candidate_pool.append(node_id)

        diverse = [entry_id]
        for candidate_id in candidate_pool:
            if len(diverse) >= MAX_BRANCHES:
                break
            if candidate_id in diverse:
                continue

            candidate = graph.get_node(candidate_id)
            if candidate is None or candidate.deleted:
                continue

            is_diverse = True
            for chosen_id in diverse:
                if metrics is not None:
                    metrics.candidates_evaluated += 1
                if graph.node_similarity(candidate, graph.nodes[chosen_id]) > DIVERSITY_SIMILARITY_THRESHOLD:
                    is_diverse = False
                    break

            if is_diverse:
                diverse.append(candidate_id)

        return diverse

    def _live(self, node_ids: List[int], fallback: int) -> List[int]:
        live = [node_id for node_id in node_ids if self.graph.is_live(node_id)]
        return live if live else [fallback]

    def search(
        self,
        query: Vector,
        k: int,
        ef_search: Optional[int] = None,
        metrics: Optional[SearchMetrics] = None,
    ) -> List[Tuple[int, float]]:
        """
        Search for the k most similar live nodes.

        Args:
            query: Query vector (dimension already validated by the caller)
            k: Number of results to return
            ef_search: Layer-0 breadth; also caps widening when given
            metrics: Counters to update, if profiling

        Returns:
            List of (node_id, similarity) tuples, most similar first
        """
        graph = self.graph
        if graph.size() == 0:
            return []

        entry_id = self._resolve_entry_point()
        if entry_id == -1:
            return []

        query_magnitude = vector_magnitude(query) if graph.metric == "cosine" else None
        entry_node = graph.nodes[entry_id]

        if graph.size() == 1:
            if metrics is not None:
                metrics.nodes_visited += 1
                metrics.candidates_evaluated += 1
            return [(entry_id, graph.query_similarity(query, entry_node, query_magnitude))]

        top_level = entry_node.level
        entry_points = [entry_id]

        if top_level > 0 and graph.size() > graph.M * 2:
            entry_points = self._diverse_entry_points(
                query, entry_id, top_level, query_magnitude, metrics
            )

        # Phase 1: upper layers, beam as wide as the entry set
        for layer in range(top_level, 0, -1):
            entry_points = self._live(entry_points, entry_id)
            if metrics is not None:
                metrics.layers_traversed += 1
            found, _ = self._layer(
                query, entry_points, layer, len(entry_points), query_magnitude, metrics
            )
            entry_points = [node_id for _, node_id in found] or [entry_id]

        entry_points = self._live(entry_points, entry_id)

        # Phase 2: adaptive breadth at layer 0
        ef_current = max(k, ef_search if ef_search is not None else self.default_ef_search)
        if ef_search is not None:
            ef_max = max(k, ef_search)
        else:
            ef_max = max(k, graph.ef_construction)

        found: List[Tuple[float, int]] = []
        for _ in range(MAX_SEARCH_ATTEMPTS):
            if metrics is not None:
                metrics.layers_traversed += 1
            found, terminated_early = self._layer(
                query, entry_points, 0, ef_current, query_magnitude, metrics
            )

            if terminated_early or (ef_search is not None and len(found) >= k):
                break

            widened = min(ef_current * 2, ef_max)
            if widened <= ef_current:
                break
            ef_current = widened

            best = [node_id for _, node_id in found[: max(1, len(entry_points))]]
            entry_points = self._live(best, entry_id)

        # Phase 3: dedupe, drop tombstones, rank
        seen = set()
        scored: List[Tuple[int, float]] = []
        for sim, node_id in found:
            if node_id in seen:
                continue
            seen.add(node_id)
            if graph.is_live(node_id):
                scored.append((node_id, sim))

        scored.sort(key=lambda x: (-x[1], x[0]))
        return scored[:k]
