"""
HNSW graph construction and insertion logic.

This module handles adding new nodes to the HNSW graph. The insertion algorithm:
1. Adds the node to the node map at its pre-sampled level
2. Greedily descends the layers above the node's level, one best candidate per layer
3. From the node's level down to 0, gathers ef_construction candidates per layer
4. Connects the new node and each candidate in both directions
5. Prunes any slot list that overflows back to its M most similar entries

The key insight: start search at the top (sparse) layer and progressively
zoom in through denser layers until reaching the target layer.
"""

import logging
from typing import List, Optional

import numpy as np
import numpy.typing as npt

from tieredann.hnsw.graph import HNSWGraph, VectorNode, EMPTY_SLOT
from tieredann.hnsw.searcher import search_layer
from tieredann.hnsw.utils import HeapPool, select_top_neighbors

logger = logging.getLogger(__name__)

Vector = npt.NDArray[np.float32]


class HNSWBuilder:
    """
    Handles insertion of nodes into the HNSW graph.

    Inputs are validated by the caller; the builder assumes a unique id and a
    vector of the graph's dimension.
    """

    def __init__(self, graph: HNSWGraph, pool: Optional[HeapPool] = None) -> None:
        """
        Initialize builder with a graph to operate on.

        Args:
            graph: The HNSWGraph to insert nodes into
            pool: Heap pool for the candidate searches
        """
        self.graph = graph
        self.pool = pool if pool is not None else HeapPool()

    def insert(self, node_id: int, vector: Vector, level: int) -> VectorNode:
        """
        Insert a new node into the graph at a specific level.

        Args:
            node_id: ID to assign to the new node
            vector: Vector data for the new node
            level: Maximum layer for this node

        Returns:
            The inserted node
        """
        graph = self.graph
        node = graph.add_node(node_id, vector, level)

        # No live root: the node becomes the sole entry point
        if not graph.is_live(graph.entry_point_id):
            graph.set_entry_point(node_id, level)
            return node

        query_magnitude = node.magnitude if graph.metric == "cosine" else None
        entry_points: List[int] = [graph.entry_point_id]

        # Layers above the node's level: keep only the single closest node
        for layer in range(graph.level_max, level, -1):
            found, _ = search_layer(
                graph, vector, entry_points, layer, 1,
                query_magnitude=query_magnitude, pool=self.pool,
            )
            if found:
                entry_points = [found[0][1]]

        # Layers the node lives in: gather ef_construction candidates and connect
        for layer in range(min(level, graph.level_max), -1, -1):
            found, _ = search_layer(
                graph, vector, entry_points, layer, graph.ef_construction,
                query_magnitude=query_magnitude, pool=self.pool,
            )

            candidates = [
                candidate_id for _, candidate_id in found
                if candidate_id != node_id and graph.nodes[candidate_id].level >= layer
            ]

            for candidate_id in candidates:
                candidate = graph.nodes[candidate_id]
                self._connect_and_prune(node, candidate_id, layer)
                if not candidate.deleted:
                    self._connect_and_prune(candidate, node_id, layer)

            if candidates:
                entry_points = candidates

        if level > graph.level_max:
            graph.set_entry_point(node_id, level)

        return node

    def _connect_and_prune(self, base: VectorNode, new_neighbor_id: int, layer: int) -> None:
        """
        Add one neighbor to a node's slot list at a layer.

        When the list would exceed M, keep the M entries most similar to the
        owning node. Tombstoned neighbors are dropped in either case.

        Args:
            base: Node whose slots are updated
            new_neighbor_id: Neighbor to add
            layer: Which layer's slots to update
        """
        graph = self.graph
        candidates = [n for n in base.neighbors[layer] if n != EMPTY_SLOT]
        if new_neighbor_id != base.id and new_neighbor_id not in candidates:
            candidates.append(new_neighbor_id)

        live = [n for n in candidates if graph.is_live(n)]

        if len(candidates) > graph.M:
            similarities = [
                graph.node_similarity(base, graph.nodes[n]) for n in live
            ]
            live = select_top_neighbors(live, similarities, graph.M)

        base.set_neighbors(layer, live)

    def relink(self, removed_id: int, replacement_ids: List[int]) -> None:
        """
        Route a tombstoned node's edges through its replacements.

        At every layer the removed node lives in, each replacement that also
        lives there gains the removed node's live out-neighbors, and every live
        node pointing at the removed node gains the replacement. Slot lists
        stay at M entries; the removed id is dropped from each list touched.

        Args:
            removed_id: Tombstoned node
            replacement_ids: Live nodes taking over its position
        """
        graph = self.graph
        removed = graph.nodes[removed_id]

        for layer in range(removed.level + 1):
            replacements = [
                graph.nodes[r] for r in replacement_ids
                if graph.is_live(r) and graph.nodes[r].level >= layer
            ]
            if not replacements:
                continue

            outgoing = [n for n in removed.get_neighbors(layer) if graph.is_live(n)]
            incoming = [
                node for node in graph.nodes.values()
                if not node.deleted and removed_id in node.get_neighbors(layer)
            ]

            for replacement in replacements:
                for neighbor_id in outgoing:
                    self._connect_and_prune(replacement, neighbor_id, layer)
                for node in incoming:
                    self._connect_and_prune(node, replacement.id, layer)
