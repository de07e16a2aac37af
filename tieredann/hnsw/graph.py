"""
HNSW graph data structures.

This module defines the core data structures for storing the HNSW graph:
- VectorNode: A single indexed vector with fixed-capacity neighbor slots per layer
- HNSWGraph: Container for the entire graph (node map, entry point, parameters)

The graph is hierarchical: nodes at layer 0 form a dense graph with all vectors,
while higher layers contain progressively fewer nodes for faster coarse-grained search.
Each node stores a slot list of capacity M for every layer it participates in;
unused slots hold EMPTY_SLOT.
"""

import logging
from typing import Dict, List, Optional

import numpy as np
import numpy.typing as npt

from tieredann.hnsw.distance import (
    get_similarity_function,
    normalize_vector,
    vector_magnitude,
)
from tieredann.hnsw.utils import (
    build_level_probabilities,
    default_level_mult,
    recover_entry_point,
)

logger = logging.getLogger(__name__)

Vector = npt.NDArray[np.float32]

# Sentinel for an unused neighbor slot
EMPTY_SLOT = -1


class VectorNode:
    """
    Represents a single node in the HNSW graph.

    The node appears in layers 0 through its assigned 'level'. Its magnitude and
    normalized vector are derived values: computed on first access and cleared
    by invalidate_cache() whenever the vector is replaced.
    """

    def __init__(self, node_id: int, vector: Vector, level: int, capacity: int) -> None:
        """
        Create a new node with empty neighbor slots.

        Args:
            node_id: Unique identifier for this node
            vector: The vector data (1D float32 array)
            level: Maximum layer this node appears in (0 = base layer only)
            capacity: Number of neighbor slots per layer (M)
        """
        self.id = node_id
        self.vector = vector
        self.level = level
        self.capacity = capacity
        self.deleted = False

        # One fixed-length slot list per layer
        self.neighbors: List[List[int]] = [
            [EMPTY_SLOT] * capacity for _ in range(level + 1)
        ]

        self._magnitude: Optional[float] = None
        self._normalized: Optional[Vector] = None

    @property
    def magnitude(self) -> float:
        if self._magnitude is None:
            self._magnitude = vector_magnitude(self.vector)
        return self._magnitude

    @property
    def normalized_vector(self) -> Vector:
        if self._normalized is None:
            self._normalized = normalize_vector(self.vector).astype(np.float32)
        return self._normalized

    def invalidate_cache(self) -> None:
        """Drop derived values. Must be called after any change to self.vector."""
        self._magnitude = None
        self._normalized = None

    def set_vector(self, vector: Vector) -> None:
        """Replace the vector in place and invalidate derived values."""
        self.vector = vector
        self.invalidate_cache()

    def get_neighbors(self, layer: int) -> List[int]:
        """
        Get the occupied neighbor slots at a layer.

        Returns:
            Neighbor ids (EMPTY_SLOT entries removed); [] above the node's level
        """
        if layer > self.level:
            return []
        return [n for n in self.neighbors[layer] if n != EMPTY_SLOT]

    def set_neighbors(self, layer: int, neighbor_ids: List[int]) -> None:
        """Overwrite a layer's slots, padding with EMPTY_SLOT up to capacity."""
        if layer > self.level:
            raise ValueError(
                f"Cannot set neighbors at layer {layer} (node max level is {self.level})"
            )
        if len(neighbor_ids) > self.capacity:
            raise ValueError(
                f"{len(neighbor_ids)} neighbors exceed slot capacity {self.capacity}"
            )
        slots = self.neighbors[layer]
        for i in range(self.capacity):
            slots[i] = neighbor_ids[i] if i < len(neighbor_ids) else EMPTY_SLOT

    def total_edges(self) -> int:
        """Number of occupied slots across all layers."""
        return sum(
            1 for slots in self.neighbors for n in slots if n != EMPTY_SLOT
        )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"VectorNode(id={self.id}, level={self.level}, dim={len(self.vector)}, "
            f"deleted={self.deleted})"
        )


class HNSWGraph:
    """
    Container for the entire HNSW graph structure.

    Owns the node map, the entry point and the graph parameters. The entry point
    is always a non-deleted node (or -1 when none exists) and level_max is the
    highest level among non-deleted nodes.
    """

    def __init__(
        self,
        M: int = 16,
        ef_construction: int = 200,
        metric: str = "cosine",
        level_mult: Optional[float] = None,
    ) -> None:
        """
        Initialize an empty HNSW graph. Dimension is fixed by the first node.

        Args:
            M: Neighbor slot capacity per layer
            ef_construction: Candidate breadth during insertion
            metric: "cosine" or "euclidean"
            level_mult: Controls level distribution (default: 1/ln(M))
        """
        self.dimension: Optional[int] = None
        self.M = M
        self.ef_construction = ef_construction
        self.metric = metric
        self.similarity = get_similarity_function(metric)

        self.level_mult = level_mult if level_mult is not None else default_level_mult(M)
        self.probs = build_level_probabilities(self.level_mult)

        self.nodes: Dict[int, VectorNode] = {}
        self.entry_point_id = -1
        self.level_max = -1

    def node_similarity(self, a: VectorNode, b: VectorNode) -> float:
        """Similarity between two nodes using their cached magnitudes."""
        if self.metric == "cosine":
            return self.similarity(a.vector, b.vector, a.magnitude, b.magnitude)
        return self.similarity(a.vector, b.vector)

    def query_similarity(
        self, query: Vector, node: VectorNode, query_magnitude: Optional[float] = None
    ) -> float:
        """Similarity between a query vector and a node."""
        if self.metric == "cosine":
            return self.similarity(query, node.vector, query_magnitude, node.magnitude)
        return self.similarity(query, node.vector)

    def add_node(self, node_id: int, vector: Vector, level: int) -> VectorNode:
        """
        Add a new, unconnected node to the node map.

        Fixes the graph dimension on first use. Entry point bookkeeping is left
        to the caller (the builder decides when the node becomes the root).
        """
        if self.dimension is None:
            self.dimension = len(vector)

        node = VectorNode(node_id, vector, level, self.M)
        self.nodes[node_id] = node
        return node

    def get_node(self, node_id: int) -> Optional[VectorNode]:
        """Retrieve a node by its ID, or None if absent."""
        return self.nodes.get(node_id)

    def is_live(self, node_id: int) -> bool:
        node = self.nodes.get(node_id)
        return node is not None and not node.deleted

    def set_entry_point(self, node_id: int, level: int) -> None:
        self.entry_point_id = node_id
        self.level_max = level

    def refresh_entry_point(self) -> None:
        """Re-elect the entry point and level_max from the surviving nodes."""
        previous = self.entry_point_id
        self.entry_point_id, self.level_max = recover_entry_point(self.nodes)
        if previous != self.entry_point_id:
            logger.debug(
                "Entry point re-elected: %s -> %s (level_max=%s)",
                previous, self.entry_point_id, self.level_max,
            )

    def mark_deleted(self, node_id: int) -> None:
        """Tombstone a node; re-elect the root if the node was the entry point."""
        node = self.nodes[node_id]
        if node.deleted:
            return
        node.deleted = True

        # The entry point sits at level_max, so only its removal moves either
        if node_id == self.entry_point_id:
            self.refresh_entry_point()

    def prune_deleted_nodes(self) -> int:
        """
        Physically remove tombstoned nodes.

        Every surviving node's slots are rewritten without references to removed
        ids, then the removed nodes leave the node map.

        Returns:
            Number of nodes removed
        """
        removed_ids = {node_id for node_id, node in self.nodes.items() if node.deleted}
        if not removed_ids:
            return 0

        for node in self.nodes.values():
            if node.deleted:
                continue
            for layer in range(node.level + 1):
                kept = [
                    n for n in node.neighbors[layer]
                    if n != EMPTY_SLOT and n not in removed_ids
                ]
                node.set_neighbors(layer, kept)

        for node_id in removed_ids:
            del self.nodes[node_id]

        if self.entry_point_id in removed_ids or self.entry_point_id == -1:
            self.refresh_entry_point()

        return len(removed_ids)

    def clear(self) -> None:
        """Drop every node and reset the dimension."""
        self.nodes.clear()
        self.dimension = None
        self.entry_point_id = -1
        self.level_max = -1

    def active_count(self) -> int:
        """Number of non-deleted nodes."""
        return sum(1 for node in self.nodes.values() if not node.deleted)

    def size(self) -> int:
        """Total number of nodes, including tombstoned ones."""
        return len(self.nodes)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"HNSWGraph(nodes={self.size()}, level_max={self.level_max}, "
            f"M={self.M}, dim={self.dimension}, metric={self.metric})"
        )
