"""Graph validation and health checks for the HNSW index.

This module inspects a built graph without modifying it: it finds neighbor
slots that point at missing or tombstoned nodes, checks that every live node
is reachable from the entry point, and summarizes degree statistics used to
decide whether the index should be rebuilt.
"""

from typing import Dict, List, Set
from collections import deque

from tieredann.hnsw.graph import HNSWGraph, EMPTY_SLOT


class GraphValidator:
    """Validates graph structure and connectivity properties.

    Holds a reference to the graph, never a copy, so results always describe
    the current state.
    """

    def __init__(self, graph: HNSWGraph) -> None:
        """Initialize the graph validator.

        Args:
            graph: Graph to inspect
        """
        self.graph = graph

    def find_dangling_references(self) -> Dict[int, List[int]]:
        """Find slots that reference ids absent from the node map.

        Returns:
            node_id -> list of missing neighbor ids (only nodes with problems)
        """
        dangling: Dict[int, List[int]] = {}
        nodes = self.graph.nodes

        for node_id, node in nodes.items():
            missing = [
                neighbor_id
                for slots in node.neighbors
                for neighbor_id in slots
                if neighbor_id != EMPTY_SLOT and neighbor_id not in nodes
            ]
            if missing:
                dangling[node_id] = missing

        return dangling

    def find_stale_references(self) -> Dict[int, List[int]]:
        """Find slots of live nodes that still point at tombstoned nodes.

        These are expected between a delete and the next prune.
        """
        stale: Dict[int, List[int]] = {}
        nodes = self.graph.nodes

        for node_id, node in nodes.items():
            if node.deleted:
                continue
            tombstoned = [
                neighbor_id
                for slots in node.neighbors
                for neighbor_id in slots
                if neighbor_id in nodes and nodes[neighbor_id].deleted
            ]
            if tombstoned:
                stale[node_id] = tombstoned

        return stale

    def reachable_from_entry(self, layer: int = 0) -> Set[int]:
        """Live nodes reachable from the entry point at a layer.

        Uses BFS over live nodes only.
        """
        graph = self.graph
        start = graph.entry_point_id
        if not graph.is_live(start):
            return set()

        visited: Set[int] = {start}
        queue: deque = deque([start])

        while queue:
            current = queue.popleft()
            for neighbor in graph.nodes[current].get_neighbors(layer):
                if neighbor not in visited and graph.is_live(neighbor):
                    visited.add(neighbor)
                    queue.append(neighbor)

        return visited

    def unreachable_nodes(self) -> Set[int]:
        """Live nodes a layer-0 search from the entry point can never reach."""
        live = {node_id for node_id, node in self.graph.nodes.items() if not node.deleted}
        return live - self.reachable_from_entry(layer=0)

    def is_valid(self) -> bool:
        """True when no slot dangles and the entry point is consistent."""
        graph = self.graph
        if self.find_dangling_references():
            return False

        if graph.active_count() == 0:
            return graph.entry_point_id == -1 or not graph.is_live(graph.entry_point_id)

        if not graph.is_live(graph.entry_point_id):
            return False

        live_levels = [n.level for n in graph.nodes.values() if not n.deleted]
        return graph.level_max == max(live_levels)

    def compute_graph_stats(self) -> Dict[str, object]:
        """Compute overall graph statistics.

        Returns:
            Dictionary with node counts, degree statistics and the level histogram
        """
        graph = self.graph
        total_degree = 0
        max_degree = 0
        min_degree = None
        isolated_nodes = 0
        deleted_nodes = 0
        level_distribution: Dict[int, int] = {}

        for node in graph.nodes.values():
            if node.deleted:
                deleted_nodes += 1
                continue

            degree = node.total_edges()
            total_degree += degree
            max_degree = max(max_degree, degree)
            min_degree = degree if min_degree is None else min(min_degree, degree)

            if degree == 0:
                isolated_nodes += 1

            level_distribution[node.level] = level_distribution.get(node.level, 0) + 1

        active_nodes = graph.size() - deleted_nodes

        return {
            "node_count": graph.size(),
            "active_nodes": active_nodes,
            "deleted_nodes": deleted_nodes,
            "avg_degree": total_degree / active_nodes if active_nodes > 0 else 0.0,
            "max_degree": max_degree,
            "min_degree": min_degree if min_degree is not None else 0,
            "isolated_nodes": isolated_nodes,
            "level_distribution": dict(sorted(level_distribution.items())),
            "level_max": graph.level_max,
        }

    def suggest_optimal_m(self) -> int:
        """Suggest a neighbor capacity from the observed average degree."""
        stats = self.compute_graph_stats()
        M = self.graph.M

        # Too sparse
        if stats["avg_degree"] < M * 0.5:
            return min(M * 2, 64)

        # Too dense
        if stats["avg_degree"] > M * 1.5:
            return max(M // 2, 8)

        return M

    def should_reindex(self) -> bool:
        """True when isolated nodes exceed 10% or degree is badly skewed."""
        stats = self.compute_graph_stats()

        if stats["isolated_nodes"] > self.graph.size() * 0.1:
            return True

        if stats["max_degree"] > stats["avg_degree"] * 3:
            return True

        return False
