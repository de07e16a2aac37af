"""
Tests for HNSW search algorithm.

These tests verify that the searcher correctly finds nearest neighbors:
- Empty graph handling
- Single and multiple node searches
- Similarity-based ranking
- Tombstone exclusion
- Entry point recovery and multi-branch entry selection
"""

import logging

import numpy as np
import pytest

from tieredann.hnsw.builder import HNSWBuilder
from tieredann.hnsw.graph import HNSWGraph
from tieredann.hnsw.searcher import (
    DIVERSITY_SIMILARITY_THRESHOLD,
    MAX_BRANCHES,
    HNSWSearcher,
    search_layer,
)
from tieredann.hnsw.utils import HeapPool
from tieredann.profiling import SearchMetrics


def _vec(*values):
    return np.array(values, dtype=np.float32)


def _three_point_graph():
    graph = HNSWGraph(M=4, ef_construction=10)
    builder = HNSWBuilder(graph)
    builder.insert(0, _vec(1.0, 0.0), level=0)
    builder.insert(1, _vec(0.0, 1.0), level=0)
    builder.insert(2, _vec(0.9, 0.1), level=0)
    return graph


def test_search_empty_graph():
    """Searching an empty graph should return empty results"""
    searcher = HNSWSearcher(HNSWGraph(M=4))
    assert searcher.search(_vec(1.0, 0.0), k=5) == []


def test_search_single_node():
    """Searching with one node should return that node"""
    graph = HNSWGraph(M=4, ef_construction=10)
    HNSWBuilder(graph).insert(0, _vec(1.0, 0.0), level=0)

    results = HNSWSearcher(graph).search(_vec(0.9, 0.1), k=5)

    assert len(results) == 1
    assert results[0][0] == 0


def test_search_returns_most_similar_first():
    searcher = HNSWSearcher(_three_point_graph())

    results = searcher.search(_vec(1.0, 0.0), k=3)

    assert [node_id for node_id, _ in results] == [0, 2, 1]
    assert results[0][1] == pytest.approx(1.0)
    scores = [score for _, score in results]
    assert scores == sorted(scores, reverse=True)


def test_search_respects_k():
    searcher = HNSWSearcher(_three_point_graph())
    assert len(searcher.search(_vec(1.0, 0.0), k=2)) == 2


def test_search_skips_tombstones():
    graph = _three_point_graph()
    graph.mark_deleted(0)

    results = HNSWSearcher(graph).search(_vec(1.0, 0.0), k=3)

    assert 0 not in [node_id for node_id, _ in results]
    assert results[0][0] == 2


def test_search_all_deleted_returns_empty():
    graph = _three_point_graph()
    for node_id in (0, 1, 2):
        graph.mark_deleted(node_id)

    assert HNSWSearcher(graph).search(_vec(1.0, 0.0), k=3) == []


def test_unusable_entry_point_is_recovered_per_call(caplog):
    """A broken entry point is worked around without being stored"""
    graph = _three_point_graph()
    graph.entry_point_id = 999

    with caplog.at_level(logging.WARNING, logger="tieredann.hnsw.searcher"):
        results = HNSWSearcher(graph).search(_vec(1.0, 0.0), k=1)

    assert results[0][0] == 0
    assert graph.entry_point_id == 999
    assert "recovered" in caplog.text


def test_search_layer_ranks_and_reports():
    graph = _three_point_graph()
    metrics = SearchMetrics()

    found, terminated_early = search_layer(
        graph, _vec(1.0, 0.0), [1], layer=0, num_to_keep=2, metrics=metrics
    )

    assert [node_id for _, node_id in found] == [0, 2]
    assert isinstance(terminated_early, bool)
    assert metrics.nodes_visited == 3
    assert metrics.candidates_evaluated == 3


def test_search_layer_returns_heaps_to_pool():
    graph = _three_point_graph()
    pool = HeapPool()

    search_layer(graph, _vec(1.0, 0.0), [0], layer=0, num_to_keep=2, pool=pool)

    assert pool.available("worklist") == 1
    assert pool.available("results") == 1


def test_search_records_metrics():
    metrics = SearchMetrics()
    HNSWSearcher(_three_point_graph()).search(_vec(1.0, 0.0), k=2, metrics=metrics)

    assert metrics.nodes_visited > 0
    assert metrics.layers_traversed >= 1


def test_euclidean_graph_search():
    graph = HNSWGraph(M=4, ef_construction=10, metric="euclidean")
    builder = HNSWBuilder(graph)
    builder.insert(0, _vec(0.0, 0.0), level=0)
    builder.insert(1, _vec(10.0, 10.0), level=0)
    builder.insert(2, _vec(1.0, 1.0), level=0)

    results = HNSWSearcher(graph).search(_vec(0.5, 0.5), k=3)

    assert [node_id for node_id, _ in results][:2] in ([0, 2], [2, 0])
    assert results[-1][0] == 1


def test_diverse_entry_points(medium_index, query_vectors):
    """Multi-branch entries start with the root and are mutually dissimilar"""
    graph = medium_index.graph
    searcher = HNSWSearcher(graph)
    entry_id = graph.entry_point_id

    entries = searcher._diverse_entry_points(
        query_vectors[0], entry_id, 0, None, None
    )

    assert entries[0] == entry_id
    assert 1 <= len(entries) <= MAX_BRANCHES
    assert len(set(entries)) == len(entries)
    for i, a in enumerate(entries):
        for b in entries[i + 1:]:
            similarity = graph.node_similarity(graph.nodes[a], graph.nodes[b])
            assert similarity <= DIVERSITY_SIMILARITY_THRESHOLD
