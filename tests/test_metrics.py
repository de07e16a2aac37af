"""
Metrics tests.

Tests recall@k, brute-force ground truth, and index-level recall evaluation.
"""

import numpy as np
import pytest

from tieredann.metrics import (
    compute_ground_truth_brute_force,
    compute_recall_at_k,
    evaluate_recall,
)


class TestRecallAtK:
    """compute_recall_at_k"""

    def test_perfect_recall(self):
        """Every retrieved id is a true neighbor"""
        retrieved = [1, 2, 3, 4, 5, 6, 7, 8, 9, 10]
        ground_truth = [1, 2, 3, 4, 5, 6, 7, 8, 9, 10]
        assert compute_recall_at_k(retrieved, ground_truth, k=10) == 1.0

    def test_partial_recall(self):
        """Three of ten retrieved ids are wrong"""
        retrieved = [1, 2, 3, 4, 5, 6, 7, 99, 98, 97]
        ground_truth = [1, 2, 3, 4, 5, 6, 7, 8, 9, 10]
        assert compute_recall_at_k(retrieved, ground_truth, k=10) == pytest.approx(0.7)

    def test_zero_recall(self):
        retrieved = [99, 98, 97]
        ground_truth = [1, 2, 3]
        assert compute_recall_at_k(retrieved, ground_truth, k=3) == 0.0

    def test_order_does_not_matter(self):
        assert compute_recall_at_k([3, 2, 1], [1, 2, 3], k=3) == 1.0

    def test_short_ground_truth(self):
        """Recall divides by the ground truth actually available"""
        assert compute_recall_at_k([1, 2, 3], [1, 2], k=5) == 1.0

    def test_empty_ground_truth(self):
        assert compute_recall_at_k([1, 2], [], k=2) == 0.0

    def test_string_ids(self):
        assert compute_recall_at_k(["a", "b"], ["b", "c"], k=2) == 0.5


class TestGroundTruth:
    """compute_ground_truth_brute_force"""

    def test_cosine_ranking(self):
        query = np.array([1.0, 0.0, 0.0])
        database = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.9, 0.1, 0.0]])

        ids, sims = compute_ground_truth_brute_force(query, database, k=2)

        assert ids == [0, 2]
        assert sims[0] == pytest.approx(1.0)
        assert sims[0] >= sims[1]

    def test_ties_keep_lower_row_first(self):
        query = np.array([1.0, 0.0])
        database = np.array([[0.0, 1.0], [2.0, 0.0], [1.0, 0.0]])

        ids, _ = compute_ground_truth_brute_force(query, database, k=3)

        assert ids == [1, 2, 0]

    def test_zero_vector_scores_zero(self):
        ids, sims = compute_ground_truth_brute_force(
            np.array([1.0, 0.0]), np.array([[0.0, 0.0], [1.0, 1.0]]), k=2
        )
        assert ids == [1, 0]
        assert sims[1] == 0.0

    def test_euclidean(self):
        query = np.array([0.0, 0.0])
        database = np.array([[3.0, 4.0], [1.0, 0.0]])

        ids, sims = compute_ground_truth_brute_force(query, database, k=2, metric="euclidean")

        assert ids == [1, 0]
        assert sims == pytest.approx([0.5, 1.0 / 6.0])

    def test_unknown_metric(self):
        with pytest.raises(ValueError):
            compute_ground_truth_brute_force(np.ones(2), np.ones((3, 2)), metric="manhattan")

    def test_k_larger_than_database(self):
        ids, _ = compute_ground_truth_brute_force(np.ones(2), np.ones((3, 2)), k=10)
        assert len(ids) == 3


def test_evaluate_recall_on_complete_graph(small_complete_index):
    """A complete layer-0 graph finds the exact neighbors"""
    graph = small_complete_index.graph
    vectors = np.stack([graph.nodes[i].vector for i in range(30)])

    recall = evaluate_recall(small_complete_index, vectors, vectors[:5], k=5)

    assert recall == pytest.approx(1.0)


def test_evaluate_recall_without_queries(small_complete_index):
    vectors = np.zeros((0, 8), dtype=np.float32)
    assert evaluate_recall(small_complete_index, vectors, vectors) == 0.0
