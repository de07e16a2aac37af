"""
Tests for the public HNSWIndex facade.

Covers input validation, the reference scenarios, self-retrieval and recall,
tombstones and pruning, batch operations, build progress and profiling.
"""

import numpy as np
import pytest

from tieredann import (
    ConfigurationInvalidError,
    DimensionMismatchError,
    DuplicateIdError,
    EmptyVectorError,
    HNSWConfig,
    HNSWIndex,
    InvalidIdError,
    UnknownIdError,
)
from tieredann.graph_validator import GraphValidator
from tieredann.metrics import evaluate_recall


class TestScenarios:

    def test_nearest_point_scores_one(self, scenario_a_index):
        results = scenario_a_index.search([1.0, 0.0], 1)

        assert len(results) == 1
        assert results[0]["id"] == 0
        assert results[0]["score"] == pytest.approx(1.0, abs=1e-6)

    def test_second_nearest_follows(self, scenario_a_index):
        results = scenario_a_index.search([1.0, 0.0], 2)
        assert [r["id"] for r in results] == [0, 2]

    def test_empty_index_returns_nothing(self):
        assert HNSWIndex().search([1.0, 0.0], 5) == []

    def test_aliases(self, scenario_a_index):
        assert scenario_a_index.search_knn([1.0, 0.0], 1) == scenario_a_index.search([1.0, 0.0], 1)
        scenario_a_index.add_point(3, [0.5, 0.5])
        assert 3 in scenario_a_index


class TestValidation:

    def test_invalid_ids(self):
        index = HNSWIndex()
        for bad_id in (-1, "a", 1.5, True, None):
            with pytest.raises(InvalidIdError):
                index.insert(bad_id, [1.0, 0.0])
        assert len(index) == 0

    def test_numpy_integer_id_accepted(self):
        index = HNSWIndex()
        index.insert(np.int64(4), [1.0, 0.0])
        assert 4 in index

    def test_duplicate_id(self, scenario_a_index):
        with pytest.raises(DuplicateIdError) as exc_info:
            scenario_a_index.insert(0, [0.5, 0.5])

        assert exc_info.value.code == "DUPLICATE_ID"
        assert len(scenario_a_index) == 3

    def test_duplicate_of_tombstoned_id(self, scenario_a_index):
        scenario_a_index.delete_point(1)
        with pytest.raises(DuplicateIdError):
            scenario_a_index.insert(1, [0.0, 1.0])

    def test_dimension_guard(self, scenario_a_index):
        with pytest.raises(DimensionMismatchError) as exc_info:
            scenario_a_index.insert(9, [1.0, 0.0, 0.0])

        assert exc_info.value.code == "DIMENSION_MISMATCH"
        assert len(scenario_a_index) == 3
        assert 9 not in scenario_a_index

    def test_empty_vector(self):
        index = HNSWIndex()
        with pytest.raises(EmptyVectorError):
            index.insert(0, [])
        assert index.dimension is None

    def test_query_validation(self, scenario_a_index):
        with pytest.raises(DimensionMismatchError):
            scenario_a_index.search([1.0, 0.0, 0.0], 1)
        with pytest.raises(EmptyVectorError):
            scenario_a_index.search([], 1)
        with pytest.raises(ValueError):
            scenario_a_index.search([1.0, 0.0], 0)
        with pytest.raises(ValueError):
            scenario_a_index.search([1.0, 0.0], 1, ef_search=0)

    def test_delete_unknown(self):
        index = HNSWIndex()
        with pytest.raises(UnknownIdError) as exc_info:
            index.delete_point(42)

        assert exc_info.value.code == "NOT_FOUND"
        assert isinstance(exc_info.value, KeyError)


class TestConfiguration:

    def test_invalid_m(self):
        with pytest.raises(ConfigurationInvalidError) as exc_info:
            HNSWIndex(M=1)
        assert exc_info.value.code == "INVALID_M"

    def test_ef_construction_below_m(self):
        with pytest.raises(ConfigurationInvalidError) as exc_info:
            HNSWIndex(M=32, ef_construction=16)
        assert exc_info.value.code == "INVALID_EF_CONSTRUCTION"

    def test_unknown_metric(self):
        with pytest.raises(ConfigurationInvalidError) as exc_info:
            HNSWIndex(metric="dot")
        assert exc_info.value.code == "INVALID_METRIC"

    def test_explicit_arguments_override_config(self):
        config = HNSWConfig(M=32, ef_construction=100)
        index = HNSWIndex(M=8, config=config)

        assert index.M == 8
        assert index.ef_construction == 100
        assert config.M == 32


class TestSearchQuality:

    def test_self_retrieval_complete_graph(self, small_complete_index):
        """Every stored vector finds itself first when layer 0 is complete"""
        graph = small_complete_index.graph
        for node_id, node in graph.nodes.items():
            top = small_complete_index.search(node.vector, 1)[0]
            assert top["id"] == node_id
            assert top["score"] == pytest.approx(1.0, abs=1e-5)

    def test_self_retrieval_medium_graph(self, medium_index, sample_vectors):
        hits = sum(
            medium_index.search(vector, 1, ef_search=50)[0]["id"] == i
            for i, vector in enumerate(sample_vectors)
        )
        assert hits / len(sample_vectors) >= 0.95

    def test_recall(self, medium_index, sample_vectors, query_vectors):
        recall = evaluate_recall(medium_index, sample_vectors, query_vectors, k=10, ef_search=100)
        assert recall >= 0.8

    def test_results_sorted_and_unique(self, medium_index, query_vectors):
        results = medium_index.search(query_vectors[0], 20)
        ids = [r["id"] for r in results]
        scores = [r["score"] for r in results]

        assert len(results) == 20
        assert len(set(ids)) == 20
        assert scores == sorted(scores, reverse=True)

    def test_euclidean_metric(self, sample_vectors):
        index = HNSWIndex(M=16, ef_construction=100, metric="euclidean", seed=2)
        index.build_index(enumerate(sample_vectors[:100]))

        top = index.search(sample_vectors[10], 1)[0]
        assert top["id"] == 10
        assert top["score"] == pytest.approx(1.0)


class TestDeletion:

    def test_tombstone_exclusion(self, small_complete_index):
        vector = small_complete_index.graph.nodes[3].vector.copy()
        small_complete_index.delete_point(3)

        results = small_complete_index.search(vector, 10)

        assert 3 not in [r["id"] for r in results]
        assert 3 not in small_complete_index
        assert len(small_complete_index) == 30
        assert small_complete_index.active_count() == 29

    def test_deleting_entry_point_re_elects(self, medium_index):
        old_entry = medium_index.entry_point_id
        medium_index.delete_point(old_entry)

        new_entry = medium_index.entry_point_id
        assert new_entry != old_entry
        assert medium_index.contains(new_entry)
        live_levels = [
            n.level for n in medium_index.graph.nodes.values() if not n.deleted
        ]
        assert medium_index.level_max == max(live_levels)
        assert medium_index.validate()

    def test_prune_completeness(self, medium_index):
        deleted = medium_index.delete_points_batch(range(0, 300, 10))
        assert deleted == 30

        removed = medium_index.prune_deleted_nodes()

        assert removed == 30
        assert len(medium_index) == 270
        removed_ids = set(range(0, 300, 10))
        for node in medium_index.graph.nodes.values():
            for slots in node.neighbors:
                assert not removed_ids & set(slots)
        assert GraphValidator(medium_index.graph).find_dangling_references() == {}
        assert medium_index.prune_deleted_nodes() == 0

    def test_delete_everything(self, scenario_a_index):
        for node_id in (0, 1, 2):
            scenario_a_index.delete_point(node_id)

        assert scenario_a_index.search([1.0, 0.0], 3) == []
        assert scenario_a_index.entry_point_id == -1

    def test_retire_point_drops_references(self, scenario_a_index):
        scenario_a_index.insert(3, [0.95, 0.05])

        scenario_a_index.retire_point(2, [3])

        assert 2 not in scenario_a_index
        for node_id in (0, 1, 3):
            assert 2 not in scenario_a_index.graph.nodes[node_id].get_neighbors(0)
        assert [hit["id"] for hit in scenario_a_index.search([1.0, 0.0], 2)] == [0, 3]
        assert GraphValidator(scenario_a_index.graph).unreachable_nodes() == set()

    def test_retire_point_needs_live_replacements(self, scenario_a_index):
        with pytest.raises(UnknownIdError) as exc_info:
            scenario_a_index.retire_point(0, [42])

        assert exc_info.value.context == {"id": 42}
        assert 0 in scenario_a_index

    def test_delete_points_batch_ignores_unknown(self, scenario_a_index):
        assert scenario_a_index.delete_points_batch([0, 0, 17]) == 1


class TestBatchOperations:

    def test_build_index_reports_progress(self, sample_vectors):
        index = HNSWIndex(M=8, ef_construction=50, seed=4)
        calls = []
        snapshots = []

        def on_progress(fraction, eta):
            calls.append((fraction, eta))
            snapshots.append(index.get_build_progress())

        index.build_index(enumerate(sample_vectors[:250]), on_progress=on_progress)

        assert [round(f, 2) for f, _ in calls] == [0.4, 0.8, 1.0]
        assert calls[-1][1] == pytest.approx(0.0)
        assert snapshots[0]["total"] == 250
        assert snapshots[0]["current"] == 100
        assert index.get_build_progress() is None
        assert len(index) == 250

    def test_build_index_accepts_several_shapes(self):
        index = HNSWIndex()
        index.build_index({0: [1.0, 0.0], 1: [0.0, 1.0]})
        assert len(index) == 2

        index.build_index([{"id": 5, "vector": [1.0, 1.0]}])
        assert len(index) == 1
        assert 5 in index

    def test_bad_build_leaves_index_untouched(self, scenario_a_index):
        with pytest.raises(DimensionMismatchError):
            scenario_a_index.build_index([(10, [1.0, 0.0]), (11, [1.0, 0.0, 0.0])])

        assert len(scenario_a_index) == 3
        assert 0 in scenario_a_index

    def test_build_index_replaces_dimension(self, scenario_a_index):
        scenario_a_index.build_index([(0, [1.0, 0.0, 0.0])])
        assert scenario_a_index.dimension == 3

    def test_add_points_batch(self, scenario_a_index):
        progress = []
        added = scenario_a_index.add_points_batch(
            [(10, [0.2, 0.8]), (11, [0.8, 0.2])],
            on_progress=lambda done, total: progress.append((done, total)),
        )

        assert added == 2
        assert progress == [(2, 2)]
        assert len(scenario_a_index) == 5

    def test_add_points_batch_is_atomic(self, scenario_a_index):
        with pytest.raises(DuplicateIdError):
            scenario_a_index.add_points_batch([(10, [0.2, 0.8]), (10, [0.8, 0.2])])
        with pytest.raises(DuplicateIdError):
            scenario_a_index.add_points_batch([(10, [0.2, 0.8]), (0, [0.8, 0.2])])
        with pytest.raises(DimensionMismatchError):
            scenario_a_index.add_points_batch([(10, [0.2, 0.8]), (11, [0.8])])

        assert len(scenario_a_index) == 3

    def test_search_batch(self, scenario_a_index):
        results = scenario_a_index.search_batch([[1.0, 0.0], [0.0, 1.0]], k=1)
        assert [r[0]["id"] for r in results] == [0, 1]


class TestIntrospection:

    def test_optimal_ef_search(self, scenario_a_index):
        assert scenario_a_index.get_optimal_ef_search(10) == 32
        assert scenario_a_index.get_optimal_ef_search(50) == 50

    def test_stats(self, medium_index):
        stats = medium_index.get_stats()

        assert stats["total_nodes"] == 300
        assert stats["active_nodes"] == 300
        assert stats["dimension"] == 16
        assert stats["metric"] == "cosine"
        assert "search" not in stats

    def test_graph_stats_delegation(self, medium_index):
        graph_stats = medium_index.compute_graph_stats()

        assert graph_stats["active_nodes"] == 300
        assert graph_stats["avg_degree"] > 0
        assert isinstance(medium_index.should_reindex(), bool)
        assert medium_index.suggest_optimal_m() in (8, 16, 32)

    def test_profiling(self, scenario_a_index):
        scenario_a_index.enable_profiling()
        scenario_a_index.search([1.0, 0.0], 1)
        scenario_a_index.search([0.0, 1.0], 1)

        summary = scenario_a_index.get_search_metrics()
        assert summary["total_searches"] == 2.0
        assert summary["avg_nodes_visited"] > 0
        assert "search" in scenario_a_index.get_stats()

        scenario_a_index.enable_profiling(False)
        assert scenario_a_index.get_search_metrics()["total_searches"] == 0.0

    def test_first_point_is_level_zero(self):
        index = HNSWIndex(seed=0)
        index.insert(0, [1.0, 2.0])
        assert index.graph.nodes[0].level == 0
        assert index.entry_point_id == 0
        assert index.level_max == 0

    def test_update_vector(self, scenario_a_index):
        scenario_a_index.update_vector(1, [0.0, 2.0])
        assert scenario_a_index.graph.nodes[1].vector.tolist() == [0.0, 2.0]
        assert scenario_a_index.graph.nodes[1].magnitude == pytest.approx(2.0)

        with pytest.raises(UnknownIdError):
            scenario_a_index.update_vector(99, [1.0, 0.0])

    def test_clear(self, scenario_a_index):
        scenario_a_index.clear()
        assert len(scenario_a_index) == 0
        assert scenario_a_index.dimension is None
