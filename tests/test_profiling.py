"""Tests for per-search metrics and the search profiler."""

import pytest

from tieredann.profiling import SearchMetrics, SearchProfiler


def test_metrics_defaults():
    metrics = SearchMetrics()
    assert metrics.to_dict() == {
        "duration_ms": 0.0,
        "nodes_visited": 0,
        "layers_traversed": 0,
        "candidates_evaluated": 0,
        "early_terminations": 0,
    }


def test_empty_profiler_summary():
    summary = SearchProfiler().get_summary()

    assert summary["total_searches"] == 0.0
    assert summary["avg_search_time_ms"] == 0.0
    assert summary["early_termination_rate"] == 0.0


def test_running_averages():
    profiler = SearchProfiler()
    profiler.record(SearchMetrics(duration_ms=2.0, nodes_visited=10))
    profiler.record(SearchMetrics(duration_ms=4.0, nodes_visited=30))

    summary = profiler.get_summary()

    assert summary["total_searches"] == 2.0
    assert summary["avg_search_time_ms"] == pytest.approx(3.0)
    assert summary["avg_nodes_visited"] == pytest.approx(20.0)


def test_window_is_bounded_but_averages_are_not():
    """Old records leave the window; the running mean still counts them"""
    profiler = SearchProfiler(window_size=2)
    for visited in (10, 20, 30):
        profiler.record(SearchMetrics(nodes_visited=visited))

    assert [m.nodes_visited for m in profiler.get_recent_metrics()] == [20, 30]
    assert profiler.get_summary()["avg_nodes_visited"] == pytest.approx(20.0)


def test_early_termination_rate():
    profiler = SearchProfiler()
    profiler.record(SearchMetrics(early_terminations=1))
    profiler.record(SearchMetrics(early_terminations=0))
    profiler.record(SearchMetrics(early_terminations=3))
    profiler.record(SearchMetrics())

    assert profiler.get_early_termination_rate() == pytest.approx(0.5)


def test_reset():
    profiler = SearchProfiler()
    profiler.record(SearchMetrics(duration_ms=1.0))
    profiler.reset()

    assert profiler.get_recent_metrics() == []
    assert profiler.get_summary()["total_searches"] == 0.0
