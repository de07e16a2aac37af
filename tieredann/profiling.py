"""Search profiling for the graph index.

Per-query counters are collected into a SearchMetrics record while a search
runs; the SearchProfiler keeps a bounded window of recent records plus
running averages over every profiled search.
"""

from typing import Dict, List
from collections import deque
from dataclasses import dataclass, asdict

import numpy as np


@dataclass
class SearchMetrics:
    """Counters for a single k-NN search."""

    duration_ms: float = 0.0
    nodes_visited: int = 0
    layers_traversed: int = 0
    candidates_evaluated: int = 0
    early_terminations: int = 0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class SearchProfiler:
    """Tracks recent search metrics and running averages.

    Running averages cover every recorded search; the history window only
    keeps the most recent `window_size` records.
    """

    def __init__(self, window_size: int = 1000) -> None:
        """Initialize search profiler.

        Args:
            window_size: Number of recent searches to keep in full
        """
        self.window_size = window_size
        self.history: deque = deque(maxlen=window_size)

        self.total_searches = 0
        self.avg_search_time_ms = 0.0
        self.avg_nodes_visited = 0.0

    def record(self, metrics: SearchMetrics) -> None:
        """Record the metrics of one finished search."""
        self.history.append(metrics)

        # Incremental mean: avg += (x - avg) / n
        self.total_searches += 1
        n = self.total_searches
        self.avg_search_time_ms += (metrics.duration_ms - self.avg_search_time_ms) / n
        self.avg_nodes_visited += (metrics.nodes_visited - self.avg_nodes_visited) / n

    def get_recent_metrics(self) -> List[SearchMetrics]:
        return list(self.history)

    def get_early_termination_rate(self) -> float:
        """Fraction of recent searches whose layer-0 scan stopped early."""
        if not self.history:
            return 0.0

        return float(np.mean([m.early_terminations > 0 for m in self.history]))

    def get_summary(self) -> Dict[str, float]:
        """Get summary of profiled searches.

        Returns:
            Dictionary with search statistics
        """
        return {
            "total_searches": float(self.total_searches),
            "avg_search_time_ms": self.avg_search_time_ms,
            "avg_nodes_visited": self.avg_nodes_visited,
            "early_termination_rate": self.get_early_termination_rate(),
        }

    def reset(self) -> None:
        """Forget every recorded search."""
        self.history.clear()
        self.total_searches = 0
        self.avg_search_time_ms = 0.0
        self.avg_nodes_visited = 0.0
