"""Recall comparison across ef_search values and router probe settings.

Measures recall@k against brute-force ground truth for:
1. The HNSW graph index at several ef_search values
2. The cluster router with static and adaptive probing
"""

import time
from typing import Dict, List

import numpy as np

from tieredann import ClusterRouter, HNSWIndex, RouterConfig
from tieredann.metrics import compute_ground_truth_brute_force, compute_recall_at_k


def generate_synthetic_dataset(n_vectors: int = 5000, dim: int = 64, seed: int = 42) -> np.ndarray:
    """Generate a clustered dataset (Gaussian blobs around random centers).

    Args:
        n_vectors: Number of vectors
        dim: Vector dimensionality
        seed: Random seed

    Returns:
        Array of shape (n_vectors, dim)
    """
    rng = np.random.default_rng(seed)
    centers = rng.standard_normal((50, dim))
    labels = rng.integers(0, len(centers), n_vectors)
    return (centers[labels] + 0.3 * rng.standard_normal((n_vectors, dim))).astype(np.float32)


def precompute_ground_truth(queries: np.ndarray, database: np.ndarray, k: int = 10) -> List[List[int]]:
    return [compute_ground_truth_brute_force(q, database, k)[0] for q in queries]


def evaluate_graph(index: HNSWIndex, queries: np.ndarray, truth: List[List[int]], k: int) -> Dict[int, Dict[str, float]]:
    results = {}
    for ef_search in (16, 32, 64, 128):
        start = time.perf_counter()
        recalls = [
            compute_recall_at_k([hit["id"] for hit in index.search(q, k, ef_search)], t, k)
            for q, t in zip(queries, truth)
        ]
        elapsed_ms = (time.perf_counter() - start) * 1000.0 / len(queries)
        results[ef_search] = {"recall": float(np.mean(recalls)), "latency_ms": elapsed_ms}
    return results


def evaluate_router(config: RouterConfig, database: np.ndarray, queries: np.ndarray, truth: List[List[int]], k: int) -> Dict[str, float]:
    router = ClusterRouter(config)
    router.build_index({"id": str(i), "vector": v} for i, v in enumerate(database))

    start = time.perf_counter()
    recalls = [
        compute_recall_at_k([int(hit["id"]) for hit in router.search(q, k)], t, k)
        for q, t in zip(queries, truth)
    ]
    elapsed_ms = (time.perf_counter() - start) * 1000.0 / len(queries)
    return {"recall": float(np.mean(recalls)), "latency_ms": elapsed_ms}


def main():
    k = 10
    database = generate_synthetic_dataset()
    queries = generate_synthetic_dataset(n_vectors=100, seed=43)
    truth = precompute_ground_truth(queries, database, k)

    print("=" * 60)
    print(f"Recall@{k} on {len(database)} vectors, {len(queries)} queries")
    print("=" * 60)

    index = HNSWIndex(M=16, ef_construction=200, seed=7)
    index.build_index(enumerate(database))

    print("\nHNSW graph index:")
    for ef_search, row in evaluate_graph(index, queries, truth, k).items():
        print(f"   ef_search={ef_search:4d}  recall={row['recall']:.3f}  {row['latency_ms']:.2f} ms/query")

    print("\nCluster router:")
    for name, adaptive in (("static", False), ("adaptive", True)):
        config = RouterConfig(
            num_clusters=64,
            search_probe_count=4,
            adaptive_probing=adaptive,
            hnsw_m=16,
            hnsw_ef_construction=200,
            seed=7,
        )
        row = evaluate_router(config, database, queries, truth, k)
        print(f"   {name:8s}  recall={row['recall']:.3f}  {row['latency_ms']:.2f} ms/query")


if __name__ == "__main__":
    main()
