"""
Search quality evaluation.

Recall is measured against exact neighbors found by brute force. Ground
truth is expressed as similarities so it ranks the same way as the indexes:
cosine similarity, or 1 / (1 + distance) for euclidean.
"""

import numpy as np
from typing import Any, List, Sequence, Tuple

from tieredann.hnsw.distance import get_similarity_function


def compute_recall_at_k(
    retrieved_ids: Sequence[Any],
    ground_truth_ids: Sequence[Any],
    k: int = 10
) -> float:
    """
    Share of the true top-k found among the first k retrieved ids.

    Both lists are cut to k before comparing; order inside the cut is ignored.
    Returns 0.0 when there is no ground truth.

    Example:
        >>> compute_recall_at_k(["a", "b", "x"], ["a", "b", "c"], k=3)
        0.6666666666666666
    """
    found = set(list(retrieved_ids)[:k])
    truth = set(list(ground_truth_ids)[:k])

    if not truth:
        return 0.0

    return len(found & truth) / len(truth)


def compute_ground_truth_brute_force(
    query_vector: np.ndarray,
    all_vectors: np.ndarray,
    k: int = 10,
    metric: str = "cosine"
) -> Tuple[List[int], List[float]]:
    """
    Exact nearest rows of all_vectors by scoring every one of them.

    Args:
        query_vector: Query embedding (1D array, shape: [dim])
        all_vectors: All database vectors (2D array, shape: [n_vectors, dim])
        k: Number of neighbors to find
        metric: "cosine" or "euclidean" (similarity 1 / (1 + distance))

    Returns:
        Tuple of (row_indices, similarities), most similar first

    Example:
        >>> query = np.array([1.0, 0.0, 0.0])
        >>> database = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.9, 0.1, 0.0]])
        >>> ids, sims = compute_ground_truth_brute_force(query, database, k=2)
        >>> ids
        [0, 2]
    """
    all_vectors = np.asarray(all_vectors, dtype=np.float32)
    query_vector = np.asarray(query_vector, dtype=np.float32)

    if metric == "cosine":
        norms = np.linalg.norm(all_vectors, axis=1) * np.linalg.norm(query_vector)
        dots = all_vectors @ query_vector
        similarities = np.divide(
            dots, norms, out=np.zeros_like(dots), where=norms > 0
        )
    else:
        # Validates the metric name
        get_similarity_function(metric)
        distances = np.linalg.norm(all_vectors - query_vector, axis=1)
        similarities = 1.0 / (1.0 + distances)

    # Stable sort on -similarity keeps lower row index first on ties
    order = np.argsort(-similarities, kind="stable")[:k]
    return order.tolist(), similarities[order].astype(float).tolist()


def evaluate_recall(
    index: Any,
    vectors: np.ndarray,
    queries: np.ndarray,
    k: int = 10,
    ef_search: Any = None,
) -> float:
    """
    Mean recall@k of an HNSWIndex whose ids are the row indices of `vectors`.

    Args:
        index: Object with search(query, k, ef_search) returning {"id", ...} dicts
        vectors: Indexed vectors, row i stored under id i
        queries: Query vectors (2D)
        k: Number of neighbors
        ef_search: Passed through to search()

    Returns:
        Average recall@k over the queries
    """
    recalls = []
    for query in queries:
        truth, _ = compute_ground_truth_brute_force(query, vectors, k, metric=index.metric)
        found = [hit["id"] for hit in index.search(query, k=k, ef_search=ef_search)]
        recalls.append(compute_recall_at_k(found, truth, k))

    return float(np.mean(recalls)) if recalls else 0.0
