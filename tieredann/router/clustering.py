"""
Partitioning helpers for the cluster router.

Seeding uses k-means++ (first seed uniform, each next seed drawn with
probability proportional to its squared euclidean distance from the nearest
seed chosen so far). Assignment, centroids and radii work on normalized
vectors, so the nearest centroid is the one with the largest dot product.
"""

from typing import List

import numpy as np
import numpy.typing as npt
from sklearn.cluster import kmeans_plusplus

from tieredann.hnsw.distance import normalize_vector

Vector = npt.NDArray[np.float32]
Matrix = npt.NDArray[np.float32]


def kmeans_plus_plus(vectors: Matrix, num_clusters: int, rng: np.random.Generator) -> List[int]:
    """
    Pick k-means++ seeds among the rows of a matrix.

    Seeding stops early once every remaining point coincides with a chosen
    seed, so duplicates never become separate seeds.

    Args:
        vectors: (n, d) matrix of points
        num_clusters: Number of seeds wanted
        rng: Random generator (drives the sklearn random state)

    Returns:
        Row indices of the chosen seeds, in selection order
    """
    n = len(vectors)
    if n == 0 or num_clusters < 1:
        return []

    distinct = len(np.unique(vectors, axis=0))
    k = min(num_clusters, distinct)

    # n_local_trials=1 is plain (non-greedy) k-means++
    _, indices = kmeans_plusplus(
        np.asarray(vectors, dtype=np.float32),
        n_clusters=k,
        random_state=int(rng.integers(0, 2**31 - 1)),
        n_local_trials=1,
    )
    return [int(i) for i in indices]


def assign_to_centroids(vectors: Matrix, centroids: Matrix) -> npt.NDArray[np.int64]:
    """Row index of the most similar centroid (dot product) for every vector."""
    similarities = np.asarray(vectors) @ np.asarray(centroids).T
    return np.argmax(similarities, axis=1)


def nearest_centroid(vector: Vector, centroids: Matrix) -> int:
    """Row index of the centroid most similar to one vector."""
    return int(np.argmax(np.asarray(centroids) @ vector))


def centroid_mean(members: Matrix) -> Vector:
    """Renormalized mean of member vectors (zero vector when the mean vanishes)."""
    mean = np.asarray(members, dtype=np.float32).mean(axis=0)
    return normalize_vector(mean).astype(np.float32)


def bounding_radius(centroid: Vector, members: Matrix) -> float:
    """Largest euclidean distance from the centroid to any member."""
    if len(members) == 0:
        return 0.0
    return float(np.linalg.norm(np.asarray(members) - centroid, axis=1).max())


def split_by_seeds(members: Matrix, seed_a: Vector, seed_b: Vector) -> npt.NDArray[np.bool_]:
    """
    One nearest-of-two-seeds pass over a cluster.

    Returns:
        Boolean mask, True where the member goes with seed_a (ties included)
    """
    members = np.asarray(members)
    dist_a = np.linalg.norm(members - seed_a, axis=1)
    dist_b = np.linalg.norm(members - seed_b, axis=1)
    return dist_a <= dist_b
