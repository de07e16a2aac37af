"""
Similarity metrics for vector comparisons.

All metrics here return similarities: higher means closer. The graph and the
router rank candidates by descending similarity, so both metrics must be
monotone in the same direction.

Cosine similarity measures the angle between vectors (ranges from -1 to 1,
where 1 means identical direction). Euclidean similarity maps the L2
distance into (0, 1] as 1 / (1 + distance).
"""

from typing import Callable, Optional
import numpy as np
import numpy.typing as npt

Vector = npt.NDArray[np.float32]

SimilarityFunction = Callable[..., float]


def vector_magnitude(v: Vector) -> float:
    """L2 norm of a vector, as a Python float."""
    return float(np.linalg.norm(v))


def cosine_similarity(
    v1: Vector,
    v2: Vector,
    magnitude1: Optional[float] = None,
    magnitude2: Optional[float] = None,
) -> float:
    """
    Cosine of the angle between v1 and v2, in [-1, 1].

    The graph caches node norms and passes them in as magnitude1/magnitude2
    so they are not recomputed on every comparison. A zero vector has no
    direction and scores 0.0 against anything.

    Example:
        >>> cosine_similarity(np.array([2.0, 0.0]), np.array([0.0, 5.0]))
        0.0
    """
    norm_v1 = vector_magnitude(v1) if magnitude1 is None else magnitude1
    norm_v2 = vector_magnitude(v2) if magnitude2 is None else magnitude2

    if norm_v1 == 0.0 or norm_v2 == 0.0:
        return 0.0

    return float(np.dot(v1, v2)) / (norm_v1 * norm_v2)


def euclidean_distance(v1: Vector, v2: Vector) -> float:
    """L2 distance between two vectors."""
    return float(np.linalg.norm(v1 - v2))


def euclidean_similarity(
    v1: Vector,
    v2: Vector,
    magnitude1: Optional[float] = None,
    magnitude2: Optional[float] = None,
) -> float:
    """
    Convert euclidean distance to a similarity in (0, 1].

    The magnitude arguments are accepted for signature compatibility with
    cosine_similarity and ignored.

    Example:
        >>> euclidean_similarity(np.array([0.0, 0.0]), np.array([3.0, 4.0]))
        0.16666666666666666
    """
    return 1.0 / (1.0 + euclidean_distance(v1, v2))


def normalize_vector(v: Vector) -> Vector:
    """
    Scale v to unit L2 norm. Zero vectors are returned unchanged.

    Example:
        >>> normalize_vector(np.array([3.0, 4.0]))
        array([0.6, 0.8])
    """
    norm = np.linalg.norm(v)
    if norm == 0.0:
        return v
    return v / norm


def get_similarity_function(metric: str) -> SimilarityFunction:
    """Return the similarity function for a metric name."""
    if metric == "cosine":
        return cosine_similarity
    if metric == "euclidean":
        return euclidean_similarity
    raise ValueError(f"Invalid metric: {metric}")
