"""
Tests for similarity metrics.
"""

import numpy as np
import pytest

from tieredann.hnsw.distance import (
    cosine_similarity,
    euclidean_distance,
    euclidean_similarity,
    get_similarity_function,
    normalize_vector,
    vector_magnitude,
)


def test_cosine_identical_vectors():
    """Identical vectors have similarity 1"""
    v = np.array([1.0, 2.0, 3.0], dtype=np.float32)
    assert cosine_similarity(v, v) == pytest.approx(1.0, abs=1e-6)


def test_cosine_orthogonal_and_opposite():
    """Orthogonal vectors score 0, opposite vectors score -1"""
    x = np.array([1.0, 0.0], dtype=np.float32)
    y = np.array([0.0, 1.0], dtype=np.float32)

    assert cosine_similarity(x, y) == pytest.approx(0.0, abs=1e-7)
    assert cosine_similarity(x, -x) == pytest.approx(-1.0, abs=1e-7)


def test_cosine_ignores_scale():
    v1 = np.array([1.0, 1.0], dtype=np.float32)
    v2 = np.array([5.0, 5.0], dtype=np.float32)
    assert cosine_similarity(v1, v2) == pytest.approx(1.0, abs=1e-6)


def test_cosine_zero_vector_scores_zero():
    """A zero vector has no direction, so similarity is 0 rather than NaN"""
    zero = np.zeros(3, dtype=np.float32)
    v = np.array([1.0, 2.0, 3.0], dtype=np.float32)
    assert cosine_similarity(zero, v) == 0.0
    assert cosine_similarity(zero, zero) == 0.0


def test_cosine_uses_precomputed_magnitudes():
    v1 = np.array([3.0, 4.0], dtype=np.float32)
    v2 = np.array([4.0, 3.0], dtype=np.float32)

    expected = cosine_similarity(v1, v2)
    assert cosine_similarity(v1, v2, 5.0, 5.0) == pytest.approx(expected)


def test_euclidean_similarity():
    """Euclidean similarity is 1 / (1 + distance)"""
    a = np.array([0.0, 0.0], dtype=np.float32)
    b = np.array([3.0, 4.0], dtype=np.float32)

    assert euclidean_distance(a, b) == pytest.approx(5.0)
    assert euclidean_similarity(a, b) == pytest.approx(1.0 / 6.0)
    assert euclidean_similarity(a, a) == pytest.approx(1.0)


def test_normalize_vector():
    v = np.array([3.0, 4.0], dtype=np.float32)
    normalized = normalize_vector(v)
    assert vector_magnitude(normalized) == pytest.approx(1.0)
    assert np.allclose(normalized, [0.6, 0.8])


def test_normalize_zero_vector_unchanged():
    zero = np.zeros(4, dtype=np.float32)
    assert np.array_equal(normalize_vector(zero), zero)


def test_get_similarity_function():
    assert get_similarity_function("cosine") is cosine_similarity
    assert get_similarity_function("euclidean") is euclidean_similarity

    with pytest.raises(ValueError):
        get_similarity_function("manhattan")
