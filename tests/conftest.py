"""
Pytest configuration and shared fixtures for tieredann tests
"""

import pytest
import numpy as np

from tieredann import HNSWIndex


@pytest.fixture
def dimension() -> int:
    """Standard vector dimension for testing."""
    return 16


@pytest.fixture
def sample_vectors(dimension) -> np.ndarray:
    """Generate sample vectors for testing."""
    rng = np.random.default_rng(42)
    return rng.standard_normal((300, dimension)).astype(np.float32)


@pytest.fixture
def query_vectors(dimension) -> np.ndarray:
    """Queries drawn independently of sample_vectors."""
    rng = np.random.default_rng(7)
    return rng.standard_normal((20, dimension)).astype(np.float32)


@pytest.fixture
def small_complete_index() -> HNSWIndex:
    """30 points with M above the point count, so layer 0 is a complete graph."""
    rng = np.random.default_rng(3)
    vectors = rng.standard_normal((30, 8)).astype(np.float32)
    index = HNSWIndex(M=32, ef_construction=64, seed=11)
    index.build_index(enumerate(vectors))
    return index


@pytest.fixture
def medium_index(sample_vectors) -> HNSWIndex:
    """300 random points in 16 dimensions."""
    index = HNSWIndex(M=16, ef_construction=100, seed=5)
    index.build_index(enumerate(sample_vectors))
    return index


@pytest.fixture
def scenario_a_index() -> HNSWIndex:
    """Three 2-D points: two axes and a point close to the x axis."""
    index = HNSWIndex(M=4, ef_construction=200, metric="cosine", seed=1)
    index.insert(0, [1.0, 0.0])
    index.insert(1, [0.0, 1.0])
    index.insert(2, [0.9, 0.1])
    return index


@pytest.fixture
def router_items(dimension):
    """200 records with string ids and metadata."""
    rng = np.random.default_rng(21)
    vectors = rng.standard_normal((200, dimension)).astype(np.float32)
    return [
        {"id": f"doc-{i}", "vector": vector, "metadata": {"row": i}}
        for i, vector in enumerate(vectors)
    ]
