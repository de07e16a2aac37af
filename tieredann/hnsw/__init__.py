"""
HNSW (Hierarchical Navigable Small World) implementation module.

This module contains the graph index components for building and searching
approximate nearest neighbor indexes over fixed-dimension vectors.

Components:
- distance: Similarity metrics (cosine, euclidean)
- utils: Level sampling, neighbor selection, entry point recovery, heap pool
- graph: Node and graph containers
- builder: Insertion algorithm
- searcher: Layer search and adaptive k-NN
- index: HNSWIndex facade
"""

from tieredann.hnsw.distance import cosine_similarity, euclidean_similarity
from tieredann.hnsw.graph import VectorNode, HNSWGraph, EMPTY_SLOT
from tieredann.hnsw.builder import HNSWBuilder
from tieredann.hnsw.searcher import HNSWSearcher
from tieredann.hnsw.index import HNSWIndex

__all__ = [
    "cosine_similarity",
    "euclidean_similarity",
    "VectorNode",
    "HNSWGraph",
    "EMPTY_SLOT",
    "HNSWBuilder",
    "HNSWSearcher",
    "HNSWIndex",
]
