"""
Cluster routing layer.

Components:
- cache: Hot-vector LRU cache
- quantizer: Uniform 8-bit scalar quantizer
- clustering: k-means++ seeding, assignment, centroids and radii
- index: ClusterRouter (partitioned index with an HNSW routing graph)
"""

from tieredann.router.cache import LRUCache
from tieredann.router.quantizer import VectorQuantizer
from tieredann.router.index import Centroid, ClusterRouter, VectorRecord

__all__ = ["LRUCache", "VectorQuantizer", "Centroid", "ClusterRouter", "VectorRecord"]
