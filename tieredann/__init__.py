"""
tieredann - Two-tier approximate nearest neighbor search

An HNSW graph index for small and medium corpora, and a cluster router that
partitions large corpora and routes queries through an HNSW graph over the
cluster centroids.
"""

__version__ = "0.1.0"

from tieredann.hnsw.index import HNSWIndex
from tieredann.router.index import ClusterRouter
from tieredann.config import (
    HNSWConfig,
    RouterConfig,
    get_default_hnsw_config,
    get_default_router_config,
    get_small_corpus_router_config,
)
from tieredann.errors import (
    VectorIndexError,
    InvalidIdError,
    DuplicateIdError,
    UnknownIdError,
    EmptyVectorError,
    DimensionMismatchError,
    BuildRequiredError,
    ConfigurationInvalidError,
    CorruptedSerializationError,
    CorruptedSerializationWarning,
)

__all__ = [
    "HNSWIndex",
    "ClusterRouter",
    "HNSWConfig",
    "RouterConfig",
    "get_default_hnsw_config",
    "get_default_router_config",
    "get_small_corpus_router_config",
    "VectorIndexError",
    "InvalidIdError",
    "DuplicateIdError",
    "UnknownIdError",
    "EmptyVectorError",
    "DimensionMismatchError",
    "BuildRequiredError",
    "ConfigurationInvalidError",
    "CorruptedSerializationError",
    "CorruptedSerializationWarning",
]
