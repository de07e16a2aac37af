"""Configuration for the graph index and the cluster router.

Usage:
    from tieredann import HNSWIndex, ClusterRouter, RouterConfig

    # Default config
    index = HNSWIndex()

    # Custom config
    config = RouterConfig(num_clusters=64, max_cluster_size=500)
    router = ClusterRouter(config)

    # From file
    config = RouterConfig.from_json("router.json")
    router = ClusterRouter(config)
"""

from typing import Dict, Any, Optional
import json
from dataclasses import dataclass, asdict, fields

from tieredann.errors import ConfigurationInvalidError

VALID_METRICS = ("cosine", "euclidean")

MIN_M = 2
MAX_M = 512


def validate_graph_params(M: int, ef_construction: int, metric: str) -> None:
    """Check the parameters shared by every HNSW graph.

    Raises:
        ConfigurationInvalidError: If M is outside [2, 512], ef_construction < M,
            or the metric is unknown.
    """
    if not MIN_M <= M <= MAX_M:
        raise ConfigurationInvalidError(
            f"M must be between {MIN_M} and {MAX_M}",
            code="INVALID_M",
            context={"M": M},
        )

    if ef_construction < M:
        raise ConfigurationInvalidError(
            "efConstruction must be >= M",
            code="INVALID_EF_CONSTRUCTION",
            context={"ef_construction": ef_construction, "M": M},
        )

    if metric not in VALID_METRICS:
        raise ConfigurationInvalidError(
            f"metric must be one of {list(VALID_METRICS)}",
            code="INVALID_METRIC",
            context={"metric": metric},
        )


class _ConfigMixin:
    """Dict/JSON conversion shared by the config dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return asdict(self)

    def non_default_items(self) -> Dict[str, Any]:
        """Return only the fields whose value differs from the class default."""
        defaults = type(self)()
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) != getattr(defaults, f.name)
        }

    def to_json(self, filepath: str) -> None:
        """Save configuration to JSON file."""
        with open(filepath, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]):
        """Load configuration from dictionary."""
        known = {f.name for f in fields(cls)}
        unknown = set(config_dict) - known
        if unknown:
            raise ConfigurationInvalidError(
                f"Unknown configuration keys: {sorted(unknown)}",
                context={"keys": sorted(unknown)},
            )
        return cls(**config_dict)

    @classmethod
    def from_json(cls, filepath: str):
        """Load configuration from JSON file."""
        with open(filepath, "r") as f:
            config_dict = json.load(f)
        return cls.from_dict(config_dict)


@dataclass
class HNSWConfig(_ConfigMixin):
    """Configuration for a standalone HNSW graph index.

    Hyperparameters:
        M: Maximum neighbors per node at every layer (2-512)
        ef_construction: Candidate breadth while inserting (must be >= M)
        metric: "cosine" or "euclidean"
        level_mult: Level generation multiplier (None = 1/ln(M))
        default_ef_search: Base breadth for layer-0 search when the caller gives none
        seed: Seed for level sampling (None = nondeterministic)
    """

    M: int = 16
    ef_construction: int = 200
    metric: str = "cosine"
    level_mult: Optional[float] = None
    default_ef_search: int = 32
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        validate_graph_params(self.M, self.ef_construction, self.metric)

        if self.level_mult is not None and self.level_mult <= 0.0:
            raise ConfigurationInvalidError(
                "level_mult must be positive", context={"level_mult": self.level_mult}
            )

        if self.default_ef_search < 1:
            raise ConfigurationInvalidError(
                "default_ef_search must be >= 1",
                context={"default_ef_search": self.default_ef_search},
            )

    def __repr__(self) -> str:
        return (
            f"HNSWConfig(M={self.M}, ef_construction={self.ef_construction}, "
            f"metric={self.metric})"
        )


@dataclass
class RouterConfig(_ConfigMixin):
    """Configuration for the cluster router.

    Clustering:
        num_clusters: Number of partitions created by build_index
        max_cluster_size: A cluster is split once it grows past this size

    Search:
        search_probe_count: Clusters to scan per query
        adaptive_probing: Widen/narrow the probe set from centroid scores
        probe_threshold: Keep probing while score >= top_score * threshold

    HNSW routing:
        hnsw_m, hnsw_ef_construction, hnsw_ef_search: Centroid graph parameters

    Optimization:
        enable_quantization: Store member vectors as 8-bit codes
        cache_size: Capacity of the hot-vector LRU cache
        batch_size: Chunk size for upsert_batch
        seed: Seed for k-means++ seeding, split seeds and level sampling
    """

    # Clustering
    num_clusters: int = 256
    max_cluster_size: int = 1000

    # Search
    search_probe_count: int = 5
    adaptive_probing: bool = True
    probe_threshold: float = 0.85

    # HNSW routing
    hnsw_m: int = 32
    hnsw_ef_construction: int = 400
    hnsw_ef_search: int = 100

    # Optimization
    enable_quantization: bool = False
    cache_size: int = 10000
    batch_size: int = 100

    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        validate_graph_params(self.hnsw_m, self.hnsw_ef_construction, "cosine")

        minimums = {
            "num_clusters": 1,
            "max_cluster_size": 2,
            "search_probe_count": 1,
            "hnsw_ef_search": 1,
            "cache_size": 1,
            "batch_size": 1,
        }
        for name, minimum in minimums.items():
            value = getattr(self, name)
            if value < minimum:
                raise ConfigurationInvalidError(
                    f"{name} must be >= {minimum}", context={name: value}
                )

        if not 0.0 < self.probe_threshold <= 1.0:
            raise ConfigurationInvalidError(
                "probe_threshold must be in (0.0, 1.0]",
                context={"probe_threshold": self.probe_threshold},
            )

    def __repr__(self) -> str:
        features = []
        if self.adaptive_probing:
            features.append(f"adaptive={self.probe_threshold}")
        if self.enable_quantization:
            features.append("quantized")

        features_str = ", ".join(features) if features else "static"

        return (
            f"RouterConfig("
            f"clusters={self.num_clusters}, "
            f"max_size={self.max_cluster_size}, "
            f"{features_str})"
        )


# Preset configurations

def get_default_hnsw_config() -> HNSWConfig:
    """Default graph configuration (recommended)."""
    return HNSWConfig()


def get_default_router_config() -> RouterConfig:
    """Default router configuration (recommended for 100k+ vectors)."""
    return RouterConfig()


def get_small_corpus_router_config() -> RouterConfig:
    """Router configuration for a few thousand vectors.

    Fewer, smaller clusters and a lighter routing graph; every query still
    probes at least three clusters.
    """
    return RouterConfig(
        num_clusters=32,
        max_cluster_size=200,
        search_probe_count=4,
        hnsw_m=16,
        hnsw_ef_construction=200,
        hnsw_ef_search=50,
        cache_size=2000,
    )
