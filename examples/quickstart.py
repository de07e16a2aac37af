"""Quick start guide for tieredann.

This example shows the minimal code needed to:
1. Build an HNSW graph index and search it
2. Delete, prune and persist the index
3. Build a cluster router over a larger corpus
4. Upsert into the router and inspect its statistics
"""

import os
import tempfile

import numpy as np

from tieredann import ClusterRouter, HNSWIndex, get_small_corpus_router_config


def graph_index_demo(vectors: np.ndarray) -> None:
    print("\n1. Building HNSW index...")

    index = HNSWIndex(M=16, ef_construction=200, seed=42)
    index.build_index(
        enumerate(vectors),
        on_progress=lambda fraction, eta: print(f"   {fraction:.0%} done, ~{eta:.1f}s left"),
    )

    stats = index.get_stats()
    print(f"   Indexed {stats['total_nodes']} vectors")
    print(f"   Graph has {stats['level_max'] + 1} layers")

    print("\n2. Searching...")

    k = 10
    results = index.search(vectors[0], k=k)

    print(f"   Top {k} results:")
    for rank, hit in enumerate(results[:5], 1):
        print(f"      {rank}. Document {hit['id']} (similarity: {hit['score']:.4f})")

    print("\n3. Deleting, pruning and saving...")

    index.delete_points_batch(range(0, 50))
    print(f"   Live points after delete: {index.active_count()}")
    print(f"   Pruned {index.prune_deleted_nodes()} tombstones")

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "index.json.gz")
        index.save(path, compress=True)
        restored = HNSWIndex.load(path)
        print(f"   Saved {os.path.getsize(path)} bytes, restored {len(restored)} points")


def router_demo(vectors: np.ndarray) -> None:
    print("\n4. Building cluster router...")

    router = ClusterRouter(get_small_corpus_router_config(), seed=42)
    router.build_index(
        {"id": f"doc-{i}", "vector": vector, "metadata": {"row": i}}
        for i, vector in enumerate(vectors)
    )

    print(f"   {len(router)} vectors in {len(router.centroids)} clusters")

    print("\n5. Searching the router...")

    for hit in router.search(vectors[7], k=3):
        print(f"      {hit['id']} (similarity: {hit['score']:.4f}, metadata: {hit['metadata']})")

    print("\n6. Upserting new vectors...")

    rng = np.random.default_rng(1)
    new_items = [
        {"id": f"new-{i}", "vector": vector}
        for i, vector in enumerate(rng.standard_normal((500, vectors.shape[1])))
    ]
    router.upsert_batch(new_items, on_progress=lambda done, total: None)

    stats = router.get_stats()
    print(f"   Vectors: {stats['total_vectors']}, clusters: {stats['total_clusters']}")
    print(f"   Cluster sizes: {stats['min_cluster_size']}-{stats['max_cluster_size']}")
    print(f"   Cache hit rate: {stats['cache_hit_rate']:.2%}")
    print(f"   Estimated memory: {stats['memory_usage_bytes'] / 1024:.0f} KiB")


def main():
    print("=" * 60)
    print("tieredann Quick Start")
    print("=" * 60)

    # 2000 vectors, 64 dimensions
    rng = np.random.default_rng(42)
    vectors = rng.standard_normal((2000, 64)).astype(np.float32)
    print(f"\nCreated {len(vectors)} vectors of dimension {vectors.shape[1]}")

    graph_index_demo(vectors)
    router_demo(vectors)

    print("\n" + "=" * 60)
    print("Quick Start Complete!")
    print("=" * 60)
    print("\nKey Takeaways:")
    print("  - HNSWIndex suits small and medium corpora with integer ids")
    print("  - ClusterRouter partitions large corpora and routes through an HNSW graph")
    print("  - Deletes are tombstones until prune_deleted_nodes()")
    print("  - Both indexes save to versioned, checksummed JSON (optionally gzipped)")


if __name__ == "__main__":
    main()
