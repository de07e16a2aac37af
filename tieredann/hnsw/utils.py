"""
Utility functions for HNSW graph construction and maintenance.

This module provides helper functions used during HNSW index building and search:
- Level assignment: Determines which layers a new node should appear in
- Neighbor selection: Chooses which edges to keep when a slot list overflows
- Entry point recovery: Finds a usable search root after deletions
- Heap pooling: Reusable priority-queue storage for the search hot path

The level assignment samples a precomputed geometric-like probability table,
so most nodes only appear in layer 0 and progressively fewer nodes appear in
higher layers.
"""

import math
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from tieredann.errors import DimensionMismatchError, EmptyVectorError

# Probabilities below this are dropped from the level table
LEVEL_PROBABILITY_CUTOFF = 1e-9


def default_level_mult(M: int) -> float:
    """Level multiplier mL = 1/ln(M) (Malkov & Yashunin 2016)."""
    return 1.0 / math.log(M)


def build_level_probabilities(level_mult: float) -> List[float]:
    """
    Precompute the probability of a node being assigned each level.

    P(level = l) = exp(-l / mL) * (1 - exp(-1 / mL))

    The table stops at the first level whose probability falls below 1e-9,
    which also bounds the highest level a node can reach.

    Example:
        >>> probs = build_level_probabilities(1.0 / math.log(16))
        >>> round(probs[0], 4)  # ~93.75% of nodes stay at layer 0
        0.9375
    """
    probs = []
    level = 0
    while True:
        prob = math.exp(-level / level_mult) * (1.0 - math.exp(-1.0 / level_mult))
        if prob < LEVEL_PROBABILITY_CUTOFF:
            break
        probs.append(prob)
        level += 1
    return probs


def select_level(probs: List[float], rng: np.random.Generator) -> int:
    """
    Sample a level from a probability table.

    The uniform draw is walked down the table; whatever mass the truncated
    tail would have carried lands on the last level.
    """
    r = rng.random()
    for level, prob in enumerate(probs):
        if r < prob:
            return level
        r -= prob
    return len(probs) - 1


def select_top_neighbors(
    candidates: List[int], similarities: List[float], M: int
) -> List[int]:
    """
    Select the M most similar candidates.

    Args:
        candidates: List of node IDs
        similarities: Similarities to the owning node (parallel to candidates)
        M: Maximum number of neighbors to select

    Returns:
        Selected node IDs, most similar first

    Example:
        >>> select_top_neighbors([10, 20, 30, 40], [0.5, 0.8, 0.2, 0.7], M=2)
        [20, 40]
    """
    if len(candidates) == 0:
        return []

    paired = sorted(zip(candidates, similarities), key=lambda x: x[1], reverse=True)
    return [node_id for node_id, _ in paired[:M]]


def recover_entry_point(nodes: Mapping[int, Any]) -> Tuple[int, int]:
    """
    Pick a search root from a node collection.

    Returns the id and level of the highest-level non-deleted node (the first
    one encountered wins ties), or (-1, -1) when every node is deleted.
    Pure function: the caller decides whether to store the result.
    """
    best_id = -1
    best_level = -1
    for node_id, node in nodes.items():
        if node.deleted:
            continue
        if node.level > best_level:
            best_id = node_id
            best_level = node.level
    return best_id, best_level


class HeapPool:
    """
    Pool of reusable heap lists keyed by role.

    Layer search needs two heaps per call (the worklist and the bounded result
    set). Checking them out of a pool and releasing them afterwards keeps the
    backing lists alive across calls instead of allocating new ones.
    """

    def __init__(self, max_per_role: int = 8) -> None:
        self.max_per_role = max_per_role
        self._free: Dict[str, List[list]] = {}

    def acquire(self, role: str) -> list:
        free = self._free.get(role)
        if free:
            return free.pop()
        return []

    def release(self, heap: list, role: str) -> None:
        heap.clear()
        free = self._free.setdefault(role, [])
        if len(free) < self.max_per_role:
            free.append(heap)

    def available(self, role: Optional[str] = None) -> int:
        """Number of pooled heaps (for one role, or all roles)."""
        if role is not None:
            return len(self._free.get(role, []))
        return sum(len(free) for free in self._free.values())


def to_vector(
    vector: Any,
    dimension: Optional[int] = None,
    item_id: Any = None,
) -> np.ndarray:
    """
    Coerce caller input to a 1-D float32 array and check its dimension.

    Raises:
        EmptyVectorError: If the vector is missing or has no components
        DimensionMismatchError: If it is not 1-D or its length differs from dimension
    """
    if vector is None:
        raise EmptyVectorError("Vector cannot be empty", context={"id": item_id})

    array = np.array(vector, dtype=np.float32)
    if array.size == 0:
        raise EmptyVectorError("Vector cannot be empty", context={"id": item_id})

    if array.ndim != 1:
        raise DimensionMismatchError(
            f"Expected a 1-D vector, got shape {array.shape}",
            context={"id": item_id, "shape": array.shape},
        )

    if dimension is not None and array.shape[0] != dimension:
        raise DimensionMismatchError(
            f"Vector dimension {array.shape[0]} doesn't match index dimension {dimension}",
            context={"expected": dimension, "got": int(array.shape[0]), "id": item_id},
        )

    return array
