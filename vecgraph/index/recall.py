"""
Exact k-NN Ground Truth and Recall@k

Used by tests and the CLI benchmark to measure how much the graph search
loses against an exhaustive scan.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from vecgraph.core.types import MetricType
from vecgraph.index.distance import MetricSpace


def brute_force_search(
    data: np.ndarray,
    ids: Sequence[int],
    query: np.ndarray,
    k: int,
    metric: MetricType = MetricType.L2,
) -> list[tuple[int, float]]:
    """
    Exact top-k by full scan.

    Ties break on lower id, matching the graph search ordering.

    Returns:
        [(id, distance)] ascending by distance
    """
    data = np.asarray(data, dtype=np.float32)
    if data.shape[0] == 0 or k <= 0:
        return []
    space = MetricSpace(data.shape[1], metric)
    query = space.prepare(np.asarray(query, dtype=np.float32))
    if metric == MetricType.COSINE:
        norms = np.linalg.norm(data, axis=1, keepdims=True)
        data = data / np.where(norms > 0, norms, 1.0)
    keys = space.keys(query, data)
    id_arr = np.asarray(ids, dtype=np.uint64)
    order = np.lexsort((id_arr, keys))[:k]
    return [(int(id_arr[i]), space.to_distance(float(keys[i]))) for i in order]


def ground_truth(
    data: np.ndarray,
    ids: Sequence[int],
    queries: np.ndarray,
    k: int,
    metric: MetricType = MetricType.L2,
) -> list[list[int]]:
    """Exact top-k ids for each query."""
    return [
        [vid for vid, _ in brute_force_search(data, ids, q, k, metric)]
        for q in np.asarray(queries, dtype=np.float32)
    ]


def recall_at_k(results: Sequence[Sequence[int]], truth: Sequence[Sequence[int]], k: int) -> float:
    """Mean fraction of the true top-k present in the returned top-k."""
    if not results:
        return 0.0
    total = 0.0
    for retrieved, relevant in zip(results, truth):
        expected = set(relevant[:k])
        if not expected:
            total += 1.0
            continue
        total += len(set(retrieved[:k]) & expected) / len(expected)
    return total / len(results)
