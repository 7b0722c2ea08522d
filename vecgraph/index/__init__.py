"""
Index Module: Proximity Graph and Distance Kernels

Provides:
    - ProximityGraph: multi-layer navigable small-world graph
    - MetricSpace: dimension-checked exact and quantized distances
    - Distance kernels: Cosine, L2, Inner Product
    - Recall helpers: brute_force_search, recall_at_k
"""

from vecgraph.index.distance import (
    AsymmetricDistance,
    MetricSpace,
    cosine_distance,
    cosine_similarity,
    inner_product,
    l2_distance,
    normalize_vector,
)
from vecgraph.index.graph import (
    CompactionReport,
    GraphCandidates,
    GraphSnapshot,
    NodeRecord,
    ProximityGraph,
)
from vecgraph.index.recall import brute_force_search, ground_truth, recall_at_k

__all__ = [
    # Graph
    "ProximityGraph",
    "GraphCandidates",
    "GraphSnapshot",
    "NodeRecord",
    "CompactionReport",
    # Distance
    "MetricSpace",
    "AsymmetricDistance",
    "cosine_similarity",
    "cosine_distance",
    "l2_distance",
    "inner_product",
    "normalize_vector",
    # Recall
    "brute_force_search",
    "ground_truth",
    "recall_at_k",
]
