"""
VecGraph: Approximate Nearest-Neighbor Vector Index

Features:
    - HNSW proximity graph with relative-neighborhood pruning
    - Scalar (8-bit) and product quantization with optional OPQ rotation
    - Asymmetric distance computation over compressed codes, exact re-rank
    - Lock-free concurrent queries alongside a single writer
    - Codebook hot swap without blocking queries
    - Tombstone deletes, compaction and crash-safe persistence

Usage:
    from vecgraph import create_index, QuantizationConfig, QuantizerKind

    index = create_index(dimension=128, metric="cosine").unwrap()
    index.insert(1, vector, metadata={"title": "Doc 1"})

    result = index.search(query, k=10)
    if result.is_ok():
        for hit in result.unwrap():
            print(hit.id, hit.distance)

    # Compress traversal distances
    index.train_quantizer(config=QuantizationConfig(kind=QuantizerKind.PQ))
"""

from __future__ import annotations

__version__ = "0.1.0"

# =============================================================================
# LAZY IMPORTS FOR FAST STARTUP
# =============================================================================
# Core types (always available, numpy only)
from vecgraph.core.types import (
    VectorId,
    MetricType,
    CancellationToken,
    SearchParams,
    SearchHit,
    SearchResult,
    IndexStats,
)
from vecgraph.core.errors import (
    Result,
    Ok,
    Err,
    ErrorCode,
    VecGraphError,
    InputError,
    GraphError,
    QuantizerError,
    StoreError,
    QueryError,
    ConfigError,
)
from vecgraph.core.config import (
    HNSWConfig,
    QuantizationConfig,
    QuantizerKind,
    StoreConfig,
    IndexConfig,
)


# Engine and backends (lazy-loaded on first access)
def __getattr__(name: str):
    """Lazy import of heavy modules for fast startup time."""
    if name in ("VectorIndex", "create_index", "TrainingReport", "BatchInsertReport"):
        from vecgraph import engine
        return getattr(engine, name)
    if name in ("InMemoryBlobStore", "FileSystemBlobStore"):
        from vecgraph.storage import blob
        return getattr(blob, name)
    if name == "ProximityGraph":
        from vecgraph.index.graph import ProximityGraph
        return ProximityGraph
    if name == "MetricSpace":
        from vecgraph.index.distance import MetricSpace
        return MetricSpace
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    # Version
    "__version__",
    # Core types
    "VectorId",
    "MetricType",
    "CancellationToken",
    "SearchParams",
    "SearchHit",
    "SearchResult",
    "IndexStats",
    # Error handling
    "Result",
    "Ok",
    "Err",
    "ErrorCode",
    "VecGraphError",
    "InputError",
    "GraphError",
    "QuantizerError",
    "StoreError",
    "QueryError",
    "ConfigError",
    # Config
    "HNSWConfig",
    "QuantizationConfig",
    "QuantizerKind",
    "StoreConfig",
    "IndexConfig",
    # Engine (lazy)
    "VectorIndex",
    "create_index",
    "TrainingReport",
    "BatchInsertReport",
    "InMemoryBlobStore",
    "FileSystemBlobStore",
    "ProximityGraph",
    "MetricSpace",
]
