"""
Core Module: Types, Errors, and Configuration

Self-contained module with no dependencies beyond numpy.
Provides the foundational abstractions for the whole index.
"""

from vecgraph.core.types import (
    VectorId,
    IdAllocator,
    MetricType,
    NodeState,
    CancellationToken,
    SearchParams,
    SearchHit,
    SearchResult,
    IndexStats,
    as_vector,
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
from vecgraph.core.protocols import BlobStoreProtocol

__all__ = [
    # Types
    "VectorId",
    "IdAllocator",
    "MetricType",
    "NodeState",
    "CancellationToken",
    "SearchParams",
    "SearchHit",
    "SearchResult",
    "IndexStats",
    "as_vector",
    # Errors
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
    # Protocols
    "BlobStoreProtocol",
]
