"""
Configuration Classes: Type-Safe Index Configuration

Provides structured configuration with validation for:
    - HNSW graph parameters
    - Quantization settings
    - Vector store caching and retry
    - Environment variable overrides (VECGRAPH_*)

Design:
    - Immutable after construction (frozen dataclasses)
    - validate() returns None or a human-readable reason
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from vecgraph.core.types import MetricType


MAX_DIMENSION = 65536


# =============================================================================
# HNSW GRAPH CONFIGURATION
# =============================================================================
@dataclass(frozen=True, slots=True)
class HNSWConfig:
    """
    Proximity graph configuration.

    Parameters:
        M: Max neighbors per node on layers >= 1 (2*M on layer 0)
        ef_construction: Build beam width (100-400)
        ef_search: Default search beam width (adjustable per-query)
        max_level: Hard cap on the randomized level draw
        keep_pruned_connections: Top up neighbor lists with candidates the
            diversity heuristic rejected
        seed: Seed of the level generator owned by the index
    """
    M: int = 16
    ef_construction: int = 200
    ef_search: int = 64
    max_level: int = 16
    keep_pruned_connections: bool = False
    seed: int = 42

    def validate(self) -> Optional[str]:
        if self.M < 2 or self.M > 256:
            return f"M must be in [2, 256], got {self.M}"
        if self.ef_construction < 1:
            return f"ef_construction must be >= 1, got {self.ef_construction}"
        if self.ef_search < 1:
            return f"ef_search must be >= 1, got {self.ef_search}"
        if self.max_level < 0:
            return f"max_level must be >= 0, got {self.max_level}"
        return None

    @property
    def M_max0(self) -> int:
        """Layer-0 degree bound."""
        return 2 * self.M

    @property
    def ml(self) -> float:
        """Level normalization factor 1/ln(M)."""
        return 1.0 / math.log(self.M)

    def degree_bound(self, layer: int) -> int:
        return self.M_max0 if layer == 0 else self.M


# =============================================================================
# QUANTIZATION CONFIGURATION
# =============================================================================
class QuantizerKind(Enum):
    """Vector compression schemes."""
    NONE = "none"               # Full precision float32
    SCALAR = "scalar"           # 8-bit per dimension (4x)
    PQ = "pq"                   # Product quantization (D*4/m x at 8 bits)


@dataclass(frozen=True, slots=True)
class QuantizationConfig:
    """
    Quantizer configuration.

    Parameters:
        kind: Compression scheme
        pq_subvectors: m, number of contiguous sub-vectors (must divide D)
        pq_bits: b, bits per sub-code (2^b centroids per sub-space)
        rotation: Learn an orthogonal rotation before splitting (OPQ)
        rotation_iterations: Alternating PQ/Procrustes rounds
        kmeans_iterations: Lloyd iterations per sub-space
        min_samples_per_centroid: Training sample floor multiplier
        seed: Seed for k-means++ init and sub-sampling
        tolerance: Reconstruction L2 error accepted on held-out vectors
    """
    kind: QuantizerKind = QuantizerKind.NONE
    pq_subvectors: int = 8
    pq_bits: int = 8
    rotation: bool = False
    rotation_iterations: int = 4
    kmeans_iterations: int = 25
    min_samples_per_centroid: int = 10
    seed: int = 1
    tolerance: float = 0.1

    @property
    def num_centroids(self) -> int:
        return 1 << self.pq_bits

    def required_samples(self) -> int:
        """Smallest training sample accepted for this configuration."""
        if self.kind == QuantizerKind.PQ:
            return self.min_samples_per_centroid * self.num_centroids
        return self.min_samples_per_centroid

    def validate(self, dimension: Optional[int] = None) -> Optional[str]:
        if self.kind == QuantizerKind.PQ:
            if self.pq_subvectors < 1:
                return f"pq_subvectors must be >= 1, got {self.pq_subvectors}"
            if not 1 <= self.pq_bits <= 16:
                return f"pq_bits must be in [1, 16], got {self.pq_bits}"
            if dimension is not None and dimension % self.pq_subvectors != 0:
                return (
                    f"dimension {dimension} must be divisible by "
                    f"pq_subvectors={self.pq_subvectors}"
                )
        if self.min_samples_per_centroid < 1:
            return "min_samples_per_centroid must be >= 1"
        if self.kmeans_iterations < 1:
            return "kmeans_iterations must be >= 1"
        if self.tolerance <= 0:
            return f"tolerance must be > 0, got {self.tolerance}"
        return None

    def compression_ratio(self, dimension: int) -> float:
        if self.kind == QuantizerKind.SCALAR:
            return 4.0
        if self.kind == QuantizerKind.PQ:
            code_bytes = self.pq_subvectors * (1 if self.pq_bits <= 8 else 2)
            return dimension * 4 / code_bytes
        return 1.0


# =============================================================================
# VECTOR STORE CONFIGURATION
# =============================================================================
@dataclass(frozen=True, slots=True)
class StoreConfig:
    """Vector store caching and blob retry configuration."""
    cache_capacity: int = 4096
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 10
    retry_max_delay_ms: int = 1000

    def validate(self) -> Optional[str]:
        if self.cache_capacity < 0:
            return f"cache_capacity must be >= 0, got {self.cache_capacity}"
        if self.retry_max_attempts < 0:
            return f"retry_max_attempts must be >= 0, got {self.retry_max_attempts}"
        return None


# =============================================================================
# INDEX CONFIGURATION
# =============================================================================
@dataclass(frozen=True, slots=True)
class IndexConfig:
    """
    Top-level configuration of one index instance.

    Attributes:
        dimension: Vector dimensionality D (fixed for the index lifetime)
        metric: Distance/similarity metric
        hnsw: Graph parameters
        quantization: Compression scheme
        store: Vector store parameters
    """
    dimension: int
    metric: MetricType = MetricType.L2
    hnsw: HNSWConfig = field(default_factory=HNSWConfig)
    quantization: QuantizationConfig = field(default_factory=QuantizationConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    def validate(self) -> Optional[str]:
        if self.dimension < 1 or self.dimension > MAX_DIMENSION:
            return f"dimension must be in [1, {MAX_DIMENSION}], got {self.dimension}"
        return (
            self.hnsw.validate()
            or self.quantization.validate(self.dimension)
            or self.store.validate()
        )

    @classmethod
    def from_env(cls, dimension: int, base: Optional["IndexConfig"] = None) -> "IndexConfig":
        """Apply VECGRAPH_* environment overrides on top of base (or defaults)."""
        config = base or cls(dimension=dimension)
        hnsw = replace(
            config.hnsw,
            M=int(os.getenv("VECGRAPH_M", str(config.hnsw.M))),
            ef_construction=int(
                os.getenv("VECGRAPH_EF_CONSTRUCTION", str(config.hnsw.ef_construction))
            ),
            ef_search=int(os.getenv("VECGRAPH_EF_SEARCH", str(config.hnsw.ef_search))),
        )
        quantization = replace(
            config.quantization,
            kind=QuantizerKind(
                os.getenv("VECGRAPH_QUANTIZER", config.quantization.kind.value)
            ),
        )
        store = replace(
            config.store,
            cache_capacity=int(
                os.getenv("VECGRAPH_CACHE_CAPACITY", str(config.store.cache_capacity))
            ),
        )
        return replace(
            config,
            dimension=dimension,
            metric=MetricType.parse(os.getenv("VECGRAPH_METRIC", config.metric.value)),
            hnsw=hnsw,
            quantization=quantization,
            store=store,
        )
