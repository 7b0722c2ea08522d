"""
Vectorized Distance Kernels

Provides distance/similarity computations:
    - L2 (Euclidean) distance
    - Inner product (dot product)
    - Cosine similarity (normalized dot product)
    - Asymmetric distance between a full-precision query and quantized codes

Optimizations:
    - NumPy broadcasting for batch operations
    - Cosine vectors normalized once at insert so traversal is a single dot
    - Per-query lookup tables for product-quantized codes

Ordering keys:
    Graph traversal compares "keys" where lower is always closer:
        L2:      squared distance (sqrt is monotonic, applied on output only)
        IP:      -dot
        COSINE:  1 - dot of unit vectors
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Union

import numpy as np

from vecgraph.core.errors import Err, InputError, Ok, Result
from vecgraph.core.types import MetricType, as_vector

if TYPE_CHECKING:
    import numpy.typing as npt

    from vecgraph.quantization.base import Codebook

# Type alias for vector input
VectorLike = Union[np.ndarray, list[float], "npt.NDArray[np.float32]"]


# =============================================================================
# VECTOR NORMALIZATION
# =============================================================================
def normalize_vector(v: VectorLike) -> np.ndarray:
    """
    L2-normalize vector(s) to unit length.

    Args:
        v: Single vector (1D) or batch of vectors (2D)

    Returns:
        Normalized vector(s) with ||v|| = 1 (zero vectors returned unchanged)

    Complexity: O(d) per vector
    """
    v = np.asarray(v, dtype=np.float32)
    if v.ndim == 1:
        norm = np.linalg.norm(v)
        return v / norm if norm > 0 else v
    norms = np.linalg.norm(v, axis=1, keepdims=True)
    norms = np.where(norms > 0, norms, 1.0)
    return v / norms


# =============================================================================
# COSINE SIMILARITY
# =============================================================================
def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """
    Cosine similarity between two vectors.

    Formula: cos(θ) = (a · b) / (||a|| × ||b||)

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector is zero
    """
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def cosine_distance(a: VectorLike, b: VectorLike) -> float:
    """Cosine distance (1 - similarity), in [0, 2]."""
    return 1.0 - cosine_similarity(a, b)


# =============================================================================
# L2 (EUCLIDEAN) DISTANCE
# =============================================================================
def l2_distance(a: VectorLike, b: VectorLike) -> float:
    """
    L2 (Euclidean) distance.

    Formula: ||a - b||₂ = √(Σ(aᵢ - bᵢ)²)
    """
    return float(np.sqrt(l2_distance_squared(a, b)))


def l2_distance_squared(a: VectorLike, b: VectorLike) -> float:
    """Squared L2 distance (avoids sqrt, same ordering)."""
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    diff = a - b
    return float(np.dot(diff, diff))


def l2_distance_squared_batch(query: VectorLike, vectors: VectorLike) -> np.ndarray:
    """
    Squared L2 distance between query and batch of vectors.

    Computed as Σ(q - v)² directly rather than ||q||² + ||v||² - 2q·v so that
    identical vectors come out at exactly 0.

    Args:
        query: Query vector (1D, shape [d])
        vectors: Candidate vectors (2D, shape [n, d])

    Returns:
        Squared distances (1D, shape [n])
    """
    query = np.asarray(query, dtype=np.float32)
    vectors = np.asarray(vectors, dtype=np.float32)
    diff = vectors - query
    return np.einsum("ij,ij->i", diff, diff)


def l2_distance_batch(query: VectorLike, vectors: VectorLike) -> np.ndarray:
    """L2 distance between query and batch of vectors."""
    return np.sqrt(l2_distance_squared_batch(query, vectors))


# =============================================================================
# INNER PRODUCT
# =============================================================================
def inner_product(a: VectorLike, b: VectorLike) -> float:
    """
    Inner (dot) product.

    Formula: a · b = Σ(aᵢ × bᵢ)
    """
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    return float(np.dot(a, b))


def inner_product_batch(query: VectorLike, vectors: VectorLike) -> np.ndarray:
    """Inner product between query (1D) and batch of vectors (2D)."""
    query = np.asarray(query, dtype=np.float32)
    vectors = np.asarray(vectors, dtype=np.float32)
    return np.dot(vectors, query)


# =============================================================================
# METRIC SPACE
# =============================================================================
class MetricSpace:
    """
    Dimension-checked distance computations under one metric.

    All "key" methods return lower-is-closer ordering keys; distance()
    returns the value reported to callers in SearchHit.distance.
    """

    __slots__ = ("dimension", "metric")

    def __init__(self, dimension: int, metric: MetricType) -> None:
        self.dimension = dimension
        self.metric = metric

    def check(self, values: VectorLike) -> Result[np.ndarray, InputError]:
        """Coerce to float32 and reject wrong length or non-finite input."""
        try:
            vec = as_vector(values)
        except (TypeError, ValueError) as e:
            return Err(InputError.invalid_vector(str(e)))
        if vec.shape[0] != self.dimension:
            return Err(InputError.dimension_mismatch(self.dimension, vec.shape[0]))
        if not np.all(np.isfinite(vec)):
            return Err(InputError.invalid_vector("contains NaN or infinity"))
        return Ok(vec)

    def prepare(self, vec: np.ndarray) -> np.ndarray:
        """Map a checked vector into traversal space (unit length for cosine)."""
        if self.metric == MetricType.COSINE:
            return normalize_vector(vec)
        return vec

    def keys(self, query: np.ndarray, vectors: np.ndarray) -> np.ndarray:
        """Ordering keys from a prepared query to prepared vectors [n, d]."""
        if len(vectors) == 0:
            return np.empty(0, dtype=np.float32)
        if self.metric == MetricType.L2:
            return l2_distance_squared_batch(query, vectors)
        if self.metric == MetricType.INNER_PRODUCT:
            return -inner_product_batch(query, vectors)
        return 1.0 - inner_product_batch(query, vectors)

    def key(self, a: np.ndarray, b: np.ndarray) -> float:
        """Ordering key between two prepared vectors."""
        if self.metric == MetricType.L2:
            return l2_distance_squared(a, b)
        if self.metric == MetricType.INNER_PRODUCT:
            return -inner_product(a, b)
        return 1.0 - inner_product(a, b)

    def to_distance(self, key: float) -> float:
        """Convert an ordering key into the reported distance."""
        if self.metric == MetricType.L2:
            return float(np.sqrt(max(key, 0.0)))
        return float(key)

    def to_score(self, distance: float) -> float:
        """Natural metric value: L2 distance, dot product, cosine similarity."""
        if self.metric == MetricType.L2:
            return distance
        if self.metric == MetricType.INNER_PRODUCT:
            return -distance
        return 1.0 - distance

    def distance(self, a: VectorLike, b: VectorLike) -> Result[float, InputError]:
        """
        Exact distance between two raw vectors.

        Fails with DIMENSION_MISMATCH if either length differs from D.
        """
        checked_a = self.check(a)
        if checked_a.is_err():
            return checked_a
        checked_b = self.check(b)
        if checked_b.is_err():
            return checked_b
        key = self.key(self.prepare(checked_a.unwrap()), self.prepare(checked_b.unwrap()))
        return Ok(self.to_distance(key))

    def asymmetric(self, query: np.ndarray, codebook: "Codebook") -> "AsymmetricDistance":
        """Build the per-query scorer for quantized codes."""
        return AsymmetricDistance(codebook, self.prepare(query), self.metric)

    def quantized_distance(
        self,
        query: VectorLike,
        code: np.ndarray,
        codebook: "Codebook",
    ) -> Result[float, InputError]:
        """Approximate distance between a raw query and one quantized code."""
        checked = self.check(query)
        if checked.is_err():
            return checked
        code = np.asarray(code)
        if code.shape[-1] != codebook.code_size:
            return Err(InputError.dimension_mismatch(codebook.code_size, code.shape[-1]))
        scorer = self.asymmetric(checked.unwrap(), codebook)
        return Ok(self.to_distance(float(scorer(code.reshape(1, -1))[0])))


# =============================================================================
# ASYMMETRIC (QUANTIZED) DISTANCE
# =============================================================================
class AsymmetricDistance:
    """
    Query kept full-precision, stored vectors compressed.

    The codebook builds a per-query table once (for PQ: one partial-distance
    row per sub-quantizer); scoring a batch of codes is then table lookups
    summed across sub-codes, never a decode of the stored vector.
    """

    __slots__ = ("_codebook", "_table", "metric")

    def __init__(self, codebook: "Codebook", query: np.ndarray, metric: MetricType) -> None:
        self._codebook = codebook
        self._table: Any = codebook.query_table(query, metric)
        self.metric = metric

    def __call__(self, codes: np.ndarray) -> np.ndarray:
        """Ordering keys for codes of shape [n, code_size]."""
        if len(codes) == 0:
            return np.empty(0, dtype=np.float32)
        return self._codebook.score_codes(self._table, codes, self.metric)
