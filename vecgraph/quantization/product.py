"""
Product Quantization with Optional Learned Rotation (PQ / OPQ)

Algorithm Details:
    - Split D into m contiguous sub-vectors of D/m dimensions
    - k-means with 2^b centroids independently per sub-space
    - Code = m centroid indices (uint8 for b <= 8, uint16 otherwise)
    - Asymmetric distance: per-query table [m, 2^b] of partial distances,
      summed across sub-codes by fancy indexing

Rotation (non-parametric OPQ):
    Alternate between training sub-codebooks on X·R and solving the
    orthogonal Procrustes problem min ||X·R - Y|| for the reconstruction Y
    (R = U·Vᵀ from svd(Xᵀ·Y)). The lowest-error (R, centroids) pair seen is
    kept, so the rotated codebook is never worse on the sample than the
    axis-aligned one it starts from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import ClassVar, Optional

import numpy as np

from vecgraph.core.config import QuantizationConfig, QuantizerKind
from vecgraph.core.errors import Err, Ok, QuantizerError, Result
from vecgraph.core.types import MetricType
from vecgraph.quantization.base import Codebook, freeze
from vecgraph.quantization.kmeans import assign, kmeans

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, eq=False)
class ProductCodebook(Codebook):
    """
    Sub-space centroid sets plus optional rotation.

    Attributes:
        dimension: Input dimension D
        centroids: (m, 2^b, D/m) float32
        rotation: (D, D) orthogonal matrix or None
        training_error: Mean squared reconstruction error on the training sample
    """

    kind: ClassVar[QuantizerKind] = QuantizerKind.PQ

    dimension: int
    centroids: np.ndarray
    rotation: Optional[np.ndarray] = None
    training_error: float = 0.0

    @property
    def subvectors(self) -> int:
        return int(self.centroids.shape[0])

    @property
    def num_centroids(self) -> int:
        return int(self.centroids.shape[1])

    @property
    def dsub(self) -> int:
        return int(self.centroids.shape[2])

    @property
    def code_size(self) -> int:
        return self.subvectors

    @property
    def code_dtype(self) -> np.dtype:
        return np.dtype(np.uint8 if self.num_centroids <= 256 else np.uint16)

    def _rotate(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float32)
        return X @ self.rotation if self.rotation is not None else X

    def encode_batch(self, X: np.ndarray) -> np.ndarray:
        Xr = self._rotate(X)
        codes = np.empty((Xr.shape[0], self.subvectors), dtype=self.code_dtype)
        for m in range(self.subvectors):
            sub = Xr[:, m * self.dsub:(m + 1) * self.dsub]
            labels, _ = assign(sub, self.centroids[m])
            codes[:, m] = labels
        return codes

    def decode_batch(self, codes: np.ndarray) -> np.ndarray:
        codes = np.asarray(codes, dtype=np.int64)
        parts = [self.centroids[m][codes[:, m]] for m in range(self.subvectors)]
        approx = np.concatenate(parts, axis=1)
        if self.rotation is not None:
            approx = approx @ self.rotation.T
        return approx.astype(np.float32)

    def query_table(self, query: np.ndarray, metric: MetricType) -> np.ndarray:
        """
        Partial-distance lookup table of shape (m, 2^b).

        L2 rows hold squared sub-distances; IP/cosine rows hold negated
        partial dot products. The rotation is orthogonal, so both are
        preserved in the rotated space.
        """
        q = self._rotate(np.asarray(query, dtype=np.float32)[None, :])[0]
        q_sub = q.reshape(self.subvectors, self.dsub)
        if metric == MetricType.L2:
            diff = self.centroids - q_sub[:, None, :]
            return np.einsum("mkd,mkd->mk", diff, diff)
        return -np.einsum("mkd,md->mk", self.centroids, q_sub)

    def score_codes(self, table: np.ndarray, codes: np.ndarray, metric: MetricType) -> np.ndarray:
        codes = np.asarray(codes, dtype=np.int64)
        partial = table[np.arange(self.subvectors)[None, :], codes]
        keys = partial.sum(axis=1)
        if metric == MetricType.COSINE:
            keys = 1.0 + keys
        return keys

    def to_arrays(self) -> dict[str, np.ndarray]:
        arrays = {
            "centroids": np.asarray(self.centroids),
            "training_error": np.array(self.training_error, dtype=np.float64),
        }
        if self.rotation is not None:
            arrays["rotation"] = np.asarray(self.rotation)
        return arrays

    @classmethod
    def from_arrays(cls, arrays: dict[str, np.ndarray]) -> "ProductCodebook":
        centroids = arrays["centroids"]
        rotation = arrays.get("rotation")
        return cls(
            dimension=int(centroids.shape[0] * centroids.shape[2]),
            centroids=freeze(centroids),
            rotation=freeze(rotation) if rotation is not None else None,
            training_error=float(arrays.get("training_error", 0.0)),
        )


# =============================================================================
# TRAINING
# =============================================================================
def _fit_subspaces(
    X: np.ndarray,
    config: QuantizationConfig,
    rng: np.random.Generator,
    warm: Optional[np.ndarray] = None,
) -> np.ndarray:
    m = config.pq_subvectors
    dsub = X.shape[1] // m
    centroids = np.empty((m, config.num_centroids, dsub), dtype=np.float32)
    for i in range(m):
        result = kmeans(
            X[:, i * dsub:(i + 1) * dsub],
            config.num_centroids,
            rng,
            max_iter=config.kmeans_iterations,
            init=warm[i] if warm is not None else None,
        )
        centroids[i] = result.centroids
    return centroids


def _reconstruct(X: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Encode then decode X in the (already rotated) sub-space layout."""
    m, _, dsub = centroids.shape
    out = np.empty_like(X)
    for i in range(m):
        sub = X[:, i * dsub:(i + 1) * dsub]
        labels, _ = assign(sub, centroids[i])
        out[:, i * dsub:(i + 1) * dsub] = centroids[i][labels]
    return out


def _mse(X: np.ndarray, Y: np.ndarray) -> float:
    diff = X - Y
    return float(np.einsum("ij,ij->i", diff, diff).mean())


def train_product(
    sample: np.ndarray,
    config: QuantizationConfig,
) -> Result[ProductCodebook, QuantizerError]:
    """
    Train sub-space codebooks (and a rotation if configured) on sample [n, D].

    Pure function of (sample, config): the generator is seeded from
    config.seed, nothing outside the returned codebook is modified.
    """
    required = config.required_samples()
    if sample.shape[0] < required:
        return Err(QuantizerError.insufficient_samples(sample.shape[0], required))

    X = np.ascontiguousarray(sample, dtype=np.float32)
    rng = np.random.default_rng(config.seed)

    centroids = _fit_subspaces(X, config, rng)
    best_error = _mse(X, _reconstruct(X, centroids))
    best_centroids, best_rotation = centroids, None

    if config.rotation:
        rotation = np.eye(X.shape[1], dtype=np.float32)
        for it in range(config.rotation_iterations):
            Xr = X @ rotation
            Y = _reconstruct(Xr, centroids)
            # Orthogonal Procrustes: argmin_R ||X·R - Y||
            u, _, vt = np.linalg.svd(X.T.astype(np.float64) @ Y.astype(np.float64))
            rotation = (u @ vt).astype(np.float32)
            Xr = X @ rotation
            centroids = _fit_subspaces(Xr, config, rng, warm=centroids)
            error = _mse(Xr, _reconstruct(Xr, centroids))
            logger.debug("OPQ iteration %d: mse=%.6f", it + 1, error)
            if error < best_error:
                best_error, best_centroids, best_rotation = error, centroids, rotation

    return Ok(ProductCodebook(
        dimension=int(X.shape[1]),
        centroids=freeze(best_centroids),
        rotation=freeze(best_rotation) if best_rotation is not None else None,
        training_error=best_error,
    ))
