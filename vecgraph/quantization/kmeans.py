"""
Lloyd's k-means with k-means++ seeding.

Used independently per sub-space by the product quantizer. Pure: the
generator is passed in, no module state is touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass(frozen=True, slots=True)
class KMeansResult:
    centroids: np.ndarray  # (k, d) float32
    labels: np.ndarray     # (n,) int32
    inertia: float         # sum of squared distances to assigned centroid


def assign(X: np.ndarray, centroids: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Nearest-centroid assignment under L2.

    Returns:
        (labels, squared distances to the chosen centroid)
    """
    # ||x - c||² = ||x||² + ||c||² - 2 x·c
    x_norm = np.einsum("ij,ij->i", X, X)[:, None]
    c_norm = np.einsum("ij,ij->i", centroids, centroids)[None, :]
    dist_sq = x_norm + c_norm - 2.0 * (X @ centroids.T)
    labels = np.argmin(dist_sq, axis=1).astype(np.int32, copy=False)
    best = np.maximum(dist_sq[np.arange(len(X)), labels], 0.0)
    return labels, best


def kmeans(
    X: np.ndarray,
    k: int,
    rng: np.random.Generator,
    max_iter: int = 25,
    tol: float = 1e-5,
    init: Optional[np.ndarray] = None,
) -> KMeansResult:
    """
    Cluster X [n, d] into k centroids.

    Args:
        X: Training points
        k: Number of centroids (must not exceed n)
        rng: Random generator for seeding and empty-cluster repair
        max_iter: Lloyd iterations
        tol: Stop when no centroid moves farther than this
        init: Warm-start centroids (k, d); k-means++ when None

    Complexity: O(max_iter × n × k × d)
    """
    X = np.ascontiguousarray(X, dtype=np.float32)
    n = X.shape[0]
    if n == 0:
        raise ValueError("Empty dataset")
    if k > n:
        raise ValueError(f"k={k} exceeds number of points {n}")

    centroids = init.astype(np.float32, copy=True) if init is not None else _kmeans_pp(X, k, rng)
    labels, dist_sq = assign(X, centroids)
    for _ in range(max_iter):
        previous = centroids
        centroids = _recompute(X, labels, k, rng, previous)
        labels, dist_sq = assign(X, centroids)
        shift = float(np.max(np.linalg.norm(centroids - previous, axis=1)))
        if shift <= tol:
            break

    return KMeansResult(centroids=centroids, labels=labels, inertia=float(dist_sq.sum()))


def _kmeans_pp(X: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    n, d = X.shape
    centroids = np.empty((k, d), dtype=np.float32)
    centroids[0] = X[int(rng.integers(0, n))]
    dist_sq = np.sum((X - centroids[0]) ** 2, axis=1)
    for i in range(1, k):
        total = float(dist_sq.sum())
        if total <= 0.0:
            # all remaining points coincide with a centroid
            centroids[i] = X[int(rng.integers(0, n))]
            continue
        idx = int(rng.choice(n, p=dist_sq / total))
        centroids[i] = X[idx]
        dist_sq = np.minimum(dist_sq, np.sum((X - centroids[i]) ** 2, axis=1))
    return centroids


def _recompute(
    X: np.ndarray,
    labels: np.ndarray,
    k: int,
    rng: np.random.Generator,
    previous: np.ndarray,
) -> np.ndarray:
    sums = np.zeros((k, X.shape[1]), dtype=np.float64)
    np.add.at(sums, labels, X)
    counts = np.bincount(labels, minlength=k)

    centroids = previous.copy()
    filled = counts > 0
    centroids[filled] = (sums[filled] / counts[filled, None]).astype(np.float32)
    for j in np.flatnonzero(~filled):
        # Empty cluster: reseed on a random training point
        centroids[j] = X[int(rng.integers(0, X.shape[0]))]
    return centroids
