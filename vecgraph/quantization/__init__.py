"""
Quantization Module: Codebook Training and Coding

Provides:
    - train(sample, config) -> Codebook   (scalar or product quantization)
    - encode(vector, codebook) -> code
    - decode(code, codebook) -> approximate vector (diagnostics only)
    - evaluate(codebook, validation, tolerance) -> QuantizationReport
    - codebook_to_bytes / codebook_from_bytes for persistence

Training is a pure function of its inputs, so a candidate codebook can be
trained while the current one keeps serving queries.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Sequence, Union

import numpy as np

from vecgraph.core.config import QuantizationConfig, QuantizerKind
from vecgraph.core.errors import (
    ConfigError,
    Err,
    InputError,
    Ok,
    QuantizerError,
    Result,
    StoreError,
    VecGraphError,
)
from vecgraph.quantization.base import Codebook, QuantizationReport, pack_arrays, unpack_arrays
from vecgraph.quantization.kmeans import KMeansResult, kmeans
from vecgraph.quantization.product import ProductCodebook, train_product
from vecgraph.quantization.scalar import ScalarCodebook, train_scalar

logger = logging.getLogger(__name__)

SampleLike = Union[np.ndarray, Sequence[Sequence[float]]]


def _as_matrix(sample: SampleLike, dimension: Optional[int] = None) -> Result[np.ndarray, VecGraphError]:
    X = np.asarray(sample, dtype=np.float32)
    if X.ndim != 2:
        return Err(InputError.invalid_vector(f"sample must be 2-D, got shape {X.shape}"))
    if dimension is not None and X.shape[1] != dimension:
        return Err(InputError.dimension_mismatch(dimension, X.shape[1]))
    if X.size and not np.all(np.isfinite(X)):
        return Err(InputError.invalid_vector("sample contains NaN or infinity"))
    return Ok(np.ascontiguousarray(X))


def train(
    sample: SampleLike,
    config: QuantizationConfig,
    dimension: Optional[int] = None,
) -> Result[Codebook, VecGraphError]:
    """
    Train a codebook on a representative sample.

    Fails with INSUFFICIENT_SAMPLES when the sample is smaller than
    config.required_samples(); accuracy is never silently degraded.
    """
    checked = _as_matrix(sample, dimension)
    if checked.is_err():
        return checked
    X = checked.unwrap()

    if reason := config.validate(X.shape[1]):
        return Err(ConfigError.invalid(reason))

    start = time.perf_counter()
    if config.kind == QuantizerKind.SCALAR:
        result: Result[Codebook, QuantizerError] = train_scalar(X, config)
    elif config.kind == QuantizerKind.PQ:
        result = train_product(X, config)
    else:
        return Err(ConfigError.invalid("quantizer kind 'none' cannot be trained"))

    if result.is_ok():
        logger.info(
            "Trained %s codebook on %d samples (D=%d) in %.1fms",
            config.kind.value, X.shape[0], X.shape[1],
            (time.perf_counter() - start) * 1000,
        )
    return result


def encode(vector: np.ndarray, codebook: Codebook) -> Result[np.ndarray, InputError]:
    """Deterministic code of one vector under codebook."""
    vec = np.asarray(vector, dtype=np.float32).reshape(-1)
    if vec.shape[0] != codebook.dimension:
        return Err(InputError.dimension_mismatch(codebook.dimension, vec.shape[0]))
    return Ok(codebook.encode(vec))


def decode(code: np.ndarray, codebook: Codebook) -> Result[np.ndarray, InputError]:
    """Approximate reconstruction; diagnostics only, never on the query path."""
    code = np.asarray(code).reshape(-1)
    if code.shape[0] != codebook.code_size:
        return Err(InputError.dimension_mismatch(codebook.code_size, code.shape[0]))
    return Ok(codebook.decode(code))


def evaluate(
    codebook: Codebook,
    validation: SampleLike,
    tolerance: float,
) -> Result[QuantizationReport, VecGraphError]:
    """Round-trip error of decode(encode(v)) over a held-out sample."""
    checked = _as_matrix(validation, codebook.dimension)
    if checked.is_err():
        return checked
    X = checked.unwrap()
    if X.shape[0] == 0:
        return Err(QuantizerError.insufficient_samples(0, 1))

    approx = codebook.decode_batch(codebook.encode_batch(X))
    errors = np.linalg.norm(approx - X, axis=1)
    return Ok(QuantizationReport(
        mean_error=float(errors.mean()),
        p95_error=float(np.percentile(errors, 95)),
        max_error=float(errors.max()),
        fraction_within=float(np.mean(errors <= tolerance)),
        tolerance=tolerance,
        samples=int(X.shape[0]),
    ))


def codebook_to_bytes(codebook: Codebook) -> bytes:
    return pack_arrays(codebook.kind, codebook.to_arrays())


def codebook_from_bytes(data: bytes, key: str = "codebook") -> Result[Codebook, StoreError]:
    try:
        kind, arrays = unpack_arrays(data)
    except (ValueError, KeyError, OSError) as e:
        return Err(StoreError.corrupted(key, str(e)))
    if kind == QuantizerKind.SCALAR:
        return Ok(ScalarCodebook.from_arrays(arrays))
    if kind == QuantizerKind.PQ:
        return Ok(ProductCodebook.from_arrays(arrays))
    return Err(StoreError.corrupted(key, f"unexpected codebook kind {kind.value}"))


__all__ = [
    "Codebook",
    "ScalarCodebook",
    "ProductCodebook",
    "QuantizationReport",
    "KMeansResult",
    "kmeans",
    "train",
    "encode",
    "decode",
    "evaluate",
    "codebook_to_bytes",
    "codebook_from_bytes",
]
