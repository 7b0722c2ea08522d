"""
Scalar Quantization (SQ8)

Each dimension is mapped independently onto 256 levels between the
per-dimension min and max observed in the training sample:

    code = round((x - min) / step),  step = (max - min) / 255
    x'   = min + code * step

Compression: 4x versus float32. Values outside the trained range clip to
the nearest end level.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

import numpy as np

from vecgraph.core.config import QuantizationConfig, QuantizerKind
from vecgraph.core.errors import Err, Ok, QuantizerError, Result
from vecgraph.core.types import MetricType
from vecgraph.quantization.base import Codebook, freeze

LEVELS = 255


@dataclass(frozen=True, slots=True, eq=False)
class ScalarCodebook(Codebook):
    """Per-dimension min/step pairs."""

    kind: ClassVar[QuantizerKind] = QuantizerKind.SCALAR

    dimension: int
    mins: np.ndarray
    steps: np.ndarray

    @property
    def code_size(self) -> int:
        return self.dimension

    @property
    def code_dtype(self) -> np.dtype:
        return np.dtype(np.uint8)

    def encode_batch(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float32)
        levels = np.rint((X - self.mins) / self.steps)
        return np.clip(levels, 0, LEVELS).astype(np.uint8)

    def decode_batch(self, codes: np.ndarray) -> np.ndarray:
        return (self.mins + codes.astype(np.float32) * self.steps).astype(np.float32)

    def query_table(self, query: np.ndarray, metric: MetricType) -> tuple[np.ndarray, ...]:
        """
        Fold the query into the affine decode so scoring needs no decode.

        L2:  Σ(min + c·s - q)² = Σ(min-q)² + c·(2(min-q)s) + c²·s²
        IP:  Σ(min + c·s)·q    = min·q + c·(s·q)
        """
        q = np.asarray(query, dtype=np.float32)
        if metric == MetricType.L2:
            offset = self.mins - q
            return (
                np.float32(np.dot(offset, offset)),
                (2.0 * offset * self.steps).astype(np.float32),
                (self.steps * self.steps).astype(np.float32),
            )
        return (np.float32(np.dot(self.mins, q)), (self.steps * q).astype(np.float32))

    def score_codes(
        self,
        table: tuple[np.ndarray, ...],
        codes: np.ndarray,
        metric: MetricType,
    ) -> np.ndarray:
        c = codes.astype(np.float32)
        if metric == MetricType.L2:
            const, linear, quad = table
            return np.maximum(const + c @ linear + (c * c) @ quad, 0.0)
        const, linear = table
        dots = const + c @ linear
        if metric == MetricType.INNER_PRODUCT:
            return -dots
        return 1.0 - dots

    def to_arrays(self) -> dict[str, np.ndarray]:
        return {"mins": np.asarray(self.mins), "steps": np.asarray(self.steps)}

    @classmethod
    def from_arrays(cls, arrays: dict[str, np.ndarray]) -> "ScalarCodebook":
        mins = arrays["mins"]
        return cls(dimension=int(mins.shape[0]), mins=freeze(mins), steps=freeze(arrays["steps"]))


def train_scalar(
    sample: np.ndarray,
    config: QuantizationConfig,
) -> Result[ScalarCodebook, QuantizerError]:
    """
    Fit per-dimension ranges on sample [n, D].

    Dimensions with zero range get step 1.0 so every value decodes to min.
    """
    required = config.required_samples()
    if sample.shape[0] < required:
        return Err(QuantizerError.insufficient_samples(sample.shape[0], required))

    mins = sample.min(axis=0)
    maxs = sample.max(axis=0)
    span = maxs - mins
    steps = np.where(span > 0, span / LEVELS, 1.0)
    return Ok(ScalarCodebook(
        dimension=int(sample.shape[1]),
        mins=freeze(mins),
        steps=freeze(steps),
    ))
