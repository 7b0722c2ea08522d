"""
Codebook Base: Shared Contract of Trained Quantizers

A Codebook is the immutable result of training. It is shared read-only by
every encode/decode and by every query table built against it; replacing it
means re-encoding all stored vectors into a new store generation.
"""

from __future__ import annotations

import io
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import numpy as np

from vecgraph.core.config import QuantizerKind
from vecgraph.core.types import MetricType


class Codebook(ABC):
    """
    Trained quantizer parameters.

    Subclasses are frozen dataclasses whose numpy arrays are marked
    read-only at construction.
    """

    kind: QuantizerKind
    dimension: int

    @property
    @abstractmethod
    def code_size(self) -> int:
        """Number of sub-codes per vector."""

    @property
    @abstractmethod
    def code_dtype(self) -> np.dtype:
        """Storage dtype of one sub-code."""

    @abstractmethod
    def encode_batch(self, X: np.ndarray) -> np.ndarray:
        """Codes for X [n, D], shape [n, code_size]."""

    @abstractmethod
    def decode_batch(self, codes: np.ndarray) -> np.ndarray:
        """Approximate vectors [n, D] for codes [n, code_size]."""

    @abstractmethod
    def query_table(self, query: np.ndarray, metric: MetricType) -> Any:
        """Precompute whatever score_codes needs for one query."""

    @abstractmethod
    def score_codes(self, table: Any, codes: np.ndarray, metric: MetricType) -> np.ndarray:
        """Ordering keys (lower = closer) for codes [n, code_size]."""

    @abstractmethod
    def to_arrays(self) -> dict[str, np.ndarray]:
        """Arrays that fully describe the codebook."""

    @property
    def code_bytes(self) -> int:
        return self.code_size * self.code_dtype.itemsize

    def encode(self, vector: np.ndarray) -> np.ndarray:
        """Deterministic code of one vector."""
        return self.encode_batch(np.asarray(vector, dtype=np.float32)[None, :])[0]

    def decode(self, code: np.ndarray) -> np.ndarray:
        """Approximate reconstruction of one vector (diagnostics only)."""
        return self.decode_batch(np.asarray(code)[None, :])[0]


@dataclass(frozen=True, slots=True)
class QuantizationReport:
    """
    Reconstruction quality on a held-out set.

    Attributes:
        mean_error: Mean L2 distance between v and decode(encode(v))
        p95_error: 95th percentile of the same
        max_error: Worst vector
        fraction_within: Share of vectors within tolerance
        tolerance: Threshold used for fraction_within
        samples: Number of vectors evaluated
    """
    mean_error: float
    p95_error: float
    max_error: float
    fraction_within: float
    tolerance: float
    samples: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "mean_error": self.mean_error,
            "p95_error": self.p95_error,
            "max_error": self.max_error,
            "fraction_within": self.fraction_within,
            "tolerance": self.tolerance,
            "samples": self.samples,
        }


def freeze(arr: np.ndarray) -> np.ndarray:
    """Contiguous float32 copy flagged read-only."""
    out = np.array(arr, dtype=np.float32, copy=True, order="C")
    out.flags.writeable = False
    return out


def pack_arrays(kind: QuantizerKind, arrays: dict[str, np.ndarray]) -> bytes:
    """Serialize codebook arrays as an .npz payload."""
    buf = io.BytesIO()
    np.savez(buf, kind=np.array(kind.value), **arrays)
    return buf.getvalue()


def unpack_arrays(data: bytes) -> tuple[QuantizerKind, dict[str, np.ndarray]]:
    with np.load(io.BytesIO(data), allow_pickle=False) as npz:
        kind = QuantizerKind(str(npz["kind"]))
        arrays = {name: npz[name] for name in npz.files if name != "kind"}
    return kind, arrays
