"""
Core Type Definitions: Graph Index Primitives

Value types shared by the distance kernels, the quantizers, the vector store
and the proximity graph.

Memory Layout Optimization:
    - __slots__ for minimal memory footprint
    - Vectors travel as contiguous float32 numpy arrays

Thread Safety:
    - Immutable types (frozen=True) for lock-free sharing between readers
    - CancellationToken wraps a threading.Event
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterator,
    Optional,
    Sequence,
    Union,
)

import numpy as np

if TYPE_CHECKING:
    import numpy.typing as npt


MAX_VECTOR_ID = (1 << 64) - 1


# =============================================================================
# METRIC TYPES
# =============================================================================
class MetricType(Enum):
    """
    Distance/similarity metrics for vector comparison.

    Ordered by computational cost (ascending):
        INNER_PRODUCT: 1 FMA per dimension
        L2: 1 FMA + 1 sqrt
        COSINE: normalize once at insert, then 1 FMA per dimension
    """
    L2 = "l2"                   # Euclidean distance
    INNER_PRODUCT = "ip"        # Inner product (dot product)
    COSINE = "cosine"           # Cosine similarity

    def is_similarity(self) -> bool:
        """True if the natural score is higher-is-better."""
        return self in (MetricType.COSINE, MetricType.INNER_PRODUCT)

    @classmethod
    def parse(cls, value: Union[str, "MetricType"]) -> "MetricType":
        """Accept enum members, values ("l2") or aliases ("dot")."""
        if isinstance(value, MetricType):
            return value
        aliases = {"dot": "ip", "inner_product": "ip", "euclidean": "l2"}
        normalized = value.strip().lower()
        return cls(aliases.get(normalized, normalized))


# =============================================================================
# VECTOR ID
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class VectorId:
    """
    Opaque 64-bit vector identifier.

    Assigned by the caller or drawn from an IdAllocator. Ordering is
    numeric and is used as the deterministic tie-break wherever two
    candidates sit at exactly the same distance.
    """
    value: int

    def __post_init__(self) -> None:
        if not isinstance(self.value, int) or isinstance(self.value, bool):
            raise TypeError(f"VectorId must wrap an int, got {type(self.value).__name__}")
        if not 0 <= self.value <= MAX_VECTOR_ID:
            raise ValueError(f"VectorId out of 64-bit range: {self.value}")

    @classmethod
    def coerce(cls, value: Union["VectorId", int]) -> "VectorId":
        """Accept either a VectorId or a bare int."""
        if isinstance(value, VectorId):
            return value
        return cls(value)

    def to_key(self) -> str:
        """Fixed-width hex form used for blob keys (sorts numerically)."""
        return f"{self.value:016x}"

    @classmethod
    def from_key(cls, key: str) -> "VectorId":
        return cls(int(key, 16))

    def __int__(self) -> int:
        return self.value

    def __str__(self) -> str:
        return str(self.value)


class IdAllocator:
    """Sequential VectorId generator for callers without their own ids."""

    __slots__ = ("_next", "_lock")

    def __init__(self, start: int = 0) -> None:
        self._next = start
        self._lock = threading.Lock()

    def next_id(self) -> VectorId:
        with self._lock:
            vid = VectorId(self._next)
            self._next += 1
            return vid

    def observe(self, vid: VectorId) -> None:
        """Make sure future ids never collide with an externally assigned one."""
        with self._lock:
            if vid.value >= self._next:
                self._next = vid.value + 1


# =============================================================================
# VECTOR COERCION
# =============================================================================
VectorLike = Union[Sequence[float], "npt.NDArray[np.floating]"]


def as_vector(values: VectorLike) -> np.ndarray:
    """
    Coerce input to a contiguous 1-D float32 array.

    Complexity: O(d) for copying (zero-copy when already float32)
    """
    arr = np.ascontiguousarray(values, dtype=np.float32)
    if arr.ndim != 1:
        arr = arr.reshape(-1)
    return arr


# =============================================================================
# NODE STATE
# =============================================================================
class NodeState(Enum):
    """Lifecycle of a graph node: absent -> active -> tombstoned -> purged."""
    ABSENT = "absent"
    ACTIVE = "active"
    TOMBSTONED = "tombstoned"
    PURGED = "purged"


# =============================================================================
# CANCELLATION
# =============================================================================
class CancellationToken:
    """
    Cooperative cancellation flag checked between beam-search iterations.

    An optional deadline (monotonic seconds) turns the same checkpoint
    into a timeout.
    """

    __slots__ = ("_event", "_deadline")

    def __init__(self, deadline: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline

    @classmethod
    def with_timeout(cls, timeout_ms: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + timeout_ms / 1000.0)

    def arm(self, timeout_ms: float) -> None:
        """Install a deadline unless one is already set."""
        if self._deadline is None:
            self._deadline = time.monotonic() + timeout_ms / 1000.0

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline


# =============================================================================
# SEARCH PARAMETERS
# =============================================================================
MetadataFilter = Callable[[Optional[dict[str, Any]]], bool]


@dataclass(slots=True)
class SearchParams:
    """
    Per-query tuning knobs.

    Attributes:
        ef: Beam width at layer 0 (clamped to at least k; index default if None)
        filter: Post-filter predicate over metadata, applied after retrieval
        rerank: Re-rank candidates by exact distance from the vector store
        use_quantized: Traverse with quantized distances when a codebook exists
        include_metadata: Attach metadata to hits
        include_vectors: Attach full-precision vectors to hits
        timeout_ms: Deadline converted into a cancellation checkpoint
        cancel_token: Caller-owned token for cooperative cancellation
    """
    ef: Optional[int] = None
    filter: Optional[MetadataFilter] = None
    rerank: bool = True
    use_quantized: bool = True
    include_metadata: bool = False
    include_vectors: bool = False
    timeout_ms: Optional[float] = None
    cancel_token: Optional[CancellationToken] = None

    def token(self) -> Optional[CancellationToken]:
        """Resolve the effective cancellation token for one query."""
        if self.cancel_token is not None:
            if self.timeout_ms is not None:
                self.cancel_token.arm(self.timeout_ms)
            return self.cancel_token
        if self.timeout_ms is not None:
            return CancellationToken.with_timeout(self.timeout_ms)
        return None


# =============================================================================
# SEARCH RESULT
# =============================================================================
@dataclass(frozen=True, slots=True)
class SearchHit:
    """
    Single search match.

    Attributes:
        id: Vector identifier
        distance: Ordering key, lower = closer (negated dot product for IP)
        score: Natural metric value (L2 distance, cosine similarity, dot product)
        metadata: Optional associated metadata
        vector: Optional full-precision vector
    """
    id: VectorId
    distance: float
    score: float
    metadata: Optional[dict[str, Any]] = None
    vector: Optional[np.ndarray] = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        result: dict[str, Any] = {
            "id": self.id.value,
            "distance": self.distance,
            "score": self.score,
        }
        if self.metadata is not None:
            result["metadata"] = self.metadata
        if self.vector is not None:
            result["vector"] = self.vector.astype(float).tolist()
        return result


@dataclass(slots=True)
class SearchResult:
    """
    Ordered top-k hits, ascending by distance.

    Attributes:
        hits: Matches, at most k
        query_time_ms: Wall time of the query
        candidates: Candidates produced by graph traversal before re-ranking
        visited: Nodes whose distance was evaluated during traversal
        generation: Codebook generation the query ran against
    """
    hits: list[SearchHit] = field(default_factory=list)
    query_time_ms: float = 0.0
    candidates: int = 0
    visited: int = 0
    generation: int = 0

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self) -> Iterator[SearchHit]:
        return iter(self.hits)

    def __getitem__(self, idx: int) -> SearchHit:
        return self.hits[idx]

    @property
    def ids(self) -> list[int]:
        return [h.id.value for h in self.hits]

    @property
    def distances(self) -> list[float]:
        return [h.distance for h in self.hits]

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": [h.to_dict() for h in self.hits],
            "query_time_ms": self.query_time_ms,
            "candidates": self.candidates,
            "visited": self.visited,
            "generation": self.generation,
        }


# =============================================================================
# INDEX STATISTICS
# =============================================================================
@dataclass(frozen=True, slots=True)
class IndexStats:
    """
    Runtime statistics for the index.

    Attributes:
        node_count: Live (active) nodes
        tombstone_count: Deleted nodes awaiting compaction
        avg_degree: Mean layer-0 out-degree over live nodes
        layer_histogram: layer -> number of nodes present on that layer
        dimension: Vector dimension
        metric: Distance metric
        quantizer: Active quantizer kind ("none" until trained)
        generation: Codebook generation counter
        max_level: Top layer of the graph
        read_only: Index refused writes after an inconsistency
    """
    node_count: int
    tombstone_count: int
    avg_degree: float
    layer_histogram: dict[int, int]
    dimension: int
    metric: MetricType
    quantizer: str = "none"
    generation: int = 0
    max_level: int = 0
    read_only: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "node_count": self.node_count,
            "tombstone_count": self.tombstone_count,
            "avg_degree": self.avg_degree,
            "layer_histogram": {str(k): v for k, v in sorted(self.layer_histogram.items())},
            "dimension": self.dimension,
            "metric": self.metric.value,
            "quantizer": self.quantizer,
            "generation": self.generation,
            "max_level": self.max_level,
            "read_only": self.read_only,
        }
