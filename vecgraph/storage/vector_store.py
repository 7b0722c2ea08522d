"""
Vector Store: Durable id -> (vector, metadata) Mapping

Responsibilities:
    - Map VectorId to a blob key ("vec/{id:016x}") and a binary record
    - Cache hot records in an LRU
    - Retry transient blob I/O with backoff
    - Hold the quantized codes of the current codebook generation

Record Layout (little-endian):
    magic     4s   b"VGV1"
    dimension u32
    meta_len  u32
    vector    dimension × f32
    metadata  meta_len bytes of UTF-8 JSON (absent when meta_len = 0)

Generations:
    Codes belong to a StoreGeneration (number, codebook, codes). Retraining
    builds a complete new generation off to the side; swap_generation()
    replaces the reference in one assignment, so a query that captured the
    old generation keeps scoring against it until it finishes.
"""

from __future__ import annotations

import json
import logging
import struct
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

import numpy as np

from vecgraph.core.config import StoreConfig
from vecgraph.core.errors import ErrorCode, Err, InputError, Ok, Result, StoreError, VecGraphError
from vecgraph.core.protocols import BlobStoreProtocol
from vecgraph.core.types import VectorId, as_vector
from vecgraph.quantization.base import Codebook
from vecgraph.reliability.retry import RetryPolicy, RetryStats, retry_result

logger = logging.getLogger(__name__)

RECORD_PREFIX = "vec/"
_MAGIC = b"VGV1"
_HEADER = struct.Struct("<4sII")


# =============================================================================
# RECORDS
# =============================================================================
@dataclass(frozen=True, slots=True)
class StoredVector:
    """Full-precision vector with its metadata."""
    id: VectorId
    vector: np.ndarray
    metadata: Optional[dict[str, Any]] = None


def record_key(vector_id: VectorId) -> str:
    return RECORD_PREFIX + vector_id.to_key()


def encode_record(vector: np.ndarray, metadata: Optional[dict[str, Any]]) -> bytes:
    meta = json.dumps(metadata, separators=(",", ":")).encode("utf-8") if metadata is not None else b""
    vec = np.ascontiguousarray(vector, dtype="<f4")
    return _HEADER.pack(_MAGIC, vec.shape[0], len(meta)) + vec.tobytes() + meta


def decode_record(vector_id: VectorId, data: bytes) -> Result[StoredVector, StoreError]:
    key = record_key(vector_id)
    if len(data) < _HEADER.size:
        return Err(StoreError.corrupted(key, "record shorter than header"))
    magic, dimension, meta_len = _HEADER.unpack_from(data)
    if magic != _MAGIC:
        return Err(StoreError.corrupted(key, f"bad magic {magic!r}"))
    body = _HEADER.size + dimension * 4
    if len(data) != body + meta_len:
        return Err(StoreError.corrupted(key, "record length mismatch"))

    vector = np.frombuffer(data, dtype="<f4", count=dimension, offset=_HEADER.size).astype(np.float32)
    vector.flags.writeable = False
    metadata = None
    if meta_len:
        try:
            metadata = json.loads(data[body:].decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return Err(StoreError.corrupted(key, f"metadata: {e}"))
    return Ok(StoredVector(id=vector_id, vector=vector, metadata=metadata))


# =============================================================================
# CODE GENERATIONS
# =============================================================================
@dataclass(frozen=True, slots=True)
class StoreGeneration:
    """
    Immutable codebook paired with the codes produced by it.

    The codes dict is only touched under the writer lock: inserts after a
    swap add entries, compaction drops purged ones. Codes of tombstoned
    vectors stay until then so traversal can still score them.
    """
    number: int = 0
    codebook: Optional[Codebook] = None
    codes: dict[int, np.ndarray] = field(default_factory=dict)

    @property
    def trained(self) -> bool:
        return self.codebook is not None

    def code_of(self, vector_id: VectorId) -> Optional[np.ndarray]:
        return self.codes.get(vector_id.value)


# =============================================================================
# VECTOR STORE
# =============================================================================
class VectorStore:
    """
    Vector records over a BlobStoreProtocol backend.

    Thread Safety:
        - Writes (put/delete) are serialized by the index writer lock and
          additionally guard the cache and id set with an internal lock
        - get() is safe from any thread
    """

    __slots__ = (
        "_blobs",
        "_dimension",
        "_policy",
        "_cache",
        "_cache_capacity",
        "_ids",
        "_generation",
        "_lock",
        "retry_stats",
    )

    def __init__(
        self,
        blobs: BlobStoreProtocol,
        dimension: int,
        config: Optional[StoreConfig] = None,
    ) -> None:
        config = config or StoreConfig()
        self._blobs = blobs
        self._dimension = dimension
        self._policy = RetryPolicy.from_store_config(config)
        self._cache: OrderedDict[int, StoredVector] = OrderedDict()
        self._cache_capacity = config.cache_capacity
        self._ids: set[int] = set()
        self._generation = StoreGeneration()
        self._lock = threading.Lock()
        self.retry_stats = RetryStats()

    @classmethod
    def load(
        cls,
        blobs: BlobStoreProtocol,
        dimension: int,
        config: Optional[StoreConfig] = None,
    ) -> "VectorStore":
        """Attach to a backend that may already hold records."""
        store = cls(blobs, dimension, config)
        for key in blobs.keys(RECORD_PREFIX):
            try:
                store._ids.add(VectorId.from_key(key[len(RECORD_PREFIX):]).value)
            except ValueError:
                logger.warning("Ignoring malformed vector key %s", key)
        logger.info("Loaded vector store with %d records", len(store._ids))
        return store

    # =========================================================================
    # PROPERTIES
    # =========================================================================
    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def blobs(self) -> BlobStoreProtocol:
        return self._blobs

    @property
    def generation(self) -> StoreGeneration:
        return self._generation

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, vector_id: object) -> bool:
        if isinstance(vector_id, VectorId):
            return vector_id.value in self._ids
        return False

    def ids(self) -> list[VectorId]:
        with self._lock:
            return [VectorId(v) for v in sorted(self._ids)]

    # =========================================================================
    # BLOB ACCESS WITH RETRY
    # =========================================================================
    def _write(self, key: str, data: bytes) -> Result[None, VecGraphError]:
        return retry_result(
            lambda: self._blobs.write(key, data),
            self._policy,
            operation=f"write {key}",
            stats=self.retry_stats,
        )

    def _read(self, key: str) -> Result[bytes, VecGraphError]:
        return retry_result(
            lambda: self._blobs.read(key),
            self._policy,
            operation=f"read {key}",
            stats=self.retry_stats,
        )

    def _delete(self, key: str) -> Result[bool, VecGraphError]:
        return retry_result(
            lambda: self._blobs.delete(key),
            self._policy,
            operation=f"delete {key}",
            stats=self.retry_stats,
        )

    # =========================================================================
    # CACHE
    # =========================================================================
    def _cache_get(self, vid: int) -> Optional[StoredVector]:
        with self._lock:
            rec = self._cache.get(vid)
            if rec is not None:
                self._cache.move_to_end(vid)
            return rec

    def _cache_put(self, rec: StoredVector) -> None:
        if self._cache_capacity == 0:
            return
        with self._lock:
            self._cache[rec.id.value] = rec
            self._cache.move_to_end(rec.id.value)
            while len(self._cache) > self._cache_capacity:
                self._cache.popitem(last=False)

    # =========================================================================
    # OPERATIONS
    # =========================================================================
    def put(
        self,
        vector_id: VectorId,
        vector: np.ndarray,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Result[None, VecGraphError]:
        """
        Persist a vector, overwriting any existing record for the id.

        Fails with DIMENSION_MISMATCH before touching the backend.
        """
        try:
            vec = as_vector(vector)
        except (TypeError, ValueError) as e:
            return Err(InputError.invalid_vector(str(e)))
        if vec.shape[0] != self._dimension:
            return Err(InputError.dimension_mismatch(self._dimension, vec.shape[0]))
        try:
            data = encode_record(vec, metadata)
        except (TypeError, ValueError) as e:
            return Err(InputError.invalid_vector(f"metadata not JSON serializable: {e}"))

        result = self._write(record_key(vector_id), data)
        if result.is_err():
            return result

        frozen = vec.copy()
        frozen.flags.writeable = False
        with self._lock:
            self._ids.add(vector_id.value)
        self._cache_put(StoredVector(id=vector_id, vector=frozen, metadata=metadata))
        return Ok(None)

    def get_record(self, vector_id: VectorId) -> Result[StoredVector, VecGraphError]:
        """Vector and metadata, or NOT_FOUND."""
        cached = self._cache_get(vector_id.value)
        if cached is not None:
            return Ok(cached)
        if vector_id.value not in self._ids:
            return Err(StoreError.not_found(vector_id.value))

        raw = self._read(record_key(vector_id))
        if raw.is_err():
            if raw.error.code == ErrorCode.NOT_FOUND:
                return Err(StoreError.not_found(vector_id.value))
            return raw
        decoded = decode_record(vector_id, raw.unwrap())
        if decoded.is_err():
            return decoded
        rec = decoded.unwrap()
        if rec.vector.shape[0] != self._dimension:
            return Err(StoreError.corrupted(
                record_key(vector_id),
                f"dimension {rec.vector.shape[0]} != {self._dimension}",
            ))
        self._cache_put(rec)
        return Ok(rec)

    def get(self, vector_id: VectorId) -> Result[np.ndarray, VecGraphError]:
        """Full-precision vector (read-only array), or NOT_FOUND."""
        return self.get_record(vector_id).map(lambda rec: rec.vector)

    def delete(self, vector_id: VectorId) -> Result[bool, VecGraphError]:
        """Remove a record. Returns True if it existed."""
        if vector_id.value not in self._ids:
            return Ok(False)
        result = self._delete(record_key(vector_id))
        if result.is_err():
            return result
        with self._lock:
            self._ids.discard(vector_id.value)
            self._cache.pop(vector_id.value, None)
        return Ok(True)

    def iterate(self) -> "StoreScan":
        """Lazy, restartable, finite scan of (id, vector) in id order."""
        return StoreScan(self)

    # =========================================================================
    # CODES
    # =========================================================================
    def set_code(self, vector_id: VectorId, code: np.ndarray) -> None:
        """Record a code under the current generation (writer only)."""
        self._generation.codes[vector_id.value] = code

    def discard_codes(self, ids: list[int]) -> None:
        """Drop codes of purged vectors from the current generation (writer only)."""
        codes = self._generation.codes
        for vid in ids:
            codes.pop(vid, None)

    def swap_generation(self, generation: StoreGeneration) -> StoreGeneration:
        """Install a fully built generation. Returns the one it replaced."""
        previous = self._generation
        self._generation = generation
        logger.info(
            "Swapped code generation %d -> %d (%d codes)",
            previous.number, generation.number, len(generation.codes),
        )
        return previous


class StoreScan:
    """
    Restartable iteration over a store.

    Each pass snapshots the id set, so records added during a pass are not
    seen and records removed during it are skipped. A hard read failure
    ends the pass early and is kept in `error`.
    """

    __slots__ = ("_store", "error")

    def __init__(self, store: VectorStore) -> None:
        self._store = store
        self.error: Optional[VecGraphError] = None

    def __iter__(self) -> Iterator[tuple[VectorId, np.ndarray]]:
        self.error = None
        for vid in self._store.ids():
            result = self._store.get(vid)
            if result.is_err():
                if result.error.code == ErrorCode.NOT_FOUND:
                    continue
                self.error = result.error
                logger.error("Store scan stopped at %s: %s", vid, result.error)
                return
            yield vid, result.unwrap()
