"""
Persisted Index Layout

Blobs written next to the per-vector records ("vec/..."):

    index/header             JSON: format version, dimension, metric, configs,
                             codebook generation, node count, snapshot number
    index/<snap>/nodes       npz: ids, levels, tombstone flags, CSR-packed
                             neighbor lists per layer, prepared vectors
    index/<snap>/codebook    npz from the quantization module (absent if untrained)
    index/<snap>/codes       npz: ids + code matrix of the current generation

<snap> is the zero-padded snapshot number named by the header. A save
writes the next snapshot's blobs, then the header, then removes the blobs
of earlier snapshots; a save interrupted before the header write leaves
the previous header pointing at its own, untouched blobs.

Framing of every snapshot blob:

    magic  4s   b"VGS1"
    flag   u8   1 = lz4 frame compressed, 0 = raw
    digest 32s  SHA-256 of the uncompressed payload
    body   ...

Vector records are written on every insert; the snapshot blobs are
rewritten by save(), which also reclaims space after compaction.
"""

from __future__ import annotations

import dataclasses
import hashlib
import io
import json
import logging
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import lz4.frame
import numpy as np

from vecgraph.core.config import HNSWConfig, IndexConfig, QuantizationConfig, QuantizerKind, StoreConfig
from vecgraph.core.errors import Err, ErrorCode, Ok, Result, StoreError, VecGraphError
from vecgraph.core.protocols import BlobStoreProtocol
from vecgraph.core.types import MetricType
from vecgraph.index.graph import GraphSnapshot, NodeRecord
from vecgraph.quantization import codebook_from_bytes, codebook_to_bytes
from vecgraph.reliability.retry import RetryPolicy, retry_result
from vecgraph.storage.vector_store import StoreGeneration

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

INDEX_PREFIX = "index/"
HEADER_KEY = "index/header"
NODES = "nodes"
CODEBOOK = "codebook"
CODES = "codes"

_MAGIC = b"VGS1"
_FRAME = struct.Struct("<4sB32s")
COMPRESSION_THRESHOLD_BYTES = 1024


# =============================================================================
# FRAMING
# =============================================================================
def frame(payload: bytes, threshold: int = COMPRESSION_THRESHOLD_BYTES) -> bytes:
    """Checksum and (above threshold) lz4-compress a payload."""
    digest = hashlib.sha256(payload).digest()
    if len(payload) > threshold:
        return _FRAME.pack(_MAGIC, 1, digest) + lz4.frame.compress(payload)
    return _FRAME.pack(_MAGIC, 0, digest) + payload


def unframe(key: str, data: bytes) -> Result[bytes, StoreError]:
    """Inverse of frame(); verifies magic and checksum."""
    if len(data) < _FRAME.size:
        return Err(StoreError.corrupted(key, "blob shorter than frame header"))
    magic, flag, digest = _FRAME.unpack_from(data)
    if magic != _MAGIC:
        return Err(StoreError.corrupted(key, f"bad magic {magic!r}"))
    body = data[_FRAME.size:]
    if flag == 1:
        try:
            body = lz4.frame.decompress(body)
        except RuntimeError as e:
            return Err(StoreError.corrupted(key, f"lz4: {e}"))
    elif flag != 0:
        return Err(StoreError.corrupted(key, f"unknown compression flag {flag}"))
    if hashlib.sha256(body).digest() != digest:
        return Err(StoreError.corrupted(key, "checksum mismatch"))
    return Ok(body)


# =============================================================================
# HEADER
# =============================================================================
@dataclass(frozen=True, slots=True)
class IndexHeader:
    """
    Header record of a persisted index.

    Attributes:
        config: Full index configuration
        generation: Codebook generation persisted alongside
        node_count: Nodes in the node table (tombstones included)
        needs_rebuild: Index was flagged inconsistent when saved
        snapshot: Number of the save whose blobs this header describes
        saved_at: ISO-8601 UTC timestamp
    """
    config: IndexConfig
    generation: int = 0
    node_count: int = 0
    needs_rebuild: bool = False
    snapshot: int = 0
    format_version: int = FORMAT_VERSION
    saved_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> bytes:
        quantization = dataclasses.asdict(self.config.quantization)
        quantization["kind"] = self.config.quantization.kind.value
        doc = {
            "format_version": self.format_version,
            "dimension": self.config.dimension,
            "metric": self.config.metric.value,
            "hnsw": dataclasses.asdict(self.config.hnsw),
            "quantization": quantization,
            "store": dataclasses.asdict(self.config.store),
            "generation": self.generation,
            "node_count": self.node_count,
            "needs_rebuild": self.needs_rebuild,
            "snapshot": self.snapshot,
            "saved_at": self.saved_at,
        }
        return json.dumps(doc, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> "IndexHeader":
        doc = json.loads(data.decode("utf-8"))
        quantization = dict(doc["quantization"])
        quantization["kind"] = QuantizerKind(quantization["kind"])
        config = IndexConfig(
            dimension=int(doc["dimension"]),
            metric=MetricType(doc["metric"]),
            hnsw=HNSWConfig(**doc["hnsw"]),
            quantization=QuantizationConfig(**quantization),
            store=StoreConfig(**doc["store"]),
        )
        return cls(
            config=config,
            generation=int(doc.get("generation", 0)),
            node_count=int(doc.get("node_count", 0)),
            needs_rebuild=bool(doc.get("needs_rebuild", False)),
            snapshot=int(doc.get("snapshot", 0)),
            format_version=int(doc["format_version"]),
            saved_at=str(doc.get("saved_at", "")),
        )


# =============================================================================
# NODE TABLE
# =============================================================================
def _npz(**arrays: np.ndarray) -> bytes:
    buf = io.BytesIO()
    np.savez(buf, **arrays)
    return buf.getvalue()


def _load_npz(data: bytes) -> dict[str, np.ndarray]:
    with np.load(io.BytesIO(data), allow_pickle=False) as npz:
        return {name: npz[name] for name in npz.files}


def encode_nodes(snapshot: GraphSnapshot) -> bytes:
    """
    Pack node records into flat arrays.

    Neighbor lists are CSR-encoded: for node i and layer l the targets are
    targets[offsets[j]:offsets[j + 1]] with j = layer_start[i] + l.
    """
    records = snapshot.records
    layer_start = np.zeros(len(records) + 1, dtype=np.int64)
    offsets = [0]
    targets: list[int] = []
    for i, rec in enumerate(records):
        layer_start[i + 1] = layer_start[i] + len(rec.neighbors)
        for layer in rec.neighbors:
            targets.extend(layer)
            offsets.append(len(targets))
    return _npz(
        ids=np.array([r.id for r in records], dtype=np.uint64),
        levels=np.array([r.level for r in records], dtype=np.int32),
        tombstoned=np.array([r.tombstoned for r in records], dtype=bool),
        layer_start=layer_start,
        offsets=np.array(offsets, dtype=np.int64),
        targets=np.array(targets, dtype=np.int64),
        vectors=np.asarray(snapshot.vectors, dtype=np.float32),
        entry=np.array(-1 if snapshot.entry is None else snapshot.entry, dtype=np.int64),
    )


def decode_nodes(data: bytes) -> GraphSnapshot:
    arrays = _load_npz(data)
    ids = arrays["ids"]
    levels = arrays["levels"]
    tombstoned = arrays["tombstoned"]
    layer_start = arrays["layer_start"]
    offsets = arrays["offsets"]
    targets = arrays["targets"]

    records = []
    for i in range(ids.shape[0]):
        layers = []
        for j in range(int(layer_start[i]), int(layer_start[i + 1])):
            layers.append(tuple(int(t) for t in targets[offsets[j]:offsets[j + 1]]))
        records.append(NodeRecord(
            id=int(ids[i]),
            level=int(levels[i]),
            tombstoned=bool(tombstoned[i]),
            neighbors=tuple(layers),
        ))
    entry = int(arrays["entry"])
    return GraphSnapshot(
        records=records,
        vectors=arrays["vectors"].astype(np.float32),
        entry=None if entry < 0 else entry,
    )


def encode_codes(generation: StoreGeneration) -> bytes:
    ids = sorted(generation.codes)
    if ids:
        codes = np.stack([generation.codes[i] for i in ids])
    else:
        width = generation.codebook.code_size if generation.codebook is not None else 0
        codes = np.empty((0, width), dtype=np.uint8)
    return _npz(ids=np.array(ids, dtype=np.uint64), codes=codes)


def decode_codes(data: bytes) -> dict[int, np.ndarray]:
    arrays = _load_npz(data)
    codes = arrays["codes"]
    return {int(vid): codes[i] for i, vid in enumerate(arrays["ids"])}


# =============================================================================
# SAVE / LOAD
# =============================================================================
@dataclass(slots=True)
class LoadedSnapshot:
    header: IndexHeader
    graph: Optional[GraphSnapshot]
    generation: StoreGeneration


def _write(blobs: BlobStoreProtocol, key: str, payload: bytes, policy: RetryPolicy) -> Result[None, VecGraphError]:
    data = frame(payload)
    return retry_result(lambda: blobs.write(key, data), policy, operation=f"write {key}")


def _read(blobs: BlobStoreProtocol, key: str, policy: RetryPolicy) -> Result[bytes, VecGraphError]:
    raw = retry_result(lambda: blobs.read(key), policy, operation=f"read {key}")
    if raw.is_err():
        return raw
    return unframe(key, raw.unwrap())


def blob_key(kind: str, snapshot: int) -> str:
    """Key of one snapshot blob ("nodes", "codebook" or "codes")."""
    return f"{INDEX_PREFIX}{snapshot:08d}/{kind}"


def _previous_snapshot(blobs: BlobStoreProtocol, policy: RetryPolicy) -> Result[int, VecGraphError]:
    current = read_header(blobs, policy)
    if current.is_ok():
        return Ok(current.unwrap().snapshot)
    if current.error.code in (ErrorCode.NOT_FOUND, ErrorCode.STORAGE_CORRUPTED):
        # Nothing usable to supersede; stale blobs are swept after the write
        return Ok(0)
    return current


def save_snapshot(
    blobs: BlobStoreProtocol,
    header: IndexHeader,
    graph: GraphSnapshot,
    generation: StoreGeneration,
    policy: Optional[RetryPolicy] = None,
) -> Result[int, VecGraphError]:
    """
    Write the next snapshot's codebook, codes and node table, then the header.

    Blobs are keyed by snapshot number, so until the header write lands the
    previous header still pairs with its own blobs. Blobs of superseded
    snapshots are removed only after the new header is in place.

    Returns:
        Total bytes written
    """
    policy = policy or RetryPolicy.default()
    previous = _previous_snapshot(blobs, policy)
    if previous.is_err():
        return previous
    number = previous.unwrap() + 1
    header = dataclasses.replace(header, snapshot=number)

    payloads: list[tuple[str, bytes]] = []
    if generation.codebook is not None:
        payloads.append((blob_key(CODEBOOK, number), codebook_to_bytes(generation.codebook)))
        payloads.append((blob_key(CODES, number), encode_codes(generation)))
    payloads.append((blob_key(NODES, number), encode_nodes(graph)))
    payloads.append((HEADER_KEY, header.to_json()))

    written = 0
    for key, payload in payloads:
        result = _write(blobs, key, payload, policy)
        if result.is_err():
            return result
        written += len(payload)

    current = f"{INDEX_PREFIX}{number:08d}/"
    for key in list(blobs.keys(INDEX_PREFIX)):
        if key == HEADER_KEY or key.startswith(current):
            continue
        removed = retry_result(lambda k=key: blobs.delete(k), policy, operation=f"delete {key}")
        if removed.is_err():
            # The new snapshot is committed; a leftover blob only costs space
            logger.warning("Could not remove superseded blob %s: %s", key, removed.error)
    logger.info(
        "Saved index snapshot: snapshot=%d nodes=%d generation=%d bytes=%d",
        number, header.node_count, header.generation, written,
    )
    return Ok(written)


def read_header(blobs: BlobStoreProtocol, policy: Optional[RetryPolicy] = None) -> Result[IndexHeader, VecGraphError]:
    raw = _read(blobs, HEADER_KEY, policy or RetryPolicy.default())
    if raw.is_err():
        return raw
    try:
        header = IndexHeader.from_json(raw.unwrap())
    except (KeyError, TypeError, ValueError) as e:
        return Err(StoreError.corrupted(HEADER_KEY, str(e)))
    if header.format_version > FORMAT_VERSION:
        return Err(StoreError.corrupted(
            HEADER_KEY, f"format version {header.format_version} is newer than {FORMAT_VERSION}",
        ))
    return Ok(header)


def load_snapshot(
    blobs: BlobStoreProtocol,
    policy: Optional[RetryPolicy] = None,
) -> Result[LoadedSnapshot, VecGraphError]:
    """
    Read header, then the node table, codebook and codes it names.

    A missing node table yields graph=None (index saved before any
    insert); a missing codebook yields an untrained generation. A node
    table whose size disagrees with the header is reported corrupted.
    """
    policy = policy or RetryPolicy.default()
    header_result = read_header(blobs, policy)
    if header_result.is_err():
        return header_result
    header = header_result.unwrap()

    graph: Optional[GraphSnapshot] = None
    nodes_key = blob_key(NODES, header.snapshot)
    nodes = _read(blobs, nodes_key, policy)
    if nodes.is_ok():
        try:
            graph = decode_nodes(nodes.unwrap())
        except (KeyError, ValueError, OSError) as e:
            return Err(StoreError.corrupted(nodes_key, str(e)))
        if len(graph.records) != header.node_count:
            return Err(StoreError.corrupted(
                nodes_key, f"{len(graph.records)} nodes, header says {header.node_count}",
            ))
    elif nodes.error.code != ErrorCode.NOT_FOUND:
        return nodes

    generation = StoreGeneration(number=header.generation)
    codebook_key = blob_key(CODEBOOK, header.snapshot)
    codebook_raw = _read(blobs, codebook_key, policy)
    if codebook_raw.is_ok():
        codebook = codebook_from_bytes(codebook_raw.unwrap(), codebook_key)
        if codebook.is_err():
            return codebook
        codes: dict[int, np.ndarray] = {}
        codes_key = blob_key(CODES, header.snapshot)
        codes_raw = _read(blobs, codes_key, policy)
        if codes_raw.is_ok():
            try:
                codes = decode_codes(codes_raw.unwrap())
            except (KeyError, ValueError, OSError) as e:
                return Err(StoreError.corrupted(codes_key, str(e)))
        elif codes_raw.error.code != ErrorCode.NOT_FOUND:
            return codes_raw
        generation = StoreGeneration(number=header.generation, codebook=codebook.unwrap(), codes=codes)
    elif codebook_raw.error.code != ErrorCode.NOT_FOUND:
        return codebook_raw

    return Ok(LoadedSnapshot(header=header, graph=graph, generation=generation))


def describe(blobs: BlobStoreProtocol) -> Result[dict[str, Any], VecGraphError]:
    """Summary of a persisted index without loading the graph."""
    header = read_header(blobs)
    if header.is_err():
        return header
    h = header.unwrap()
    records = sum(1 for _ in blobs.keys("vec/"))
    return Ok({
        "format_version": h.format_version,
        "dimension": h.config.dimension,
        "metric": h.config.metric.value,
        "quantizer": h.config.quantization.kind.value,
        "generation": h.generation,
        "node_count": h.node_count,
        "vector_records": records,
        "needs_rebuild": h.needs_rebuild,
        "saved_at": h.saved_at,
    })
