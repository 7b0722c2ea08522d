"""
Unit Tests: Persisted Layout

Tests:
    - Blob framing (checksum, lz4 compression)
    - Header JSON round trip
    - Node table and code table encoding
    - save_snapshot / load_snapshot / describe
"""

import random

import pytest
import numpy as np

from vecgraph.core.config import HNSWConfig, IndexConfig, QuantizationConfig, QuantizerKind
from vecgraph.core.errors import ErrorCode
from vecgraph.core.types import MetricType, VectorId
from vecgraph import quantization
from vecgraph.index.distance import MetricSpace
from vecgraph.index.graph import ProximityGraph
from vecgraph.storage import InMemoryBlobStore, StoreGeneration
from vecgraph.storage import layout


def _graph_snapshot(n=30, dimension=4):
    graph = ProximityGraph(HNSWConfig(M=4, ef_construction=32), MetricSpace(dimension, MetricType.L2))
    rng = random.Random(0)
    data = np.random.default_rng(0).standard_normal((n, dimension)).astype(np.float32)
    for i in range(n):
        graph.insert(VectorId(i), data[i], rng)
    graph.delete(VectorId(3))
    return graph.snapshot()


class TestFraming:
    """Tests for blob framing."""

    def test_small_payload_stored_raw(self):
        framed = layout.frame(b"abc")
        assert framed[4] == 0
        assert layout.unframe("k", framed).unwrap() == b"abc"

    def test_large_payload_compressed(self):
        payload = b"x" * 10000
        framed = layout.frame(payload)
        assert framed[4] == 1
        assert len(framed) < len(payload)
        assert layout.unframe("k", framed).unwrap() == payload

    def test_checksum_mismatch(self):
        framed = bytearray(layout.frame(b"hello world"))
        framed[-1] ^= 0xFF
        assert layout.unframe("k", bytes(framed)).error.code == ErrorCode.STORAGE_CORRUPTED

    def test_corrupted_compressed_body(self):
        framed = layout.frame(b"y" * 5000)
        damaged = framed[:40] + b"\x00" * (len(framed) - 40)
        assert layout.unframe("k", damaged).error.code == ErrorCode.STORAGE_CORRUPTED

    def test_short_blob(self):
        assert layout.unframe("k", b"VGS").error.code == ErrorCode.STORAGE_CORRUPTED


class TestHeader:
    """Tests for the header record."""

    def test_round_trip(self):
        config = IndexConfig(
            dimension=16,
            metric=MetricType.COSINE,
            hnsw=HNSWConfig(M=12, seed=7),
            quantization=QuantizationConfig(kind=QuantizerKind.PQ, pq_subvectors=4),
        )
        header = layout.IndexHeader(config=config, generation=3, node_count=10, needs_rebuild=True)
        restored = layout.IndexHeader.from_json(header.to_json())
        assert restored.config == config
        assert restored.generation == 3
        assert restored.node_count == 10
        assert restored.needs_rebuild is True
        assert restored.saved_at == header.saved_at


class TestTables:
    """Tests for node and code tables."""

    def test_nodes_round_trip(self):
        snap = _graph_snapshot()
        decoded = layout.decode_nodes(layout.encode_nodes(snap))
        assert decoded.records == snap.records
        assert decoded.entry == snap.entry
        np.testing.assert_array_equal(decoded.vectors, snap.vectors)

    def test_codes_round_trip(self):
        sample = np.random.default_rng(0).uniform(size=(20, 4)).astype(np.float32)
        codebook = quantization.train(sample, QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()
        generation = StoreGeneration(
            number=2, codebook=codebook, codes={5: codebook.encode(sample[0]), 1: codebook.encode(sample[1])},
        )
        decoded = layout.decode_codes(layout.encode_codes(generation))
        assert sorted(decoded) == [1, 5]
        np.testing.assert_array_equal(decoded[5], generation.codes[5])


class TestSnapshot:
    """Tests for save / load."""

    def test_save_and_load(self):
        blobs = InMemoryBlobStore()
        config = IndexConfig(dimension=4)
        snap = _graph_snapshot()
        header = layout.IndexHeader(config=config, node_count=len(snap.records))
        assert layout.save_snapshot(blobs, header, snap, StoreGeneration()).unwrap() > 0
        assert layout.blob_key(layout.CODEBOOK, 1) not in blobs

        loaded = layout.load_snapshot(blobs).unwrap()
        assert loaded.header.config == config
        assert loaded.graph.records == snap.records
        assert not loaded.generation.trained

    def test_each_save_gets_its_own_blobs(self):
        blobs = InMemoryBlobStore()
        snap = _graph_snapshot()
        header = layout.IndexHeader(config=IndexConfig(dimension=4), node_count=len(snap.records))
        layout.save_snapshot(blobs, header, snap, StoreGeneration())
        assert layout.read_header(blobs).unwrap().snapshot == 1
        assert layout.blob_key(layout.NODES, 1) in blobs

        layout.save_snapshot(blobs, header, snap, StoreGeneration())
        assert layout.read_header(blobs).unwrap().snapshot == 2
        assert layout.blob_key(layout.NODES, 2) in blobs
        assert layout.blob_key(layout.NODES, 1) not in blobs

    def test_untrained_save_drops_codebook_of_previous_snapshot(self):
        blobs = InMemoryBlobStore()
        sample = np.random.default_rng(0).uniform(size=(20, 4)).astype(np.float32)
        codebook = quantization.train(sample, QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()
        snap = _graph_snapshot()
        header = layout.IndexHeader(config=IndexConfig(dimension=4), node_count=len(snap.records))
        layout.save_snapshot(blobs, header, snap, StoreGeneration(number=1, codebook=codebook))
        assert layout.blob_key(layout.CODEBOOK, 1) in blobs

        layout.save_snapshot(blobs, header, snap, StoreGeneration())
        assert list(blobs.keys(layout.INDEX_PREFIX)) == [
            layout.blob_key(layout.NODES, 2), layout.HEADER_KEY,
        ]
        assert not layout.load_snapshot(blobs).unwrap().generation.trained

    def test_interrupted_save_keeps_previous_snapshot(self):
        blobs = InMemoryBlobStore()
        first = _graph_snapshot(n=30)
        header = layout.IndexHeader(config=IndexConfig(dimension=4), node_count=len(first.records))
        layout.save_snapshot(blobs, header, first, StoreGeneration())

        # A later save that wrote its node table but died before the header
        second = _graph_snapshot(n=40)
        blobs.write(layout.blob_key(layout.NODES, 2), layout.frame(layout.encode_nodes(second)))

        loaded = layout.load_snapshot(blobs).unwrap()
        assert loaded.header.snapshot == 1
        assert loaded.graph.records == first.records

        # The next completed save supersedes both
        layout.save_snapshot(blobs, header, first, StoreGeneration())
        assert layout.read_header(blobs).unwrap().snapshot == 2
        assert layout.load_snapshot(blobs).unwrap().graph.records == first.records

    def test_node_count_mismatch_is_corruption(self):
        blobs = InMemoryBlobStore()
        snap = _graph_snapshot(n=30)
        header = layout.IndexHeader(config=IndexConfig(dimension=4), node_count=len(snap.records))
        layout.save_snapshot(blobs, header, snap, StoreGeneration())
        blobs.write(layout.blob_key(layout.NODES, 1), layout.frame(layout.encode_nodes(_graph_snapshot(n=40))))

        result = layout.load_snapshot(blobs)
        assert result.error.code == ErrorCode.STORAGE_CORRUPTED

    def test_load_with_codebook(self):
        blobs = InMemoryBlobStore()
        sample = np.random.default_rng(0).uniform(size=(20, 4)).astype(np.float32)
        codebook = quantization.train(sample, QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()
        generation = StoreGeneration(number=4, codebook=codebook, codes={0: codebook.encode(sample[0])})
        snap = _graph_snapshot()
        header = layout.IndexHeader(config=IndexConfig(dimension=4), generation=4, node_count=len(snap.records))
        layout.save_snapshot(blobs, header, snap, generation)

        loaded = layout.load_snapshot(blobs).unwrap()
        assert loaded.generation.number == 4
        assert loaded.generation.trained
        np.testing.assert_array_equal(loaded.generation.codes[0], generation.codes[0])

    def test_missing_header(self):
        assert layout.load_snapshot(InMemoryBlobStore()).error.code == ErrorCode.NOT_FOUND

    def test_corrupted_node_table(self):
        blobs = InMemoryBlobStore()
        header = layout.IndexHeader(config=IndexConfig(dimension=4))
        layout.save_snapshot(blobs, header, _graph_snapshot(), StoreGeneration())
        blobs.write(layout.blob_key(layout.NODES, 1), b"garbage" * 10)
        assert layout.load_snapshot(blobs).error.code == ErrorCode.STORAGE_CORRUPTED

    def test_newer_format_rejected(self):
        blobs = InMemoryBlobStore()
        header = layout.IndexHeader(config=IndexConfig(dimension=4), format_version=99)
        blobs.write(layout.HEADER_KEY, layout.frame(header.to_json()))
        assert layout.read_header(blobs).error.code == ErrorCode.STORAGE_CORRUPTED

    def test_describe(self):
        blobs = InMemoryBlobStore()
        blobs.write("vec/0000000000000001", b"r")
        header = layout.IndexHeader(config=IndexConfig(dimension=4), node_count=30)
        layout.save_snapshot(blobs, header, _graph_snapshot(), StoreGeneration())
        summary = layout.describe(blobs).unwrap()
        assert summary["dimension"] == 4
        assert summary["node_count"] == 30
        assert summary["vector_records"] == 1
