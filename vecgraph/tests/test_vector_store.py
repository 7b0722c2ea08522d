"""
Unit Tests: Vector Store and Blob Backends

Tests:
    - In-memory and filesystem blob stores
    - Record encoding and corruption detection
    - put / get / delete semantics and the LRU cache
    - Retry of transient blob failures
    - Restartable iteration
    - Code generations
"""

import pytest
import numpy as np

from vecgraph.core.config import QuantizationConfig, QuantizerKind, StoreConfig
from vecgraph.core.errors import Err, ErrorCode, Ok, StoreError
from vecgraph.core.types import VectorId
from vecgraph import quantization
from vecgraph.storage import FileSystemBlobStore, InMemoryBlobStore, StoreGeneration, VectorStore
from vecgraph.storage.vector_store import decode_record, encode_record, record_key


class FlakyBlobStore(InMemoryBlobStore):
    """Fails the first `failures` reads and writes with STORAGE_IO."""

    __slots__ = ("failures", "calls")

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    def _maybe_fail(self, key):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            return Err(StoreError.io_error(key, "transient"))
        return None

    def write(self, key, data):
        failed = self._maybe_fail(key)
        if failed is not None:
            return failed
        return super().write(key, data)

    def read(self, key):
        failed = self._maybe_fail(key)
        if failed is not None:
            return failed
        return super().read(key)


def _fast_store(blobs, dimension=4, **overrides):
    config = StoreConfig(retry_base_delay_ms=0, retry_max_delay_ms=0, **overrides)
    return VectorStore(blobs, dimension, config)


class TestBlobStores:
    """Tests for blob backends."""

    @pytest.fixture(params=["memory", "fs"])
    def blobs(self, request, tmp_path):
        if request.param == "memory":
            return InMemoryBlobStore()
        return FileSystemBlobStore(tmp_path / "blobs")

    def test_write_read_delete(self, blobs):
        assert blobs.write("a/1", b"hello").is_ok()
        assert blobs.read("a/1").unwrap() == b"hello"
        assert blobs.delete("a/1").unwrap() is True
        assert blobs.delete("a/1").unwrap() is False
        assert blobs.read("a/1").error.code == ErrorCode.NOT_FOUND

    def test_overwrite(self, blobs):
        blobs.write("k", b"1")
        blobs.write("k", b"2")
        assert blobs.read("k").unwrap() == b"2"

    def test_keys_sorted_by_prefix(self, blobs):
        for key in ("vec/02", "vec/01", "index/header"):
            blobs.write(key, b"x")
        assert list(blobs.keys("vec/")) == ["vec/01", "vec/02"]
        assert len(list(blobs.keys())) == 3

    def test_fs_leaves_no_temp_files(self, tmp_path):
        blobs = FileSystemBlobStore(tmp_path)
        blobs.write("index/nodes", b"payload")
        assert not list(tmp_path.glob("*/*.tmp"))
        assert list(FileSystemBlobStore(tmp_path).keys()) == ["index/nodes"]


class TestRecords:
    """Tests for the binary record format."""

    def test_round_trip_with_metadata(self):
        vec = np.array([1.0, -2.5, 0.0], dtype=np.float32)
        rec = decode_record(VectorId(3), encode_record(vec, {"tag": "a", "n": 1})).unwrap()
        np.testing.assert_array_equal(rec.vector, vec)
        assert rec.metadata == {"tag": "a", "n": 1}

    def test_no_metadata(self):
        rec = decode_record(VectorId(3), encode_record(np.zeros(2), None)).unwrap()
        assert rec.metadata is None

    def test_truncated_record(self):
        data = encode_record(np.zeros(4), None)
        result = decode_record(VectorId(1), data[:-2])
        assert result.error.code == ErrorCode.STORAGE_CORRUPTED

    def test_bad_magic(self):
        data = b"XXXX" + encode_record(np.zeros(4), None)[4:]
        assert decode_record(VectorId(1), data).error.code == ErrorCode.STORAGE_CORRUPTED

    def test_key_layout(self):
        assert record_key(VectorId(255)) == "vec/00000000000000ff"


class TestVectorStore:
    """Tests for put / get / delete."""

    def test_put_get(self):
        store = _fast_store(InMemoryBlobStore())
        vec = np.array([1, 2, 3, 4], dtype=np.float32)
        assert store.put(VectorId(1), vec, {"a": 1}).is_ok()
        np.testing.assert_array_equal(store.get(VectorId(1)).unwrap(), vec)
        assert store.get_record(VectorId(1)).unwrap().metadata == {"a": 1}
        assert VectorId(1) in store
        assert len(store) == 1

    def test_returned_vector_is_read_only(self):
        store = _fast_store(InMemoryBlobStore())
        store.put(VectorId(1), np.zeros(4))
        with pytest.raises(ValueError):
            store.get(VectorId(1)).unwrap()[0] = 1.0

    def test_dimension_mismatch_before_io(self):
        blobs = InMemoryBlobStore()
        store = _fast_store(blobs)
        result = store.put(VectorId(1), np.zeros(3))
        assert result.error.code == ErrorCode.DIMENSION_MISMATCH
        assert len(blobs) == 0

    def test_metadata_must_be_json(self):
        store = _fast_store(InMemoryBlobStore())
        result = store.put(VectorId(1), np.zeros(4), {"bad": object()})
        assert result.error.code == ErrorCode.INVALID_VECTOR

    def test_missing(self):
        store = _fast_store(InMemoryBlobStore())
        assert store.get(VectorId(9)).error.code == ErrorCode.NOT_FOUND
        assert store.delete(VectorId(9)).unwrap() is False

    def test_delete(self):
        store = _fast_store(InMemoryBlobStore())
        store.put(VectorId(1), np.zeros(4))
        assert store.delete(VectorId(1)).unwrap() is True
        assert store.get(VectorId(1)).error.code == ErrorCode.NOT_FOUND

    def test_cache_bypass_reads_backend(self):
        blobs = InMemoryBlobStore()
        store = _fast_store(blobs, cache_capacity=0)
        store.put(VectorId(1), np.ones(4))
        np.testing.assert_array_equal(store.get(VectorId(1)).unwrap(), np.ones(4))

    def test_lru_eviction(self):
        blobs = InMemoryBlobStore()
        store = _fast_store(blobs, cache_capacity=2)
        for i in range(3):
            store.put(VectorId(i), np.full(4, i))
        # Evicted record is read back from the backend
        blobs.write(record_key(VectorId(0)), encode_record(np.full(4, 7.0), None))
        assert store.get(VectorId(0)).unwrap()[0] == 7.0
        assert store.get(VectorId(2)).unwrap()[0] == 2.0

    def test_corrupted_record(self):
        blobs = InMemoryBlobStore()
        store = _fast_store(blobs, cache_capacity=0)
        store.put(VectorId(1), np.zeros(4))
        blobs.write(record_key(VectorId(1)), b"garbage!")
        assert store.get(VectorId(1)).error.code == ErrorCode.STORAGE_CORRUPTED

    def test_load_existing(self, tmp_path):
        store = _fast_store(FileSystemBlobStore(tmp_path))
        for i in (5, 1, 3):
            store.put(VectorId(i), np.full(4, i))
        reloaded = VectorStore.load(FileSystemBlobStore(tmp_path), 4)
        assert [vid.value for vid in reloaded.ids()] == [1, 3, 5]
        assert reloaded.get(VectorId(5)).unwrap()[0] == 5.0


class TestRetry:
    """Tests for transient failure handling."""

    def test_transient_write_retried(self):
        blobs = FlakyBlobStore(failures=2)
        store = _fast_store(blobs, retry_max_attempts=3)
        assert store.put(VectorId(1), np.zeros(4)).is_ok()
        assert store.retry_stats.failed_attempts == 2

    def test_exhausted_retries_surface_error(self):
        blobs = FlakyBlobStore(failures=10)
        store = _fast_store(blobs, retry_max_attempts=2)
        result = store.put(VectorId(1), np.zeros(4))
        assert result.error.code == ErrorCode.STORAGE_IO
        assert blobs.calls == 3
        assert VectorId(1) not in store


class TestScan:
    """Tests for restartable iteration."""

    def test_iterate_in_id_order_and_restart(self):
        store = _fast_store(InMemoryBlobStore())
        for i in (3, 1, 2):
            store.put(VectorId(i), np.full(4, i))
        scan = store.iterate()
        first = [vid.value for vid, _ in scan]
        second = [vid.value for vid, _ in scan]
        assert first == second == [1, 2, 3]
        assert scan.error is None

    def test_scan_stops_on_corruption(self):
        blobs = InMemoryBlobStore()
        store = _fast_store(blobs, cache_capacity=0)
        for i in range(3):
            store.put(VectorId(i), np.zeros(4))
        blobs.write(record_key(VectorId(1)), b"bad")
        scan = store.iterate()
        assert [vid.value for vid, _ in scan] == [0]
        assert scan.error.code == ErrorCode.STORAGE_CORRUPTED


class TestGenerations:
    """Tests for code generations."""

    def test_swap_returns_previous(self):
        store = _fast_store(InMemoryBlobStore())
        sample = np.random.default_rng(0).uniform(size=(50, 4)).astype(np.float32)
        codebook = quantization.train(sample, QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()

        assert not store.generation.trained
        new = StoreGeneration(number=1, codebook=codebook, codes={1: codebook.encode(sample[0])})
        previous = store.swap_generation(new)
        assert previous.number == 0
        assert store.generation is new
        assert store.generation.code_of(VectorId(1)) is not None

        store.set_code(VectorId(2), codebook.encode(sample[1]))
        store.discard_codes([1])
        assert set(store.generation.codes) == {2}
