"""
Integration Tests: Vector Index Engine

Tests:
    - Index creation and configuration errors
    - Insert / search / delete through the full query path
    - Search parameters (ef, filters, metadata, vectors)
    - Quantizer training, validation and hot swap
    - Compaction, consistency checks and rebuild
    - Save / reopen and read-only mode after corruption
"""

import pytest
import numpy as np

from vecgraph import (
    CancellationToken,
    ErrorCode,
    HNSWConfig,
    MetricType,
    QuantizationConfig,
    QuantizerKind,
    SearchParams,
    VectorId,
    create_index,
)
from vecgraph.core.errors import Err, StoreError
from vecgraph.engine import VectorIndex
from vecgraph.index.recall import ground_truth, recall_at_k
from vecgraph.storage import FileSystemBlobStore, InMemoryBlobStore
from vecgraph.storage import layout


def _index(dimension=8, metric="l2", **kwargs):
    kwargs.setdefault("hnsw", HNSWConfig(M=8, ef_construction=64))
    return create_index(dimension, metric=metric, **kwargs).unwrap()


def _loaded(n=300, dimension=8, seed=0, **kwargs):
    data = np.random.default_rng(seed).standard_normal((n, dimension)).astype(np.float32)
    index = _index(dimension, **kwargs)
    report = index.insert_batch((i, data[i]) for i in range(n))
    assert report.failed == 0
    return index, data


class DeleteFailingBlobStore(InMemoryBlobStore):
    """Fails every delete with STORAGE_IO while fail_deletes is set."""

    __slots__ = ("fail_deletes",)

    def __init__(self) -> None:
        super().__init__()
        self.fail_deletes = False

    def delete(self, key):
        if self.fail_deletes:
            return Err(StoreError.io_error(key, "unavailable"))
        return super().delete(key)


class TestCreateIndex:
    """Tests for index creation."""

    def test_defaults(self):
        index = create_index(16).unwrap()
        assert index.dimension == 16
        assert index.metric == MetricType.L2
        assert index.count == 0
        assert index.generation == 0

    def test_invalid_dimension(self):
        assert create_index(0).error.code == ErrorCode.CONFIG_INVALID

    def test_unknown_metric(self):
        assert create_index(4, metric="hamming").error.code == ErrorCode.CONFIG_INVALID

    def test_pq_dimension_must_divide(self):
        config = QuantizationConfig(kind=QuantizerKind.PQ, pq_subvectors=3)
        assert create_index(8, quantizer_config=config).error.code == ErrorCode.CONFIG_INVALID


class TestBasicSearch:
    """Tests for insert and search."""

    def test_small_l2_example(self):
        index = _index(dimension=4)
        index.insert(1, [0, 0, 0, 0])
        index.insert(2, [1, 0, 0, 0])
        index.insert(3, [10, 10, 10, 10])

        result = index.search([0, 0, 0, 0], k=2).unwrap()
        assert result.ids == [1, 2]
        assert result.distances == pytest.approx([0.0, 1.0])

    def test_empty_index(self):
        result = _index().search(np.zeros(8), k=5)
        assert result.is_ok()
        assert len(result.unwrap()) == 0

    def test_invalid_k(self):
        index, data = _loaded(20)
        assert index.search(data[0], k=0).error.code == ErrorCode.INVALID_K
        assert index.search(data[0], k=-3).error.code == ErrorCode.INVALID_K

    def test_k_larger_than_index(self):
        index, data = _loaded(5)
        assert len(index.search(data[0], k=50).unwrap()) == 5

    def test_query_dimension_mismatch(self):
        index, _ = _loaded(20)
        assert index.search(np.zeros(7), k=3).error.code == ErrorCode.DIMENSION_MISMATCH

    def test_insert_dimension_mismatch_leaves_index_unchanged(self):
        index, data = _loaded(20)
        before = index.graph.snapshot().records
        result = index.insert(100, np.zeros(9))
        assert result.error.code == ErrorCode.DIMENSION_MISMATCH
        assert index.count == 20
        assert 100 not in index
        assert index.graph.snapshot().records == before
        assert len(index.store) == 20

    def test_duplicate_and_overwrite(self):
        index = _index(dimension=2)
        index.insert(1, [0.0, 0.0])
        assert index.insert(1, [1.0, 1.0]).error.code == ErrorCode.DUPLICATE_ID
        assert index.insert(1, [1.0, 1.0], overwrite=True).is_ok()
        np.testing.assert_array_equal(index.get(1).unwrap(), [1.0, 1.0])
        assert index.count == 1

    def test_add_allocates_ids(self):
        index = _index(dimension=2)
        index.insert(10, [0.0, 0.0])
        assert index.add([1.0, 1.0]).unwrap() == VectorId(11)

    def test_results_sorted_with_id_tie_break(self):
        index = _index(dimension=2)
        for vid in (8, 2, 5):
            index.insert(vid, [1.0, 1.0])
        result = index.search([1.0, 1.0], k=3).unwrap()
        assert result.ids == [2, 5, 8]

    def test_recall(self):
        index, data = _loaded(500)
        queries = np.random.default_rng(9).standard_normal((30, 8)).astype(np.float32)
        truth = ground_truth(data, list(range(500)), queries, 10)
        found = [index.search(q, k=10, params=SearchParams(ef=128)).unwrap().ids for q in queries]
        assert recall_at_k(found, truth, 10) >= 0.9

    def test_larger_ef_never_hurts_average_recall(self):
        index, data = _loaded(500, hnsw=HNSWConfig(M=4, ef_construction=16))
        queries = np.random.default_rng(3).standard_normal((40, 8)).astype(np.float32)
        truth = ground_truth(data, list(range(500)), queries, 10)
        recalls = []
        for ef in (10, 40, 160, 500):
            found = [index.search(q, k=10, params=SearchParams(ef=ef)).unwrap().ids for q in queries]
            recalls.append(recall_at_k(found, truth, 10))
        assert recalls == sorted(recalls)
        assert recalls[-1] >= 0.95


class TestMetrics:
    """Tests for metric-specific distances."""

    def test_cosine(self):
        index = _index(dimension=2, metric="cosine")
        index.insert(1, [1.0, 0.0])
        index.insert(2, [0.0, 3.0])
        index.insert(3, [5.0, 5.0])
        hits = index.search([10.0, 0.0], k=3).unwrap().hits
        assert [h.id.value for h in hits] == [1, 3, 2]
        assert hits[0].distance == pytest.approx(0.0, abs=1e-6)
        assert hits[0].score == pytest.approx(1.0, abs=1e-6)
        assert hits[2].score == pytest.approx(0.0, abs=1e-6)

    def test_inner_product(self):
        index = _index(dimension=2, metric="ip")
        index.insert(1, [1.0, 0.0])
        index.insert(2, [3.0, 0.0])
        hits = index.search([2.0, 0.0], k=2).unwrap().hits
        assert [h.id.value for h in hits] == [2, 1]
        assert hits[0].distance == pytest.approx(-6.0)
        assert hits[0].score == pytest.approx(6.0)


class TestSearchParams:
    """Tests for per-query options."""

    def test_metadata_and_vectors(self):
        index = _index(dimension=2)
        index.insert(1, [0.0, 0.0], {"color": "red"})
        hit = index.search([0.0, 0.0], k=1, params=SearchParams(
            include_metadata=True, include_vectors=True,
        )).unwrap()[0]
        assert hit.metadata == {"color": "red"}
        np.testing.assert_array_equal(hit.vector, [0.0, 0.0])

        bare = index.search([0.0, 0.0], k=1).unwrap()[0]
        assert bare.metadata is None
        assert bare.vector is None

    def test_post_filter(self):
        index = _index()
        for i in range(100):
            index.insert(i, np.full(8, float(i)), {"even": i % 2 == 0})
        params = SearchParams(ef=100, filter=lambda m: m is not None and m["even"])
        result = index.search(np.full(8, 10.0), k=5, params=params).unwrap()
        assert len(result) == 5
        assert all(vid % 2 == 0 for vid in result.ids)
        assert result.ids[0] == 10

    def test_selective_filter_may_return_fewer(self):
        index, data = _loaded(100)
        index.insert(1000, np.full(8, 50.0), {"keep": True})
        params = SearchParams(ef=10, filter=lambda m: bool(m and m.get("keep")))
        result = index.search(data[0], k=5, params=params).unwrap()
        assert len(result) <= 1

    def test_cancel_token(self):
        index, data = _loaded(200)
        token = CancellationToken()
        token.cancel()
        result = index.search(data[0], k=5, params=SearchParams(cancel_token=token))
        assert result.error.code == ErrorCode.QUERY_CANCELLED

    def test_timeout(self):
        index, data = _loaded(200)
        token = CancellationToken.with_timeout(0)
        result = index.search(data[0], k=5, params=SearchParams(cancel_token=token))
        assert result.error.code == ErrorCode.QUERY_TIMEOUT

    def test_search_batch(self):
        index, data = _loaded(50)
        results = index.search_batch(data[:3], k=1)
        assert [r.unwrap().ids[0] for r in results] == [0, 1, 2]


class TestDelete:
    """Tests for delete and reinsert."""

    def test_delete_then_reinsert(self):
        index, data = _loaded(100)
        assert index.delete(7).unwrap() is True
        assert 7 not in index.search(data[7], k=10).unwrap().ids
        assert index.get(7).error.code == ErrorCode.NOT_FOUND
        assert index.delete(7).unwrap() is False

        assert index.insert(7, data[7]).is_ok()
        assert index.search(data[7], k=1).unwrap().ids == [7]

    def test_delete_unknown(self):
        assert _index().delete(12345).unwrap() is False

    def test_failed_record_delete_keeps_vector_live(self):
        blobs = DeleteFailingBlobStore()
        index, data = _loaded(50, blob_store=blobs)
        blobs.fail_deletes = True
        assert index.delete(7).error.code == ErrorCode.STORAGE_IO
        assert index.get(7).is_ok()
        assert index.search(data[7], k=1).unwrap().ids == [7]
        assert index.stats().tombstone_count == 0

        blobs.fail_deletes = False
        index.compact().unwrap()
        index.save().unwrap()
        reopened = VectorIndex.open(blobs).unwrap()
        assert reopened.search(data[7], k=1).unwrap().ids == [7]
        assert reopened.delete(7).unwrap() is True

    def test_compact(self):
        index, data = _loaded(200)
        for i in range(50):
            index.delete(i)
        report = index.compact().unwrap()
        assert report.purged == 50
        assert index.stats().tombstone_count == 0
        assert index.check_consistency().is_ok()
        assert index.search(data[120], k=1).unwrap().ids == [120]


class TestQuantizedSearch:
    """Tests for training, validation and the hot swap."""

    def test_scalar_training_with_validation(self):
        rng = np.random.default_rng(11)
        sample = rng.uniform(-1, 1, (1000, 8)).astype(np.float32)
        held_out = rng.uniform(-1, 1, (200, 8)).astype(np.float32)
        index = _index()
        for i in range(200):
            index.insert(i, sample[i])

        report = index.train_quantizer(
            sample, validation=held_out, config=QuantizationConfig(kind=QuantizerKind.SCALAR),
        ).unwrap()
        assert report.generation == 1
        assert report.encoded == 200
        assert report.validation.fraction_within >= 0.95
        assert index.generation == 1
        assert index.stats().quantizer == "scalar"

        result = index.search(sample[5], k=1).unwrap()
        assert result.ids == [5]
        assert result.generation == 1
        assert result.hits[0].distance == pytest.approx(0.0, abs=1e-6)

    def test_tolerance_rejection_keeps_old_generation(self):
        rng = np.random.default_rng(12)
        sample = rng.standard_normal((300, 8)).astype(np.float32)
        index = _index()
        for i in range(50):
            index.insert(i, sample[i])
        config = QuantizationConfig(
            kind=QuantizerKind.PQ, pq_subvectors=2, pq_bits=2, tolerance=0.01,
        )
        result = index.train_quantizer(sample, validation=sample[:100], config=config)
        assert result.error.code == ErrorCode.TOLERANCE_EXCEEDED
        assert index.generation == 0

    def test_insufficient_samples(self):
        index, _ = _loaded(20)
        config = QuantizationConfig(kind=QuantizerKind.PQ, pq_subvectors=2, pq_bits=8)
        assert index.train_quantizer(config=config).error.code == ErrorCode.INSUFFICIENT_SAMPLES

    def test_none_kind_rejected(self):
        index, _ = _loaded(20)
        assert index.train_quantizer().error.code == ErrorCode.CONFIG_INVALID

    def test_pq_recall_with_rerank(self):
        index, data = _loaded(600)
        config = QuantizationConfig(kind=QuantizerKind.PQ, pq_subvectors=4, pq_bits=5)
        assert index.train_quantizer(config=config).is_ok()

        queries = np.random.default_rng(5).standard_normal((20, 8)).astype(np.float32)
        truth = ground_truth(data, list(range(600)), queries, 5)
        found = [index.search(q, k=5, params=SearchParams(ef=128)).unwrap().ids for q in queries]
        assert recall_at_k(found, truth, 5) >= 0.8

    def test_inserts_after_training_are_encoded(self):
        index, data = _loaded(300)
        index.train_quantizer(config=QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()
        index.insert(999, data[0] + 0.001)
        assert index.store.generation.code_of(VectorId(999)) is not None
        assert 999 in index.search(data[0], k=2).unwrap().ids

    def test_second_training_bumps_generation(self):
        index, _ = _loaded(300)
        config = QuantizationConfig(kind=QuantizerKind.SCALAR)
        index.train_quantizer(config=config).unwrap()
        first = index.store.generation
        index.train_quantizer(config=config).unwrap()
        assert index.generation == 2
        assert first.number == 1
        assert first.codebook is not None

    def test_evaluate_quantizer(self):
        index, data = _loaded(300)
        assert index.evaluate_quantizer(data[:10]).error.code == ErrorCode.NOT_TRAINED
        index.train_quantizer(config=QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()
        assert index.evaluate_quantizer(data[:10]).unwrap().samples == 10

    def test_exact_traversal_override(self):
        index, data = _loaded(300)
        index.train_quantizer(config=QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()
        exact = index.search(data[3], k=3, params=SearchParams(use_quantized=False)).unwrap()
        assert exact.ids[0] == 3


class TestStats:
    """Tests for index statistics."""

    def test_stats(self):
        index, _ = _loaded(100)
        index.delete(0)
        stats = index.stats()
        assert stats.node_count == 99
        assert stats.tombstone_count == 1
        assert stats.dimension == 8
        assert stats.avg_degree > 0
        assert stats.layer_histogram[0] == 99
        assert stats.quantizer == "none"
        assert not stats.read_only


class TestPersistence:
    """Tests for save / open."""

    def test_round_trip(self, tmp_path):
        blobs = FileSystemBlobStore(tmp_path)
        index, data = _loaded(150, blob_store=blobs)
        index.delete(4)
        index.train_quantizer(config=QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()
        assert index.save().unwrap() > 0

        reopened = VectorIndex.open(FileSystemBlobStore(tmp_path)).unwrap()
        assert reopened.count == 149
        assert reopened.generation == 1
        assert not reopened.read_only
        assert reopened.check_consistency().is_ok()
        for i in (0, 50, 149):
            assert reopened.search(data[i], k=1).unwrap().ids == [i]
        assert 4 not in reopened.search(data[4], k=5).unwrap().ids

    def test_vectors_written_after_save_are_linked_on_open(self):
        blobs = InMemoryBlobStore()
        index, data = _loaded(50, blob_store=blobs)
        index.save().unwrap()
        index.insert(500, np.full(8, 3.0))

        reopened = VectorIndex.open(blobs).unwrap()
        assert reopened.count == 51
        assert reopened.search(np.full(8, 3.0), k=1).unwrap().ids == [500]
        assert reopened.add(np.zeros(8)).unwrap() == VectorId(501)

    def test_delete_after_save_is_applied_on_open(self):
        blobs = InMemoryBlobStore()
        index, data = _loaded(50, blob_store=blobs)
        index.save().unwrap()
        assert index.delete(7).unwrap() is True

        reopened = VectorIndex.open(blobs).unwrap()
        assert not reopened.read_only
        assert reopened.count == 49
        assert 7 not in reopened.search(data[7], k=5).unwrap().ids
        assert reopened.get(7).error.code == ErrorCode.NOT_FOUND
        assert reopened.check_consistency().is_ok()
        assert reopened.insert(7, data[7]).is_ok()

    def test_overwrite_after_save_is_applied_on_open(self):
        blobs = InMemoryBlobStore()
        index, data = _loaded(50, blob_store=blobs)
        index.save().unwrap()
        moved = np.full(8, 5.0, dtype=np.float32)
        index.insert(7, moved, overwrite=True).unwrap()

        reopened = VectorIndex.open(blobs).unwrap()
        assert not reopened.read_only
        assert reopened.count == 50
        assert reopened.search(moved, k=1).unwrap().ids == [7]
        assert 7 not in reopened.search(data[7], k=3).unwrap().ids
        np.testing.assert_array_equal(reopened.get(7).unwrap(), moved)

    def test_reinsert_after_save_is_applied_on_open(self):
        blobs = InMemoryBlobStore()
        index, data = _loaded(50, blob_store=blobs)
        index.save().unwrap()
        moved = np.full(8, -5.0, dtype=np.float32)
        index.delete(7)
        index.insert(7, moved)

        reopened = VectorIndex.open(blobs).unwrap()
        assert reopened.count == 50
        assert reopened.search(moved, k=1).unwrap().ids == [7]
        assert reopened.check_consistency().is_ok()

    def test_quantized_overwrite_after_save_is_reencoded(self):
        blobs = InMemoryBlobStore()
        index, data = _loaded(300, blob_store=blobs)
        index.train_quantizer(config=QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()
        index.save().unwrap()
        before = index.store.generation.code_of(VectorId(7)).copy()
        index.insert(7, data[8], overwrite=True).unwrap()

        reopened = VectorIndex.open(blobs).unwrap()
        code = reopened.store.generation.code_of(VectorId(7))
        assert not np.array_equal(code, before)
        np.testing.assert_array_equal(code, reopened.store.generation.code_of(VectorId(8)))

    def test_open_without_snapshot(self):
        assert VectorIndex.open(InMemoryBlobStore()).error.code == ErrorCode.NOT_FOUND

    def test_dangling_reference_opens_read_only(self):
        blobs = InMemoryBlobStore()
        index, data = _loaded(50, blob_store=blobs)
        index.save().unwrap()

        loaded = layout.load_snapshot(blobs).unwrap()
        snap = loaded.graph
        rec = snap.records[0]
        snap.records[0] = type(rec)(
            id=rec.id, level=rec.level, tombstoned=rec.tombstoned,
            neighbors=((10_000,),) + rec.neighbors[1:],
        )
        blobs.write(layout.blob_key(layout.NODES, loaded.header.snapshot), layout.frame(layout.encode_nodes(snap)))

        reopened = VectorIndex.open(blobs).unwrap()
        assert reopened.read_only
        assert reopened.needs_rebuild
        assert reopened.insert(999, np.zeros(8)).error.code == ErrorCode.READ_ONLY
        assert reopened.delete(1).error.code == ErrorCode.READ_ONLY
        # Reads keep working on the intact part of the graph
        assert reopened.search(data[1], k=1).is_ok()

        assert reopened.rebuild().unwrap() == 50
        assert not reopened.read_only
        assert reopened.check_consistency().is_ok()
        assert reopened.insert(999, np.zeros(8)).is_ok()

    def test_missing_stored_vector_fails_consistency(self):
        index, _ = _loaded(20)
        index.store.delete(VectorId(3))
        result = index.check_consistency()
        assert result.error.code == ErrorCode.INTERNAL_INCONSISTENCY
        assert index.read_only
        assert index.insert(100, np.zeros(8)).error.code == ErrorCode.READ_ONLY
