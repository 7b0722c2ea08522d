"""
Unit Tests: Distance Functions

Tests:
    - Cosine similarity, L2 distance, inner product
    - Vector normalization
    - MetricSpace ordering keys and reported distances
    - Asymmetric distance over quantized codes
"""

import pytest
import numpy as np

from vecgraph.core.config import QuantizationConfig, QuantizerKind
from vecgraph.core.errors import ErrorCode
from vecgraph.core.types import MetricType
from vecgraph.index.distance import (
    MetricSpace,
    cosine_distance,
    cosine_similarity,
    inner_product,
    inner_product_batch,
    l2_distance,
    l2_distance_batch,
    l2_distance_squared,
    normalize_vector,
)
from vecgraph import quantization


class TestNormalization:
    """Tests for vector normalization."""

    def test_normalize_single(self):
        normalized = normalize_vector(np.array([3.0, 4.0]))
        np.testing.assert_allclose(normalized, [0.6, 0.8], rtol=1e-5)

    def test_normalize_batch(self):
        normalized = normalize_vector(np.array([[3.0, 4.0], [1.0, 0.0]]))
        np.testing.assert_allclose(np.linalg.norm(normalized, axis=1), [1.0, 1.0], rtol=1e-5)

    def test_normalize_zero(self):
        np.testing.assert_allclose(normalize_vector(np.zeros(2)), [0.0, 0.0])


class TestKernels:
    """Tests for scalar and batch kernels."""

    def test_cosine(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_distance([1.0, 1.0], [-1.0, -1.0]) == pytest.approx(2.0)
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_l2(self):
        assert l2_distance([0.0, 0.0], [3.0, 4.0]) == pytest.approx(5.0)
        assert l2_distance_squared([0.0, 0.0], [3.0, 4.0]) == pytest.approx(25.0)

    def test_l2_batch_identical_is_exact_zero(self):
        v = np.array([0.1, 0.2, 0.3], dtype=np.float32)
        dists = l2_distance_batch(v, np.stack([v, v + 1]))
        assert dists[0] == 0.0
        assert dists[1] == pytest.approx(np.sqrt(3.0), rel=1e-5)

    def test_inner_product(self):
        assert inner_product([1.0, 2.0], [3.0, 4.0]) == pytest.approx(11.0)
        np.testing.assert_allclose(
            inner_product_batch([1.0, 2.0], [[3.0, 4.0], [0.0, 1.0]]), [11.0, 2.0],
        )


class TestMetricSpace:
    """Tests for dimension-checked distances."""

    def test_dimension_mismatch(self):
        space = MetricSpace(4, MetricType.L2)
        result = space.distance([1.0, 2.0, 3.0, 4.0], [1.0, 2.0, 3.0])
        assert result.is_err()
        assert result.error.code == ErrorCode.DIMENSION_MISMATCH

    def test_rejects_nan(self):
        space = MetricSpace(2, MetricType.L2)
        result = space.check([1.0, float("nan")])
        assert result.error.code == ErrorCode.INVALID_VECTOR

    def test_l2_reports_euclidean(self):
        space = MetricSpace(2, MetricType.L2)
        assert space.distance([0.0, 0.0], [3.0, 4.0]).unwrap() == pytest.approx(5.0)
        assert space.to_score(5.0) == 5.0

    def test_inner_product_key_is_negated_dot(self):
        space = MetricSpace(2, MetricType.INNER_PRODUCT)
        distance = space.distance([1.0, 2.0], [3.0, 4.0]).unwrap()
        assert distance == pytest.approx(-11.0)
        assert space.to_score(distance) == pytest.approx(11.0)

    def test_cosine_ignores_magnitude(self):
        space = MetricSpace(2, MetricType.COSINE)
        assert space.distance([1.0, 0.0], [10.0, 0.0]).unwrap() == pytest.approx(0.0, abs=1e-6)
        distance = space.distance([1.0, 0.0], [0.0, 5.0]).unwrap()
        assert distance == pytest.approx(1.0)
        assert space.to_score(distance) == pytest.approx(0.0)

    def test_keys_order_matches_distances(self):
        rng = np.random.default_rng(0)
        space = MetricSpace(8, MetricType.L2)
        q = rng.standard_normal(8).astype(np.float32)
        X = rng.standard_normal((20, 8)).astype(np.float32)
        keys = space.keys(q, X)
        np.testing.assert_array_equal(np.argsort(keys), np.argsort(l2_distance_batch(q, X)))

    def test_empty_batch(self):
        space = MetricSpace(3, MetricType.L2)
        assert space.keys(np.zeros(3, dtype=np.float32), np.empty((0, 3))).shape == (0,)


class TestAsymmetricDistance:
    """Tests for distances against quantized codes."""

    @pytest.mark.parametrize("metric", [MetricType.L2, MetricType.INNER_PRODUCT, MetricType.COSINE])
    def test_scalar_codes_close_to_exact(self, metric):
        rng = np.random.default_rng(1)
        X = rng.uniform(-1, 1, (500, 8)).astype(np.float32)
        space = MetricSpace(8, metric)
        prepared = np.stack([space.prepare(x) for x in X])
        codebook = quantization.train(prepared, QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()

        q = rng.uniform(-1, 1, 8).astype(np.float32)
        approx = space.asymmetric(q, codebook)(codebook.encode_batch(prepared[:50]))
        exact = space.keys(space.prepare(q), prepared[:50])
        np.testing.assert_allclose(approx, exact, atol=0.1)

    def test_pq_table_matches_decoded_distance(self):
        rng = np.random.default_rng(2)
        X = rng.standard_normal((400, 8)).astype(np.float32)
        config = QuantizationConfig(kind=QuantizerKind.PQ, pq_subvectors=4, pq_bits=4)
        codebook = quantization.train(X, config).unwrap()
        space = MetricSpace(8, MetricType.L2)

        q = rng.standard_normal(8).astype(np.float32)
        codes = codebook.encode_batch(X[:30])
        approx = space.asymmetric(q, codebook)(codes)
        decoded = codebook.decode_batch(codes)
        np.testing.assert_allclose(approx, space.keys(q, decoded), rtol=1e-4, atol=1e-4)

    def test_quantized_distance_checks_code_size(self):
        rng = np.random.default_rng(3)
        X = rng.standard_normal((100, 4)).astype(np.float32)
        codebook = quantization.train(X, QuantizationConfig(kind=QuantizerKind.SCALAR)).unwrap()
        space = MetricSpace(4, MetricType.L2)
        assert space.quantized_distance(X[0], np.zeros(3, dtype=np.uint8), codebook).is_err()
        exact = space.distance(X[0], X[1]).unwrap()
        approx = space.quantized_distance(X[0], codebook.encode(X[1]), codebook).unwrap()
        assert approx == pytest.approx(exact, abs=0.05)
