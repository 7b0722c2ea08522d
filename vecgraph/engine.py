"""
Vector Index Engine: Query Engine and Administrative Interface

Control flow:
    insert: validate -> Vector Store persists the full vector -> current
            codebook (if any) encodes it -> Proximity Graph links the node
    search: validate -> clamp ef >= k -> graph traversal (quantized
            distances when a codebook is trained) -> exact re-rank from the
            Vector Store -> metadata post-filter -> top k

Concurrency:
    - One writer lock serializes insert/delete/compact/train swaps
    - search() takes no lock: it captures the store generation and the
      graph's published watermark once and works on that snapshot
    - Retraining runs outside the lock; only re-encoding and the
      generation swap hold it

Failure policy:
    An INTERNAL_INCONSISTENCY (broken entry point, dangling reference) flips
    the index to read-only and flags it for rebuild. Nothing is repaired
    implicitly; rebuild() re-links every stored vector from scratch.
"""

from __future__ import annotations

import itertools
import random
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional, Sequence, Union

import numpy as np

from vecgraph import quantization
from vecgraph.core.config import (
    HNSWConfig,
    IndexConfig,
    QuantizationConfig,
    QuantizerKind,
    StoreConfig,
)
from vecgraph.core.errors import (
    ConfigError,
    Err,
    ErrorCode,
    GraphError,
    InputError,
    Ok,
    QuantizerError,
    Result,
    StoreError,
    VecGraphError,
)
from vecgraph.core.protocols import BlobStoreProtocol
from vecgraph.core.types import (
    IdAllocator,
    IndexStats,
    MetricType,
    NodeState,
    SearchHit,
    SearchParams,
    SearchResult,
    VectorId,
)
from vecgraph.index.distance import MetricSpace
from vecgraph.index.graph import CompactionReport, ProximityGraph, Scorer
from vecgraph.observability.logging import StructuredLogger, log_context
from vecgraph.quantization.base import Codebook, QuantizationReport
from vecgraph.reliability.retry import RetryPolicy
from vecgraph.storage import layout
from vecgraph.storage.blob import InMemoryBlobStore
from vecgraph.storage.vector_store import StoredVector, StoreGeneration, VectorStore

# Share of validation vectors that must reconstruct within tolerance
ACCEPTANCE_FRACTION = 0.95

IdLike = Union[VectorId, int]


# =============================================================================
# REPORTS
# =============================================================================
@dataclass(frozen=True, slots=True)
class TrainingReport:
    """
    Outcome of a quantizer retrain.

    Attributes:
        generation: Generation number now serving queries
        kind: Quantizer kind trained
        samples: Training sample size
        encoded: Vectors re-encoded into the new generation
        validation: Held-out reconstruction report, if a validation set was given
    """
    generation: int
    kind: QuantizerKind
    samples: int
    encoded: int
    validation: Optional[QuantizationReport] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "generation": self.generation,
            "kind": self.kind.value,
            "samples": self.samples,
            "encoded": self.encoded,
            "validation": self.validation.to_dict() if self.validation else None,
        }


@dataclass(slots=True)
class BatchInsertReport:
    """Per-item outcome of insert_batch."""
    inserted: int = 0
    errors: list[tuple[Any, VecGraphError]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


# =============================================================================
# VECTOR INDEX
# =============================================================================
class VectorIndex:
    """
    Approximate nearest-neighbor index over one vector space.

    Thread Safety:
        - Concurrent search() calls are lock-free
        - Mutations are serialized by a single writer lock
    """

    __slots__ = (
        "_config",
        "_name",
        "_space",
        "_blobs",
        "_store",
        "_graph",
        "_rng",
        "_ids",
        "_write_lock",
        "_read_only",
        "_needs_rebuild",
        "_log",
    )

    def __init__(
        self,
        config: IndexConfig,
        blob_store: Optional[BlobStoreProtocol] = None,
        name: str = "default",
    ) -> None:
        """
        Build an empty index. Use create_index() for validated construction.

        Args:
            config: Validated index configuration
            blob_store: Durable backend (in-memory if None)
            name: Label attached to log records
        """
        self._config = config
        self._name = name
        self._space = MetricSpace(config.dimension, config.metric)
        self._blobs: BlobStoreProtocol = blob_store if blob_store is not None else InMemoryBlobStore()
        self._store = VectorStore.load(self._blobs, config.dimension, config.store)
        self._graph = ProximityGraph(config.hnsw, self._space)
        self._rng = random.Random(config.hnsw.seed)
        self._ids = IdAllocator()
        self._write_lock = threading.RLock()
        self._read_only: Optional[str] = None
        self._needs_rebuild = False
        self._log = StructuredLogger(__name__).with_extra(index=name)

    # =========================================================================
    # PROPERTIES
    # =========================================================================
    @property
    def config(self) -> IndexConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._name

    @property
    def dimension(self) -> int:
        return self._config.dimension

    @property
    def metric(self) -> MetricType:
        return self._config.metric

    @property
    def count(self) -> int:
        return self._graph.count

    @property
    def generation(self) -> int:
        return self._store.generation.number

    @property
    def read_only(self) -> bool:
        return self._read_only is not None

    @property
    def needs_rebuild(self) -> bool:
        return self._needs_rebuild

    @property
    def store(self) -> VectorStore:
        return self._store

    @property
    def graph(self) -> ProximityGraph:
        return self._graph

    def __len__(self) -> int:
        return self.count

    def __contains__(self, vector_id: object) -> bool:
        if isinstance(vector_id, (VectorId, int)) and not isinstance(vector_id, bool):
            try:
                return self._graph.contains(VectorId.coerce(vector_id))
            except ValueError:
                return False
        return False

    # =========================================================================
    # FAILURE HANDLING
    # =========================================================================
    def _writable(self) -> Optional[GraphError]:
        if self._read_only is not None:
            return GraphError.read_only(self._read_only)
        return None

    def _enter_read_only(self, error: VecGraphError) -> None:
        """Stop accepting writes after a fatal inconsistency."""
        if self._read_only is None:
            self._read_only = error.message
            self._needs_rebuild = True
            self._log.critical("Index inconsistency detected", error=error.to_dict())
            self._log.error("Index switched to read-only mode", reason=error.message)

    @staticmethod
    def _coerce_id(vector_id: IdLike) -> Result[VectorId, InputError]:
        try:
            return Ok(VectorId.coerce(vector_id))
        except (TypeError, ValueError) as e:
            return Err(InputError.invalid_vector(f"invalid id {vector_id!r}: {e}"))

    # =========================================================================
    # INSERT
    # =========================================================================
    def insert(
        self,
        vector_id: IdLike,
        vector: Any,
        metadata: Optional[dict[str, Any]] = None,
        overwrite: bool = False,
    ) -> Result[VectorId, VecGraphError]:
        """
        Persist a vector and link it into the graph.

        Args:
            vector_id: Caller-assigned identifier
            vector: D floats
            metadata: JSON-serializable dict stored with the vector
            overwrite: Replace a live vector with the same id

        Returns:
            The id on success; DIMENSION_MISMATCH, DUPLICATE_ID, READ_ONLY
            or a storage error otherwise. A failed insert leaves the graph
            unchanged.
        """
        coerced = self._coerce_id(vector_id)
        if coerced.is_err():
            return coerced
        vid = coerced.unwrap()
        checked = self._space.check(vector)
        if checked.is_err():
            return checked
        vec = checked.unwrap()

        with self._write_lock:
            if error := self._writable():
                return Err(error)
            if self._graph.contains(vid) and not overwrite:
                return Err(GraphError.duplicate_id(vid.value))

            stored = self._store.put(vid, vec, metadata)
            if stored.is_err():
                return stored

            generation = self._store.generation
            if generation.codebook is not None:
                self._store.set_code(vid, generation.codebook.encode(self._space.prepare(vec)))

            linked = self._graph.insert(vid, vec, self._rng, overwrite=overwrite)
            if linked.is_err():
                return linked
            self._ids.observe(vid)

        self._log.debug("Inserted vector", vector_id=vid.value)
        return Ok(vid)

    def add(self, vector: Any, metadata: Optional[dict[str, Any]] = None) -> Result[VectorId, VecGraphError]:
        """Insert under the next free sequential id."""
        return self.insert(self._ids.next_id(), vector, metadata)

    def insert_batch(
        self,
        items: Iterable[Union[tuple[IdLike, Any], tuple[IdLike, Any, Optional[dict[str, Any]]]]],
        overwrite: bool = False,
    ) -> BatchInsertReport:
        """
        Insert (id, vector[, metadata]) tuples one by one.

        Failures are collected per item; earlier successes are kept.
        """
        report = BatchInsertReport()
        for item in items:
            vector_id, vector = item[0], item[1]
            metadata = item[2] if len(item) > 2 else None
            result = self.insert(vector_id, vector, metadata, overwrite=overwrite)
            if result.is_ok():
                report.inserted += 1
            else:
                report.errors.append((vector_id, result.error))
        if report.errors:
            self._log.warning(
                "Batch insert finished with failures",
                inserted=report.inserted,
                failed=report.failed,
            )
        return report

    # =========================================================================
    # DELETE / GET
    # =========================================================================
    def delete(self, vector_id: IdLike) -> Result[bool, VecGraphError]:
        """
        Drop a vector's stored record, then tombstone its node.

        A failed record delete leaves the vector live and searchable.

        Returns:
            True if the id was live, False if it was absent or already deleted
        """
        coerced = self._coerce_id(vector_id)
        if coerced.is_err():
            return coerced
        vid = coerced.unwrap()

        with self._write_lock:
            if error := self._writable():
                return Err(error)
            if not self._graph.contains(vid):
                return Ok(False)
            removed = self._store.delete(vid)
            if removed.is_err():
                return removed
            tombstoned = self._graph.delete(vid)
            if tombstoned.is_err():
                return tombstoned

        self._log.debug("Deleted vector", vector_id=vid.value)
        return Ok(True)

    def get_record(self, vector_id: IdLike) -> Result[StoredVector, VecGraphError]:
        """Stored vector and metadata of a live id, or NOT_FOUND."""
        coerced = self._coerce_id(vector_id)
        if coerced.is_err():
            return coerced
        vid = coerced.unwrap()
        if not self._graph.contains(vid):
            return Err(StoreError.not_found(vid.value))
        return self._store.get_record(vid)

    def get(self, vector_id: IdLike) -> Result[np.ndarray, VecGraphError]:
        """Full-precision vector of a live id, or NOT_FOUND."""
        return self.get_record(vector_id).map(lambda rec: rec.vector)

    # =========================================================================
    # SEARCH
    # =========================================================================
    def _quantized_scorer(
        self,
        query: np.ndarray,
        prepared: np.ndarray,
        codebook: Codebook,
        codes: dict[int, np.ndarray],
    ) -> Scorer:
        """
        Traversal scorer backed by the generation's codes.

        Nodes without a code in the generation (inserted concurrently with
        a swap) fall back to exact distances on the same key scale.
        """
        adc = self._space.asymmetric(query, codebook)
        exact = self._graph.exact_scorer(prepared)
        graph = self._graph

        def score(slots: Sequence[int]) -> np.ndarray:
            rows = [codes.get(vid) for vid in graph.ids_of(slots)]
            missing = [i for i, row in enumerate(rows) if row is None]
            if not missing:
                return adc(np.stack(rows))
            keys = np.asarray(exact(slots), dtype=np.float64)
            present = [i for i, row in enumerate(rows) if row is not None]
            if present:
                keys[present] = adc(np.stack([rows[i] for i in present]))
            return keys

        return score

    def search(
        self,
        query: Any,
        k: int = 10,
        params: Optional[SearchParams] = None,
    ) -> Result[SearchResult, VecGraphError]:
        """
        k nearest neighbors of query.

        Algorithm:
            1. Validate k and the query dimension
            2. ef = max(params.ef or ef_search, k)
            3. Graph beam search (quantized distances if trained)
            4. Re-rank every candidate by exact distance from the store
            5. Apply the metadata post-filter, sort by (distance, id), cut to k

        The post-filter runs after retrieval, so a selective predicate can
        return fewer than k hits; raise ef to compensate.

        Thread Safety: Lock-free read
        """
        start = time.perf_counter()
        params = params or SearchParams()

        if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
            return Err(InputError.invalid_k(k))  # type: ignore[arg-type]
        k = int(k)
        checked = self._space.check(query)
        if checked.is_err():
            return checked
        vec = checked.unwrap()
        prepared = self._space.prepare(vec)

        generation = self._store.generation
        ef = max(params.ef or self._config.hnsw.ef_search, k)
        token = params.token()
        scorer = None
        if params.use_quantized and generation.codebook is not None:
            scorer = self._quantized_scorer(vec, prepared, generation.codebook, generation.codes)

        found = self._graph.search(vec, k, ef, scorer=scorer, token=token)
        if found.is_err():
            if found.error.code.fatal:
                self._enter_read_only(found.error)
            return found
        traversal = found.unwrap()
        if not traversal.candidates:
            return Ok(SearchResult(
                query_time_ms=(time.perf_counter() - start) * 1000,
                generation=generation.number,
            ))

        needs_records = (
            params.rerank
            or params.filter is not None
            or params.include_metadata
            or params.include_vectors
        )
        ids = [vid for vid, _ in traversal.candidates]
        keys = np.array([key for _, key in traversal.candidates], dtype=np.float64)
        records: list[Optional[StoredVector]] = [None] * len(ids)
        if needs_records:
            for i, vid in enumerate(ids):
                fetched = self._store.get_record(vid)
                if fetched.is_err():
                    # Deleted after traversal saw it live
                    if fetched.error.code == ErrorCode.NOT_FOUND:
                        continue
                    return fetched
                records[i] = fetched.unwrap()

        if params.rerank:
            present = [i for i, rec in enumerate(records) if rec is not None]
            if present:
                stacked = np.stack([
                    self._space.prepare(records[i].vector)  # type: ignore[union-attr]
                    for i in present
                ])
                keys[present] = self._space.keys(prepared, stacked)

        hits: list[SearchHit] = []
        for i, vid in enumerate(ids):
            rec = records[i]
            if needs_records and rec is None:
                continue
            metadata = rec.metadata if rec is not None else None
            if params.filter is not None and not params.filter(metadata):
                continue
            distance = self._space.to_distance(float(keys[i]))
            hits.append(SearchHit(
                id=vid,
                distance=distance,
                score=self._space.to_score(distance),
                metadata=metadata if params.include_metadata else None,
                vector=rec.vector if params.include_vectors and rec is not None else None,
            ))

        hits.sort(key=lambda h: (h.distance, h.id.value))
        elapsed_ms = (time.perf_counter() - start) * 1000
        self._log.debug(
            "Search finished",
            k=k,
            ef=ef,
            candidates=len(ids),
            visited=traversal.visited,
            elapsed_ms=round(elapsed_ms, 3),
        )
        return Ok(SearchResult(
            hits=hits[:k],
            query_time_ms=elapsed_ms,
            candidates=len(ids),
            visited=traversal.visited,
            generation=generation.number,
        ))

    def search_batch(
        self,
        queries: Sequence[Any],
        k: int = 10,
        params: Optional[SearchParams] = None,
    ) -> list[Result[SearchResult, VecGraphError]]:
        return [self.search(q, k, params) for q in queries]

    # =========================================================================
    # QUANTIZER TRAINING
    # =========================================================================
    def _prepare_rows(self, rows: Any) -> Result[np.ndarray, VecGraphError]:
        X = np.asarray(rows, dtype=np.float32)
        if X.ndim != 2:
            return Err(InputError.invalid_vector(f"expected a 2-D sample, got shape {X.shape}"))
        if X.shape[1] != self.dimension:
            return Err(InputError.dimension_mismatch(self.dimension, X.shape[1]))
        if self.metric == MetricType.COSINE and X.shape[0]:
            norms = np.linalg.norm(X, axis=1, keepdims=True)
            X = X / np.where(norms > 0, norms, 1.0)
        return Ok(np.ascontiguousarray(X, dtype=np.float32))

    def train_quantizer(
        self,
        sample: Optional[Any] = None,
        validation: Optional[Any] = None,
        config: Optional[QuantizationConfig] = None,
    ) -> Result[TrainingReport, VecGraphError]:
        """
        Train a new codebook and hot-swap it in as the next generation.

        Args:
            sample: Training vectors [n, D] (all live vectors if None)
            validation: Held-out vectors; the codebook is rejected with
                TOLERANCE_EXCEEDED unless 95% reconstruct within tolerance
            config: Quantizer settings (index config if None)

        Queries already running keep the generation they captured; the
        next query sees the new one.
        """
        qconfig = config or self._config.quantization
        if qconfig.kind == QuantizerKind.NONE:
            return Err(ConfigError.invalid("quantizer kind is 'none'; nothing to train"))
        if reason := qconfig.validate(self.dimension):
            return Err(ConfigError.invalid(reason))
        if error := self._writable():
            return Err(error)

        if sample is None:
            _, rows = self._graph.live_vectors()
            prepared_sample: Result[np.ndarray, VecGraphError] = Ok(rows)
        else:
            prepared_sample = self._prepare_rows(sample)
        if prepared_sample.is_err():
            return prepared_sample
        X = prepared_sample.unwrap()

        self._log.info("Training quantizer", kind=qconfig.kind.value, samples=int(X.shape[0]))
        trained = quantization.train(X, qconfig, self.dimension)
        if trained.is_err():
            self._log.warning("Quantizer training rejected", error=trained.error.to_dict())
            return trained
        codebook = trained.unwrap()

        report: Optional[QuantizationReport] = None
        if validation is not None:
            prepared_validation = self._prepare_rows(validation)
            if prepared_validation.is_err():
                return prepared_validation
            evaluated = quantization.evaluate(codebook, prepared_validation.unwrap(), qconfig.tolerance)
            if evaluated.is_err():
                return evaluated
            report = evaluated.unwrap()
            self._log.info("Quantizer validation", **report.to_dict())
            if report.fraction_within < ACCEPTANCE_FRACTION:
                return Err(QuantizerError.tolerance_exceeded(report.fraction_within, qconfig.tolerance))

        with self._write_lock:
            if error := self._writable():
                return Err(error)
            ids, vectors = self._graph.live_vectors()
            codes: dict[int, np.ndarray] = {}
            if ids:
                encoded = codebook.encode_batch(vectors)
                codes = {vid.value: encoded[i] for i, vid in enumerate(ids)}
            previous = self._store.generation
            generation = StoreGeneration(number=previous.number + 1, codebook=codebook, codes=codes)
            self._store.swap_generation(generation)
            self._config = replace(self._config, quantization=qconfig)

        self._log.info(
            "Codebook swapped",
            generation=generation.number,
            kind=qconfig.kind.value,
            encoded=len(codes),
        )
        return Ok(TrainingReport(
            generation=generation.number,
            kind=qconfig.kind,
            samples=int(X.shape[0]),
            encoded=len(codes),
            validation=report,
        ))

    def evaluate_quantizer(self, validation: Any) -> Result[QuantizationReport, VecGraphError]:
        """Reconstruction report of the serving codebook on held-out vectors."""
        codebook = self._store.generation.codebook
        if codebook is None:
            return Err(QuantizerError.not_trained())
        prepared = self._prepare_rows(validation)
        if prepared.is_err():
            return prepared
        return quantization.evaluate(codebook, prepared.unwrap(), self._config.quantization.tolerance)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================
    def compact(self) -> Result[CompactionReport, VecGraphError]:
        """Purge tombstones, repair their neighbors' edges, drop their codes."""
        with log_context(index=self._name, op="compact"), self._write_lock:
            if error := self._writable():
                return Err(error)
            purged = [vid.value for vid in self._graph.tombstoned_ids()]
            report = self._graph.compact()
            live = {vid.value for vid in self._graph.live_ids()}
            self._store.discard_codes([vid for vid in purged if vid not in live])
        self._log.info("Compaction finished", **report.to_dict())
        return Ok(report)

    def check_consistency(self) -> Result[None, VecGraphError]:
        """
        Verify graph invariants and that every live node has a stored vector.

        A violation switches the index to read-only.
        """
        checked: Result[None, VecGraphError] = self._graph.check_consistency()
        if checked.is_ok():
            missing = [vid for vid in self._graph.live_ids() if vid not in self._store]
            if missing:
                checked = Err(GraphError.internal_inconsistency(
                    "live nodes without stored vectors",
                    count=len(missing),
                    first=missing[0].value,
                ))
        if checked.is_err():
            self._enter_read_only(checked.error)
        return checked

    def rebuild(self) -> Result[int, VecGraphError]:
        """
        Re-link every stored vector into a fresh graph and leave read-only mode.

        Returns:
            Number of vectors linked
        """
        with log_context(index=self._name, op="rebuild"), self._write_lock:
            graph = ProximityGraph(self._config.hnsw, self._space)
            rng = random.Random(self._config.hnsw.seed)
            scan = self._store.iterate()
            linked = 0
            for vid, vector in scan:
                inserted = graph.insert(vid, vector, rng)
                if inserted.is_err():
                    return inserted
                linked += 1
            if scan.error is not None:
                return Err(scan.error)

            generation = self._store.generation
            if generation.codebook is not None:
                ids, vectors = graph.live_vectors()
                encoded = generation.codebook.encode_batch(vectors) if ids else []
                codes = {vid.value: encoded[i] for i, vid in enumerate(ids)}
                self._store.swap_generation(StoreGeneration(
                    number=generation.number + 1,
                    codebook=generation.codebook,
                    codes=codes,
                ))

            self._graph = graph
            self._rng = rng
            self._read_only = None
            self._needs_rebuild = False
        self._log.info("Index rebuilt", vectors=linked)
        return Ok(linked)

    # =========================================================================
    # STATS
    # =========================================================================
    def stats(self) -> IndexStats:
        avg_degree, histogram = self._graph.degree_stats()
        generation = self._store.generation
        return IndexStats(
            node_count=self._graph.count,
            tombstone_count=self._graph.tombstone_count,
            avg_degree=avg_degree,
            layer_histogram=histogram,
            dimension=self.dimension,
            metric=self.metric,
            quantizer=generation.codebook.kind.value if generation.codebook is not None else "none",
            generation=generation.number,
            max_level=self._graph.max_level,
            read_only=self.read_only,
        )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================
    def save(self) -> Result[int, VecGraphError]:
        """
        Write header, node table, codebook and code table to the blob store.

        Vector records are already durable (written on insert).

        Returns:
            Snapshot bytes written (before compression)
        """
        with log_context(index=self._name, op="save"), self._write_lock:
            snapshot = self._graph.snapshot()
            header = layout.IndexHeader(
                config=self._config,
                generation=self._store.generation.number,
                node_count=len(snapshot.records),
                needs_rebuild=self._needs_rebuild,
            )
            return layout.save_snapshot(
                self._blobs,
                header,
                snapshot,
                self._store.generation,
                RetryPolicy.from_store_config(self._config.store),
            )

    @classmethod
    def open(
        cls,
        blob_store: BlobStoreProtocol,
        name: str = "default",
    ) -> Result["VectorIndex", VecGraphError]:
        """
        Load a saved index.

        The node table is reconciled with the vector records, which change
        on every write while the node table only changes on save(). Dangling
        references or a missing entry point open the index read-only with
        needs_rebuild set.
        """
        loaded = layout.load_snapshot(blob_store)
        if loaded.is_err():
            return loaded
        snapshot = loaded.unwrap()
        config = snapshot.header.config
        if reason := config.validate():
            return Err(ConfigError.invalid(reason))

        index = cls(config, blob_store, name)
        index._store.swap_generation(snapshot.generation)

        problems: list[str] = []
        if snapshot.graph is not None:
            graph, problems = ProximityGraph.restore(config.hnsw, index._space, snapshot.graph)
            index._graph = graph
            index._rng = random.Random(config.hnsw.seed + len(snapshot.graph.records))
            for vid in itertools.chain(graph.live_ids(), graph.tombstoned_ids()):
                index._ids.observe(vid)

        if problems or snapshot.header.needs_rebuild:
            reason = "; ".join(problems[:5]) or "saved while flagged for rebuild"
            index._enter_read_only(GraphError.internal_inconsistency(reason, problems=len(problems)))
        else:
            reconciled = index._reconcile_with_store()
            if reconciled.is_err():
                return reconciled

        index._log.info(
            "Opened index",
            nodes=index.count,
            generation=index.generation,
            read_only=index.read_only,
        )
        return Ok(index)

    def _reconcile_with_store(self) -> Result[int, VecGraphError]:
        """
        Apply record changes made after the last save() to the graph.

        - A live node whose record is gone is tombstoned
        - A live node whose record holds a different vector is relinked
        - A record without a live node is linked

        Returns:
            Nodes tombstoned, relinked or linked
        """
        tombstoned = relinked = linked = 0
        with self._write_lock:
            generation = self._store.generation
            for vid in list(self._graph.live_ids()):
                if vid not in self._store:
                    self._graph.delete(vid)
                    tombstoned += 1

            for vid in self._store.ids():
                record = self._store.get(vid)
                if record.is_err():
                    return record
                vector = record.unwrap()
                prepared = self._space.prepare(vector)
                current = self._graph.vector_of(vid)
                if current is not None and np.array_equal(current, prepared):
                    continue
                if generation.codebook is not None:
                    self._store.set_code(vid, generation.codebook.encode(prepared))
                inserted = self._graph.insert(vid, vector, self._rng, overwrite=current is not None)
                if inserted.is_err():
                    return inserted
                self._ids.observe(vid)
                if current is not None:
                    relinked += 1
                else:
                    linked += 1

        if tombstoned or relinked or linked:
            self._log.info(
                "Applied record changes made since last save",
                tombstoned=tombstoned,
                relinked=relinked,
                linked=linked,
            )
        return Ok(tombstoned + relinked + linked)

    def __repr__(self) -> str:
        return (
            f"VectorIndex(name={self._name!r}, dimension={self.dimension}, "
            f"metric={self.metric.value}, count={self.count}, generation={self.generation})"
        )


# =============================================================================
# ADMINISTRATIVE ENTRY POINT
# =============================================================================
def create_index(
    dimension: int,
    metric: Union[MetricType, str] = MetricType.L2,
    quantizer_config: Optional[QuantizationConfig] = None,
    hnsw: Optional[HNSWConfig] = None,
    store: Optional[StoreConfig] = None,
    blob_store: Optional[BlobStoreProtocol] = None,
    name: Optional[str] = None,
) -> Result[VectorIndex, VecGraphError]:
    """
    Create an empty index.

    Args:
        dimension: Vector dimensionality D, fixed for the index lifetime
        metric: "l2", "ip" or "cosine"
        quantizer_config: Compression scheme (none until trained)
        hnsw: Graph parameters
        store: Vector store cache and retry settings
        blob_store: Durable backend (in-memory if None)
        name: Label for log records (random if None)

    Returns:
        Ok(VectorIndex) or Err(CONFIG_INVALID)
    """
    try:
        parsed_metric = MetricType.parse(metric)
    except (ValueError, AttributeError):
        return Err(ConfigError.invalid(f"unknown metric {metric!r}"))
    if isinstance(dimension, bool) or not isinstance(dimension, int):
        return Err(ConfigError.invalid(f"dimension must be an int, got {dimension!r}"))

    config = IndexConfig(
        dimension=dimension,
        metric=parsed_metric,
        hnsw=hnsw or HNSWConfig(),
        quantization=quantizer_config or QuantizationConfig(),
        store=store or StoreConfig(),
    )
    if reason := config.validate():
        return Err(ConfigError.invalid(reason))

    index = VectorIndex(config, blob_store, name or uuid.uuid4().hex[:8])
    index._log.info(
        "Created index",
        dimension=dimension,
        metric=parsed_metric.value,
        quantizer=config.quantization.kind.value,
        M=config.hnsw.M,
    )
    return Ok(index)
