"""
VecGraph CLI Entrypoint

Commands:
    vecgraph benchmark  Build a random index and report recall and latency
    vecgraph inspect    Summarize a persisted index directory
    vecgraph check      Open a persisted index and verify its invariants
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import NoReturn

import numpy as np


def main() -> NoReturn:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="vecgraph",
        description="Approximate nearest-neighbor vector index",
    )
    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--log-level",
        default="warning",
        help="Log level (default: warning)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log records",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # benchmark command
    bench_parser = subparsers.add_parser("benchmark", help="Run recall and latency benchmark")
    bench_parser.add_argument("--vectors", type=int, default=10000, help="Number of vectors")
    bench_parser.add_argument("--dimension", type=int, default=64, help="Vector dimension")
    bench_parser.add_argument("--queries", type=int, default=100, help="Number of search queries")
    bench_parser.add_argument("--k", type=int, default=10, help="k for k-NN")
    bench_parser.add_argument("--M", type=int, default=16, help="HNSW M parameter")
    bench_parser.add_argument("--ef-construction", type=int, default=200, help="ef_construction")
    bench_parser.add_argument("--ef", type=int, default=64, help="ef at search time")
    bench_parser.add_argument("--metric", default="l2", choices=["l2", "ip", "cosine"])
    bench_parser.add_argument(
        "--quantizer",
        default="none",
        choices=["none", "scalar", "pq"],
        help="Train a quantizer after loading (default: none)",
    )
    bench_parser.add_argument("--pq-subvectors", type=int, default=8, help="PQ sub-vectors m")
    bench_parser.add_argument("--seed", type=int, default=42, help="Data and level seed")

    # inspect command
    inspect_parser = subparsers.add_parser("inspect", help="Summarize a persisted index")
    inspect_parser.add_argument("--data-dir", required=True, help="Index data directory")

    # check command
    check_parser = subparsers.add_parser("check", help="Verify a persisted index")
    check_parser.add_argument("--data-dir", required=True, help="Index data directory")
    check_parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Rebuild and save if the index is inconsistent",
    )

    args = parser.parse_args()
    _configure_logging(args)

    if args.command == "benchmark":
        code = _run_benchmark(args)
    elif args.command == "inspect":
        code = _run_inspect(args)
    elif args.command == "check":
        code = _run_check(args)
    else:
        parser.print_help()
        code = 0

    sys.exit(code)


def _get_version() -> str:
    """Get package version."""
    try:
        from vecgraph import __version__
        return __version__
    except ImportError:
        return "0.0.0-unknown"


def _configure_logging(args: argparse.Namespace) -> None:
    from vecgraph.observability import LogLevel, setup_logging

    try:
        level = LogLevel.parse(args.log_level)
    except KeyError:
        level = LogLevel.WARNING
    setup_logging(level=level, json_output=args.json_logs)


def _run_benchmark(args: argparse.Namespace) -> int:
    """Build a random index, then measure recall@k and query latency."""
    from vecgraph import HNSWConfig, QuantizationConfig, QuantizerKind, SearchParams, create_index
    from vecgraph.index.recall import ground_truth, recall_at_k

    rng = np.random.default_rng(args.seed)
    data = rng.standard_normal((args.vectors, args.dimension)).astype(np.float32)
    queries = rng.standard_normal((args.queries, args.dimension)).astype(np.float32)

    created = create_index(
        args.dimension,
        metric=args.metric,
        hnsw=HNSWConfig(M=args.M, ef_construction=args.ef_construction, seed=args.seed),
        name="benchmark",
    )
    if created.is_err():
        print(f"error: {created.error}", file=sys.stderr)
        return 2
    index = created.unwrap()

    print(f"Inserting {args.vectors:,} vectors ({args.dimension}D, {args.metric})...")
    start = time.perf_counter()
    report = index.insert_batch((i, data[i]) for i in range(args.vectors))
    insert_sec = time.perf_counter() - start
    if report.failed:
        print(f"error: {report.failed} inserts failed: {report.errors[0][1]}", file=sys.stderr)
        return 1
    print(f"   Time: {insert_sec:.2f}s ({args.vectors / max(insert_sec, 1e-9):,.0f} vectors/sec)")

    if args.quantizer != "none":
        qconfig = QuantizationConfig(
            kind=QuantizerKind(args.quantizer),
            pq_subvectors=args.pq_subvectors,
        )
        trained = index.train_quantizer(config=qconfig)
        if trained.is_err():
            print(f"error: {trained.error}", file=sys.stderr)
            return 1
        print(f"Trained {args.quantizer} quantizer (generation {trained.unwrap().generation})")

    print("Computing ground truth...")
    truth = ground_truth(data, list(range(args.vectors)), queries, args.k, index.metric)

    params = SearchParams(ef=args.ef)
    latencies = []
    found = []
    for query in queries:
        result = index.search(query, k=args.k, params=params)
        if result.is_err():
            print(f"error: {result.error}", file=sys.stderr)
            return 1
        latencies.append(result.unwrap().query_time_ms)
        found.append(result.unwrap().ids)

    stats = index.stats()
    print(f"Search (k={args.k}, ef={args.ef}):")
    print(f"   P50: {np.percentile(latencies, 50):.3f}ms")
    print(f"   P95: {np.percentile(latencies, 95):.3f}ms")
    print(f"   P99: {np.percentile(latencies, 99):.3f}ms")
    print(f"   Recall@{args.k}: {recall_at_k(found, truth, args.k):.4f}")
    print(f"   Avg degree: {stats.avg_degree:.2f}, max level: {stats.max_level}")
    return 0


def _run_inspect(args: argparse.Namespace) -> int:
    """Print the persisted header summary as JSON."""
    from vecgraph.storage import FileSystemBlobStore, layout

    summary = layout.describe(FileSystemBlobStore(args.data_dir))
    if summary.is_err():
        print(f"error: {summary.error}", file=sys.stderr)
        return 1
    print(json.dumps(summary.unwrap(), indent=2, sort_keys=True))
    return 0


def _run_check(args: argparse.Namespace) -> int:
    """Open an index, run the consistency check and optionally rebuild."""
    from vecgraph.engine import VectorIndex
    from vecgraph.storage import FileSystemBlobStore

    opened = VectorIndex.open(FileSystemBlobStore(args.data_dir), name="check")
    if opened.is_err():
        print(f"error: {opened.error}", file=sys.stderr)
        return 1
    index = opened.unwrap()

    checked = index.check_consistency()
    if checked.is_ok():
        print(json.dumps(index.stats().to_dict(), indent=2, sort_keys=True))
        return 0

    print(f"inconsistent: {checked.error}", file=sys.stderr)
    if not args.rebuild:
        return 1
    rebuilt = index.rebuild().and_then(lambda _: index.save())
    if rebuilt.is_err():
        print(f"error: rebuild failed: {rebuilt.error}", file=sys.stderr)
        return 1
    print(f"rebuilt {index.count} vectors")
    return 0


if __name__ == "__main__":
    main()
