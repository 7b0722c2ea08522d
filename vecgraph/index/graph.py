"""
HNSW (Hierarchical Navigable Small World) Proximity Graph

Implementation with:
    - Layer-by-layer construction with relative-neighborhood pruning
    - Beam search with per-query ef and pluggable (exact or quantized) scoring
    - Snapshot-consistent reads concurrent with a single writer
    - Tombstone deletes with compaction that repairs neighbor lists

Algorithm Details:
    - Level draw: l = floor(-ln(U) * ml), ml = 1/ln(M)
    - Greedy descent with ef=1 above the target layer
    - Beam search with ef candidates at and below it
    - Degree bound M on layers >= 1, 2M on layer 0

Memory Layout:
    Nodes live in a flat arena addressed by integer slot. Neighbor lists hold
    slots, never references, so the cyclic graph has no ownership cycles.

Concurrency:
    - Writers (insert/delete/compact) hold the write lock.
    - A node becomes visible only when the publish watermark moves past its
      slot, after every edge to and from it is installed. Readers capture the
      watermark and the entry point once and ignore slots beyond it.
    - Neighbor lists are replaced, never mutated in place, so a reader
      iterating an old list is unaffected by a concurrent relink.
    - Tombstoning flips a flag and touches no edges.

Reachability:
    Every node stays reachable from the entry point on each of its layers.
    - Pruning keeps the last path into a node, found by a bounded reverse
      walk over in-edges
    - A new top-level entry point links to the old one if it cannot reach it
    - Compaction reconnects nodes stranded by the purge

Tie-break:
    Equal distances are ordered by lower VectorId, then lower slot, which
    keeps topology reproducible for a fixed insertion order and seed.
"""

from __future__ import annotations

import heapq
import logging
import math
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Sequence

import numpy as np

from vecgraph.core.config import HNSWConfig
from vecgraph.core.errors import (
    Err,
    GraphError,
    Ok,
    QueryError,
    Result,
    VecGraphError,
)
from vecgraph.core.types import CancellationToken, NodeState, VectorId
from vecgraph.index.distance import MetricSpace

logger = logging.getLogger(__name__)

# slots -> ordering keys (lower = closer)
Scorer = Callable[[Sequence[int]], np.ndarray]

# (key, vector id, slot): tuple order is the deterministic tie-break
Candidate = tuple[float, int, int]

# In-edge closure size past which a node is taken to be reachable
ORPHAN_SCAN_LIMIT = 64

# Reconnect passes per layer after a compaction
_RECONNECT_PASSES = 3


# =============================================================================
# GRAPH NODE
# =============================================================================
@dataclass(slots=True)
class GraphNode:
    """
    One indexed vector.

    Attributes:
        id: Caller-visible identifier
        level: Topmost layer the node lives on
        neighbors: neighbors[layer] = slots ordered by distance
        state: ACTIVE or TOMBSTONED (purged nodes leave the arena)
    """
    id: VectorId
    level: int
    neighbors: list[list[int]]
    state: NodeState = NodeState.ACTIVE

    @property
    def active(self) -> bool:
        return self.state is NodeState.ACTIVE


@dataclass(frozen=True, slots=True)
class NodeRecord:
    """Persisted form of a node: neighbor lists hold record positions."""
    id: int
    level: int
    tombstoned: bool
    neighbors: tuple[tuple[int, ...], ...]


@dataclass(frozen=True, slots=True)
class GraphSnapshot:
    """
    Serializable graph state.

    Attributes:
        records: Nodes in arena order (purged slots dropped)
        vectors: Prepared vectors [len(records), D], tombstones included
        entry: Position of the entry point in records, None if empty
    """
    records: list[NodeRecord]
    vectors: np.ndarray
    entry: Optional[int]


@dataclass(slots=True)
class GraphCandidates:
    """Layer-0 beam search output."""
    candidates: list[tuple[VectorId, float]] = field(default_factory=list)
    visited: int = 0


@dataclass(frozen=True, slots=True)
class CompactionReport:
    """Outcome of a compaction pass."""
    purged: int
    relinked_edges: int
    dropped_edges: int
    entry_point: Optional[int]

    def to_dict(self) -> dict[str, Optional[int]]:
        return {
            "purged": self.purged,
            "relinked_edges": self.relinked_edges,
            "dropped_edges": self.dropped_edges,
            "entry_point": self.entry_point,
        }


class _Interrupted(Exception):
    """Raised at a beam-search checkpoint to unwind a cancelled query."""

    def __init__(self, error: VecGraphError) -> None:
        super().__init__(str(error))
        self.error = error


# =============================================================================
# PROXIMITY GRAPH
# =============================================================================
class ProximityGraph:
    """
    Multi-layer navigable small-world graph over an arena of slots.

    Thread Safety:
        - Concurrent search() calls are lock-free
        - insert/delete/compact are serialized by an RLock
    """

    __slots__ = (
        "_config",
        "_space",
        "_nodes",
        "_vectors",
        "_id_to_slot",
        "_in_edges",
        "_entry",
        "_published",
        "_broken",
        "_placeholder",
        "_write_lock",
    )

    def __init__(self, config: HNSWConfig, space: MetricSpace) -> None:
        self._config = config
        self._space = space

        # Arena: slot -> node / prepared vector (None once purged)
        self._nodes: list[Optional[GraphNode]] = []
        self._vectors: list[Optional[np.ndarray]] = []
        self._id_to_slot: dict[int, int] = {}
        # slot -> layer -> slots listing it; writer-side bookkeeping only
        self._in_edges: list[Optional[list[set[int]]]] = []

        # (slot, level) swapped as one tuple so readers never see a torn pair
        self._entry: Optional[tuple[int, int]] = None
        self._published = 0
        self._broken: Optional[str] = None

        self._placeholder = np.zeros(space.dimension, dtype=np.float32)
        self._write_lock = threading.RLock()

    # =========================================================================
    # PROPERTIES
    # =========================================================================
    @property
    def dimension(self) -> int:
        return self._space.dimension

    @property
    def space(self) -> MetricSpace:
        return self._space

    @property
    def config(self) -> HNSWConfig:
        return self._config

    @property
    def count(self) -> int:
        """Number of active nodes."""
        return sum(1 for node in self._nodes if node is not None and node.active)

    @property
    def tombstone_count(self) -> int:
        return sum(
            1 for node in self._nodes
            if node is not None and node.state is NodeState.TOMBSTONED
        )

    @property
    def entry_point(self) -> Optional[VectorId]:
        entry = self._entry
        if entry is None:
            return None
        node = self._nodes[entry[0]]
        return node.id if node is not None else None

    @property
    def max_level(self) -> int:
        entry = self._entry
        return entry[1] if entry is not None else 0

    @property
    def broken(self) -> Optional[str]:
        """Reason the entry point is unusable, or None."""
        return self._broken

    def state_of(self, vector_id: VectorId) -> NodeState:
        slot = self._id_to_slot.get(vector_id.value)
        if slot is None or slot >= self._published:
            return NodeState.ABSENT
        node = self._nodes[slot]
        return node.state if node is not None else NodeState.PURGED

    def contains(self, vector_id: VectorId) -> bool:
        """True if vector_id is live (active) in the graph."""
        return self.state_of(vector_id) is NodeState.ACTIVE

    def node_id(self, slot: int) -> int:
        node = self._nodes[slot]
        return node.id.value if node is not None else -1

    def ids_of(self, slots: Sequence[int]) -> list[int]:
        return [self.node_id(s) for s in slots]

    def neighbors_of(self, vector_id: VectorId, layer: int = 0) -> list[VectorId]:
        """Neighbor ids of a node at a layer (empty if absent or above its level)."""
        slot = self._id_to_slot.get(vector_id.value)
        if slot is None:
            return []
        node = self._nodes[slot]
        if node is None or layer > node.level:
            return []
        return [self._nodes[n].id for n in node.neighbors[layer] if self._nodes[n] is not None]

    def live_ids(self) -> Iterator[VectorId]:
        for node in list(self._nodes):
            if node is not None and node.active:
                yield node.id

    def tombstoned_ids(self) -> list[VectorId]:
        return [
            node.id for node in self._nodes
            if node is not None and node.state is NodeState.TOMBSTONED
        ]

    def vector_of(self, vector_id: VectorId) -> Optional[np.ndarray]:
        """Prepared vector of a live node, None if it is not live."""
        slot = self._id_to_slot.get(vector_id.value)
        if slot is None or not self.contains(vector_id):
            return None
        return self._vectors[slot]

    def live_vectors(self) -> tuple[list[VectorId], np.ndarray]:
        """Ids and prepared vectors [n, D] of every active node, slot order."""
        ids: list[VectorId] = []
        rows: list[np.ndarray] = []
        for node, vec in zip(list(self._nodes), list(self._vectors)):
            if node is not None and node.active and vec is not None:
                ids.append(node.id)
                rows.append(vec)
        if not rows:
            return ids, np.empty((0, self.dimension), dtype=np.float32)
        return ids, np.stack(rows)

    # =========================================================================
    # LEVEL GENERATION
    # =========================================================================
    def draw_level(self, rng: random.Random) -> int:
        """
        Geometric level draw from the caller's generator.

        P(level >= l) = exp(-l / ml) = M^-l, expected height O(log N).
        """
        u = 1.0 - rng.random()  # (0, 1]
        level = int(-math.log(u) * self._config.ml)
        return min(level, self._config.max_level)

    # =========================================================================
    # DISTANCE HELPERS
    # =========================================================================
    def _gather(self, slots: Sequence[int]) -> np.ndarray:
        vectors = self._vectors
        return np.stack([
            v if (v := vectors[s]) is not None else self._placeholder
            for s in slots
        ])

    def exact_scorer(self, prepared_query: np.ndarray) -> Scorer:
        """Scorer over full-precision arena vectors."""
        def score(slots: Sequence[int]) -> np.ndarray:
            return self._space.keys(prepared_query, self._gather(slots))
        return score

    def _candidate(self, key: float, slot: int) -> Candidate:
        return (float(key), self.node_id(slot), slot)

    # =========================================================================
    # SEARCH LAYER (BEAM SEARCH)
    # =========================================================================
    def _search_layer(
        self,
        score: Scorer,
        entry_points: list[Candidate],
        ef: int,
        layer: int,
        limit: int,
        token: Optional[CancellationToken] = None,
        live_only: bool = False,
    ) -> tuple[list[Candidate], int]:
        """
        Best-first search on one layer, bounded by ef.

        Args:
            score: Slot scorer for the query
            entry_points: Starting candidates
            ef: Beam width (results kept)
            layer: Layer to traverse
            limit: Publish watermark; slots >= limit are invisible
            token: Cooperative cancellation, checked per frontier extension
            live_only: Tombstoned nodes are traversed but not returned

        Returns:
            (results sorted ascending by (key, id, slot), nodes scored)
        """
        nodes = self._nodes
        visited: set[int] = {slot for _, _, slot in entry_points}
        scored = len(entry_points)

        # Frontier: min-heap of candidates still to expand
        frontier: list[Candidate] = list(entry_points)
        heapq.heapify(frontier)

        # Results: max-heap (negated) holding the best ef seen so far
        results: list[tuple[float, int, int]] = []
        for key, vid, slot in entry_points:
            node = nodes[slot]
            if live_only and (node is None or not node.active):
                continue
            heapq.heappush(results, (-key, -vid, -slot))
            if len(results) > ef:
                heapq.heappop(results)

        while frontier:
            key, vid, current = heapq.heappop(frontier)

            # Closest unexpanded candidate is already worse than the worst kept
            if len(results) >= ef and (key, vid, current) > _unneg(results[0]):
                break

            node = nodes[current]
            if node is None or layer > node.level:
                continue

            unvisited = []
            for n in node.neighbors[layer]:
                if n < limit and n not in visited and nodes[n] is not None:
                    unvisited.append(n)
            if not unvisited:
                continue
            visited.update(unvisited)

            if token is not None:
                _checkpoint(token)

            keys = score(unvisited)
            scored += len(unvisited)
            for k, n in zip(keys, unvisited):
                cand = self._candidate(k, n)
                if len(results) >= ef and cand >= _unneg(results[0]):
                    continue
                heapq.heappush(frontier, cand)
                neighbor = nodes[n]
                if live_only and (neighbor is None or not neighbor.active):
                    continue
                heapq.heappush(results, (-cand[0], -cand[1], -cand[2]))
                if len(results) > ef:
                    heapq.heappop(results)

        return sorted(_unneg(r) for r in results), scored

    def _descend(
        self,
        score: Scorer,
        entry: tuple[int, int],
        stop_layer: int,
        limit: int,
        token: Optional[CancellationToken] = None,
    ) -> list[Candidate]:
        """Greedy (ef=1) descent from the entry point down to stop_layer + 1."""
        ep_slot, top = entry
        current = [self._candidate(score([ep_slot])[0], ep_slot)]
        for layer in range(top, stop_layer, -1):
            found, _ = self._search_layer(score, current, 1, layer, limit, token)
            if found:
                current = found[:1]
        return current

    # =========================================================================
    # SELECT NEIGHBORS (HEURISTIC)
    # =========================================================================
    def _select_neighbors(self, candidates: list[Candidate], bound: int) -> list[Candidate]:
        """
        Relative-neighborhood pruning.

        Walk candidates nearest-first; keep one only if it is strictly closer
        to the base node than to every neighbor already kept. Long-range
        edges survive because a far candidate is only dropped when a kept
        neighbor already covers its direction.
        """
        ordered = sorted(candidates)
        selected: list[Candidate] = []
        discarded: list[Candidate] = []
        for cand in ordered:
            if len(selected) >= bound:
                break
            key, _, slot = cand
            if selected:
                to_selected = self._space.keys(
                    self._gather([slot])[0],
                    self._gather([s for _, _, s in selected]),
                )
                if np.any(to_selected <= key):
                    discarded.append(cand)
                    continue
            selected.append(cand)

        if self._config.keep_pruned_connections:
            for cand in discarded:
                if len(selected) >= bound:
                    break
                selected.append(cand)
            selected.sort()
        return selected

    def _relink(
        self,
        slot: int,
        layer: int,
        extra: Sequence[int],
        pinned: Optional[int] = None,
    ) -> None:
        """
        Merge extra slots into a node's layer list, re-pruning over the bound.

        A member the heuristic prunes is kept anyway when this edge is its
        only way in (see _keep_reachable); pinned is always kept. The list
        is rebuilt and swapped in (copy-on-write).
        """
        node = self._nodes[slot]
        if node is None or layer > node.level:
            return
        members = [n for n in dict.fromkeys([*node.neighbors[layer], *extra]) if n != slot]
        members = [n for n in members if self._nodes[n] is not None]
        if not members:
            self._set_neighbors(slot, layer, [])
            return
        keys = self._space.keys(self._gather([slot])[0], self._gather(members))
        cands = [self._candidate(k, n) for k, n in zip(keys, members)]
        bound = self._config.degree_bound(layer)
        if len(cands) > bound:
            kept = self._select_neighbors(cands, bound)
            kept = self._keep_reachable(slot, layer, cands, kept, bound, pinned)
        else:
            kept = sorted(cands)
        self._set_neighbors(slot, layer, [s for _, _, s in kept])

    def _keep_reachable(
        self,
        slot: int,
        layer: int,
        cands: list[Candidate],
        kept: list[Candidate],
        bound: int,
        pinned: Optional[int],
    ) -> list[Candidate]:
        """
        Re-admit pruned members that would be cut off from the entry point.

        Room is made by evicting the farthest kept member that stays
        reachable without this node. When no member can go, the degree
        bound wins.
        """
        kept = list(kept)
        kept_slots = {s for _, _, s in kept}
        for cand in sorted(cands):
            target = cand[2]
            if target in kept_slots:
                continue
            if target != pinned and self._reachable_without(target, layer, slot):
                continue
            if len(kept) >= bound:
                victim = next(
                    (
                        c for c in reversed(kept)
                        if c[2] != pinned and self._reachable_without(c[2], layer, slot)
                    ),
                    None,
                )
                if victim is None:
                    logger.debug("Degree bound leaves slot %d without a path on layer %d", target, layer)
                    continue
                kept.remove(victim)
                kept_slots.discard(victim[2])
            kept.append(cand)
            kept_slots.add(target)
        kept.sort()
        return kept

    def _set_neighbors(self, slot: int, layer: int, targets: list[int]) -> None:
        """Swap in a neighbor list and keep the in-edge sets in step."""
        node = self._nodes[slot]
        if node is None:
            return
        previous = node.neighbors[layer]
        for n in set(previous).difference(targets):
            incoming = self._in_edges[n]
            if incoming is not None and layer < len(incoming):
                incoming[layer].discard(slot)
        for n in set(targets).difference(previous):
            incoming = self._in_edges[n]
            if incoming is not None:
                incoming[layer].add(slot)
        node.neighbors[layer] = targets

    def _reachable_without(self, target: int, layer: int, source: int) -> bool:
        """
        Whether target keeps a path from the entry point that avoids source.

        Walks in-edges backwards from target. A closure larger than
        ORPHAN_SCAN_LIMIT counts as reachable; a smaller one is exact.
        When source is the entry point only its direct edge is excluded.
        """
        entry = self._entry
        incoming = self._in_edges[target]
        if entry is None or target == entry[0] or incoming is None:
            return True
        root = entry[0]
        avoid = None if source == root else source

        seen = {target}
        stack = []
        for p in incoming[layer]:
            if p == source:
                continue
            if p == root:
                return True
            if p not in seen:
                seen.add(p)
                stack.append(p)
        while stack:
            edges = self._in_edges[stack.pop()]
            if edges is None:
                continue
            for p in edges[layer]:
                if p == root:
                    return True
                if p != avoid and p not in seen:
                    seen.add(p)
                    stack.append(p)
            if len(seen) > ORPHAN_SCAN_LIMIT:
                return True
        return False

    def _reach(self, start: int, layer: int, known: Optional[set[int]] = None) -> set[int]:
        """Slots reachable from start on one layer, skipping those in known."""
        known = known or set()
        seen = {start}
        stack = [start]
        while stack:
            node = self._nodes[stack.pop()]
            if node is None or layer > node.level:
                continue
            for n in node.neighbors[layer]:
                if n not in seen and n not in known and self._nodes[n] is not None:
                    seen.add(n)
                    stack.append(n)
        return seen

    # =========================================================================
    # INSERT
    # =========================================================================
    def insert(
        self,
        vector_id: VectorId,
        vector: np.ndarray,
        rng: random.Random,
        overwrite: bool = False,
    ) -> Result[int, VecGraphError]:
        """
        Link a new node into every layer up to its drawn level.

        Algorithm:
            1. Draw a random top layer l
            2. Greedy descent from the entry point down to layer l + 1
            3. For l..0: beam search (ef_construction), select neighbors by
               heuristic, install edges in both directions, re-prune
               neighbors pushed over their bound
            4. Publish the node; promote it to entry point if l is a new top

        Fails with DIMENSION_MISMATCH (graph unchanged) or DUPLICATE_ID.
        Complexity: O(log N * M * ef_construction)
        """
        checked = self._space.check(vector)
        if checked.is_err():
            return checked
        prepared = self._space.prepare(checked.unwrap())

        with self._write_lock:
            existing = self._id_to_slot.get(vector_id.value)
            if existing is not None:
                node = self._nodes[existing]
                if node is not None and node.active:
                    if not overwrite:
                        return Err(GraphError.duplicate_id(vector_id.value))
                    node.state = NodeState.TOMBSTONED

            level = self.draw_level(rng)
            slot = len(self._nodes)
            node = GraphNode(id=vector_id, level=level, neighbors=[[] for _ in range(level + 1)])
            self._nodes.append(node)
            self._vectors.append(prepared)
            self._in_edges.append([set() for _ in range(level + 1)])

            entry = self._entry
            if entry is not None and self._broken is None:
                self._link_new(slot, node, prepared, entry)
                if level > entry[1]:
                    # The new entry point must lead to everything the old one did
                    for layer in range(entry[1] + 1):
                        if entry[0] not in self._reach(slot, layer):
                            self._relink(slot, layer, [entry[0]], pinned=entry[0])

            self._id_to_slot[vector_id.value] = slot
            self._published = slot + 1
            if entry is None or level > entry[1]:
                self._entry = (slot, level)
            return Ok(slot)

    def _link_new(
        self,
        slot: int,
        node: GraphNode,
        prepared: np.ndarray,
        entry: tuple[int, int],
    ) -> None:
        score = self.exact_scorer(prepared)
        limit = slot  # the new node never finds itself
        current = self._descend(score, entry, node.level, limit)

        for layer in range(min(node.level, entry[1]), -1, -1):
            found, _ = self._search_layer(
                score, current, self._config.ef_construction, layer, limit,
            )
            live = [c for c in found if (n := self._nodes[c[2]]) is not None and n.active]
            pool = live or found
            selected = self._select_neighbors(pool, self._config.degree_bound(layer))
            self._set_neighbors(slot, layer, [s for _, _, s in selected])
            for _, _, neighbor in selected:
                self._relink(neighbor, layer, [slot])
            if found:
                current = found

    # =========================================================================
    # DELETE
    # =========================================================================
    def delete(self, vector_id: VectorId) -> Result[bool, VecGraphError]:
        """
        Tombstone a node. O(1), edges left intact for traversal stability.

        Returns:
            True if the id was active
        """
        with self._write_lock:
            slot = self._id_to_slot.get(vector_id.value)
            if slot is None:
                return Ok(False)
            node = self._nodes[slot]
            if node is None or not node.active:
                return Ok(False)
            node.state = NodeState.TOMBSTONED
            return Ok(True)

    # =========================================================================
    # SEARCH
    # =========================================================================
    def search(
        self,
        query: np.ndarray,
        k: int,
        ef: int,
        scorer: Optional[Scorer] = None,
        token: Optional[CancellationToken] = None,
    ) -> Result[GraphCandidates, VecGraphError]:
        """
        Approximate k-NN candidates for a query.

        Greedy descent to layer 1, then beam search at layer 0 with
        max(ef, k). Returns up to that many live candidates ascending by
        (possibly approximate) key; the caller re-ranks.

        Thread Safety: Lock-free read of a published snapshot
        """
        checked = self._space.check(query)
        if checked.is_err():
            return checked
        prepared = self._space.prepare(checked.unwrap())

        if self._broken is not None:
            return Err(GraphError.internal_inconsistency(self._broken))

        entry = self._entry
        limit = self._published
        if entry is not None and entry[0] < limit and self._nodes[entry[0]] is None:
            # Compaction publishes the replacement entry before purging the old one
            entry = self._entry
        if entry is None:
            return Ok(GraphCandidates())
        if entry[0] >= limit or self._nodes[entry[0]] is None:
            return Err(GraphError.internal_inconsistency(
                "entry point references a missing node", slot=entry[0],
            ))

        score = scorer or self.exact_scorer(prepared)
        ef = max(ef, k)
        try:
            current = self._descend(score, entry, 0, limit, token)
            found, visited = self._search_layer(
                score, current, ef, 0, limit, token, live_only=True,
            )
        except _Interrupted as e:
            return Err(e.error)

        candidates = []
        for key, _, slot in found:
            node = self._nodes[slot]
            if node is not None and node.active:
                candidates.append((node.id, key))
        return Ok(GraphCandidates(candidates=candidates, visited=visited))

    # =========================================================================
    # COMPACTION
    # =========================================================================
    def compact(self) -> CompactionReport:
        """
        Purge tombstoned nodes and repair edges that pointed at them.

        Each live node that loses a neighbor is offered the purged node's
        surviving neighbors on that layer as replacements; the heuristic
        picks among them and its remaining neighbors, and the edge is simply
        dropped when none qualify. Nodes the purge leaves unreachable are
        then linked from their nearest reachable node.

        Readers stay lock-free throughout: a replacement entry point is
        published before any slot is cleared.
        """
        with self._write_lock:
            dead = {
                slot for slot, node in enumerate(self._nodes)
                if node is not None and node.state is NodeState.TOMBSTONED
            }
            if not dead:
                return CompactionReport(0, 0, 0, self.entry_point.value if self.entry_point else None)

            entry = self._entry
            if entry is not None and entry[0] in dead:
                self._entry = self._pick_entry(exclude=dead)

            # Purged nodes no longer count as a way in
            for slot in dead:
                node = self._nodes[slot]
                if node is None:
                    continue
                for layer, neighbors in enumerate(node.neighbors):
                    for n in neighbors:
                        incoming = self._in_edges[n]
                        if n not in dead and incoming is not None:
                            incoming[layer].discard(slot)

            relinked = dropped = 0
            for slot, node in enumerate(self._nodes):
                if node is None or slot in dead:
                    continue
                for layer in range(node.level + 1):
                    current = node.neighbors[layer]
                    lost = [n for n in current if n in dead]
                    if not lost:
                        continue
                    survivors = [n for n in current if n not in dead]
                    offered: list[int] = []
                    for p in lost:
                        purged = self._nodes[p]
                        if purged is None or layer > purged.level:
                            continue
                        for q in purged.neighbors[layer]:
                            if q != slot and q not in dead and q not in survivors:
                                offered.append(q)
                    self._set_neighbors(slot, layer, survivors)
                    if offered:
                        self._relink(slot, layer, offered)
                    added = len(set(node.neighbors[layer]) - set(survivors))
                    relinked += added
                    dropped += max(len(lost) - added, 0)

            for slot in dead:
                node = self._nodes[slot]
                if node is None:
                    continue
                node.state = NodeState.PURGED
                if self._id_to_slot.get(node.id.value) == slot:
                    del self._id_to_slot[node.id.value]
                self._nodes[slot] = None
                self._vectors[slot] = None
                self._in_edges[slot] = None

            reconnected = 0
            if self._entry is not None:
                for layer in range(self._entry[1] + 1):
                    reconnected += self._reconnect(layer)

            new_entry = self.entry_point
            logger.info(
                "Compacted graph: purged=%d relinked=%d dropped=%d reconnected=%d",
                len(dead), relinked, dropped, reconnected,
            )
            return CompactionReport(
                purged=len(dead),
                relinked_edges=relinked + reconnected,
                dropped_edges=dropped,
                entry_point=new_entry.value if new_entry is not None else None,
            )

    def _reconnect(self, layer: int) -> int:
        """
        Link every node unreachable on a layer from its nearest reachable node.

        Returns:
            Edges added
        """
        entry = self._entry
        if entry is None:
            return 0
        added = 0
        for _ in range(_RECONNECT_PASSES):
            reached = self._reach(entry[0], layer)
            stranded = [
                slot for slot, node in enumerate(self._nodes)
                if node is not None and node.level >= layer and slot not in reached
            ]
            if not stranded:
                return added
            for slot in stranded:
                if slot in reached:
                    continue
                score = self.exact_scorer(self._gather([slot])[0])
                start = [self._candidate(score([entry[0]])[0], entry[0])]
                found, _ = self._search_layer(
                    score, start, self._config.ef_construction, layer, self._published,
                )
                hosts = [c for c in found if c[2] in reached] or start
                self._relink(hosts[0][2], layer, [slot], pinned=slot)
                added += 1
                reached |= self._reach(slot, layer, known=reached)
        reached = self._reach(entry[0], layer)
        if any(
            node is not None and node.level >= layer and slot not in reached
            for slot, node in enumerate(self._nodes)
        ):
            logger.warning("Nodes remain unreachable on layer %d after compaction", layer)
        return added

    def _pick_entry(self, exclude: Optional[set[int]] = None) -> Optional[tuple[int, int]]:
        """Highest-level remaining node, lowest id on ties; live nodes first."""
        best: Optional[tuple[int, int, int, int]] = None
        chosen: Optional[tuple[int, int]] = None
        for slot, node in enumerate(self._nodes):
            if node is None or (exclude and slot in exclude):
                continue
            rank = (0 if node.active else 1, -node.level, node.id.value, slot)
            if best is None or rank < best:
                best = rank
                chosen = (slot, node.level)
        return chosen

    # =========================================================================
    # CONSISTENCY
    # =========================================================================
    def check_consistency(self) -> Result[None, GraphError]:
        """
        Verify entry point, neighbor references, degree bounds and id map.

        Reports the first violation; never repairs anything.
        """
        if self._broken is not None:
            return Err(GraphError.internal_inconsistency(self._broken))
        entry = self._entry
        if entry is None:
            if any(node is not None for node in self._nodes):
                return Err(GraphError.internal_inconsistency("nodes present but no entry point"))
            return Ok(None)
        ep = self._nodes[entry[0]] if entry[0] < len(self._nodes) else None
        if ep is None:
            return Err(GraphError.internal_inconsistency("entry point references a missing node"))
        if ep.level != entry[1]:
            return Err(GraphError.internal_inconsistency("entry point level mismatch"))

        for slot, node in enumerate(self._nodes):
            if node is None:
                continue
            if node.level > entry[1]:
                return Err(GraphError.internal_inconsistency(
                    "node above entry point level", id=node.id.value,
                ))
            for layer, neighbors in enumerate(node.neighbors):
                if len(neighbors) > self._config.degree_bound(layer):
                    return Err(GraphError.internal_inconsistency(
                        "degree bound exceeded", id=node.id.value, layer=layer,
                    ))
                for n in neighbors:
                    target = self._nodes[n] if 0 <= n < len(self._nodes) else None
                    if target is None or layer > target.level:
                        return Err(GraphError.internal_inconsistency(
                            "dangling neighbor reference", id=node.id.value, layer=layer,
                        ))
            if node.active and self._id_to_slot.get(node.id.value) != slot:
                return Err(GraphError.internal_inconsistency(
                    "id map out of sync", id=node.id.value,
                ))
        return Ok(None)

    def reachable_count(self) -> int:
        """Live nodes reachable from the entry point through any layer."""
        entry = self._entry
        if entry is None:
            return 0
        seen = {entry[0]}
        stack = [entry[0]]
        while stack:
            node = self._nodes[stack.pop()]
            if node is None:
                continue
            for neighbors in node.neighbors:
                for n in neighbors:
                    if n not in seen and self._nodes[n] is not None:
                        seen.add(n)
                        stack.append(n)
        return sum(1 for s in seen if (n := self._nodes[s]) is not None and n.active)

    # =========================================================================
    # STATS
    # =========================================================================
    def degree_stats(self) -> tuple[float, dict[int, int]]:
        """(mean layer-0 degree of live nodes, live nodes per layer)."""
        histogram: dict[int, int] = {}
        degrees = 0
        live = 0
        for node in self._nodes:
            if node is None or not node.active:
                continue
            live += 1
            degrees += len(node.neighbors[0])
            for layer in range(node.level + 1):
                histogram[layer] = histogram.get(layer, 0) + 1
        return (degrees / live if live else 0.0), histogram

    # =========================================================================
    # PERSISTENCE
    # =========================================================================
    def snapshot(self) -> GraphSnapshot:
        """
        Capture nodes in slot order with neighbor lists as record positions.

        Positions rather than ids keep edges exact when a re-inserted id
        still has a tombstoned predecessor in the arena.
        """
        with self._write_lock:
            position: dict[int, int] = {}
            kept: list[tuple[int, GraphNode]] = []
            for slot, node in enumerate(self._nodes):
                if node is not None:
                    position[slot] = len(kept)
                    kept.append((slot, node))

            records = []
            for _, node in kept:
                records.append(NodeRecord(
                    id=node.id.value,
                    level=node.level,
                    tombstoned=not node.active,
                    neighbors=tuple(
                        tuple(position[n] for n in layer if n in position)
                        for layer in node.neighbors
                    ),
                ))
            if kept:
                vectors = self._gather([s for s, _ in kept]).astype(np.float32)
            else:
                vectors = np.empty((0, self.dimension), dtype=np.float32)
            entry = self._entry
            return GraphSnapshot(
                records=records,
                vectors=vectors,
                entry=position.get(entry[0]) if entry is not None else None,
            )

    @classmethod
    def restore(
        cls,
        config: HNSWConfig,
        space: MetricSpace,
        snapshot: GraphSnapshot,
    ) -> tuple["ProximityGraph", list[str]]:
        """
        Rebuild a graph from a snapshot.

        Problems (dangling references, a missing entry point, mismatched
        vector rows) are collected and returned rather than repaired;
        unresolvable edges are left out of the in-memory graph and the
        caller must treat a non-empty problem list as fatal.
        """
        graph = cls(config, space)
        problems: list[str] = []
        records = snapshot.records
        restored: list[GraphNode] = []
        incoming: list[list[set[int]]] = []

        if snapshot.vectors.shape != (len(records), space.dimension):
            problems.append(
                f"vector table shape {snapshot.vectors.shape} does not match "
                f"{len(records)} nodes of dimension {space.dimension}"
            )

        for pos, rec in enumerate(records):
            if pos < snapshot.vectors.shape[0] and snapshot.vectors.shape[1:] == (space.dimension,):
                vec = np.ascontiguousarray(snapshot.vectors[pos], dtype=np.float32)
            else:
                vec = graph._placeholder
            restored.append(GraphNode(
                id=VectorId(rec.id),
                level=rec.level,
                neighbors=[[] for _ in range(rec.level + 1)],
                state=NodeState.TOMBSTONED if rec.tombstoned else NodeState.ACTIVE,
            ))
            incoming.append([set() for _ in range(rec.level + 1)])
            graph._vectors.append(vec)
            # Later (re-inserted) slots win the id
            if not rec.tombstoned or rec.id not in graph._id_to_slot:
                graph._id_to_slot[rec.id] = pos

        graph._nodes.extend(restored)
        graph._in_edges.extend(incoming)
        for pos, (rec, node) in enumerate(zip(records, restored)):
            if len(rec.neighbors) != rec.level + 1:
                problems.append(f"node {rec.id} has {len(rec.neighbors)} layers, expected {rec.level + 1}")
            for layer, targets in enumerate(rec.neighbors[: rec.level + 1]):
                resolved = []
                for target in targets:
                    if not 0 <= target < len(records) or records[target].level < layer:
                        problems.append(f"node {rec.id} layer {layer} references missing node {target}")
                        continue
                    resolved.append(target)
                    incoming[target][layer].add(pos)
                node.neighbors[layer] = resolved

        graph._published = len(graph._nodes)
        if snapshot.entry is not None and 0 <= snapshot.entry < len(records):
            graph._entry = (snapshot.entry, records[snapshot.entry].level)
        elif records:
            graph._broken = "entry point missing"
            problems.append(graph._broken)
        return graph, problems


# =============================================================================
# HELPERS
# =============================================================================
def _unneg(item: tuple[float, int, int]) -> Candidate:
    return (-item[0], -item[1], -item[2])


def _checkpoint(token: CancellationToken) -> None:
    if token.cancelled:
        raise _Interrupted(QueryError.cancelled())
    if token.expired:
        raise _Interrupted(QueryError.timeout(None))
