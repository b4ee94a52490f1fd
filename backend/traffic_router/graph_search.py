from __future__ import annotations

import heapq
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .graph_model import Edge, GraphSnapshot


# (weight, base segment count): lexicographic, so equal-weight ties go to fewer edges.
SearchKey = tuple[float, int]
EdgeFilter = Callable[[int, int, Edge], bool]

INF_KEY: SearchKey = (math.inf, 0)


def add_keys(a: SearchKey, b: SearchKey) -> SearchKey:
    return (a[0] + b[0], a[1] + b[1])


@dataclass
class SearchDeadline:
    """Soft deadline: once passed, a search stops at the first meeting point it has."""

    deadline_monotonic_s: float
    deadline_ms: float
    hit: bool = False

    @classmethod
    def after_ms(cls, deadline_ms: float) -> SearchDeadline:
        return cls(
            deadline_monotonic_s=time.monotonic() + max(0.0, float(deadline_ms)) / 1000.0,
            deadline_ms=float(deadline_ms),
        )

    def expired(self) -> bool:
        if time.monotonic() >= self.deadline_monotonic_s:
            self.hit = True
        return self.hit


@dataclass
class MeetingPoint:
    key: SearchKey = INF_KEY
    node: int | None = None

    @property
    def found(self) -> bool:
        return self.node is not None

    def offer(self, node: int, key: SearchKey) -> None:
        if key < self.key:
            self.key = key
            self.node = node


@dataclass
class SearchSide:
    """One direction of a (bi)directional Dijkstra over a pinned snapshot."""

    snapshot: GraphSnapshot
    forward: bool
    edge_filter: EdgeFilter
    blocked_level: int | None = None
    dist: dict[int, SearchKey] = field(default_factory=dict)
    parent: dict[int, int | None] = field(default_factory=dict)
    settled: set[int] = field(default_factory=set)
    parked: list[int] = field(default_factory=list)
    heap: list[tuple[float, int, int]] = field(default_factory=list)
    settled_count: int = 0

    def seed(self, node: int) -> None:
        self.dist[node] = (0.0, 0)
        self.parent[node] = None
        heapq.heappush(self.heap, (0.0, 0, node))

    def top_key(self) -> SearchKey:
        while self.heap:
            weight, segs, node = self.heap[0]
            if node in self.settled or (weight, segs) > self.dist.get(node, INF_KEY):
                heapq.heappop(self.heap)
                continue
            return (weight, segs)
        return INF_KEY

    def release_parked(self, blocked_level: int | None) -> None:
        self.blocked_level = blocked_level
        parked, self.parked = self.parked, []
        for node in parked:
            weight, segs = self.dist[node]
            heapq.heappush(self.heap, (weight, segs, node))

    def _neighbors(self, node: int) -> Iterable[tuple[Edge, int]]:
        if self.forward:
            for edge in self.snapshot.outgoing(node):
                yield edge, edge.to_node
        else:
            for edge in self.snapshot.incoming(node):
                yield edge, edge.from_node

    def step(self, other: SearchSide | None, meeting: MeetingPoint) -> int | None:
        """Settle the next node, relax its edges and return it (None when exhausted)."""
        if self.top_key() == INF_KEY:
            return None
        weight, segs, node = heapq.heappop(self.heap)
        key = (weight, segs)
        if self.blocked_level is not None:
            node_obj = self.snapshot.nodes.get(node)
            if node_obj is not None and node_obj.contracted and node_obj.level >= self.blocked_level:
                self.parked.append(node)
                return node
        self.settled.add(node)
        self.settled_count += 1
        if other is not None and node in other.dist:
            meeting.offer(node, add_keys(key, other.dist[node]))
        for edge, nxt in self._neighbors(node):
            if not self.edge_filter(node, nxt, edge):
                continue
            new_key = (weight + max(0.0, float(edge.current_weight)), segs + max(1, int(edge.segment_count)))
            if new_key >= self.dist.get(nxt, INF_KEY):
                continue
            # A node settled in an earlier access phase can still improve once parked nodes are released.
            self.settled.discard(nxt)
            self.dist[nxt] = new_key
            self.parent[nxt] = edge.edge_id
            heapq.heappush(self.heap, (new_key[0], new_key[1], nxt))
            if other is not None and nxt in other.dist:
                meeting.offer(nxt, add_keys(new_key, other.dist[nxt]))
        return node

    def edge_chain(self, node: int) -> list[int]:
        """Edge ids from this side's origin to `node`, in travel order."""
        chain: list[int] = []
        current = node
        while True:
            edge_id = self.parent.get(current)
            if edge_id is None:
                break
            chain.append(edge_id)
            edge = self.snapshot.edges[edge_id]
            current = edge.from_node if self.forward else edge.to_node
        if self.forward:
            chain.reverse()
        return chain


def _deadline_stop(deadline: SearchDeadline, meeting: MeetingPoint) -> bool:
    # Past the deadline the search keeps going until the sides first meet.
    return meeting.found and deadline.expired()


def bidirectional(
    fwd: SearchSide,
    bwd: SearchSide,
    meeting: MeetingPoint,
    deadline: SearchDeadline,
    *,
    sum_stop: bool,
) -> bool:
    """Alternate the two sides by smallest key.

    `sum_stop` uses the classic top_f + top_b >= best criterion (plain graphs);
    otherwise each side stops once its own top key reaches the best meeting
    (required for upward hierarchy searches). Returns False if the deadline
    stopped the search before convergence.
    """
    while True:
        if _deadline_stop(deadline, meeting):
            return False
        top_f = fwd.top_key()
        top_b = bwd.top_key()
        if sum_stop:
            if add_keys(top_f, top_b) >= meeting.key:
                return True
            active_f = top_f != INF_KEY
            active_b = top_b != INF_KEY
        else:
            active_f = top_f < meeting.key
            active_b = top_b < meeting.key
        if not active_f and not active_b:
            return True
        if active_f and (not active_b or top_f <= top_b):
            fwd.step(bwd, meeting)
        else:
            bwd.step(fwd, meeting)


def unpack_edges(snapshot: GraphSnapshot, edge_ids: Iterable[int]) -> list[int]:
    """Expand shortcuts into base edge ids using an explicit stack."""
    out: list[int] = []
    stack = list(reversed(list(edge_ids)))
    while stack:
        edge_id = stack.pop()
        edge = snapshot.edges[edge_id]
        if edge.constituents is None:
            out.append(edge_id)
            continue
        first, second = edge.constituents
        stack.append(second)
        stack.append(first)
    return out


def base_dijkstra(
    snapshot: GraphSnapshot,
    source: int,
    target: int,
) -> tuple[float, list[int]] | None:
    """Single-level reference Dijkstra over base edges only."""
    dist: dict[int, float] = {source: 0.0}
    parent: dict[int, int] = {}
    heap: list[tuple[float, int]] = [(0.0, source)]
    settled: set[int] = set()
    while heap:
        cost, node = heapq.heappop(heap)
        if node in settled:
            continue
        settled.add(node)
        if node == target:
            chain: list[int] = []
            current = node
            while current in parent:
                edge_id = parent[current]
                chain.append(edge_id)
                current = snapshot.edges[edge_id].from_node
            chain.reverse()
            return cost, chain
        for edge_id in snapshot.out_edges.get(node, ()):
            edge = snapshot.edges[edge_id]
            if edge.is_shortcut:
                continue
            new_cost = cost + max(0.0, float(edge.current_weight))
            if new_cost < dist.get(edge.to_node, math.inf):
                dist[edge.to_node] = new_cost
                parent[edge.to_node] = edge_id
                heapq.heappush(heap, (new_cost, edge.to_node))
    return None
