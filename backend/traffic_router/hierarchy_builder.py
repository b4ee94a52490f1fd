from __future__ import annotations

import heapq
import math
import time
from dataclasses import dataclass, field
from typing import Any

from .graph_model import LEVELS, Edge, GraphSnapshot, Node, RoadGraph, ShortcutDependency
from .logging_utils import log_event
from .settings import settings


@dataclass(frozen=True)
class HierarchyBuildResult:
    snapshot: GraphSnapshot
    levels: dict[int, tuple[int, ...]]
    dependencies: tuple[ShortcutDependency, ...]
    stats: dict[str, Any]


@dataclass
class _ContractionPlan:
    shortcuts: list[tuple[int, int, int, int, float]]  # (u, v, in_edge, out_edge, weight)
    removed_edges: int
    settled: int
    budget_exceeded: bool


@dataclass
class _WorkingGraph:
    """Remaining (uncontracted) overlay: best edge per ordered node pair."""

    out_adj: dict[int, dict[int, tuple[float, int]]] = field(default_factory=dict)
    in_adj: dict[int, dict[int, tuple[float, int]]] = field(default_factory=dict)

    def add(self, u: int, v: int, weight: float, edge_id: int) -> None:
        prior = self.out_adj.setdefault(u, {}).get(v)
        if prior is not None and prior[0] <= weight:
            return
        self.out_adj[u][v] = (weight, edge_id)
        self.in_adj.setdefault(v, {})[u] = (weight, edge_id)

    def remove_node(self, node: int) -> None:
        for v in self.out_adj.pop(node, {}):
            self.in_adj.get(v, {}).pop(node, None)
        for u in self.in_adj.pop(node, {}):
            self.out_adj.get(u, {}).pop(node, None)


class HierarchyBuilder:
    """Builds a three-level contraction hierarchy from a base road graph."""

    def __init__(
        self,
        *,
        witness_settle_limit: int | None = None,
        witness_hop_limit: int | None = None,
        node_budget: int | None = None,
        time_budget_s: float | None = None,
        level2_percentile: float | None = None,
        level3_percentile: float | None = None,
    ) -> None:
        self.witness_settle_limit = int(witness_settle_limit or settings.witness_settle_limit)
        self.witness_hop_limit = int(witness_hop_limit or settings.witness_hop_limit)
        self.node_budget = int(node_budget or settings.contraction_node_budget)
        self.time_budget_s = float(time_budget_s or settings.contraction_time_budget_s)
        self.level2_percentile = float(level2_percentile or settings.level2_percentile)
        self.level3_percentile = float(level3_percentile or settings.level3_percentile)
        if self.level3_percentile <= self.level2_percentile:
            raise ValueError("level3_percentile must exceed level2_percentile")

    def _witness_distances(
        self,
        work: _WorkingGraph,
        source: int,
        *,
        avoid: int,
        targets: set[int],
        max_weight: float,
    ) -> tuple[dict[int, float], int]:
        dist: dict[int, float] = {source: 0.0}
        heap: list[tuple[float, int, int]] = [(0.0, 0, source)]
        settled = 0
        remaining = set(targets)
        done: set[int] = set()
        while heap and settled < self.witness_settle_limit and remaining:
            d, hops, node = heapq.heappop(heap)
            if node in done:
                continue
            done.add(node)
            settled += 1
            if d > max_weight:
                break
            remaining.discard(node)
            if hops >= self.witness_hop_limit:
                continue
            for nxt, (weight, _edge_id) in work.out_adj.get(node, {}).items():
                if nxt == avoid:
                    continue
                nd = d + weight
                if nd < dist.get(nxt, math.inf):
                    dist[nxt] = nd
                    heapq.heappush(heap, (nd, hops + 1, nxt))
        return dist, settled

    def _plan_contraction(self, work: _WorkingGraph, node: int) -> _ContractionPlan:
        incoming = dict(work.in_adj.get(node, {}))
        outgoing = dict(work.out_adj.get(node, {}))
        shortcuts: list[tuple[int, int, int, int, float]] = []
        settled_total = 0
        for u, (w_in, in_edge) in incoming.items():
            targets = {v for v in outgoing if v != u}
            if not targets:
                continue
            max_via = w_in + max(outgoing[v][0] for v in targets)
            dist, settled = self._witness_distances(work, u, avoid=node, targets=targets, max_weight=max_via)
            settled_total += settled
            if settled_total > self.node_budget:
                return _ContractionPlan(shortcuts=[], removed_edges=0, settled=settled_total, budget_exceeded=True)
            for v in sorted(targets):
                w_out, out_edge = outgoing[v]
                via_weight = w_in + w_out
                if dist.get(v, math.inf) <= via_weight:
                    continue
                shortcuts.append((u, v, in_edge, out_edge, via_weight))
        return _ContractionPlan(
            shortcuts=shortcuts,
            removed_edges=len(incoming) + len(outgoing),
            settled=settled_total,
            budget_exceeded=False,
        )

    def _priority(self, plan: _ContractionPlan, contracted_neighbors: int) -> float:
        edge_difference = len(plan.shortcuts) - plan.removed_edges
        return (
            settings.priority_edge_difference_weight * edge_difference
            + settings.priority_contracted_neighbors_weight * contracted_neighbors
            + settings.priority_search_space_weight * plan.settled
        )

    def _level_for_rank(self, rank: int, total: int) -> int:
        fraction = rank / max(1, total)
        if fraction > self.level3_percentile:
            return 3
        if fraction > self.level2_percentile:
            return 2
        return 1

    def build(self, graph: RoadGraph, *, version: int = 1) -> HierarchyBuildResult:
        started = time.monotonic()
        work = _WorkingGraph()
        edges: dict[int, Edge] = dict(graph.edges)
        for edge in graph.edges.values():
            work.add(edge.from_node, edge.to_node, float(edge.current_weight), edge.edge_id)
        next_edge_id = (max(edges) + 1) if edges else 0

        contracted_neighbors: dict[int, int] = {node_id: 0 for node_id in graph.nodes}
        priorities: dict[int, float] = {}
        heap: list[tuple[float, int]] = []
        core: set[int] = set()
        for node_id in sorted(graph.nodes):
            plan = self._plan_contraction(work, node_id)
            if plan.budget_exceeded:
                core.add(node_id)
                continue
            priorities[node_id] = self._priority(plan, 0)
            heapq.heappush(heap, (priorities[node_id], node_id))

        rank_of: dict[int, int] = {}
        time_budget_hit = False
        while heap:
            if time.monotonic() - started > self.time_budget_s:
                time_budget_hit = True
                break
            priority, node_id = heapq.heappop(heap)
            if node_id in rank_of or node_id in core:
                continue
            if priority > priorities[node_id]:
                continue
            plan = self._plan_contraction(work, node_id)
            if plan.budget_exceeded:
                core.add(node_id)
                continue
            actual = self._priority(plan, contracted_neighbors[node_id])
            if actual > priority and heap and actual > heap[0][0]:
                priorities[node_id] = actual
                heapq.heappush(heap, (actual, node_id))
                continue

            for u, v, in_edge, out_edge, weight in plan.shortcuts:
                first, second = edges[in_edge], edges[out_edge]
                edges[next_edge_id] = Edge(
                    edge_id=next_edge_id,
                    from_node=u,
                    to_node=v,
                    base_weight=first.base_weight + second.base_weight,
                    current_weight=weight,
                    is_shortcut=True,
                    length_m=first.length_m + second.length_m,
                    via_node=node_id,
                    constituents=(in_edge, out_edge),
                    segment_count=first.segment_count + second.segment_count,
                )
                work.add(u, v, weight, next_edge_id)
                next_edge_id += 1
            neighbors = set(work.in_adj.get(node_id, {})) | set(work.out_adj.get(node_id, {}))
            work.remove_node(node_id)
            rank_of[node_id] = len(rank_of) + 1
            for neighbor in neighbors:
                if neighbor in contracted_neighbors:
                    contracted_neighbors[neighbor] += 1

        for node_id in graph.nodes:
            if node_id not in rank_of:
                core.add(node_id)
        total = len(graph.nodes)
        nodes: dict[int, Node] = {}
        next_rank = len(rank_of) + 1
        for node_id in sorted(graph.nodes):
            lat, lon = graph.nodes[node_id]
            if node_id in rank_of:
                rank = rank_of[node_id]
                nodes[node_id] = Node(
                    node_id=node_id,
                    lat=lat,
                    lon=lon,
                    level=self._level_for_rank(rank, total),
                    rank=rank,
                    contracted=True,
                )
            else:
                nodes[node_id] = Node(node_id=node_id, lat=lat, lon=lon, level=1, rank=next_rank, contracted=False)
                next_rank += 1

        for edge_id, edge in list(edges.items()):
            level = min(nodes[edge.from_node].level, nodes[edge.to_node].level)
            if level != edge.level:
                edges[edge_id] = Edge(
                    edge_id=edge.edge_id,
                    from_node=edge.from_node,
                    to_node=edge.to_node,
                    base_weight=edge.base_weight,
                    current_weight=edge.current_weight,
                    level=level,
                    is_shortcut=edge.is_shortcut,
                    length_m=edge.length_m,
                    via_node=edge.via_node,
                    constituents=edge.constituents,
                    segment_count=edge.segment_count,
                )

        snapshot = GraphSnapshot.create(version=version, nodes=nodes, edges=edges, source=graph.source)
        levels = {level: snapshot.nodes_at_level(level) for level in LEVELS}
        shortcut_count = sum(1 for edge in edges.values() if edge.is_shortcut)
        stats: dict[str, Any] = {
            "node_count": total,
            "base_edge_count": len(graph.edges),
            "shortcut_count": shortcut_count,
            "core_node_count": len(core),
            "time_budget_hit": time_budget_hit,
            "duration_ms": round((time.monotonic() - started) * 1000.0, 2),
            "level_sizes": {str(level): len(ids) for level, ids in levels.items()},
        }
        log_event("hierarchy_build_completed", version=version, **stats)
        return HierarchyBuildResult(
            snapshot=snapshot,
            levels=levels,
            dependencies=snapshot.dependencies(),
            stats=stats,
        )


def build_hierarchy(graph: RoadGraph, *, version: int = 1) -> HierarchyBuildResult:
    return HierarchyBuilder().build(graph, version=version)
