from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any

from .geo import bucket_radius_for_distance, grid_key, haversine_m, ring_offsets
from .graph_model import Edge, GraphSnapshot
from .graph_search import (
    EdgeFilter,
    MeetingPoint,
    SearchDeadline,
    SearchSide,
    bidirectional,
    unpack_edges,
)
from .logging_utils import log_event
from .metrics_store import observe
from .routing_errors import DeadlineExceeded, NodeNotFound, NoPathExists
from .settings import settings
from .snapshot_registry import SnapshotRegistry

MODE_SHORT = "short"
MODE_MEDIUM = "medium"
MODE_LONG = "long"

# Levels whose nodes are held back during each access stage; None = unrestricted.
_STAGES: dict[str, tuple[int | None, ...]] = {
    MODE_MEDIUM: (2, None),
    MODE_LONG: (2, 3, None),
}


@dataclass(frozen=True)
class RouteResult:
    edges: tuple[int, ...]
    total_weight: float
    snapshot_version: int
    approximate: bool = False
    stale: bool = False
    mode: str = MODE_MEDIUM
    segment_count: int = 0
    diagnostics: dict[str, Any] = field(default_factory=dict)


Endpoint = int | tuple[float, float]


def nearest_node(
    snapshot: GraphSnapshot,
    *,
    lat: float,
    lon: float,
    max_distance_m: float | None = None,
) -> tuple[int | None, float]:
    limit_m = float(max_distance_m if max_distance_m is not None else settings.route_snap_max_distance_m)
    bucket = float(settings.graph_partition_bucket_deg)
    center = grid_key(lat, lon, bucket)
    # One extra ring: a point near a bucket edge can be closer to a node in the next bucket.
    radius_limit = bucket_radius_for_distance(limit_m, bucket) + 1
    best_id: int | None = None
    best_dist = math.inf
    for radius in range(0, radius_limit + 1):
        for dx, dy in ring_offsets(radius):
            for node_id in snapshot.grid_index.get((center[0] + dy, center[1] + dx), ()):
                node = snapshot.nodes[node_id]
                dist = haversine_m(lat, lon, node.lat, node.lon)
                if dist > limit_m:
                    continue
                if dist < best_dist or (dist == best_dist and best_id is not None and node_id < best_id):
                    best_id, best_dist = node_id, dist
    return best_id, best_dist


def _upward(snapshot: GraphSnapshot) -> EdgeFilter:
    nodes = snapshot.nodes

    def _allowed(node: int, nxt: int, _edge: Edge) -> bool:
        here = nodes[node]
        there = nodes[nxt]
        if not here.contracted and not there.contracted:
            return True
        return there.search_rank > here.search_rank

    return _allowed


def _within_radius(snapshot: GraphSnapshot, *, lat: float, lon: float, radius_m: float) -> EdgeFilter:
    inside: dict[int, bool] = {}

    def _node_inside(node_id: int) -> bool:
        cached = inside.get(node_id)
        if cached is None:
            node = snapshot.nodes[node_id]
            cached = haversine_m(lat, lon, node.lat, node.lon) <= radius_m
            inside[node_id] = cached
        return cached

    def _allowed(node: int, nxt: int, edge: Edge) -> bool:
        return not edge.is_shortcut and _node_inside(nxt)

    return _allowed


def _base_edges_only(_node: int, _nxt: int, edge: Edge) -> bool:
    return not edge.is_shortcut


class RoutePlanner:
    def __init__(self, registry: SnapshotRegistry) -> None:
        self._registry = registry

    def select_mode(self, distance_m: float) -> str:
        if distance_m < settings.route_short_distance_m:
            return MODE_SHORT
        if distance_m >= settings.route_long_distance_m:
            return MODE_LONG
        return MODE_MEDIUM

    def resolve(self, snapshot: GraphSnapshot, endpoint: Endpoint) -> int:
        if isinstance(endpoint, tuple):
            lat, lon = endpoint
            node_id, _dist = nearest_node(snapshot, lat=float(lat), lon=float(lon))
            if node_id is None:
                raise NodeNotFound(f"{float(lat):.6f},{float(lon):.6f}")
            return node_id
        node_id = int(endpoint)
        if node_id not in snapshot.nodes:
            raise NodeNotFound(node_id)
        return node_id

    def find_route(
        self,
        source: Endpoint,
        destination: Endpoint,
        *,
        deadline_ms: float | None = None,
        snapshot: GraphSnapshot | None = None,
    ) -> RouteResult:
        pinned = snapshot if snapshot is not None else self._registry.current()
        stale = self._registry.is_stale()
        src = self.resolve(pinned, source)
        dst = self.resolve(pinned, destination)
        budget_ms = float(deadline_ms if deadline_ms is not None else settings.route_default_deadline_ms)
        deadline = SearchDeadline.after_ms(budget_ms)
        started = time.perf_counter()

        if src == dst:
            return RouteResult(edges=(), total_weight=0.0, snapshot_version=pinned.version, stale=stale, mode=MODE_SHORT)

        a, b = pinned.nodes[src], pinned.nodes[dst]
        distance_m = haversine_m(a.lat, a.lon, b.lat, b.lon)
        mode = self.select_mode(distance_m)
        diagnostics: dict[str, Any] = {"straight_line_m": round(distance_m, 1), "requested_mode": mode}

        outcome = None
        if mode == MODE_SHORT:
            outcome = self._search_short(pinned, src, dst, distance_m, deadline, diagnostics)
            if outcome is None:
                diagnostics["escalated"] = True
                mode = MODE_MEDIUM
        # Short mode never uses shortcuts, so degraded ones cannot affect it.
        degraded = 0 if outcome is not None else pinned.degraded_count
        if outcome is None and not degraded:
            outcome = self._search_hierarchy(pinned, src, dst, mode, deadline, diagnostics)
        if outcome is None:
            # A degraded shortcut can cut every upward path through its via node; base edges cannot.
            diagnostics["base_fallback"] = True
            outcome = self._search_base(pinned, src, dst, deadline, diagnostics)
        if outcome is None:
            raise NoPathExists(src, dst)

        chain, search_weight, converged = outcome
        base_edges = unpack_edges(pinned, chain)
        total_weight = sum(float(pinned.edges[edge_id].current_weight) for edge_id in base_edges)
        diagnostics["search_weight"] = round(search_weight, 6)
        if degraded:
            diagnostics["degraded_shortcuts"] = degraded
        duration_ms = (time.perf_counter() - started) * 1000.0
        diagnostics["duration_ms"] = round(duration_ms, 3)
        observe(f"route_search_{mode}", duration_ms, error=not converged)
        result = RouteResult(
            edges=tuple(base_edges),
            total_weight=total_weight,
            snapshot_version=pinned.version,
            approximate=not converged or degraded > 0,
            stale=stale,
            mode=mode,
            segment_count=len(base_edges),
            diagnostics=diagnostics,
        )
        if not converged:
            cut_short = DeadlineExceeded(budget_ms)
            log_event(
                "route_deadline_approximate",
                reason_code=cut_short.reason_code,
                source=src,
                destination=dst,
                deadline_ms=budget_ms,
                mode=mode,
            )
        return result

    def _search_plain(
        self,
        snapshot: GraphSnapshot,
        src: int,
        dst: int,
        edge_filter: EdgeFilter,
        deadline: SearchDeadline,
    ) -> tuple[tuple[list[int], float, bool] | None, int]:
        fwd = SearchSide(snapshot=snapshot, forward=True, edge_filter=edge_filter)
        bwd = SearchSide(snapshot=snapshot, forward=False, edge_filter=edge_filter)
        fwd.seed(src)
        bwd.seed(dst)
        meeting = MeetingPoint()
        converged = bidirectional(fwd, bwd, meeting, deadline, sum_stop=True)
        settled = fwd.settled_count + bwd.settled_count
        if meeting.node is None:
            return None, settled
        chain = fwd.edge_chain(meeting.node) + bwd.edge_chain(meeting.node)
        return (chain, meeting.key[0], converged), settled

    def _search_short(
        self,
        snapshot: GraphSnapshot,
        src: int,
        dst: int,
        distance_m: float,
        deadline: SearchDeadline,
        diagnostics: dict[str, Any],
    ) -> tuple[list[int], float, bool] | None:
        a, b = snapshot.nodes[src], snapshot.nodes[dst]
        mid_lat, mid_lon = (a.lat + b.lat) / 2.0, (a.lon + b.lon) / 2.0
        radius_m = max(settings.route_short_radius_min_m, settings.route_short_radius_factor * distance_m)
        edge_filter = _within_radius(snapshot, lat=mid_lat, lon=mid_lon, radius_m=radius_m)
        outcome, settled = self._search_plain(snapshot, src, dst, edge_filter, deadline)
        diagnostics["short_radius_m"] = round(radius_m, 1)
        diagnostics["short_settled"] = settled
        return outcome

    def _search_base(
        self,
        snapshot: GraphSnapshot,
        src: int,
        dst: int,
        deadline: SearchDeadline,
        diagnostics: dict[str, Any],
    ) -> tuple[list[int], float, bool] | None:
        outcome, settled = self._search_plain(snapshot, src, dst, _base_edges_only, deadline)
        diagnostics["base_settled"] = settled
        return outcome

    def _search_hierarchy(
        self,
        snapshot: GraphSnapshot,
        src: int,
        dst: int,
        mode: str,
        deadline: SearchDeadline,
        diagnostics: dict[str, Any],
    ) -> tuple[list[int], float, bool] | None:
        edge_filter = _upward(snapshot)
        stages = _STAGES[mode]
        fwd = SearchSide(snapshot=snapshot, forward=True, edge_filter=edge_filter, blocked_level=stages[0])
        bwd = SearchSide(snapshot=snapshot, forward=False, edge_filter=edge_filter, blocked_level=stages[0])
        fwd.seed(src)
        bwd.seed(dst)
        meeting = MeetingPoint()
        converged = True
        for index, blocked_level in enumerate(stages):
            if index > 0:
                fwd.release_parked(blocked_level)
                bwd.release_parked(blocked_level)
            converged = bidirectional(fwd, bwd, meeting, deadline, sum_stop=False)
            if not converged:
                break
        diagnostics["stages"] = len(stages)
        diagnostics["hierarchy_settled"] = fwd.settled_count + bwd.settled_count
        if meeting.node is None:
            return None
        diagnostics["meeting_node"] = meeting.node
        chain = fwd.edge_chain(meeting.node) + bwd.edge_chain(meeting.node)
        return chain, meeting.key[0], converged
