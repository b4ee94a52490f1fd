from __future__ import annotations

import math
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from types import MappingProxyType

from .geo import grid_key
from .settings import settings

LEVELS: tuple[int, ...] = (1, 2, 3)


class ShortcutState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    RECOMPUTING = "recomputing"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class Node:
    node_id: int
    lat: float
    lon: float
    level: int = 1
    rank: int = 0
    contracted: bool = True

    @property
    def search_rank(self) -> float:
        # Core nodes sit above every contracted node.
        return float(self.rank) if self.contracted else math.inf


@dataclass(frozen=True)
class Edge:
    edge_id: int
    from_node: int
    to_node: int
    base_weight: float
    current_weight: float
    level: int = 1
    is_shortcut: bool = False
    length_m: float = 0.0
    via_node: int | None = None
    constituents: tuple[int, int] | None = None
    segment_count: int = 1


@dataclass(frozen=True)
class ShortcutDependency:
    shortcut_edge_id: int
    depends_on_edge_id: int


@dataclass(frozen=True)
class RoadSegmentSpeedSample:
    segment_id: int
    speed_mps: float
    timestamp: float


@dataclass(frozen=True)
class SpeedAggregate:
    segment_id: int
    rolling_average: float
    sample_count: int
    window_start: float
    published_at: float = 0.0


@dataclass(frozen=True)
class RoadGraph:
    """Base road graph before contraction: coordinates plus base edges."""

    nodes: dict[int, tuple[float, float]]
    edges: dict[int, Edge]
    source: str = ""


def _freeze(mapping: dict) -> Mapping:
    return MappingProxyType(mapping)


def build_adjacency(
    edges: Iterable[Edge],
) -> tuple[Mapping[int, tuple[int, ...]], Mapping[int, tuple[int, ...]]]:
    out_mut: dict[int, list[int]] = {}
    in_mut: dict[int, list[int]] = {}
    for edge in edges:
        out_mut.setdefault(edge.from_node, []).append(edge.edge_id)
        in_mut.setdefault(edge.to_node, []).append(edge.edge_id)
    return (
        _freeze({k: tuple(sorted(v)) for k, v in out_mut.items()}),
        _freeze({k: tuple(sorted(v)) for k, v in in_mut.items()}),
    )


def build_grid_index(nodes: Mapping[int, Node]) -> Mapping[tuple[int, int], tuple[int, ...]]:
    grid_mut: dict[tuple[int, int], list[int]] = {}
    bucket = float(settings.graph_partition_bucket_deg)
    for node in nodes.values():
        grid_mut.setdefault(grid_key(node.lat, node.lon, bucket), []).append(node.node_id)
    return _freeze({key: tuple(sorted(values)) for key, values in grid_mut.items()})


@dataclass(frozen=True, eq=False)
class GraphSnapshot:
    """Immutable, versioned view of the hierarchy.

    Readers hold a reference to one snapshot for the whole of a query. Updates
    never touch an existing snapshot: `derive` copies the node/edge maps,
    replaces the changed entries and shares the topology indexes.
    """

    version: int
    nodes: Mapping[int, Node]
    edges: Mapping[int, Edge]
    out_edges: Mapping[int, tuple[int, ...]]
    in_edges: Mapping[int, tuple[int, ...]]
    grid_index: Mapping[tuple[int, int], tuple[int, ...]]
    shortcut_states: Mapping[int, ShortcutState] = field(default_factory=lambda: _freeze({}))
    source: str = ""
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        *,
        version: int,
        nodes: dict[int, Node],
        edges: dict[int, Edge],
        shortcut_states: dict[int, ShortcutState] | None = None,
        source: str = "",
        created_at: float | None = None,
    ) -> GraphSnapshot:
        out_edges, in_edges = build_adjacency(edges.values())
        states = dict(shortcut_states or {})
        for edge in edges.values():
            if edge.is_shortcut:
                states.setdefault(edge.edge_id, ShortcutState.CLEAN)
        return cls(
            version=int(version),
            nodes=_freeze(dict(nodes)),
            edges=_freeze(dict(edges)),
            out_edges=out_edges,
            in_edges=in_edges,
            grid_index=build_grid_index(nodes),
            shortcut_states=_freeze(states),
            source=source,
            created_at=time.time() if created_at is None else float(created_at),
        )

    def derive(
        self,
        *,
        version: int,
        edge_updates: Mapping[int, Edge] | None = None,
        node_updates: Mapping[int, Node] | None = None,
        state_updates: Mapping[int, ShortcutState] | None = None,
    ) -> GraphSnapshot:
        edges = self.edges
        if edge_updates:
            merged = dict(self.edges)
            for edge_id, edge in edge_updates.items():
                prior = merged.get(edge_id)
                if prior is not None and (prior.from_node, prior.to_node) != (edge.from_node, edge.to_node):
                    raise ValueError(f"edge {edge_id} endpoints cannot change within a hierarchy")
                merged[edge_id] = edge
            edges = _freeze(merged)
        nodes = self.nodes
        if node_updates:
            merged_nodes = dict(self.nodes)
            merged_nodes.update(node_updates)
            nodes = _freeze(merged_nodes)
        states = self.shortcut_states
        if state_updates:
            merged_states = dict(self.shortcut_states)
            merged_states.update(state_updates)
            states = _freeze(merged_states)
        out_edges, in_edges = self.out_edges, self.in_edges
        if edge_updates and any(edge_id not in self.edges for edge_id in edge_updates):
            out_edges, in_edges = build_adjacency(edges.values())
        return GraphSnapshot(
            version=int(version),
            nodes=nodes,
            edges=edges,
            out_edges=out_edges,
            in_edges=in_edges,
            grid_index=self.grid_index,
            shortcut_states=states,
            source=self.source,
        )

    def node(self, node_id: int) -> Node | None:
        return self.nodes.get(node_id)

    def edge(self, edge_id: int) -> Edge | None:
        return self.edges.get(edge_id)

    def is_searchable(self, edge_id: int) -> bool:
        return self.shortcut_states.get(edge_id) is not ShortcutState.DEGRADED

    def outgoing(self, node_id: int) -> Iterator[Edge]:
        for edge_id in self.out_edges.get(node_id, ()):
            if self.is_searchable(edge_id):
                yield self.edges[edge_id]

    def incoming(self, node_id: int) -> Iterator[Edge]:
        for edge_id in self.in_edges.get(node_id, ()):
            if self.is_searchable(edge_id):
                yield self.edges[edge_id]

    def dependencies(self) -> tuple[ShortcutDependency, ...]:
        rows: list[ShortcutDependency] = []
        for edge_id in sorted(self.edges):
            edge = self.edges[edge_id]
            if edge.constituents is None:
                continue
            for dep in edge.constituents:
                rows.append(ShortcutDependency(shortcut_edge_id=edge_id, depends_on_edge_id=dep))
        return tuple(rows)

    @cached_property
    def degraded_count(self) -> int:
        # Degraded shortcuts leave witness gaps; routes fall back to base edges until a rebuild.
        return sum(1 for state in self.shortcut_states.values() if state is ShortcutState.DEGRADED)

    def nodes_at_level(self, level: int) -> tuple[int, ...]:
        return tuple(sorted(n.node_id for n in self.nodes.values() if n.level >= level))

    def base_graph(self) -> RoadGraph:
        """Base edges at their current weights, ready for a rebuild."""
        nodes = {node_id: (node.lat, node.lon) for node_id, node in self.nodes.items()}
        edges = {
            edge_id: Edge(
                edge_id=edge.edge_id,
                from_node=edge.from_node,
                to_node=edge.to_node,
                base_weight=edge.base_weight,
                current_weight=edge.current_weight,
                length_m=edge.length_m,
            )
            for edge_id, edge in self.edges.items()
            if not edge.is_shortcut
        }
        return RoadGraph(nodes=nodes, edges=edges, source=self.source)

    def summary(self) -> dict[str, object]:
        level_nodes = {str(level): 0 for level in LEVELS}
        for node in self.nodes.values():
            level_nodes[str(node.level)] = level_nodes.get(str(node.level), 0) + 1
        level_edges = {str(level): 0 for level in LEVELS}
        shortcut_count = 0
        for edge in self.edges.values():
            level_edges[str(edge.level)] = level_edges.get(str(edge.level), 0) + 1
            if edge.is_shortcut:
                shortcut_count += 1
        state_counts: dict[str, int] = {}
        for state in self.shortcut_states.values():
            state_counts[state.value] = state_counts.get(state.value, 0) + 1
        return {
            "version": self.version,
            "source": self.source,
            "created_at": self.created_at,
            "node_count": len(self.nodes),
            "edge_count": len(self.edges),
            "shortcut_count": shortcut_count,
            "core_node_count": sum(1 for n in self.nodes.values() if not n.contracted),
            "nodes_by_level": level_nodes,
            "edges_by_level": level_edges,
            "shortcut_states": state_counts,
        }
