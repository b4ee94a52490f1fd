from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from traffic_router.dependency_store import DependencyStore
from traffic_router.edge_weight_updater import EdgeWeightUpdater
from traffic_router.graph_loader import graph_from_payload
from traffic_router.graph_model import Edge, GraphSnapshot, Node, RoadGraph
from traffic_router.graph_store import InMemoryGraphStore
from traffic_router.hierarchy_builder import build_hierarchy
from traffic_router.metrics_store import reset_metrics
from traffic_router.route_planner import RoutePlanner
from traffic_router.settings import settings
from traffic_router.snapshot_registry import SnapshotRegistry

# A..E of the five-node scenario graph.
A, B, C, D, E = 1, 2, 3, 4, 5


@pytest.fixture(autouse=True)
def _isolated_runtime(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    out_dir = tmp_path / "out"
    out_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setattr(settings, "out_dir", str(out_dir))
    monkeypatch.setattr(settings, "snapshot_asset_path", "")
    monkeypatch.setattr(settings, "graph_store_url", "")
    reset_metrics()


def scenario_payload() -> dict:
    return {
        "source": "pytest-scenario",
        "nodes": [
            {"id": A, "lat": 52.0000, "lon": -1.0000},
            {"id": B, "lat": 52.0020, "lon": -1.0000},
            {"id": C, "lat": 52.0000, "lon": -0.9980},
            {"id": D, "lat": 52.0010, "lon": -0.9970},
            {"id": E, "lat": 52.0030, "lon": -0.9980},
        ],
        "edges": [
            {"id": 0, "u": A, "v": B, "travel_time_s": 4},
            {"id": 1, "u": A, "v": C, "travel_time_s": 1},
            {"id": 2, "u": B, "v": E, "travel_time_s": 2},
            {"id": 3, "u": C, "v": D, "travel_time_s": 2},
            {"id": 4, "u": D, "v": E, "travel_time_s": 5},
        ],
    }


@pytest.fixture
def road_payload() -> dict:
    return scenario_payload()


@pytest.fixture
def scenario_graph() -> RoadGraph:
    return graph_from_payload(scenario_payload())


@pytest.fixture
def diamond_snapshot() -> GraphSnapshot:
    """1 -> 3 via 2 (shortcut 10) or via 4; node ranks 2 < 4 < 1 < 3."""
    nodes = {
        1: Node(node_id=1, lat=52.00, lon=-1.00, rank=3),
        2: Node(node_id=2, lat=52.01, lon=-0.99, rank=1),
        3: Node(node_id=3, lat=52.02, lon=-1.00, rank=4),
        4: Node(node_id=4, lat=52.01, lon=-1.01, rank=2),
    }
    edges = {
        0: Edge(edge_id=0, from_node=1, to_node=2, base_weight=5.0, current_weight=5.0, length_m=1500.0),
        1: Edge(edge_id=1, from_node=2, to_node=3, base_weight=5.0, current_weight=5.0, length_m=1500.0),
        2: Edge(edge_id=2, from_node=1, to_node=4, base_weight=6.0, current_weight=6.0, length_m=1500.0),
        3: Edge(edge_id=3, from_node=4, to_node=3, base_weight=6.0, current_weight=6.0, length_m=1500.0),
        10: Edge(
            edge_id=10,
            from_node=1,
            to_node=3,
            base_weight=10.0,
            current_weight=10.0,
            is_shortcut=True,
            length_m=3000.0,
            via_node=2,
            constituents=(0, 1),
            segment_count=2,
        ),
    }
    return GraphSnapshot.create(version=1, nodes=nodes, edges=edges, source="pytest-diamond")


@pytest.fixture
def grid_graph() -> Callable[..., RoadGraph]:
    """Two-way lattice with seeded random travel times."""

    def _make(rows: int = 6, cols: int = 6, *, seed: int = 7, spacing_deg: float = 0.01) -> RoadGraph:
        rng = random.Random(seed)
        nodes = []
        edges = []
        for r in range(rows):
            for c in range(cols):
                nodes.append({"id": r * cols + c, "lat": 52.0 + r * spacing_deg, "lon": -1.0 + c * spacing_deg})
        for r in range(rows):
            for c in range(cols):
                here = r * cols + c
                if c + 1 < cols:
                    edges.append({"u": here, "v": here + 1, "travel_time_s": rng.uniform(20, 120)})
                    edges.append({"u": here + 1, "v": here, "travel_time_s": rng.uniform(20, 120)})
                if r + 1 < rows:
                    edges.append({"u": here, "v": here + cols, "travel_time_s": rng.uniform(20, 120)})
                    edges.append({"u": here + cols, "v": here, "travel_time_s": rng.uniform(20, 120)})
        return graph_from_payload({"source": f"pytest-grid-{rows}x{cols}", "nodes": nodes, "edges": edges})

    return _make


@pytest.fixture
def two_way_road() -> RoadGraph:
    """A single east-west street, drivable both ways (edge 0 eastbound, edge 1 westbound)."""
    return graph_from_payload(
        {
            "source": "pytest-street",
            "nodes": [
                {"id": 10, "lat": 52.0, "lon": -1.000},
                {"id": 11, "lat": 52.0, "lon": -0.995},
            ],
            "edges": [{"id": 0, "u": 10, "v": 11, "travel_time_s": 30, "oneway": False}],
        }
    )


@dataclass
class RouterParts:
    registry: SnapshotRegistry
    dependency_store: DependencyStore
    updater: EdgeWeightUpdater
    planner: RoutePlanner
    graph_store: InMemoryGraphStore


@pytest.fixture
def router_parts() -> Callable[[RoadGraph | GraphSnapshot], RouterParts]:
    """Publish a graph (contracted first) or a ready snapshot and wire the query/update side."""

    def _make(source: RoadGraph | GraphSnapshot) -> RouterParts:
        snapshot = source if isinstance(source, GraphSnapshot) else build_hierarchy(source).snapshot
        registry = SnapshotRegistry()
        registry.publish(snapshot)
        dependency_store = DependencyStore()
        dependency_store.load(snapshot.dependencies())
        graph_store = InMemoryGraphStore()
        graph_store.load_snapshot(snapshot)
        updater = EdgeWeightUpdater(registry, dependency_store, graph_store=graph_store)
        return RouterParts(
            registry=registry,
            dependency_store=dependency_store,
            updater=updater,
            planner=RoutePlanner(registry),
            graph_store=graph_store,
        )

    return _make
