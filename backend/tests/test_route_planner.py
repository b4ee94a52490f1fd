from __future__ import annotations

import random
import time

import pytest

from traffic_router.graph_loader import graph_from_payload
from traffic_router.graph_search import base_dijkstra
from traffic_router.route_planner import MODE_LONG, MODE_MEDIUM, MODE_SHORT, RoutePlanner, nearest_node
from traffic_router.routing_errors import NodeNotFound, NoPathExists, RoutingError
from traffic_router.settings import settings
from traffic_router.snapshot_registry import SnapshotRegistry

A, B, C, D, E = 1, 2, 3, 4, 5


def _force_mode(monkeypatch: pytest.MonkeyPatch, mode: str) -> None:
    if mode == MODE_SHORT:
        monkeypatch.setattr(settings, "route_short_distance_m", 1e9)
        monkeypatch.setattr(settings, "route_long_distance_m", 1e9)
        monkeypatch.setattr(settings, "route_short_radius_min_m", 1e7)
    elif mode == MODE_MEDIUM:
        monkeypatch.setattr(settings, "route_short_distance_m", 0.0)
        monkeypatch.setattr(settings, "route_long_distance_m", 1e9)
    else:
        monkeypatch.setattr(settings, "route_short_distance_m", 0.0)
        monkeypatch.setattr(settings, "route_long_distance_m", 0.0)


def _assert_contiguous(snapshot, edges: tuple[int, ...], src: int, dst: int) -> None:
    current = src
    for edge_id in edges:
        edge = snapshot.edges[edge_id]
        assert not edge.is_shortcut
        assert edge.from_node == current
        current = edge.to_node
    assert current == dst


@pytest.mark.parametrize("mode", [MODE_SHORT, MODE_MEDIUM, MODE_LONG])
def test_scenario_route_takes_a_b_e(scenario_graph, router_parts, monkeypatch, mode: str) -> None:
    _force_mode(monkeypatch, mode)
    parts = router_parts(scenario_graph)

    result = parts.planner.find_route(A, E, deadline_ms=5_000)

    assert result.edges == (0, 2)
    assert result.total_weight == pytest.approx(6.0)
    assert result.mode == mode
    assert result.segment_count == 2
    assert result.approximate is False
    assert result.snapshot_version == 1


@pytest.mark.parametrize("mode", [MODE_SHORT, MODE_MEDIUM, MODE_LONG])
def test_scenario_route_switches_when_b_e_slows(scenario_graph, router_parts, monkeypatch, mode: str) -> None:
    _force_mode(monkeypatch, mode)
    parts = router_parts(scenario_graph)

    batch = parts.updater.apply_weights({2: 10.0})
    result = parts.planner.find_route(A, E, deadline_ms=5_000)

    assert batch.version == 2
    assert result.edges == (1, 3, 4)
    assert result.total_weight == pytest.approx(8.0)
    assert result.snapshot_version == 2


def test_pinned_snapshot_keeps_answering_from_its_version(scenario_graph, router_parts) -> None:
    parts = router_parts(scenario_graph)
    pinned = parts.registry.current()

    parts.updater.apply_weights({2: 10.0})
    old = parts.planner.find_route(A, E, snapshot=pinned, deadline_ms=5_000)
    new = parts.planner.find_route(A, E, deadline_ms=5_000)

    assert (old.snapshot_version, old.total_weight) == (1, pytest.approx(6.0))
    assert (new.snapshot_version, new.total_weight) == (2, pytest.approx(8.0))
    assert pinned.edges[2].current_weight == 2.0


@pytest.mark.parametrize("mode", [MODE_SHORT, MODE_MEDIUM, MODE_LONG])
def test_hierarchy_matches_plain_dijkstra_on_grid(grid_graph, router_parts, monkeypatch, mode: str) -> None:
    _force_mode(monkeypatch, mode)
    parts = router_parts(grid_graph(rows=6, cols=6, seed=11))
    snapshot = parts.registry.current()
    rng = random.Random(3)
    node_ids = sorted(snapshot.nodes)

    for _ in range(40):
        src, dst = rng.sample(node_ids, 2)
        expected = base_dijkstra(snapshot, src, dst)
        assert expected is not None
        result = parts.planner.find_route(src, dst, deadline_ms=10_000)
        assert result.total_weight == pytest.approx(expected[0], rel=1e-9)
        assert result.approximate is False
        _assert_contiguous(snapshot, result.edges, src, dst)


def test_equal_weight_tie_goes_to_fewer_edges(router_parts, monkeypatch) -> None:
    graph = graph_from_payload(
        {
            "nodes": [
                {"id": 1, "lat": 52.000, "lon": -1.000},
                {"id": 2, "lat": 52.010, "lon": -1.000},
                {"id": 3, "lat": 52.005, "lon": -0.995},
            ],
            "edges": [
                {"id": 0, "u": 1, "v": 2, "travel_time_s": 10},
                {"id": 1, "u": 1, "v": 3, "travel_time_s": 5},
                {"id": 2, "u": 3, "v": 2, "travel_time_s": 5},
            ],
        }
    )
    parts = router_parts(graph)
    for mode in (MODE_SHORT, MODE_MEDIUM, MODE_LONG):
        _force_mode(monkeypatch, mode)
        result = parts.planner.find_route(1, 2, deadline_ms=5_000)
        assert result.edges == (0,)
        assert result.total_weight == pytest.approx(10.0)


def test_deadline_returns_flagged_approximate_path(grid_graph, router_parts, monkeypatch) -> None:
    _force_mode(monkeypatch, MODE_MEDIUM)
    parts = router_parts(grid_graph(rows=6, cols=6, seed=5))
    snapshot = parts.registry.current()

    result = parts.planner.find_route(0, 35, deadline_ms=0)

    assert result.approximate is True
    expected = base_dijkstra(snapshot, 0, 35)
    assert expected is not None
    assert result.total_weight >= expected[0] - 1e-9
    _assert_contiguous(snapshot, result.edges, 0, 35)


def test_expired_deadline_still_returns_the_first_meeting(grid_graph, router_parts, monkeypatch) -> None:
    _force_mode(monkeypatch, MODE_LONG)
    parts = router_parts(grid_graph(rows=4, cols=4))
    snapshot = parts.registry.current()

    result = parts.planner.find_route(0, 15, deadline_ms=0)

    expected = base_dijkstra(snapshot, 0, 15)
    assert expected is not None
    assert result.approximate is True
    assert result.total_weight >= expected[0] - 1e-9
    _assert_contiguous(snapshot, result.edges, 0, 15)


def test_degraded_shortcuts_never_cut_a_reachable_pair(grid_graph, router_parts, monkeypatch) -> None:
    _force_mode(monkeypatch, MODE_MEDIUM)
    monkeypatch.setattr(settings, "updater_triangle_budget", 1)
    monkeypatch.setattr(settings, "updater_max_recompute_attempts", 1)
    parts = router_parts(grid_graph(rows=6, cols=6, seed=11))
    rng = random.Random(9)
    slowed = {
        edge_id: edge.current_weight * rng.uniform(1.5, 4.0)
        for edge_id, edge in parts.registry.current().edges.items()
        if not edge.is_shortcut
    }

    batch = parts.updater.apply_weights(slowed)
    snapshot = parts.registry.current()

    assert batch.degraded
    assert snapshot.degraded_count == len(batch.degraded)
    for src in sorted(snapshot.nodes):
        for dst in sorted(snapshot.nodes):
            if src == dst:
                continue
            expected = base_dijkstra(snapshot, src, dst)
            assert expected is not None
            result = parts.planner.find_route(src, dst, deadline_ms=10_000)
            assert result.total_weight == pytest.approx(expected[0], rel=1e-9)
            assert result.approximate is True
            assert result.diagnostics["base_fallback"] is True
            _assert_contiguous(snapshot, result.edges, src, dst)


def test_unknown_node_and_unsnappable_coordinates(scenario_graph, router_parts) -> None:
    parts = router_parts(scenario_graph)
    with pytest.raises(NodeNotFound):
        parts.planner.find_route(999, E)
    with pytest.raises(NodeNotFound):
        parts.planner.find_route((10.0, 10.0), E)


def test_coordinates_snap_to_nearest_node(scenario_graph, router_parts) -> None:
    parts = router_parts(scenario_graph)
    snapshot = parts.registry.current()

    node_id, dist = nearest_node(snapshot, lat=52.00001, lon=-1.00001)
    result = parts.planner.find_route((52.00001, -1.00001), (52.00299, -0.99801), deadline_ms=5_000)

    assert node_id == A
    assert dist < 5.0
    assert result.edges == (0, 2)


def test_unreachable_destination_raises_no_path(scenario_graph, router_parts) -> None:
    parts = router_parts(scenario_graph)
    with pytest.raises(NoPathExists) as exc_info:
        parts.planner.find_route(E, A, deadline_ms=5_000)
    assert exc_info.value.details == {"source": E, "destination": A}


def test_same_source_and_destination_is_an_empty_route(scenario_graph, router_parts) -> None:
    parts = router_parts(scenario_graph)
    result = parts.planner.find_route(C, C)
    assert result.edges == ()
    assert result.total_weight == 0.0


def test_mode_selection_by_straight_line_distance(scenario_graph, router_parts) -> None:
    planner = router_parts(scenario_graph).planner
    assert planner.select_mode(100.0) == MODE_SHORT
    assert planner.select_mode(10_000.0) == MODE_MEDIUM
    assert planner.select_mode(100_000.0) == MODE_LONG


def test_stale_flag_when_updates_wait_past_the_bound(scenario_graph, router_parts) -> None:
    parts = router_parts(scenario_graph)
    parts.registry.note_pending(time.monotonic() - settings.staleness_bound_s - 5.0)
    assert parts.planner.find_route(A, E, deadline_ms=5_000).stale is True


def test_planner_without_published_snapshot_is_unavailable() -> None:
    planner = RoutePlanner(SnapshotRegistry())
    with pytest.raises(RoutingError) as exc_info:
        planner.find_route(1, 2)
    assert exc_info.value.reason_code == "snapshot_unavailable"

