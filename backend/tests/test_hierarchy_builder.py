from __future__ import annotations

import pytest

from traffic_router.graph_model import ShortcutState
from traffic_router.graph_search import base_dijkstra
from traffic_router.hierarchy_builder import HierarchyBuilder, build_hierarchy
from traffic_router.settings import settings


def _assert_shortcuts_well_formed(snapshot) -> None:
    for edge in snapshot.edges.values():
        if not edge.is_shortcut:
            assert edge.segment_count == 1
            continue
        assert edge.constituents is not None
        first, second = (snapshot.edges[e] for e in edge.constituents)
        assert first.from_node == edge.from_node
        assert first.to_node == second.from_node == edge.via_node
        assert second.to_node == edge.to_node
        assert edge.current_weight == pytest.approx(first.current_weight + second.current_weight)
        assert edge.segment_count == first.segment_count + second.segment_count
        via = snapshot.nodes[edge.via_node]
        assert via.rank < snapshot.nodes[edge.from_node].rank
        assert via.rank < snapshot.nodes[edge.to_node].rank
        assert snapshot.shortcut_states[edge.edge_id] is ShortcutState.CLEAN


def test_scenario_graph_builds_three_nested_levels(scenario_graph) -> None:
    result = build_hierarchy(scenario_graph)
    snapshot = result.snapshot

    assert snapshot.version == 1
    assert sorted(node.rank for node in snapshot.nodes.values()) == [1, 2, 3, 4, 5]
    assert set(result.levels[1]) == set(scenario_graph.nodes)
    assert set(result.levels[3]) <= set(result.levels[2]) <= set(result.levels[1])
    assert result.stats["node_count"] == 5
    assert result.stats["base_edge_count"] == 5
    _assert_shortcuts_well_formed(snapshot)
    for edge_id, edge in scenario_graph.edges.items():
        assert snapshot.edges[edge_id].current_weight == edge.current_weight


def test_grid_contraction_adds_valid_shortcuts(grid_graph) -> None:
    graph = grid_graph(6, 6, seed=11)

    result = build_hierarchy(graph)

    assert result.stats["shortcut_count"] > 0
    assert result.stats["core_node_count"] == 0
    _assert_shortcuts_well_formed(result.snapshot)
    shortcut_ids = {e.edge_id for e in result.snapshot.edges.values() if e.is_shortcut}
    assert {row.shortcut_edge_id for row in result.dependencies} == shortcut_ids
    assert len(result.dependencies) == 2 * len(shortcut_ids)


def test_edge_level_is_the_lower_endpoint_level(grid_graph) -> None:
    snapshot = build_hierarchy(grid_graph(5, 5, seed=3)).snapshot

    for edge in snapshot.edges.values():
        expected = min(snapshot.nodes[edge.from_node].level, snapshot.nodes[edge.to_node].level)
        assert edge.level == expected


def test_witness_budget_leaves_uncontracted_core(grid_graph) -> None:
    graph = grid_graph(5, 5, seed=5)

    result = HierarchyBuilder(node_budget=1).build(graph)
    snapshot = result.snapshot

    core = [node for node in snapshot.nodes.values() if not node.contracted]
    assert result.stats["core_node_count"] == len(core) > 0
    top_contracted = max((n.rank for n in snapshot.nodes.values() if n.contracted), default=0)
    assert all(node.rank > top_contracted for node in core)


def test_time_budget_leaves_every_node_in_the_core_and_routes_stay_exact(
    grid_graph,
    router_parts,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(settings, "route_short_distance_m", 0.0)
    monkeypatch.setattr(settings, "route_long_distance_m", 1e9)
    graph = grid_graph(4, 4, seed=9)

    result = HierarchyBuilder(time_budget_s=1e-9).build(graph)

    assert result.stats["time_budget_hit"] is True
    assert result.stats["shortcut_count"] == 0
    assert all(not node.contracted for node in result.snapshot.nodes.values())
    parts = router_parts(result.snapshot)
    route = parts.planner.find_route(0, 15, deadline_ms=5_000)
    expected = base_dijkstra(result.snapshot, 0, 15)
    assert expected is not None
    assert route.total_weight == pytest.approx(expected[0])


def test_level_thresholds_must_be_ordered() -> None:
    with pytest.raises(ValueError):
        HierarchyBuilder(level2_percentile=0.9, level3_percentile=0.8)


def test_rebuild_from_base_graph_reproduces_weights(grid_graph) -> None:
    first = build_hierarchy(grid_graph(4, 4, seed=2)).snapshot

    again = build_hierarchy(first.base_graph(), version=2).snapshot

    assert again.version == 2
    base_first = {e.edge_id: e.current_weight for e in first.edges.values() if not e.is_shortcut}
    base_again = {e.edge_id: e.current_weight for e in again.edges.values() if not e.is_shortcut}
    assert base_first == base_again
