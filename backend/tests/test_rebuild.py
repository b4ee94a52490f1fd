from __future__ import annotations

import threading
import time

import pytest

from traffic_router.graph_model import ShortcutState
from traffic_router.graph_search import base_dijkstra
from traffic_router.hierarchy_builder import HierarchyBuilder
from traffic_router.metrics_store import METRICS
from traffic_router.rebuild import HierarchyRebuilder, PeriodicRebuilds
from traffic_router.routing_errors import GraphStoreUnavailable, RebuildInProgress


class _HookedBuilder(HierarchyBuilder):
    def __init__(self, before_build) -> None:
        super().__init__()
        self._before_build = before_build

    def build(self, graph, *, version=1):
        self._before_build()
        return super().build(graph, version=version)


class _FailingBuilder(HierarchyBuilder):
    def build(self, graph, *, version=1):
        raise RuntimeError("contraction blew up")


def _rebuilder(parts, **kwargs) -> HierarchyRebuilder:
    return HierarchyRebuilder(parts.registry, parts.dependency_store, parts.updater, graph_store=parts.graph_store, **kwargs)


def test_rebuild_publishes_next_version_and_rewrites_the_store(grid_graph, router_parts) -> None:
    parts = router_parts(grid_graph(5, 5, seed=4))
    parts.updater.apply_weights({0: 500.0, 7: 400.0})
    before = parts.registry.current()
    rebuilder = _rebuilder(parts)

    version = rebuilder.rebuild_now()

    rebuilt = parts.registry.current()
    assert version == rebuilt.version == before.version + 1
    assert rebuilt.edges[0].current_weight == 500.0
    assert set(parts.dependency_store.rows()) == set(rebuilt.dependencies())
    assert all(state is ShortcutState.CLEAN for state in rebuilt.shortcut_states.values())
    assert parts.graph_store.versions()[-1] == version
    stored_ids = {eid for eid in rebuilt.edges if parts.graph_store.get_edge(eid) is not None}
    assert stored_ids == set(rebuilt.edges)
    status = rebuilder.status()
    assert status["state"] == "ready"
    assert status["last_version"] == version
    assert status["stats"]["node_count"] == 25


def test_weights_changed_during_a_build_are_replayed(grid_graph, router_parts) -> None:
    parts = router_parts(grid_graph(4, 4, seed=8))

    def _concurrent_update() -> None:
        parts.updater.apply_weights({3: 999.0})

    rebuilder = _rebuilder(parts, builder=_HookedBuilder(_concurrent_update))
    version = rebuilder.rebuild_now()

    final = parts.registry.current()
    assert final.version == version + 1
    assert final.edges[3].current_weight == 999.0
    # Replayed deltas keep every route valid; exactness returns with the next rebuild.
    expected = base_dijkstra(final, 0, 15)
    route = parts.planner.find_route(0, 15, deadline_ms=5_000)
    assert expected is not None
    assert route.total_weight == pytest.approx(sum(final.edges[e].current_weight for e in route.edges))
    assert route.total_weight >= expected[0] - 1e-9


def test_failed_rebuild_keeps_the_live_snapshot(diamond_snapshot, router_parts) -> None:
    parts = router_parts(diamond_snapshot)
    rebuilder = _rebuilder(parts, builder=_FailingBuilder())

    with pytest.raises(RuntimeError):
        rebuilder.rebuild_now()

    assert parts.registry.current() is diamond_snapshot
    status = rebuilder.status()
    assert status["state"] == "failed"
    assert "contraction blew up" in status["last_error"]


def test_graph_store_outage_does_not_fail_the_rebuild(diamond_snapshot, router_parts) -> None:
    class _DownStore:
        def put_snapshot(self, version, delta) -> None:
            raise GraphStoreUnavailable("put_snapshot")

    parts = router_parts(diamond_snapshot)
    rebuilder = HierarchyRebuilder(parts.registry, parts.dependency_store, parts.updater, graph_store=_DownStore())

    rebuilder.rebuild_now()

    assert rebuilder.status()["state"] == "ready"
    assert METRICS.counter("graph_store_write_failures") == 1


def test_background_rebuild_runs_one_at_a_time(diamond_snapshot, router_parts) -> None:
    parts = router_parts(diamond_snapshot)
    release = threading.Event()
    rebuilder = _rebuilder(parts, builder=_HookedBuilder(lambda: release.wait(5.0)))

    assert rebuilder.start() is True
    assert rebuilder.status()["state"] == "building"
    assert rebuilder.start() is False
    release.set()
    rebuilder.join(5.0)

    status = rebuilder.status()
    assert status["state"] == "ready"
    assert status["running"] is False
    assert status["finished_at_utc"] is not None
    assert parts.registry.current().version == 2


def test_periodic_rebuilds_fire_until_stopped(diamond_snapshot, router_parts) -> None:
    parts = router_parts(diamond_snapshot)
    rebuilder = _rebuilder(parts)
    timer = PeriodicRebuilds(rebuilder, interval_s=0.02)

    timer.start()
    try:
        deadline = time.monotonic() + 5.0
        while rebuilder.status()["last_version"] is None and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        timer.stop()
        timer.join(1.0)
        rebuilder.join(5.0)

    assert rebuilder.status()["last_version"] is not None
    assert not timer.is_alive()


def test_inline_rebuild_refuses_while_a_background_one_runs(diamond_snapshot, router_parts) -> None:
    parts = router_parts(diamond_snapshot)
    release = threading.Event()
    rebuilder = _rebuilder(parts, builder=_HookedBuilder(lambda: release.wait(5.0)))

    assert rebuilder.start() is True
    with pytest.raises(RebuildInProgress) as exc_info:
        rebuilder.rebuild_now()
    assert exc_info.value.reason_code == "rebuild_in_progress"
    release.set()
    rebuilder.join(5.0)

    assert parts.registry.current().version == 2
    # The slot is free again once the background rebuild has finished.
    assert rebuilder.rebuild_now() == 3
    assert rebuilder.status()["running"] is False
