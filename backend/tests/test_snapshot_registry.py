from __future__ import annotations

import gc

import pytest

from traffic_router.graph_model import ShortcutState
from traffic_router.routing_errors import RoutingError
from traffic_router.snapshot_registry import SnapshotRegistry


def test_current_before_publish_is_unavailable() -> None:
    registry = SnapshotRegistry()

    assert registry.has_snapshot() is False
    assert registry.next_version() == 1
    with pytest.raises(RoutingError) as excinfo:
        registry.current()
    assert excinfo.value.reason_code == "snapshot_unavailable"


def test_versions_must_increase(diamond_snapshot) -> None:
    registry = SnapshotRegistry()
    registry.publish(diamond_snapshot)

    with pytest.raises(ValueError):
        registry.publish(diamond_snapshot)
    assert registry.next_version() == 2


def test_reader_keeps_its_version_across_a_publish(diamond_snapshot) -> None:
    registry = SnapshotRegistry()
    registry.publish(diamond_snapshot)
    pinned = registry.current()

    registry.publish(pinned.derive(version=2, state_updates={10: ShortcutState.DIRTY}))

    assert pinned.version == 1
    assert pinned.shortcut_states[10] is ShortcutState.CLEAN
    assert registry.current().shortcut_states[10] is ShortcutState.DIRTY
    assert registry.get(1) is pinned


def test_unreferenced_old_versions_are_released(diamond_snapshot) -> None:
    registry = SnapshotRegistry(retain_versions=1)
    first = diamond_snapshot.derive(version=1)
    registry.publish(first)
    del first
    for version in (2, 3):
        registry.publish(registry.current().derive(version=version))
    gc.collect()

    assert registry.get(1) is None
    assert registry.get(3) is registry.current()
    assert registry.status()["live_versions"] == [3]


def test_staleness_is_bounded_from_first_pending_change(diamond_snapshot) -> None:
    registry = SnapshotRegistry(staleness_bound_s=30.0)
    registry.publish(diamond_snapshot)

    registry.note_pending(100.0)
    registry.note_pending(120.0)

    assert registry.is_stale(125.0) is False
    assert registry.is_stale(131.0) is True
    registry.publish(diamond_snapshot.derive(version=2))
    assert registry.is_stale(500.0) is False
    assert registry.status()["pending_since"] is None
