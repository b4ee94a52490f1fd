from __future__ import annotations

import dataclasses
import logging
import threading
import time
from datetime import UTC, datetime
from typing import Any

from .dependency_store import DependencyStore
from .edge_weight_updater import EdgeWeightUpdater
from .graph_model import GraphSnapshot
from .graph_store import GraphStore, SnapshotDelta
from .hierarchy_builder import HierarchyBuilder
from .logging_utils import log_event
from .metrics_store import increment, observe
from .routing_errors import GraphStoreUnavailable, RebuildInProgress
from .settings import settings
from .snapshot_registry import SnapshotRegistry


def _iso_utc_now() -> str:
    return datetime.now(UTC).isoformat()


class HierarchyRebuilder:
    """Rebuilds the hierarchy from current base weights off the query path.

    Status moves idle -> building -> ready | failed; a failed rebuild leaves the
    previous snapshot live. At most one rebuild runs at a time, whether started in
    the background or inline.
    """

    def __init__(
        self,
        registry: SnapshotRegistry,
        dependency_store: DependencyStore,
        updater: EdgeWeightUpdater,
        *,
        graph_store: GraphStore | None = None,
        builder: HierarchyBuilder | None = None,
    ) -> None:
        self._registry = registry
        self._dependency_store = dependency_store
        self._updater = updater
        self._graph_store = graph_store
        self._builder = builder
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._building = False
        self._state = "idle"
        self._started_at: str | None = None
        self._finished_at: str | None = None
        self._last_error: str | None = None
        self._last_version: int | None = None
        self._last_stats: dict[str, Any] = {}

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state,
                "started_at_utc": self._started_at,
                "finished_at_utc": self._finished_at,
                "last_error": self._last_error,
                "last_version": self._last_version,
                "running": self._building,
                "stats": dict(self._last_stats),
            }

    def start(self) -> bool:
        """Start a background rebuild; returns False if one is already running."""
        with self._lock:
            if self._building:
                return False
            self._claim_locked()
            thread = threading.Thread(target=self._worker, name="hierarchy-rebuild", daemon=True)
            self._thread = thread
        thread.start()
        return True

    def join(self, timeout_s: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout_s)

    def _claim_locked(self) -> None:
        self._building = True
        self._state = "building"
        self._started_at = _iso_utc_now()
        self._finished_at = None
        self._last_error = None

    def _worker(self) -> None:
        try:
            self._rebuild()
        except Exception as exc:  # pragma: no cover - status carries the failure
            log_event(
                "hierarchy_rebuild_failed",
                level=logging.ERROR,
                error_type=type(exc).__name__,
                error_message=str(exc).strip() or type(exc).__name__,
            )

    def rebuild_now(self) -> int:
        """Rebuild inline; raises RebuildInProgress if another rebuild holds the slot."""
        with self._lock:
            if self._building:
                raise RebuildInProgress(self._started_at)
            self._claim_locked()
        return self._rebuild()

    def _rebuild(self) -> int:
        try:
            return self._build_and_swap()
        finally:
            with self._lock:
                self._building = False

    def _build_and_swap(self) -> int:
        started = time.monotonic()
        try:
            base = self._registry.current().base_graph()
            builder = self._builder or HierarchyBuilder()
            result = builder.build(base, version=0)
            with self._updater.exclusive():
                latest = self._registry.current()
                rebuilt = dataclasses.replace(result.snapshot, version=latest.version + 1)
                self._registry.publish(rebuilt)
                self._dependency_store.reset(result.dependencies)
                self._updater.reset_from_snapshot(rebuilt)
                # Weights that moved while the build ran are replayed onto the new hierarchy.
                drift = {
                    edge_id: float(latest.edges[edge_id].current_weight)
                    for edge_id in base.edges
                    if edge_id in latest.edges
                    and abs(float(latest.edges[edge_id].current_weight) - float(base.edges[edge_id].current_weight)) > 1e-9
                }
                if drift:
                    self._updater.apply_weights(drift)
            self._write_full(rebuilt)
        except Exception as exc:
            with self._lock:
                self._state = "failed"
                self._finished_at = _iso_utc_now()
                self._last_error = f"{type(exc).__name__}: {str(exc).strip()}"
            raise
        duration_ms = (time.monotonic() - started) * 1000.0
        observe("hierarchy_rebuild", duration_ms)
        with self._lock:
            self._state = "ready"
            self._finished_at = _iso_utc_now()
            self._last_version = rebuilt.version
            self._last_stats = dict(result.stats)
        log_event(
            "hierarchy_rebuild_ready",
            version=rebuilt.version,
            replayed_edges=len(drift),
            duration_ms=round(duration_ms, 2),
        )
        return rebuilt.version

    def _write_full(self, snapshot: GraphSnapshot) -> None:
        if self._graph_store is None:
            return
        delta = SnapshotDelta(
            version=snapshot.version,
            edges=tuple(snapshot.edges[edge_id] for edge_id in sorted(snapshot.edges)),
            nodes=tuple(snapshot.nodes[node_id] for node_id in sorted(snapshot.nodes)),
            shortcut_states=dict(snapshot.shortcut_states),
            replace=True,
        )
        try:
            self._graph_store.put_snapshot(snapshot.version, delta)
        except GraphStoreUnavailable as exc:
            increment("graph_store_write_failures")
            log_event(
                "graph_store_write_failed",
                level=logging.WARNING,
                version=snapshot.version,
                reason_code=exc.reason_code,
            )


class PeriodicRebuilds(threading.Thread):
    """Triggers a rebuild every `rebuild_interval_s` at low priority (skips if one is running)."""

    def __init__(self, rebuilder: HierarchyRebuilder, *, interval_s: float | None = None) -> None:
        super().__init__(name="hierarchy-rebuild-timer", daemon=True)
        self._rebuilder = rebuilder
        self._interval_s = float(interval_s or settings.rebuild_interval_s)
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval_s):
            self._rebuilder.start()

    def stop(self) -> None:
        self._stop_event.set()
