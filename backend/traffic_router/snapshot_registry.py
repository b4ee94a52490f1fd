from __future__ import annotations

import time
import weakref
from collections import deque
from threading import Lock

from .graph_model import GraphSnapshot
from .logging_utils import log_event
from .metrics_store import increment, set_gauge
from .routing_errors import RoutingError
from .settings import settings


class SnapshotRegistry:
    """Holds the current snapshot and publishes new ones with a single reference swap.

    Readers call `current()` once and keep that reference for the whole query.
    Old versions stay reachable through `get()` while some reader still holds
    them (or while they are among the last few retained versions).
    """

    def __init__(self, *, retain_versions: int | None = None, staleness_bound_s: float | None = None) -> None:
        self._lock = Lock()
        self._current: GraphSnapshot | None = None
        self._versions: weakref.WeakValueDictionary[int, GraphSnapshot] = weakref.WeakValueDictionary()
        self._retained: deque[GraphSnapshot] = deque(
            maxlen=max(1, int(retain_versions or settings.snapshot_retain_versions))
        )
        self._staleness_bound_s = float(staleness_bound_s or settings.staleness_bound_s)
        self._pending_since: float | None = None
        self._published_count = 0

    def publish(self, snapshot: GraphSnapshot) -> GraphSnapshot:
        with self._lock:
            if self._current is not None and snapshot.version <= self._current.version:
                raise ValueError(
                    f"snapshot version {snapshot.version} must exceed current version {self._current.version}"
                )
            self._versions[snapshot.version] = snapshot
            self._retained.append(snapshot)
            self._current = snapshot
            self._pending_since = None
            self._published_count += 1
        increment("snapshots_published")
        set_gauge("snapshot_version", snapshot.version)
        log_event(
            "snapshot_published",
            version=snapshot.version,
            node_count=len(snapshot.nodes),
            edge_count=len(snapshot.edges),
        )
        return snapshot

    def current(self) -> GraphSnapshot:
        snapshot = self._current
        if snapshot is None:
            raise RoutingError("snapshot_unavailable", "no graph snapshot has been published yet")
        return snapshot

    def has_snapshot(self) -> bool:
        return self._current is not None

    def get(self, version: int) -> GraphSnapshot | None:
        with self._lock:
            return self._versions.get(int(version))

    def next_version(self) -> int:
        snapshot = self._current
        return 1 if snapshot is None else snapshot.version + 1

    def note_pending(self, now: float | None = None) -> None:
        """Record that weight changes are waiting for the next publish."""
        with self._lock:
            if self._pending_since is None:
                self._pending_since = time.monotonic() if now is None else float(now)

    def clear_pending(self) -> None:
        """Forget pending changes that turned out to need no publish."""
        with self._lock:
            self._pending_since = None

    def is_stale(self, now: float | None = None) -> bool:
        pending = self._pending_since
        if pending is None:
            return False
        current = time.monotonic() if now is None else float(now)
        return (current - pending) > self._staleness_bound_s

    def status(self) -> dict[str, object]:
        with self._lock:
            snapshot = self._current
            return {
                "current_version": None if snapshot is None else snapshot.version,
                "live_versions": sorted(self._versions.keys()),
                "published_count": self._published_count,
                "pending_since": self._pending_since,
            }
