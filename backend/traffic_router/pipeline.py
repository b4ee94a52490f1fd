from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .dependency_store import DependencyIndex, DependencyStore
from .device_state import DeviceStateStore
from .edge_weight_updater import EdgeWeightUpdater, UpdateBatchResult
from .graph_loader import graph_asset_path, load_road_graph
from .graph_model import GraphSnapshot, RoadSegmentSpeedSample
from .graph_store import GraphStore, HttpGraphStore, InMemoryGraphStore
from .hierarchy_builder import build_hierarchy
from .logging_utils import log_event
from .map_matcher import (
    STATUS_LOW_CONFIDENCE,
    STATUS_MATCHED,
    STATUS_NO_CANDIDATES,
    STATUS_OUT_OF_ORDER,
    MapMatcher,
    MatchResult,
    PositionFix,
)
from .partitions import DropOldestQueue, PartitionWorker, StickyPartitioner, segment_partition
from .rebuild import HierarchyRebuilder, PeriodicRebuilds
from .route_planner import RoutePlanner
from .settings import settings
from .snapshot_codec import read_snapshot
from .snapshot_registry import SnapshotRegistry
from .speed_aggregator import SpeedAggregator


@dataclass
class IngestReport:
    fixes: int = 0
    matched: int = 0
    low_confidence: int = 0
    no_candidates: int = 0
    out_of_order: int = 0
    samples: int = 0
    aggregates_published: int = 0
    batches_applied: int = 0
    snapshot_version: int | None = None

    def count(self, result: MatchResult) -> None:
        self.fixes += 1
        if result.status == STATUS_MATCHED:
            self.matched += 1
        elif result.status == STATUS_LOW_CONFIDENCE:
            self.low_confidence += 1
        elif result.status == STATUS_NO_CANDIDATES:
            self.no_candidates += 1
        elif result.status == STATUS_OUT_OF_ORDER:
            self.out_of_order += 1

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_initial_snapshot(*, graph_path: Path | None = None, snapshot_file: Path | None = None) -> GraphSnapshot:
    """Prefer a persisted snapshot; otherwise stream the road graph and contract it."""
    explicit = snapshot_file or (Path(settings.snapshot_asset_path) if settings.snapshot_asset_path.strip() else None)
    if explicit is not None and explicit.exists():
        snapshot = read_snapshot(explicit)
        log_event("snapshot_bootstrap", source="snapshot_file", path=str(explicit), version=snapshot.version)
        return snapshot
    graph = load_road_graph(graph_path or graph_asset_path())
    result = build_hierarchy(graph, version=1)
    log_event("snapshot_bootstrap", source="road_graph", version=result.snapshot.version)
    return result.snapshot


def default_graph_store() -> GraphStore:
    if settings.graph_store_url.strip():
        return HttpGraphStore(settings.graph_store_url)
    return InMemoryGraphStore()


class _MaintenanceLoop(threading.Thread):
    """Flushes debounced weight batches and checkpoints device state."""

    def __init__(self, pipeline: TrafficPipeline, *, interval_s: float) -> None:
        super().__init__(name="pipeline-maintenance", daemon=True)
        self._pipeline = pipeline
        self._interval_s = max(0.02, float(interval_s))
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval_s):
            try:
                self._pipeline.tick()
            except Exception as exc:  # pragma: no cover - loop must outlive a failed tick
                log_event(
                    "pipeline_tick_failed",
                    level=logging.ERROR,
                    error_type=type(exc).__name__,
                    error_message=str(exc).strip() or type(exc).__name__,
                )

    def stop(self, timeout_s: float = 2.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout_s)


class TrafficPipeline:
    """Fixes -> map-matching -> speed aggregation -> weight updates -> published snapshots.

    Matching is partitioned by device (sticky geographic partition), aggregation
    by segment. Each partition has one queue and one worker, so per-device and
    per-segment state is single-writer.
    """

    def __init__(
        self,
        registry: SnapshotRegistry,
        *,
        graph_store: GraphStore | None = None,
        dependency_store: DependencyStore | None = None,
    ) -> None:
        self.registry = registry
        self.graph_store = graph_store if graph_store is not None else default_graph_store()
        self.dependency_store = dependency_store or DependencyStore()
        self.index = DependencyIndex(self.dependency_store)
        self.updater = EdgeWeightUpdater(
            registry,
            self.dependency_store,
            graph_store=self.graph_store,
            index=self.index,
        )
        self.planner = RoutePlanner(registry)
        self.rebuilder = HierarchyRebuilder(
            registry,
            self.dependency_store,
            self.updater,
            graph_store=self.graph_store,
        )
        self.partitioner = StickyPartitioner(settings.match_partitions)
        self.matchers = [
            MapMatcher(registry.current, DeviceStateStore(partition)) for partition in range(self.partitioner.partitions)
        ]
        aggregate_partitions = max(1, int(settings.aggregate_partitions))
        self.aggregators = [SpeedAggregator(partition) for partition in range(aggregate_partitions)]
        self._watermarks = [0.0] * aggregate_partitions
        self.match_queues: list[DropOldestQueue[PositionFix]] = [
            DropOldestQueue(partition=partition, name="match") for partition in range(len(self.matchers))
        ]
        self.aggregate_queues: list[DropOldestQueue[RoadSegmentSpeedSample]] = [
            DropOldestQueue(partition=partition, name="aggregate") for partition in range(aggregate_partitions)
        ]
        self._workers: list[PartitionWorker] = []
        self._maintenance: _MaintenanceLoop | None = None
        self._periodic: PeriodicRebuilds | None = None
        self._running = False

    @classmethod
    def bootstrap(
        cls,
        *,
        graph_path: Path | None = None,
        snapshot_file: Path | None = None,
        graph_store: GraphStore | None = None,
    ) -> TrafficPipeline:
        snapshot = load_initial_snapshot(graph_path=graph_path, snapshot_file=snapshot_file)
        registry = SnapshotRegistry()
        registry.publish(snapshot)
        pipeline = cls(registry, graph_store=graph_store)
        pipeline.dependency_store.load(snapshot.dependencies())
        pipeline.updater.reset_from_snapshot(snapshot)
        if isinstance(pipeline.graph_store, InMemoryGraphStore):
            pipeline.graph_store.load_snapshot(snapshot)
        return pipeline

    @property
    def running(self) -> bool:
        return self._running

    # --- single-partition handlers (called by that partition's worker only) ---

    def _match(self, fix: PositionFix, report: IngestReport | None = None) -> RoadSegmentSpeedSample | None:
        partition = self.partitioner.assign(fix.device_id, fix.lat, fix.lon)
        result = self.matchers[partition].match(fix)
        if report is not None:
            report.count(result)
        return result.sample

    def _aggregate(self, sample: RoadSegmentSpeedSample, report: IngestReport | None = None) -> None:
        partition = segment_partition(sample.segment_id, len(self.aggregators))
        self._watermarks[partition] = max(self._watermarks[partition], float(sample.timestamp))
        aggregate = self.aggregators[partition].add(sample)
        if report is not None:
            report.samples += 1
        if aggregate is not None:
            self.updater.submit(aggregate)
            if report is not None:
                report.aggregates_published += 1

    def _advance_aggregators(self, report: IngestReport | None = None) -> None:
        for partition, aggregator in enumerate(self.aggregators):
            for aggregate in aggregator.advance(self._watermarks[partition]):
                self.updater.submit(aggregate)
                if report is not None:
                    report.aggregates_published += 1

    def _handle_fix(self, fix: PositionFix) -> None:
        sample = self._match(fix)
        if sample is not None:
            self.aggregate_queues[segment_partition(sample.segment_id, len(self.aggregators))].put(sample)

    # --- public surface ---

    def process(self, fixes: Iterable[PositionFix], *, flush: bool = True) -> IngestReport:
        """Run fixes through every stage inline, in order (replays and tests)."""
        report = IngestReport()
        for fix in fixes:
            sample = self._match(fix, report)
            if sample is not None:
                self._aggregate(sample, report)
        self._advance_aggregators(report)
        if flush and self.updater.pending_count():
            result = self.updater.flush()
            if result.version is not None:
                report.batches_applied += 1
        report.snapshot_version = self.registry.current().version
        return report

    def ingest(self, fixes: Iterable[PositionFix]) -> tuple[int, int]:
        """Queue fixes for the partition workers; returns (accepted, dropped_oldest)."""
        accepted = dropped = 0
        for fix in fixes:
            partition = self.partitioner.assign(fix.device_id, fix.lat, fix.lon)
            if not self.match_queues[partition].put(fix):
                dropped += 1
            accepted += 1
        return accepted, dropped

    def tick(self, now: float | None = None) -> UpdateBatchResult | None:
        current = time.monotonic() if now is None else float(now)
        result = self.updater.maybe_flush(current)
        for matcher in self.matchers:
            if matcher.state.checkpoint_due(current):
                self._checkpoint(matcher)
        return result

    def _checkpoint(self, matcher: MapMatcher) -> None:
        forgotten = self.partitioner.forget(matcher.state.evict_idle())
        if forgotten:
            log_event("devices_unpinned", partition=matcher.state.partition, devices=forgotten)
        matcher.state.checkpoint()

    def wait_idle(self, timeout_s: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout_s
        for queue in [*self.match_queues, *self.aggregate_queues]:
            if not queue.wait_idle(max(0.0, deadline - time.monotonic())):
                return False
        return True

    def start(self) -> None:
        if self._running:
            return
        for matcher in self.matchers:
            matcher.state.restore()
        for partition, queue in enumerate(self.match_queues):
            self._workers.append(PartitionWorker(f"match-p{partition}", queue, self._handle_fix))
        for partition, queue in enumerate(self.aggregate_queues):
            self._workers.append(
                PartitionWorker(
                    f"aggregate-p{partition}",
                    queue,
                    self._aggregate,
                    on_idle=lambda p=partition: self._advance_partition(p),
                )
            )
        for worker in self._workers:
            worker.start()
        self._maintenance = _MaintenanceLoop(self, interval_s=settings.updater_debounce_ms / 4000.0)
        self._maintenance.start()
        self._periodic = PeriodicRebuilds(self.rebuilder)
        self._periodic.start()
        self._running = True
        log_event(
            "pipeline_started",
            match_partitions=len(self.match_queues),
            aggregate_partitions=len(self.aggregate_queues),
        )

    def _advance_partition(self, partition: int) -> None:
        for aggregate in self.aggregators[partition].advance(self._watermarks[partition]):
            self.updater.submit(aggregate)

    def stop(self) -> None:
        if not self._running:
            return
        if self._periodic is not None:
            self._periodic.stop()
        for worker in self._workers:
            worker.stop()
        if self._maintenance is not None:
            self._maintenance.stop()
        self._workers = []
        self._running = False
        if self.updater.pending_count():
            self.updater.flush()
        for matcher in self.matchers:
            self._checkpoint(matcher)
        if isinstance(self.graph_store, HttpGraphStore):
            self.graph_store.close()
        log_event("pipeline_stopped", snapshot_version=self.registry.current().version)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "registry": self.registry.status(),
            "stale": self.registry.is_stale(),
            "pending_aggregates": self.updater.pending_count(),
            "shortcut_states": self.updater.tracker.counts(),
            "dependency_sequence": self.dependency_store.sequence,
            "queues": {
                "match": [len(queue) for queue in self.match_queues],
                "aggregate": [len(queue) for queue in self.aggregate_queues],
            },
            "devices": sum(len(matcher.state) for matcher in self.matchers),
            "rebuild": self.rebuilder.status(),
        }
