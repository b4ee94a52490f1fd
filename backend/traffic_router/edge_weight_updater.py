from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from threading import Lock, RLock

from .dependency_store import DependencyIndex, DependencyStore
from .graph_model import Edge, GraphSnapshot, Node, ShortcutState, SpeedAggregate
from .graph_store import GraphStore, SnapshotDelta
from .logging_utils import log_event
from .metrics_store import increment, observe
from .routing_errors import GraphStoreUnavailable, RecomputeFailure, RoutingError
from .settings import settings
from .snapshot_registry import SnapshotRegistry

_TRANSITIONS: dict[ShortcutState, frozenset[ShortcutState]] = {
    ShortcutState.CLEAN: frozenset({ShortcutState.DIRTY}),
    ShortcutState.DIRTY: frozenset({ShortcutState.RECOMPUTING, ShortcutState.DEGRADED}),
    ShortcutState.RECOMPUTING: frozenset({ShortcutState.CLEAN, ShortcutState.DIRTY, ShortcutState.DEGRADED}),
    ShortcutState.DEGRADED: frozenset(),
}


class ShortcutStateTracker:
    """Clean -> Dirty -> Recomputing -> Clean, with Degraded as the terminal failure state."""

    def __init__(self, initial: dict[int, ShortcutState] | None = None) -> None:
        self._states: dict[int, ShortcutState] = dict(initial or {})
        self._attempts: dict[int, int] = {}
        self._dirty_marks: dict[int, int] = {}
        self._needs_full: set[int] = set()

    def state(self, edge_id: int) -> ShortcutState:
        return self._states.get(edge_id, ShortcutState.CLEAN)

    def transition(self, edge_id: int, target: ShortcutState) -> None:
        current = self.state(edge_id)
        if target not in _TRANSITIONS[current]:
            raise ValueError(f"shortcut {edge_id}: illegal transition {current.value} -> {target.value}")
        self._states[edge_id] = target

    def begin_batch(self) -> None:
        self._dirty_marks = {}

    def mark_dirty(self, edge_id: int) -> bool:
        """Mark once per batch; returns False if already marked or no longer eligible."""
        if edge_id in self._dirty_marks:
            return False
        current = self.state(edge_id)
        if current is ShortcutState.DEGRADED:
            return False
        if current is not ShortcutState.DIRTY:
            self.transition(edge_id, ShortcutState.DIRTY)
        self._dirty_marks[edge_id] = self._dirty_marks.get(edge_id, 0) + 1
        return True

    @property
    def dirty_marks(self) -> dict[int, int]:
        return dict(self._dirty_marks)

    def record_failure(self, edge_id: int) -> int:
        self._attempts[edge_id] = self._attempts.get(edge_id, 0) + 1
        return self._attempts[edge_id]

    def clear_failures(self, edge_id: int) -> None:
        self._attempts.pop(edge_id, None)
        self._needs_full.discard(edge_id)

    def require_full(self, edge_id: int) -> None:
        self._needs_full.add(edge_id)

    def needs_full(self, edge_id: int) -> bool:
        return edge_id in self._needs_full

    def dirty(self) -> list[int]:
        return sorted(edge_id for edge_id, state in self._states.items() if state is ShortcutState.DIRTY)

    def reset(self, initial: dict[int, ShortcutState]) -> None:
        self._states = dict(initial)
        self._attempts = {}
        self._needs_full = set()
        self._dirty_marks = {}

    def counts(self) -> dict[str, int]:
        out = {state.value: 0 for state in ShortcutState}
        for state in self._states.values():
            out[state.value] += 1
        return out


@dataclass
class UpdateBatchResult:
    version: int | None = None
    base_edges_changed: int = 0
    shortcuts_affected: int = 0
    tiers: int = 0
    cheap_updates: int = 0
    full_recomputes: int = 0
    failures: int = 0
    degraded: list[int] = field(default_factory=list)
    dirty_marks: dict[int, int] = field(default_factory=dict)
    duration_ms: float = 0.0


def _ceiling_rank(snapshot: GraphSnapshot, edge_id: int) -> int:
    edge = snapshot.edges[edge_id]
    return min(snapshot.nodes[edge.from_node].rank, snapshot.nodes[edge.to_node].rank)


def base_weight_for(edge: Edge, aggregate: SpeedAggregate) -> float:
    speed = max(float(settings.updater_min_speed_mps), float(aggregate.rolling_average))
    return float(edge.length_m) / speed


class EdgeWeightUpdater:
    def __init__(
        self,
        registry: SnapshotRegistry,
        dependency_store: DependencyStore,
        *,
        graph_store: GraphStore | None = None,
        index: DependencyIndex | None = None,
    ) -> None:
        self._registry = registry
        self._dependency_store = dependency_store
        self._index = index or DependencyIndex(dependency_store)
        self._graph_store = graph_store
        self._lock = Lock()
        self._flush_lock = RLock()
        self._pending: dict[int, SpeedAggregate] = {}
        self._window_opened: float | None = None
        self.tracker = ShortcutStateTracker()
        if registry.has_snapshot():
            self.tracker.reset(dict(registry.current().shortcut_states))

    def reset_from_snapshot(self, snapshot: GraphSnapshot) -> None:
        with self._flush_lock:
            self.tracker.reset(dict(snapshot.shortcut_states))

    def submit(self, aggregate: SpeedAggregate, *, now: float | None = None) -> None:
        """Queue an aggregate; later aggregates for the same segment replace earlier ones."""
        current = time.monotonic() if now is None else float(now)
        with self._lock:
            if not self._pending:
                self._window_opened = current
            self._pending[aggregate.segment_id] = aggregate
            self._registry.note_pending(current)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def due(self, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else float(now)
        with self._lock:
            if not self._pending or self._window_opened is None:
                return False
            return (current - self._window_opened) * 1000.0 >= float(settings.updater_debounce_ms)

    def maybe_flush(self, now: float | None = None) -> UpdateBatchResult | None:
        if not self.due(now):
            return None
        return self.flush()

    def flush(self) -> UpdateBatchResult:
        with self._lock:
            batch = self._pending
            self._pending = {}
            self._window_opened = None
        return self.apply(batch.values())

    def apply(self, aggregates: Iterable[SpeedAggregate]) -> UpdateBatchResult:
        with self._flush_lock:
            snapshot = self._registry.current()
            weights: dict[int, float] = {}
            for aggregate in aggregates:
                edge = snapshot.edges.get(aggregate.segment_id)
                if edge is None or edge.is_shortcut:
                    continue
                weights[edge.edge_id] = base_weight_for(edge, aggregate)
            return self._apply_locked(weights)

    def apply_weights(self, weights: Mapping[int, float]) -> UpdateBatchResult:
        """Set base edge travel times directly (seconds) and propagate them."""
        with self._flush_lock:
            return self._apply_locked(dict(weights))

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold off batches, e.g. while a rebuilt hierarchy is swapped in."""
        with self._flush_lock:
            yield

    def _edge(self, snapshot: GraphSnapshot, working: dict[int, Edge], edge_id: int) -> Edge:
        return working.get(edge_id) or snapshot.edges[edge_id]

    def _lower_triangle(
        self,
        snapshot: GraphSnapshot,
        working: dict[int, Edge],
        shortcut: Edge,
    ) -> tuple[float, int, int, int]:
        """Best (weight, via, first, second) over via nodes ranked below both endpoints."""
        nodes = snapshot.nodes
        ceiling = min(nodes[shortcut.from_node].rank, nodes[shortcut.to_node].rank)
        budget = int(settings.updater_triangle_budget)
        examined = 0
        best: tuple[float, int, int, int, int] | None = None
        for first_id in snapshot.out_edges.get(shortcut.from_node, ()):
            if first_id == shortcut.edge_id or self.tracker.state(first_id) is ShortcutState.DEGRADED:
                continue
            first = self._edge(snapshot, working, first_id)
            via = first.to_node
            if nodes[via].rank >= ceiling:
                continue
            for second_id in snapshot.out_edges.get(via, ()):
                examined += 1
                if examined > budget:
                    raise RecomputeFailure(shortcut.edge_id, "triangle search budget exhausted")
                second = self._edge(snapshot, working, second_id)
                if second.to_node != shortcut.to_node or self.tracker.state(second_id) is ShortcutState.DEGRADED:
                    continue
                weight = float(first.current_weight) + float(second.current_weight)
                candidate = (weight, first.segment_count + second.segment_count, via, first_id, second_id)
                if best is None or candidate < best:
                    best = candidate
        if best is None:
            raise RecomputeFailure(shortcut.edge_id, "no lower triangle remains")
        weight, _segments, via, first_id, second_id = best
        return weight, via, first_id, second_id

    def _constituent_delta(self, snapshot: GraphSnapshot, working: dict[int, Edge], shortcut: Edge) -> float:
        total = 0.0
        for dep in shortcut.constituents or ():
            total += float(self._edge(snapshot, working, dep).current_weight) - float(snapshot.edges[dep].current_weight)
        return total

    def _recompute(
        self,
        snapshot: GraphSnapshot,
        working: dict[int, Edge],
        shortcut: Edge,
        result: UpdateBatchResult,
    ) -> Edge:
        first_id, second_id = shortcut.constituents or (None, None)
        if first_id is None or second_id is None:
            raise RecomputeFailure(shortcut.edge_id, "shortcut has no constituents")
        delta = self._constituent_delta(snapshot, working, shortcut)
        baseline = max(float(shortcut.current_weight), 1e-9)
        cheap = abs(delta) / baseline <= float(settings.updater_cheap_tolerance)
        if cheap and not self.tracker.needs_full(shortcut.edge_id):
            result.cheap_updates += 1
            return replace(shortcut, current_weight=max(0.0, float(shortcut.current_weight) + delta))

        result.full_recomputes += 1
        weight, via, best_first, best_second = self._lower_triangle(snapshot, working, shortcut)
        first = self._edge(snapshot, working, best_first)
        second = self._edge(snapshot, working, best_second)
        if (best_first, best_second) != (first_id, second_id):
            try:
                self._dependency_store.replace_dependencies(shortcut.edge_id, (best_first, best_second))
            except RoutingError as exc:
                raise RecomputeFailure(shortcut.edge_id, exc.reason_code) from exc
        return replace(
            shortcut,
            current_weight=weight,
            base_weight=float(first.base_weight) + float(second.base_weight),
            via_node=via,
            constituents=(best_first, best_second),
            segment_count=first.segment_count + second.segment_count,
        )

    def _degrade(
        self,
        snapshot: GraphSnapshot,
        shortcut: Edge,
        node_updates: dict[int, Node],
        result: UpdateBatchResult,
        *,
        reason: str,
    ) -> None:
        self.tracker.transition(shortcut.edge_id, ShortcutState.DEGRADED)
        self.tracker.clear_failures(shortcut.edge_id)
        result.degraded.append(shortcut.edge_id)
        if shortcut.via_node is not None:
            via = node_updates.get(shortcut.via_node) or snapshot.nodes[shortcut.via_node]
            if via.contracted:
                # Exposed as core so plain expansion still finds paths through it.
                node_updates[via.node_id] = replace(via, contracted=False)
        increment("shortcuts_degraded")
        log_event(
            "shortcut_degraded",
            level=logging.WARNING,
            shortcut_edge_id=shortcut.edge_id,
            via_node=shortcut.via_node,
            reason=reason,
        )

    def _apply_locked(self, weights: dict[int, float]) -> UpdateBatchResult:
        started = time.perf_counter()
        result = UpdateBatchResult()
        snapshot = self._registry.current()
        self.tracker.begin_batch()

        working: dict[int, Edge] = {}
        for edge_id, weight in weights.items():
            edge = snapshot.edges.get(edge_id)
            if edge is None or edge.is_shortcut:
                continue
            if abs(float(weight) - float(edge.current_weight)) <= 1e-9:
                continue
            working[edge.edge_id] = replace(edge, current_weight=float(weight))
        result.base_edges_changed = len(working)

        leftovers = self.tracker.dirty()
        tiers = self._index.affected_tiers(sorted(working), include=leftovers)
        affected = [edge_id for tier in tiers for edge_id in tier if edge_id in snapshot.edges]
        # Every constituent, original or re-pointed, has a lower endpoint-rank ceiling than its dependant.
        affected.sort(key=lambda edge_id: (_ceiling_rank(snapshot, edge_id), edge_id))
        result.tiers = len(tiers)
        for edge_id in affected:
            self.tracker.mark_dirty(edge_id)
        marks = self.tracker.dirty_marks
        worklist = [edge_id for edge_id in affected if edge_id in marks]
        result.shortcuts_affected = len(worklist)
        result.dirty_marks = marks

        node_updates: dict[int, Node] = {}
        state_updates: dict[int, ShortcutState] = {}
        for edge_id in worklist:
            shortcut = self._edge(snapshot, working, edge_id)
            constituents = shortcut.constituents or ()
            if any(self.tracker.state(dep) is ShortcutState.DEGRADED for dep in constituents):
                self._degrade(snapshot, shortcut, node_updates, result, reason="constituent_degraded")
                state_updates[edge_id] = ShortcutState.DEGRADED
                continue
            self.tracker.transition(edge_id, ShortcutState.RECOMPUTING)
            try:
                updated = self._recompute(snapshot, working, shortcut, result)
            except RecomputeFailure as exc:
                result.failures += 1
                increment("recompute_failures")
                attempts = self.tracker.record_failure(edge_id)
                log_event(
                    "shortcut_recompute_failed",
                    level=logging.WARNING,
                    shortcut_edge_id=edge_id,
                    attempts=attempts,
                    reason_code=exc.reason_code,
                    error=exc.message,
                )
                if attempts >= int(settings.updater_max_recompute_attempts):
                    self._degrade(snapshot, shortcut, node_updates, result, reason="recompute_attempts_exhausted")
                    state_updates[edge_id] = ShortcutState.DEGRADED
                    continue
                # Stay dirty for a full retry next batch; meanwhile carry the additive delta.
                self.tracker.transition(edge_id, ShortcutState.DIRTY)
                self.tracker.require_full(edge_id)
                state_updates[edge_id] = ShortcutState.DIRTY
                delta = self._constituent_delta(snapshot, working, shortcut)
                if delta:
                    working[edge_id] = replace(
                        shortcut,
                        current_weight=max(0.0, float(shortcut.current_weight) + delta),
                    )
                continue
            self.tracker.transition(edge_id, ShortcutState.CLEAN)
            self.tracker.clear_failures(edge_id)
            state_updates[edge_id] = ShortcutState.CLEAN
            if updated != shortcut:
                working[edge_id] = updated

        changed_states = {
            edge_id: state
            for edge_id, state in state_updates.items()
            if snapshot.shortcut_states.get(edge_id) is not state
        }
        if not working and not node_updates and not changed_states:
            with self._lock:
                # Nothing to publish and nothing queued: the live snapshot is current.
                if not self._pending:
                    self._registry.clear_pending()
            result.duration_ms = round((time.perf_counter() - started) * 1000.0, 3)
            return result

        version = self._registry.next_version()
        published = snapshot.derive(
            version=version,
            edge_updates=working,
            node_updates=node_updates,
            state_updates=changed_states,
        )
        self._registry.publish(published)
        with self._lock:
            # Aggregates queued while this batch ran are still unpublished.
            if self._pending:
                self._registry.note_pending(self._window_opened)
        result.version = version
        self._write_delta(
            SnapshotDelta(
                version=version,
                edges=tuple(working[edge_id] for edge_id in sorted(working)),
                nodes=tuple(node_updates[node_id] for node_id in sorted(node_updates)),
                shortcut_states=changed_states,
            )
        )
        result.duration_ms = round((time.perf_counter() - started) * 1000.0, 3)
        observe("weight_update_batch", result.duration_ms, error=result.failures > 0)
        log_event(
            "weight_update_batch_applied",
            version=version,
            base_edges_changed=result.base_edges_changed,
            shortcuts_affected=result.shortcuts_affected,
            cheap_updates=result.cheap_updates,
            full_recomputes=result.full_recomputes,
            failures=result.failures,
            degraded=len(result.degraded),
            duration_ms=result.duration_ms,
        )
        return result

    def _write_delta(self, delta: SnapshotDelta) -> None:
        if self._graph_store is None or delta.empty:
            return
        try:
            self._graph_store.put_snapshot(delta.version, delta)
        except GraphStoreUnavailable as exc:
            # The in-memory snapshot is already live; the store catches up on the next delta or rebuild.
            increment("graph_store_write_failures")
            log_event(
                "graph_store_write_failed",
                level=logging.WARNING,
                version=delta.version,
                reason_code=exc.reason_code,
                details=exc.details,
            )
