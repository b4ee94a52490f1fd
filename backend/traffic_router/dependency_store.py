from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from itertools import islice
from dataclasses import dataclass
from threading import Lock

from .graph_model import ShortcutDependency
from .logging_utils import log_event
from .routing_errors import RoutingError

OP_INSERT = "insert"
OP_DELETE = "delete"


@dataclass(frozen=True)
class DependencyChange:
    sequence: int
    op: str
    row: ShortcutDependency


ChangeListener = Callable[[DependencyChange], None]


class DependencyStore:
    """Row store of shortcut dependencies with an append-only change feed.

    Readers register a cursor and acknowledge what they have applied; the feed
    keeps only changes some registered reader has not yet acknowledged.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._rows: dict[int, tuple[int, ...]] = {}
        self._changes: deque[DependencyChange] = deque()
        self._sequence = 0
        self._listeners: list[ChangeListener] = []
        self._readers: dict[str, int] = {}

    def _emit(self, op: str, row: ShortcutDependency) -> DependencyChange:
        self._sequence += 1
        change = DependencyChange(sequence=self._sequence, op=op, row=row)
        self._changes.append(change)
        return change

    def _reaches(self, start: Iterable[int], target: int) -> bool:
        stack = list(start)
        seen: set[int] = set()
        while stack:
            edge_id = stack.pop()
            if edge_id == target:
                return True
            if edge_id in seen:
                continue
            seen.add(edge_id)
            stack.extend(self._rows.get(edge_id, ()))
        return False

    def load(self, rows: Iterable[ShortcutDependency]) -> int:
        grouped: dict[int, list[int]] = {}
        for row in rows:
            grouped.setdefault(row.shortcut_edge_id, []).append(row.depends_on_edge_id)
        for shortcut_edge_id in sorted(grouped):
            self.replace_dependencies(shortcut_edge_id, grouped[shortcut_edge_id])
        return sum(len(deps) for deps in grouped.values())

    def replace_dependencies(self, shortcut_edge_id: int, depends_on: Iterable[int]) -> list[DependencyChange]:
        new_deps = tuple(int(dep) for dep in depends_on)
        with self._lock:
            old_deps = self._rows.get(shortcut_edge_id, ())
            if old_deps == new_deps:
                return []
            if self._reaches(new_deps, shortcut_edge_id):
                raise RoutingError(
                    "dependency_cycle",
                    f"shortcut {shortcut_edge_id} would depend on itself",
                    {"shortcut_edge_id": shortcut_edge_id, "depends_on": list(new_deps)},
                )
            changes: list[DependencyChange] = []
            for dep in old_deps:
                if dep not in new_deps:
                    changes.append(self._emit(OP_DELETE, ShortcutDependency(shortcut_edge_id, dep)))
            for dep in new_deps:
                if dep not in old_deps:
                    changes.append(self._emit(OP_INSERT, ShortcutDependency(shortcut_edge_id, dep)))
            if new_deps:
                self._rows[shortcut_edge_id] = new_deps
            else:
                self._rows.pop(shortcut_edge_id, None)
            listeners = list(self._listeners)
        for change in changes:
            for listener in listeners:
                listener(change)
        return changes

    def reset(self, rows: Iterable[ShortcutDependency]) -> int:
        """Swap in a whole new row set (after a rebuild); emits deletes then inserts."""
        grouped: dict[int, list[int]] = {}
        for row in rows:
            grouped.setdefault(row.shortcut_edge_id, []).append(row.depends_on_edge_id)
        with self._lock:
            changes: list[DependencyChange] = []
            for shortcut_edge_id in sorted(self._rows):
                for dep in self._rows[shortcut_edge_id]:
                    changes.append(self._emit(OP_DELETE, ShortcutDependency(shortcut_edge_id, dep)))
            self._rows = {shortcut_edge_id: tuple(deps) for shortcut_edge_id, deps in grouped.items()}
            for shortcut_edge_id in sorted(self._rows):
                for dep in self._rows[shortcut_edge_id]:
                    changes.append(self._emit(OP_INSERT, ShortcutDependency(shortcut_edge_id, dep)))
            listeners = list(self._listeners)
        self.topological_order()
        for change in changes:
            for listener in listeners:
                listener(change)
        log_event("dependency_store_reset", rows=sum(len(deps) for deps in grouped.values()))
        return len(changes)

    def dependencies_of(self, shortcut_edge_id: int) -> tuple[int, ...]:
        with self._lock:
            return self._rows.get(shortcut_edge_id, ())

    def rows(self) -> tuple[ShortcutDependency, ...]:
        with self._lock:
            return tuple(
                ShortcutDependency(shortcut_edge_id, dep)
                for shortcut_edge_id in sorted(self._rows)
                for dep in self._rows[shortcut_edge_id]
            )

    @property
    def sequence(self) -> int:
        with self._lock:
            return self._sequence

    def changes_since(self, sequence: int) -> list[DependencyChange]:
        with self._lock:
            # Sequences are dense; the feed holds (head, self._sequence].
            head = self._sequence - len(self._changes)
            if int(sequence) < head:
                raise RoutingError(
                    "dependency_feed_truncated",
                    f"changes after {sequence} were already acknowledged by every reader",
                    {"requested": int(sequence), "oldest_available": head + 1},
                )
            start = max(0, int(sequence) - head)
            return list(islice(self._changes, start, None))

    def attach_reader(self, name: str) -> tuple[tuple[ShortcutDependency, ...], int]:
        """Register reader `name` at the current sequence; returns the rows as of that sequence."""
        with self._lock:
            self._readers[name] = self._sequence
            rows = tuple(
                ShortcutDependency(shortcut_edge_id, dep)
                for shortcut_edge_id in sorted(self._rows)
                for dep in self._rows[shortcut_edge_id]
            )
            return rows, self._sequence

    def release_reader(self, name: str) -> None:
        with self._lock:
            self._readers.pop(name, None)
            self._trim_locked()

    def acknowledge(self, name: str, sequence: int) -> None:
        """Record that reader `name` has applied everything up to `sequence`."""
        with self._lock:
            if name not in self._readers:
                return
            self._readers[name] = max(self._readers[name], int(sequence))
            self._trim_locked()

    def _trim_locked(self) -> None:
        if not self._readers:
            return
        floor = min(self._readers.values())
        while self._changes and self._changes[0].sequence <= floor:
            self._changes.popleft()

    @property
    def retained_changes(self) -> int:
        with self._lock:
            return len(self._changes)

    def subscribe(self, listener: ChangeListener) -> int:
        """Register a listener and return the sequence it is caught up to."""
        with self._lock:
            self._listeners.append(listener)
            return self._sequence

    def unsubscribe(self, listener: ChangeListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def topological_order(self) -> list[int]:
        """Kahn's algorithm over the shortcut graph; constituents come before dependants."""
        with self._lock:
            rows = dict(self._rows)
        indegree: dict[int, int] = {}
        dependants: dict[int, list[int]] = {}
        for shortcut_edge_id, deps in rows.items():
            indegree.setdefault(shortcut_edge_id, 0)
            for dep in deps:
                indegree.setdefault(dep, 0)
                indegree[shortcut_edge_id] += 1
                dependants.setdefault(dep, []).append(shortcut_edge_id)
        queue = deque(sorted(edge_id for edge_id, degree in indegree.items() if degree == 0))
        order: list[int] = []
        while queue:
            edge_id = queue.popleft()
            order.append(edge_id)
            for dependant in sorted(dependants.get(edge_id, ())):
                indegree[dependant] -= 1
                if indegree[dependant] == 0:
                    queue.append(dependant)
        if len(order) != len(indegree):
            raise RoutingError("dependency_cycle", "shortcut dependencies contain a cycle")
        return order


class DependencyIndex:
    """Reverse index (edge -> dependant shortcuts) mirrored from a store's change feed."""

    def __init__(self, store: DependencyStore) -> None:
        self._lock = Lock()
        self._store = store
        self._forward: dict[int, set[int]] = {}
        self._reverse: dict[int, set[int]] = {}
        self._applied = 0
        self._reader = f"dependency-index-{id(self)}"
        rows, self._applied = store.attach_reader(self._reader)
        for row in rows:
            self._forward.setdefault(row.shortcut_edge_id, set()).add(row.depends_on_edge_id)
            self._reverse.setdefault(row.depends_on_edge_id, set()).add(row.shortcut_edge_id)
        store.subscribe(self.apply)
        self.catch_up()

    def _apply_locked(self, change: DependencyChange) -> None:
        shortcut_edge_id = change.row.shortcut_edge_id
        dep = change.row.depends_on_edge_id
        if change.op == OP_INSERT:
            self._forward.setdefault(shortcut_edge_id, set()).add(dep)
            self._reverse.setdefault(dep, set()).add(shortcut_edge_id)
        else:
            self._forward.get(shortcut_edge_id, set()).discard(dep)
            self._reverse.get(dep, set()).discard(shortcut_edge_id)
        self._applied = change.sequence

    def catch_up(self) -> int:
        with self._lock:
            for change in self._store.changes_since(self._applied):
                self._apply_locked(change)
            self._store.acknowledge(self._reader, self._applied)
            return self._applied

    def apply(self, change: DependencyChange) -> None:
        with self._lock:
            if change.sequence <= self._applied:
                return
            if change.sequence != self._applied + 1:
                # Out-of-order push: replay the gap from the feed instead.
                for missed in self._store.changes_since(self._applied):
                    self._apply_locked(missed)
            else:
                self._apply_locked(change)
            self._store.acknowledge(self._reader, self._applied)

    def close(self) -> None:
        """Stop following the feed and let the store trim past this index."""
        self._store.unsubscribe(self.apply)
        self._store.release_reader(self._reader)

    @property
    def applied_sequence(self) -> int:
        return self._applied

    def dependants(self, edge_id: int) -> tuple[int, ...]:
        with self._lock:
            return tuple(sorted(self._reverse.get(edge_id, ())))

    def affected_tiers(self, changed_edges: Iterable[int], *, include: Iterable[int] = ()) -> list[list[int]]:
        """All shortcuts transitively depending on `changed_edges`, each exactly once, grouped by tier.

        Tier 1 shortcuts depend only on base edges; tier n depends on at least one
        tier n-1 shortcut. Processing tiers in order guarantees every constituent
        is final before its dependant is recomputed.
        """
        with self._lock:
            affected: set[int] = set(include)
            frontier = deque([*changed_edges, *affected])
            while frontier:
                edge_id = frontier.popleft()
                for dependant in self._reverse.get(edge_id, ()):
                    if dependant not in affected:
                        affected.add(dependant)
                        frontier.append(dependant)
            tiers: dict[int, int] = {}

            def _tier(edge_id: int) -> int:
                cached = tiers.get(edge_id)
                if cached is not None:
                    return cached
                stack = [edge_id]
                while stack:
                    current = stack[-1]
                    deps = self._forward.get(current, ())
                    pending = [dep for dep in deps if dep not in tiers]
                    if pending:
                        stack.extend(pending)
                        continue
                    stack.pop()
                    tiers[current] = 1 + max((tiers[dep] for dep in deps), default=-1) if deps else 0
                return tiers[edge_id]

            grouped: dict[int, list[int]] = {}
            for shortcut_edge_id in affected:
                grouped.setdefault(_tier(shortcut_edge_id), []).append(shortcut_edge_id)
        log_event("dependency_worklist_built", affected=len(affected), tiers=len(grouped))
        return [sorted(grouped[tier]) for tier in sorted(grouped)]
