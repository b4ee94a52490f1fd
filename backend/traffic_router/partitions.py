from __future__ import annotations

import logging
import threading
import time
import zlib
from collections import deque
from collections.abc import Callable, Iterable
from typing import Generic, TypeVar

from .geo import grid_key
from .logging_utils import log_event
from .metrics_store import increment, set_gauge
from .routing_errors import IngestionBacklog
from .settings import settings

T = TypeVar("T")


def stable_partition(key: object, partitions: int) -> int:
    """Deterministic across processes (unlike hash()) so partition ownership survives restarts."""
    return zlib.crc32(str(key).encode("utf-8")) % max(1, int(partitions))


def segment_partition(segment_id: int, partitions: int | None = None) -> int:
    return stable_partition(int(segment_id), partitions or settings.aggregate_partitions)


class StickyPartitioner:
    """Pins each device to the geographic partition of its first fix."""

    def __init__(self, partitions: int | None = None, *, bucket_deg: float | None = None) -> None:
        self.partitions = max(1, int(partitions or settings.match_partitions))
        self.bucket_deg = float(bucket_deg or settings.graph_partition_bucket_deg)
        self._lock = threading.Lock()
        self._assigned: dict[str, int] = {}

    def assign(self, device_id: str, lat: float, lon: float) -> int:
        with self._lock:
            partition = self._assigned.get(device_id)
            if partition is None:
                partition = stable_partition(grid_key(lat, lon, self.bucket_deg), self.partitions)
                self._assigned[device_id] = partition
            return partition

    def forget(self, device_ids: Iterable[str]) -> int:
        """Unpin devices; their next fix is assigned afresh from its position."""
        with self._lock:
            return sum(self._assigned.pop(device_id, None) is not None for device_id in device_ids)

    def assignments(self) -> dict[str, int]:
        with self._lock:
            return dict(self._assigned)


class DropOldestQueue(Generic[T]):
    """Bounded queue that never blocks producers: on overflow the oldest item is dropped."""

    def __init__(self, capacity: int | None = None, *, partition: int = 0, name: str = "ingest") -> None:
        self.capacity = max(1, int(capacity or settings.partition_queue_capacity))
        self.partition = int(partition)
        self.name = name
        self._items: deque[T] = deque()
        self._cond = threading.Condition()
        self._in_flight = 0
        self.dropped = 0

    def put(self, item: T) -> bool:
        """Enqueue; returns False when an older item had to be dropped to make room."""
        dropped = False
        with self._cond:
            if len(self._items) >= self.capacity:
                self._items.popleft()
                self.dropped += 1
                dropped = True
            self._items.append(item)
            depth = len(self._items)
            self._cond.notify()
        set_gauge(f"{self.name}_queue_depth_p{self.partition}", depth)
        if dropped:
            increment(f"{self.name}_backlog_dropped")
            backlog = IngestionBacklog(self.partition, self.dropped)
            log_event(
                "ingestion_backlog",
                level=logging.WARNING,
                queue=self.name,
                partition=self.partition,
                reason_code=backlog.reason_code,
                dropped_total=self.dropped,
            )
        return not dropped

    def get(self, timeout_s: float | None = None) -> T | None:
        with self._cond:
            if not self._items:
                self._cond.wait(timeout=timeout_s)
            if not self._items:
                return None
            self._in_flight += 1
            return self._items.popleft()

    def task_done(self) -> None:
        with self._cond:
            self._in_flight = max(0, self._in_flight - 1)
            self._cond.notify_all()

    def drain(self) -> list[T]:
        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    def wait_idle(self, timeout_s: float = 5.0) -> bool:
        deadline = time.monotonic() + max(0.0, timeout_s)
        with self._cond:
            while self._items or self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0.0:
                    return False
                self._cond.wait(timeout=remaining)
            return True

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


class PartitionWorker(threading.Thread, Generic[T]):
    """Single writer for one partition: pops items and hands them to `handler` in order."""

    def __init__(
        self,
        name: str,
        queue: DropOldestQueue[T],
        handler: Callable[[T], None],
        *,
        on_idle: Callable[[], None] | None = None,
        poll_interval_s: float = 0.1,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self.queue = queue
        self._handler = handler
        self._on_idle = on_idle
        self._poll_interval_s = max(0.01, float(poll_interval_s))
        self._stop_event = threading.Event()
        self.processed = 0
        self.errors = 0

    def run(self) -> None:
        log_event("partition_worker_started", worker=self.name, partition=self.queue.partition)
        while not self._stop_event.is_set():
            item = self.queue.get(timeout_s=self._poll_interval_s)
            if item is None:
                self._idle()
                continue
            try:
                self._handler(item)
                self.processed += 1
            except Exception as exc:  # pragma: no cover - keeps the partition alive past one bad item
                self.errors += 1
                increment("partition_worker_errors")
                log_event(
                    "partition_worker_item_failed",
                    level=logging.ERROR,
                    worker=self.name,
                    error_type=type(exc).__name__,
                    error_message=str(exc).strip() or type(exc).__name__,
                )
            finally:
                self.queue.task_done()
        log_event("partition_worker_stopped", worker=self.name, processed=self.processed, errors=self.errors)

    def _idle(self) -> None:
        if self._on_idle is None:
            return
        try:
            self._on_idle()
        except Exception as exc:  # pragma: no cover - same boundary as item handling
            increment("partition_worker_errors")
            log_event(
                "partition_worker_idle_failed",
                level=logging.ERROR,
                worker=self.name,
                error_type=type(exc).__name__,
                error_message=str(exc).strip() or type(exc).__name__,
            )

    def stop(self, timeout_s: float = 2.0) -> None:
        self._stop_event.set()
        self.queue.wake()
        if self.is_alive():
            self.join(timeout=timeout_s)
