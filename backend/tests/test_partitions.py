from __future__ import annotations

import threading

from traffic_router.geo import grid_key
from traffic_router.metrics_store import METRICS
from traffic_router.partitions import (
    DropOldestQueue,
    PartitionWorker,
    StickyPartitioner,
    segment_partition,
    stable_partition,
)


def test_stable_partition_is_deterministic_and_in_range() -> None:
    first = [stable_partition(f"device-{i}", 8) for i in range(50)]
    second = [stable_partition(f"device-{i}", 8) for i in range(50)]

    assert first == second
    assert all(0 <= p < 8 for p in first)
    assert segment_partition(42, 4) == stable_partition(42, 4)


def test_device_stays_on_its_first_partition() -> None:
    partitioner = StickyPartitioner(16, bucket_deg=0.15)

    home = partitioner.assign("van-1", 52.0, -1.0)
    # Crossing into other grid buckets does not move the device.
    for lon in (-0.5, 0.0, 0.5, 1.0):
        assert partitioner.assign("van-1", 52.0, lon) == home
    assert partitioner.assignments() == {"van-1": home}


def test_queue_drops_oldest_on_overflow() -> None:
    queue: DropOldestQueue[int] = DropOldestQueue(2, partition=3, name="match")

    assert queue.put(1) is True
    assert queue.put(2) is True
    assert queue.put(3) is False

    assert queue.drain() == [2, 3]
    assert queue.dropped == 1
    assert METRICS.counter("match_backlog_dropped") == 1


def test_worker_handles_items_in_order() -> None:
    queue: DropOldestQueue[int] = DropOldestQueue(100)
    seen: list[int] = []
    worker = PartitionWorker("test-p0", queue, seen.append, poll_interval_s=0.01)
    worker.start()
    try:
        for item in range(20):
            queue.put(item)
        assert queue.wait_idle(5.0)
    finally:
        worker.stop()

    assert seen == list(range(20))
    assert worker.processed == 20
    assert not worker.is_alive()


def test_worker_survives_a_failing_item_and_runs_idle_hook() -> None:
    queue: DropOldestQueue[int] = DropOldestQueue(10)
    idle = threading.Event()
    seen: list[int] = []

    def _handler(item: int) -> None:
        if item == 1:
            raise RuntimeError("bad item")
        seen.append(item)

    worker = PartitionWorker("test-p1", queue, _handler, on_idle=idle.set, poll_interval_s=0.01)
    worker.start()
    try:
        for item in (0, 1, 2):
            queue.put(item)
        assert queue.wait_idle(5.0)
        assert idle.wait(2.0)
    finally:
        worker.stop()

    assert seen == [0, 2]
    assert worker.errors == 1
    assert METRICS.counter("partition_worker_errors") == 1


def test_forgotten_device_is_reassigned_from_its_next_fix() -> None:
    partitioner = StickyPartitioner(16, bucket_deg=0.15)
    partitioner.assign("van-1", 52.0, -1.0)
    partitioner.assign("van-2", 52.0, -1.0)

    assert partitioner.forget(["van-1", "unknown"]) == 1
    assert set(partitioner.assignments()) == {"van-2"}

    moved = partitioner.assign("van-1", 52.0, 1.0)
    assert moved == stable_partition(grid_key(52.0, 1.0, 0.15), 16)
