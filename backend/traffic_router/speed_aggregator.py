from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field

from .graph_model import RoadSegmentSpeedSample, SpeedAggregate
from .logging_utils import log_event
from .metrics_store import increment
from .settings import settings


@dataclass
class _SegmentWindow:
    samples: deque[tuple[float, float]] = field(default_factory=deque)
    total: float = 0.0
    newest_timestamp: float = -math.inf
    published: SpeedAggregate | None = None


class SpeedAggregator:
    """Rolling per-segment speed averages for the segments one partition owns.

    Only the owning partition's worker calls into an instance, so window state
    is not locked.
    """

    def __init__(
        self,
        partition: int = 0,
        *,
        window_s: float | None = None,
        publish_threshold: float | None = None,
    ) -> None:
        self.partition = int(partition)
        self.window_s = float(window_s or settings.aggregate_window_s)
        self.publish_threshold = float(
            settings.aggregate_publish_threshold if publish_threshold is None else publish_threshold
        )
        self._windows: dict[int, _SegmentWindow] = {}

    def _evict(self, window: _SegmentWindow, now: float) -> None:
        cutoff = now - self.window_s
        while window.samples and window.samples[0][0] <= cutoff:
            _ts, speed = window.samples.popleft()
            window.total -= speed
        if not window.samples:
            window.total = 0.0

    def _maybe_publish(self, segment_id: int, window: _SegmentWindow, now: float) -> SpeedAggregate | None:
        if not window.samples:
            return None
        average = window.total / len(window.samples)
        previous = window.published
        if previous is not None:
            baseline = max(abs(previous.rolling_average), 1e-9)
            if abs(average - previous.rolling_average) / baseline <= self.publish_threshold:
                return None
        aggregate = SpeedAggregate(
            segment_id=segment_id,
            rolling_average=average,
            sample_count=len(window.samples),
            window_start=now - self.window_s,
            published_at=now,
        )
        window.published = aggregate
        return aggregate

    def add(self, sample: RoadSegmentSpeedSample) -> SpeedAggregate | None:
        speed = float(sample.speed_mps)
        if not math.isfinite(speed) or speed < 0.0:
            increment("aggregate_invalid_samples")
            return None
        window = self._windows.setdefault(sample.segment_id, _SegmentWindow())
        if sample.timestamp < window.newest_timestamp:
            increment("aggregate_out_of_order")
            log_event(
                "speed_sample_out_of_order",
                segment_id=sample.segment_id,
                timestamp=sample.timestamp,
                newest_timestamp=window.newest_timestamp,
            )
            return None
        window.newest_timestamp = float(sample.timestamp)
        self._evict(window, sample.timestamp)
        window.samples.append((float(sample.timestamp), speed))
        window.total += speed
        return self._maybe_publish(sample.segment_id, window, sample.timestamp)

    def advance(self, now: float) -> list[SpeedAggregate]:
        """Expire old samples; republish segments whose average moved past the threshold."""
        out: list[SpeedAggregate] = []
        for segment_id in sorted(self._windows):
            window = self._windows[segment_id]
            before = len(window.samples)
            self._evict(window, now)
            if len(window.samples) == before:
                continue
            aggregate = self._maybe_publish(segment_id, window, now)
            if aggregate is not None:
                out.append(aggregate)
        return out

    def aggregate(self, segment_id: int) -> SpeedAggregate | None:
        window = self._windows.get(segment_id)
        return None if window is None else window.published

    def window_size(self, segment_id: int) -> int:
        window = self._windows.get(segment_id)
        return 0 if window is None else len(window.samples)
