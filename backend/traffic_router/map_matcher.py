from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

from .device_state import DeviceStateStore, DeviceTrack
from .geo import (
    bearing_deg,
    bucket_radius_for_distance,
    grid_key,
    haversine_m,
    heading_delta_deg,
    project_onto_segment,
    ring_offsets,
)
from .graph_model import Edge, GraphSnapshot, RoadSegmentSpeedSample
from .logging_utils import log_event
from .metrics_store import increment
from .routing_errors import MapMatchLowConfidence
from .settings import settings

SEGMENT_GRID_BUCKET_DEG = 0.005
NON_ADJACENT_PENALTY = 2.0
TRANSITION_REFERENCE_S = 30.0

STATUS_MATCHED = "matched"
STATUS_LOW_CONFIDENCE = "low_confidence"
STATUS_NO_CANDIDATES = "no_candidates"
STATUS_OUT_OF_ORDER = "out_of_order"


@dataclass(frozen=True)
class PositionFix:
    device_id: str
    lat: float
    lon: float
    timestamp: float


@dataclass(frozen=True)
class Candidate:
    segment_id: int
    distance_m: float
    fraction: float


@dataclass(frozen=True)
class MatchResult:
    device_id: str
    timestamp: float
    status: str
    segment_id: int | None = None
    confidence: float = 0.0
    speed_mps: float | None = None
    candidate_count: int = 0

    @property
    def sample(self) -> RoadSegmentSpeedSample | None:
        if self.status != STATUS_MATCHED or self.segment_id is None or self.speed_mps is None:
            return None
        return RoadSegmentSpeedSample(segment_id=self.segment_id, speed_mps=self.speed_mps, timestamp=self.timestamp)


class SegmentIndex:
    """Grid index of base road segments by the cells their bounding box covers."""

    def __init__(self, snapshot: GraphSnapshot, *, bucket_deg: float = SEGMENT_GRID_BUCKET_DEG) -> None:
        self.bucket_deg = float(bucket_deg)
        self.topology = snapshot.out_edges
        self._cells: dict[tuple[int, int], list[int]] = {}
        for edge in snapshot.edges.values():
            if edge.is_shortcut:
                continue
            a = snapshot.nodes[edge.from_node]
            b = snapshot.nodes[edge.to_node]
            lo = grid_key(min(a.lat, b.lat), min(a.lon, b.lon), self.bucket_deg)
            hi = grid_key(max(a.lat, b.lat), max(a.lon, b.lon), self.bucket_deg)
            for row in range(lo[0], hi[0] + 1):
                for col in range(lo[1], hi[1] + 1):
                    self._cells.setdefault((row, col), []).append(edge.edge_id)

    def nearby(self, lat: float, lon: float, radius_m: float) -> set[int]:
        center = grid_key(lat, lon, self.bucket_deg)
        # Longitude cells shrink with latitude; scan enough of them to cover the radius.
        lon_scale = max(0.1, math.cos(math.radians(lat)))
        rings = bucket_radius_for_distance(radius_m / lon_scale, self.bucket_deg)
        found: set[int] = set()
        for radius in range(0, rings + 1):
            for dx, dy in ring_offsets(radius):
                found.update(self._cells.get((center[0] + dy, center[1] + dx), ()))
        return found


def _log_sum_exp(values: list[float]) -> float:
    top = max(values)
    if top == -math.inf:
        return -math.inf
    return top + math.log(sum(math.exp(v - top) for v in values))


class MapMatcher:
    """Online HMM map-matcher: one Viterbi step per incoming fix."""

    def __init__(self, snapshot_provider: Callable[[], GraphSnapshot], state: DeviceStateStore) -> None:
        self._snapshot_provider = snapshot_provider
        self.state = state
        self._index: SegmentIndex | None = None

    def _segment_index(self, snapshot: GraphSnapshot) -> SegmentIndex:
        if self._index is None or self._index.topology is not snapshot.out_edges:
            self._index = SegmentIndex(snapshot)
        return self._index

    def candidates(self, snapshot: GraphSnapshot, lat: float, lon: float, radius_m: float) -> list[Candidate]:
        out: list[Candidate] = []
        for edge_id in self._segment_index(snapshot).nearby(lat, lon, radius_m):
            edge = snapshot.edges[edge_id]
            a = snapshot.nodes[edge.from_node]
            b = snapshot.nodes[edge.to_node]
            distance_m, fraction = project_onto_segment(lat, lon, start=(a.lat, a.lon), end=(b.lat, b.lon))
            if distance_m <= radius_m:
                out.append(Candidate(segment_id=edge_id, distance_m=distance_m, fraction=fraction))
        out.sort(key=lambda c: (c.distance_m, c.segment_id))
        return out[: int(settings.match_max_candidates)]

    def _emission(self, snapshot: GraphSnapshot, candidate: Candidate, heading: float | None) -> float:
        sigma = float(settings.match_gps_sigma_m)
        score = -0.5 * (candidate.distance_m / sigma) ** 2
        if heading is not None:
            edge = snapshot.edges[candidate.segment_id]
            a = snapshot.nodes[edge.from_node]
            b = snapshot.nodes[edge.to_node]
            delta = heading_delta_deg(heading, bearing_deg(a.lat, a.lon, b.lat, b.lon))
            score += float(settings.match_heading_kappa) * (math.cos(math.radians(delta)) - 1.0)
        return score

    def _road_distance_m(
        self,
        snapshot: GraphSnapshot,
        prev: Edge,
        prev_fraction: float,
        cur: Edge,
        cur_fraction: float,
    ) -> tuple[float, bool]:
        """Implied along-road distance between two projected points, and whether the segments touch."""
        prev_len = max(prev.length_m, 0.1)
        cur_len = max(cur.length_m, 0.1)
        if prev.edge_id == cur.edge_id:
            return abs(cur_fraction - prev_fraction) * prev_len, True
        if prev.to_node == cur.from_node:
            return (1.0 - prev_fraction) * prev_len + cur_fraction * cur_len, True
        shared = {prev.from_node, prev.to_node} & {cur.from_node, cur.to_node}
        if shared:
            node_id = min(shared)
            prev_part = prev_fraction * prev_len if prev.from_node == node_id else (1.0 - prev_fraction) * prev_len
            cur_part = cur_fraction * cur_len if cur.from_node == node_id else (1.0 - cur_fraction) * cur_len
            return prev_part + cur_part, True
        gap = haversine_m(
            snapshot.nodes[prev.to_node].lat,
            snapshot.nodes[prev.to_node].lon,
            snapshot.nodes[cur.from_node].lat,
            snapshot.nodes[cur.from_node].lon,
        )
        return (1.0 - prev_fraction) * prev_len + gap + cur_fraction * cur_len, False

    def _transition(
        self,
        snapshot: GraphSnapshot,
        prev_segment: int,
        prev_fraction: float,
        candidate: Candidate,
        *,
        displacement_m: float,
        elapsed_s: float,
    ) -> float:
        prev = snapshot.edges.get(prev_segment)
        if prev is None:
            return -math.inf
        cur = snapshot.edges[candidate.segment_id]
        road_m, touching = self._road_distance_m(snapshot, prev, prev_fraction, cur, candidate.fraction)
        if road_m > float(settings.match_max_speed_mps) * elapsed_s + 2.0 * float(settings.match_gps_sigma_m):
            return -math.inf
        beta = float(settings.match_transition_beta_m) * max(1.0, elapsed_s / TRANSITION_REFERENCE_S)
        penalty = abs(road_m - displacement_m) / beta
        if not touching:
            penalty += NON_ADJACENT_PENALTY
        return -penalty

    def match(self, fix: PositionFix) -> MatchResult:
        snapshot = self._snapshot_provider()
        base_radius = float(settings.match_candidate_radius_m)
        track = self.state.get(fix.device_id) or DeviceTrack(device_id=fix.device_id, radius_m=base_radius)
        radius_m = track.radius_m or base_radius

        elapsed_s = 0.0
        continuing = False
        if track.has_fix:
            elapsed_s = fix.timestamp - float(track.last_timestamp or 0.0)
            if elapsed_s <= 0.0:
                increment("match_out_of_order")
                return MatchResult(device_id=fix.device_id, timestamp=fix.timestamp, status=STATUS_OUT_OF_ORDER)
            continuing = elapsed_s <= float(settings.match_max_gap_s) and bool(track.candidates)

        displacement_m = 0.0
        heading: float | None = None
        if continuing:
            displacement_m = haversine_m(float(track.last_lat), float(track.last_lon), fix.lat, fix.lon)
            if displacement_m >= float(settings.match_heading_min_displacement_m):
                heading = bearing_deg(float(track.last_lat), float(track.last_lon), fix.lat, fix.lon)

        candidates = self.candidates(snapshot, fix.lat, fix.lon, radius_m)
        if not candidates:
            track.radius_m = min(float(settings.match_max_radius_m), radius_m * float(settings.match_widen_factor))
            track.last_lat, track.last_lon, track.last_timestamp = fix.lat, fix.lon, fix.timestamp
            track.candidates = {}
            self.state.put(track)
            increment("match_no_candidates")
            log_event("map_match_no_candidates", device_id=fix.device_id, radius_m=radius_m)
            return MatchResult(device_id=fix.device_id, timestamp=fix.timestamp, status=STATUS_NO_CANDIDATES)

        scores: dict[int, float] = {}
        back: dict[int, int | None] = {}
        for candidate in candidates:
            emission = self._emission(snapshot, candidate, heading)
            if not continuing:
                scores[candidate.segment_id] = emission
                back[candidate.segment_id] = None
                continue
            best = -math.inf
            best_prev: int | None = None
            for prev_segment, (prev_score, prev_fraction) in track.candidates.items():
                value = prev_score + self._transition(
                    snapshot,
                    prev_segment,
                    prev_fraction,
                    candidate,
                    displacement_m=displacement_m,
                    elapsed_s=elapsed_s,
                )
                if value > best:
                    best, best_prev = value, prev_segment
            scores[candidate.segment_id] = best + emission
            back[candidate.segment_id] = best_prev

        total = _log_sum_exp(list(scores.values()))
        if total == -math.inf:
            # Every transition was impossible: restart the track from emissions alone.
            scores = {c.segment_id: self._emission(snapshot, c, heading) for c in candidates}
            back = {c.segment_id: None for c in candidates}
            total = _log_sum_exp(list(scores.values()))
        winner = max(candidates, key=lambda c: (scores[c.segment_id], -c.distance_m, -c.segment_id))
        confidence = math.exp(scores[winner.segment_id] - total)

        speed: float | None = None
        if continuing and back.get(winner.segment_id) == winner.segment_id:
            speed = displacement_m / elapsed_s

        # Normalise so the stored log scores stay bounded over long tracks.
        track.candidates = {c.segment_id: (scores[c.segment_id] - total, c.fraction) for c in candidates}
        track.last_lat, track.last_lon, track.last_timestamp = fix.lat, fix.lon, fix.timestamp

        if confidence < float(settings.match_confidence_threshold):
            track.radius_m = min(float(settings.match_max_radius_m), radius_m * float(settings.match_widen_factor))
            track.low_confidence_streak += 1
            self.state.put(track)
            increment("match_low_confidence")
            error = MapMatchLowConfidence(fix.device_id, confidence)
            log_event(
                "map_match_low_confidence",
                level=logging.WARNING,
                device_id=fix.device_id,
                confidence=round(confidence, 4),
                reason_code=error.reason_code,
                next_radius_m=track.radius_m,
            )
            return MatchResult(
                device_id=fix.device_id,
                timestamp=fix.timestamp,
                status=STATUS_LOW_CONFIDENCE,
                segment_id=winner.segment_id,
                confidence=confidence,
                candidate_count=len(candidates),
            )

        track.radius_m = base_radius
        track.low_confidence_streak = 0
        self.state.put(track)
        increment("match_accepted")
        return MatchResult(
            device_id=fix.device_id,
            timestamp=fix.timestamp,
            status=STATUS_MATCHED,
            segment_id=winner.segment_id,
            confidence=confidence,
            speed_mps=speed,
            candidate_count=len(candidates),
        )
