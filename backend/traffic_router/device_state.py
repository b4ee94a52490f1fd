from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any

from .logging_utils import log_event
from .settings import settings


@dataclass
class DeviceTrack:
    """Per-device map-matching state carried between consecutive fixes."""

    device_id: str
    last_lat: float | None = None
    last_lon: float | None = None
    last_timestamp: float | None = None
    # segment_id -> (Viterbi log score, fraction along the segment)
    candidates: dict[int, tuple[float, float]] = field(default_factory=dict)
    radius_m: float = 0.0
    low_confidence_streak: int = 0

    @property
    def has_fix(self) -> bool:
        return self.last_timestamp is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "last_lat": self.last_lat,
            "last_lon": self.last_lon,
            "last_timestamp": self.last_timestamp,
            "candidates": {str(seg): [score, t] for seg, (score, t) in self.candidates.items()},
            "radius_m": self.radius_m,
            "low_confidence_streak": self.low_confidence_streak,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DeviceTrack:
        candidates: dict[int, tuple[float, float]] = {}
        for seg, value in (raw.get("candidates") or {}).items():
            if isinstance(value, list) and len(value) == 2:
                candidates[int(seg)] = (float(value[0]), float(value[1]))
        return cls(
            device_id=str(raw["device_id"]),
            last_lat=raw.get("last_lat"),
            last_lon=raw.get("last_lon"),
            last_timestamp=raw.get("last_timestamp"),
            candidates=candidates,
            radius_m=float(raw.get("radius_m") or 0.0),
            low_confidence_streak=int(raw.get("low_confidence_streak") or 0),
        )


def checkpoint_path(partition: int) -> Path:
    return Path(settings.out_dir) / "state" / f"device_state_p{int(partition)}.json"


class DeviceStateStore:
    """Keyed device state owned by one matcher partition, checkpointed to JSON."""

    def __init__(self, partition: int = 0, *, path: Path | None = None) -> None:
        self.partition = int(partition)
        self._path = path or checkpoint_path(partition)
        self._lock = Lock()
        self._tracks: dict[str, DeviceTrack] = {}
        self._last_checkpoint = time.monotonic()

    def get(self, device_id: str) -> DeviceTrack | None:
        with self._lock:
            return self._tracks.get(device_id)

    def put(self, track: DeviceTrack) -> None:
        with self._lock:
            self._tracks[track.device_id] = track

    def __len__(self) -> int:
        with self._lock:
            return len(self._tracks)

    def evict_idle(self) -> list[str]:
        """Drop devices silent for longer than the match gap; returns their ids.

        Idleness is measured against the newest fix this partition has seen, so a
        replayed stream ages out the same way a live one does.
        """
        max_gap_s = float(settings.match_max_gap_s)
        with self._lock:
            stamps = [t.last_timestamp for t in self._tracks.values() if t.last_timestamp is not None]
            watermark = max(stamps, default=0.0)
            evicted = [
                device_id
                for device_id, track in self._tracks.items()
                if track.last_timestamp is None or watermark - float(track.last_timestamp) > max_gap_s
            ]
            for device_id in evicted:
                del self._tracks[device_id]
        if evicted:
            log_event("device_state_evicted", partition=self.partition, devices=len(evicted))
        return sorted(evicted)

    def checkpoint(self) -> Path:
        with self._lock:
            payload = {device_id: track.to_dict() for device_id, track in sorted(self._tracks.items())}
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp.replace(self._path)
            self._last_checkpoint = time.monotonic()
        log_event("device_state_checkpointed", partition=self.partition, devices=len(payload), path=str(self._path))
        return self._path

    def checkpoint_due(self, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else float(now)
        return current - self._last_checkpoint >= float(settings.match_checkpoint_interval_s)

    def restore(self) -> int:
        if not self._path.exists():
            return 0
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log_event("device_state_restore_failed", partition=self.partition, error=type(exc).__name__)
            return 0
        if not isinstance(raw, dict):
            return 0
        tracks: dict[str, DeviceTrack] = {}
        for device_id, value in raw.items():
            if not isinstance(value, dict):
                continue
            try:
                tracks[str(device_id)] = DeviceTrack.from_dict(value)
            except (KeyError, TypeError, ValueError):
                continue
        with self._lock:
            self._tracks = tracks
        log_event("device_state_restored", partition=self.partition, devices=len(tracks))
        return len(tracks)
