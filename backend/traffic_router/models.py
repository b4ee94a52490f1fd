from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


Endpoint = int | LatLng


def _endpoint(value: Endpoint) -> int | tuple[float, float]:
    if isinstance(value, LatLng):
        return (value.lat, value.lon)
    return value


class RouteRequest(BaseModel):
    """Endpoints are either node ids or coordinates snapped to the nearest node."""

    origin: Endpoint
    destination: Endpoint
    departure_time: float | None = Field(default=None, ge=0)
    deadline_ms: int | None = Field(default=None, ge=1, le=120_000)

    def source_endpoint(self) -> int | tuple[float, float]:
        return _endpoint(self.origin)

    def destination_endpoint(self) -> int | tuple[float, float]:
        return _endpoint(self.destination)


RouteMode = Literal["short", "medium", "long"]


class RouteResponse(BaseModel):
    path: list[int]
    eta_seconds: float
    snapshot_version: int
    approximate: bool = False
    stale: bool = False
    mode: RouteMode
    segment_count: int = 0
    departure_time: float | None = None
    arrival_time: float | None = None
    diagnostics: dict[str, Any] = Field(default_factory=dict)


class PositionSampleIn(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=128)
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    timestamp: float

    @field_validator("timestamp")
    @classmethod
    def finite(cls, v: float) -> float:
        if v != v or v in (float("inf"), float("-inf")):
            raise ValueError("timestamp must be finite")
        return v


class IngestRequest(BaseModel):
    samples: list[PositionSampleIn] = Field(..., min_length=1, max_length=10_000)


class IngestResponse(BaseModel):
    accepted: int
    dropped: int = 0
    queued: bool = False
    report: dict[str, Any] | None = None


class SnapshotResponse(BaseModel):
    summary: dict[str, Any]
    registry: dict[str, Any]
    stale: bool
    pending_aggregates: int
    shortcut_states: dict[str, int]


RebuildState = Literal["idle", "building", "ready", "failed"]


class RebuildStatusResponse(BaseModel):
    state: RebuildState
    started_at_utc: str | None = None
    finished_at_utc: str | None = None
    last_error: str | None = None
    last_version: int | None = None
    running: bool = False
    accepted: bool | None = None
    stats: dict[str, Any] = Field(default_factory=dict)
