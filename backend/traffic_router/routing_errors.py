from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "node_not_found",
        "no_path_exists",
        "deadline_exceeded",
        "map_match_low_confidence",
        "recompute_failure",
        "ingestion_backlog",
        "graph_store_unavailable",
        "graph_asset_unavailable",
        "snapshot_unavailable",
        "snapshot_invalid",
        "dependency_cycle",
        "dependency_feed_truncated",
        "invalid_sample",
        "rebuild_in_progress",
    }
)


@dataclass
class RoutingError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class NodeNotFound(RoutingError):
    def __init__(self, node_id: object, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("node_not_found", f"node {node_id} not found", {"node_id": node_id, **(details or {})})


class NoPathExists(RoutingError):
    def __init__(self, source: int, destination: int, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            "no_path_exists",
            f"no path from {source} to {destination}",
            {"source": source, "destination": destination, **(details or {})},
        )


class DeadlineExceeded(RoutingError):
    def __init__(self, deadline_ms: float, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            "deadline_exceeded",
            f"route search stopped at its first meeting after the {deadline_ms:.0f}ms deadline",
            {"deadline_ms": deadline_ms, **(details or {})},
        )


class MapMatchLowConfidence(RoutingError):
    def __init__(self, device_id: str, confidence: float, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            "map_match_low_confidence",
            f"match confidence {confidence:.3f} below threshold for device {device_id}",
            {"device_id": device_id, "confidence": confidence, **(details or {})},
        )


class RecomputeFailure(RoutingError):
    def __init__(self, shortcut_edge_id: int, reason: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            "recompute_failure",
            f"shortcut {shortcut_edge_id} recompute failed: {reason}",
            {"shortcut_edge_id": shortcut_edge_id, "reason": reason, **(details or {})},
        )


class RebuildInProgress(RoutingError):
    def __init__(self, started_at: str | None) -> None:
        super().__init__(
            "rebuild_in_progress",
            "a hierarchy rebuild is already running",
            {"started_at_utc": started_at},
        )


class IngestionBacklog(RoutingError):
    def __init__(self, partition: int, dropped: int) -> None:
        super().__init__(
            "ingestion_backlog",
            f"partition {partition} dropped {dropped} oldest samples",
            {"partition": partition, "dropped": dropped},
        )


class GraphStoreUnavailable(RoutingError):
    def __init__(self, operation: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            "graph_store_unavailable",
            f"graph store {operation} failed after retries",
            {"operation": operation, **(details or {})},
        )


def normalize_reason_code(reason_code: str, *, default: str = "graph_store_unavailable") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
