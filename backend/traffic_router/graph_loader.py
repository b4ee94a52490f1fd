from __future__ import annotations

import re
from decimal import Decimal
from pathlib import Path
from typing import Any

import ijson

from .geo import haversine_m
from .graph_model import Edge, RoadGraph
from .logging_utils import log_event
from .routing_errors import RoutingError
from .settings import settings

DEFAULT_SPEED_KPH = 50.0


def graph_asset_path() -> Path:
    explicit = (settings.graph_asset_path or "").strip()
    if explicit:
        return Path(explicit)
    return Path(settings.out_dir) / "model_assets" / "road_graph.json"


def _as_float(raw: object) -> float | None:
    if not isinstance(raw, (int, float, str, Decimal)) or isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _parse_node(raw: object) -> tuple[int, float, float] | None:
    if not isinstance(raw, dict):
        return None
    node_id_raw = raw.get("id")
    if node_id_raw is None:
        return None
    try:
        node_id = int(node_id_raw)
    except (TypeError, ValueError):
        return None
    lat = _as_float(raw.get("lat"))
    lon = _as_float(raw.get("lon"))
    if lat is None or lon is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return (node_id, lat, lon)


def _parse_edge(
    raw: object,
    nodes: dict[int, tuple[float, float]],
) -> tuple[int | None, int, int, float, float, bool] | None:
    """Return (edge_id, u, v, length_m, travel_time_s, oneway) or None when unusable."""
    if isinstance(raw, dict):
        u_raw, v_raw = raw.get("u"), raw.get("v")
        edge_id_raw = raw.get("id")
        length_raw = raw.get("length_m")
        time_raw = raw.get("travel_time_s", raw.get("weight"))
        speed_raw = raw.get("speed_kph")
        oneway = bool(raw.get("oneway", True))
    elif isinstance(raw, (list, tuple)) and len(raw) >= 3:
        u_raw, v_raw, time_raw = raw[0], raw[1], raw[2]
        edge_id_raw = None
        length_raw = None
        speed_raw = None
        oneway = bool(raw[3]) if len(raw) > 3 else True
    else:
        return None
    try:
        u = int(u_raw)  # type: ignore[arg-type]
        v = int(v_raw)  # type: ignore[arg-type]
        edge_id = int(edge_id_raw) if edge_id_raw is not None else None
    except (TypeError, ValueError):
        return None
    if u == v or u not in nodes or v not in nodes:
        return None
    length_m = _as_float(length_raw)
    if length_m is None or length_m <= 0.0:
        length_m = haversine_m(nodes[u][0], nodes[u][1], nodes[v][0], nodes[v][1])
    travel_time_s = _as_float(time_raw)
    if travel_time_s is None or travel_time_s <= 0.0:
        speed_kph = _as_float(speed_raw)
        if speed_kph is None or speed_kph <= 0.0:
            speed_kph = DEFAULT_SPEED_KPH
        travel_time_s = length_m / (speed_kph / 3.6)
    return (edge_id, u, v, max(0.1, float(length_m)), max(0.001, float(travel_time_s)), oneway)


def _assemble(
    nodes: dict[int, tuple[float, float]],
    parsed_edges: list[tuple[int | None, int, int, float, float, bool]],
    *,
    source: str,
) -> RoadGraph:
    explicit_ids = [item[0] for item in parsed_edges if item[0] is not None]
    if len(explicit_ids) != len(set(explicit_ids)):
        raise RoutingError("graph_asset_unavailable", "duplicate edge ids in road graph")
    next_id = (max(explicit_ids) + 1) if explicit_ids else 0
    edges: dict[int, Edge] = {}
    pending: list[tuple[int, int, float, float]] = []
    for edge_id, u, v, length_m, travel_time_s, oneway in parsed_edges:
        if edge_id is None:
            pending.append((u, v, length_m, travel_time_s))
        else:
            edges[edge_id] = Edge(
                edge_id=edge_id,
                from_node=u,
                to_node=v,
                base_weight=travel_time_s,
                current_weight=travel_time_s,
                length_m=length_m,
            )
        if not oneway:
            pending.append((v, u, length_m, travel_time_s))
    for u, v, length_m, travel_time_s in pending:
        edges[next_id] = Edge(
            edge_id=next_id,
            from_node=u,
            to_node=v,
            base_weight=travel_time_s,
            current_weight=travel_time_s,
            length_m=length_m,
        )
        next_id += 1
    return RoadGraph(nodes=nodes, edges=edges, source=source)


def graph_from_payload(payload: dict[str, Any], *, source: str = "payload") -> RoadGraph:
    nodes: dict[int, tuple[float, float]] = {}
    for raw_node in payload.get("nodes", ()) or ():
        parsed = _parse_node(raw_node)
        if parsed is not None:
            node_id, lat, lon = parsed
            nodes[node_id] = (lat, lon)
    parsed_edges = []
    for raw_edge in payload.get("edges", ()) or ():
        parsed_edge = _parse_edge(raw_edge, nodes)
        if parsed_edge is not None:
            parsed_edges.append(parsed_edge)
    return _assemble(nodes, parsed_edges, source=str(payload.get("source") or source))


def _graph_meta_from_head(path: Path) -> tuple[str, str]:
    try:
        with path.open("rb") as fh:
            head = fh.read(65_536).decode("utf-8", errors="ignore")
    except OSError:
        return "unknown", str(path)
    version_match = re.search(r'"version"\s*:\s*"([^"]+)"', head)
    source_match = re.search(r'"source"\s*:\s*"([^"]+)"', head)
    version = version_match.group(1) if version_match else "unknown"
    source = source_match.group(1) if source_match else str(path)
    return version, source


def load_road_graph(path: Path | None = None) -> RoadGraph:
    """Stream a road graph JSON asset (`nodes` then `edges` arrays) without loading it whole."""
    asset = path or graph_asset_path()
    if not asset.exists():
        raise RoutingError("graph_asset_unavailable", f"road graph asset not found: {asset}", {"path": str(asset)})
    version, source = _graph_meta_from_head(asset)
    nodes: dict[int, tuple[float, float]] = {}
    nodes_seen = 0
    with asset.open("rb") as fh:
        for raw_node in ijson.items(fh, "nodes.item"):
            nodes_seen += 1
            parsed = _parse_node(raw_node)
            if parsed is not None:
                node_id, lat, lon = parsed
                nodes[node_id] = (lat, lon)
    if not nodes:
        raise RoutingError("graph_asset_unavailable", f"road graph has no usable nodes: {asset}", {"path": str(asset)})

    edges_seen = 0
    parsed_edges = []
    with asset.open("rb") as fh:
        for raw_edge in ijson.items(fh, "edges.item"):
            edges_seen += 1
            parsed_edge = _parse_edge(raw_edge, nodes)
            if parsed_edge is not None:
                parsed_edges.append(parsed_edge)
    graph = _assemble(nodes, parsed_edges, source=source)
    log_event(
        "road_graph_loaded",
        path=str(asset),
        graph_version=version,
        source=source,
        nodes_seen=nodes_seen,
        nodes_kept=len(graph.nodes),
        edges_seen=edges_seen,
        edges_kept=len(graph.edges),
    )
    return graph
