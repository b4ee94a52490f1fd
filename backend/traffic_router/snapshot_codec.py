from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import ijson

from .graph_model import Edge, GraphSnapshot, Node, ShortcutState
from .logging_utils import log_event
from .routing_errors import RoutingError
from .settings import settings

SNAPSHOT_FORMAT = "traffic-router-snapshot/1"


def snapshot_path(version: int | None = None) -> Path:
    name = "graph_snapshot.json" if version is None else f"graph_snapshot_v{int(version)}.json"
    return Path(settings.out_dir) / "snapshots" / name


def _num(raw: object) -> float:
    if isinstance(raw, Decimal):
        return float(raw)
    return float(raw)  # type: ignore[arg-type]


def node_to_dict(node: Node) -> dict[str, Any]:
    return {
        "id": node.node_id,
        "lat": node.lat,
        "lon": node.lon,
        "level": node.level,
        "rank": node.rank,
        "contracted": node.contracted,
    }


def node_from_dict(raw: dict[str, Any]) -> Node:
    return Node(
        node_id=int(raw["id"]),
        lat=_num(raw["lat"]),
        lon=_num(raw["lon"]),
        level=int(raw.get("level", 1)),
        rank=int(raw.get("rank", 0)),
        contracted=bool(raw.get("contracted", True)),
    )


def edge_to_dict(edge: Edge) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": edge.edge_id,
        "u": edge.from_node,
        "v": edge.to_node,
        "base_weight": edge.base_weight,
        "current_weight": edge.current_weight,
        "level": edge.level,
        "length_m": edge.length_m,
    }
    if edge.is_shortcut:
        row["shortcut"] = True
        row["via"] = edge.via_node
        row["constituents"] = list(edge.constituents or ())
        row["segment_count"] = edge.segment_count
    return row


def edge_from_dict(raw: dict[str, Any]) -> Edge:
    constituents_raw = raw.get("constituents")
    constituents = None
    if constituents_raw:
        first, second = constituents_raw
        constituents = (int(first), int(second))
    via_raw = raw.get("via")
    return Edge(
        edge_id=int(raw["id"]),
        from_node=int(raw["u"]),
        to_node=int(raw["v"]),
        base_weight=_num(raw["base_weight"]),
        current_weight=_num(raw["current_weight"]),
        level=int(raw.get("level", 1)),
        is_shortcut=bool(raw.get("shortcut", False)),
        length_m=_num(raw.get("length_m", 0.0)),
        via_node=int(via_raw) if via_raw is not None else None,
        constituents=constituents,
        segment_count=int(raw.get("segment_count", 1)),
    )


def write_snapshot(snapshot: GraphSnapshot, path: Path | None = None) -> Path:
    target = path or snapshot_path(snapshot.version)
    target.parent.mkdir(parents=True, exist_ok=True)
    # meta first so readers can inspect the header without parsing the arrays.
    payload = {
        "meta": {
            "format": SNAPSHOT_FORMAT,
            "version": snapshot.version,
            "source": snapshot.source,
            "created_at": snapshot.created_at,
        },
        "nodes": [node_to_dict(snapshot.nodes[node_id]) for node_id in sorted(snapshot.nodes)],
        "edges": [edge_to_dict(snapshot.edges[edge_id]) for edge_id in sorted(snapshot.edges)],
        "shortcut_states": [
            [edge_id, snapshot.shortcut_states[edge_id].value] for edge_id in sorted(snapshot.shortcut_states)
        ],
    }
    tmp = target.with_suffix(target.suffix + ".tmp")
    tmp.write_text(json.dumps(payload), encoding="utf-8")
    tmp.replace(target)
    log_event("snapshot_written", path=str(target), version=snapshot.version, edge_count=len(snapshot.edges))
    return target


def read_snapshot(path: Path) -> GraphSnapshot:
    if not path.exists():
        raise RoutingError("snapshot_unavailable", f"snapshot file not found: {path}", {"path": str(path)})
    meta: dict[str, Any] = {}
    with path.open("rb") as fh:
        for item in ijson.items(fh, "meta"):
            meta = item
            break
    if meta.get("format") != SNAPSHOT_FORMAT:
        raise RoutingError("snapshot_invalid", f"unrecognised snapshot format in {path}", {"path": str(path)})

    nodes: dict[int, Node] = {}
    with path.open("rb") as fh:
        for raw in ijson.items(fh, "nodes.item"):
            node = node_from_dict(raw)
            nodes[node.node_id] = node
    edges: dict[int, Edge] = {}
    with path.open("rb") as fh:
        for raw in ijson.items(fh, "edges.item"):
            edge = edge_from_dict(raw)
            if edge.from_node not in nodes or edge.to_node not in nodes:
                raise RoutingError(
                    "snapshot_invalid",
                    f"edge {edge.edge_id} references an unknown node",
                    {"path": str(path), "edge_id": edge.edge_id},
                )
            edges[edge.edge_id] = edge
    states: dict[int, ShortcutState] = {}
    with path.open("rb") as fh:
        for edge_id, state in ijson.items(fh, "shortcut_states.item"):
            states[int(edge_id)] = ShortcutState(str(state))

    snapshot = GraphSnapshot.create(
        version=int(meta.get("version", 1)),
        nodes=nodes,
        edges=edges,
        shortcut_states=states,
        source=str(meta.get("source") or ""),
        created_at=_num(meta.get("created_at", 0.0)),
    )
    log_event("snapshot_loaded", path=str(path), version=snapshot.version, edge_count=len(edges))
    return snapshot
