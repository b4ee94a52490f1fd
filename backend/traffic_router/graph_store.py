from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Protocol

import httpx

from .geo import grid_key
from .graph_model import Edge, GraphSnapshot, Node, ShortcutState
from .logging_utils import log_event
from .retry_policy import call_with_bounded_retry
from .settings import settings
from .snapshot_codec import edge_from_dict, edge_to_dict, node_from_dict, node_to_dict

PartitionKey = tuple[int, int]


@dataclass(frozen=True)
class PartitionSlice:
    key: PartitionKey
    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]


@dataclass(frozen=True)
class SnapshotDelta:
    """What changed between the previous published version and `version`."""

    version: int
    edges: tuple[Edge, ...] = ()
    nodes: tuple[Node, ...] = ()
    shortcut_states: dict[int, ShortcutState] = field(default_factory=dict)
    # A full snapshot (after a rebuild) replaces everything the store holds.
    replace: bool = False

    @property
    def empty(self) -> bool:
        return not self.edges and not self.nodes and not self.shortcut_states

    def as_payload(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "replace": self.replace,
            "edges": [edge_to_dict(edge) for edge in self.edges],
            "nodes": [node_to_dict(node) for node in self.nodes],
            "shortcut_states": {str(edge_id): state.value for edge_id, state in self.shortcut_states.items()},
        }


class GraphStore(Protocol):
    def get_node(self, node_id: int) -> Node | None: ...

    def get_edge(self, edge_id: int) -> Edge | None: ...

    def range_by_partition(self, key: PartitionKey) -> PartitionSlice: ...

    def put_snapshot(self, version: int, delta: SnapshotDelta) -> None: ...


def partition_key_for(lat: float, lon: float) -> PartitionKey:
    return grid_key(lat, lon, float(settings.graph_partition_bucket_deg))


class InMemoryGraphStore:
    """Process-local store; edges live in the partition of their tail node."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._nodes: dict[int, Node] = {}
        self._edges: dict[int, Edge] = {}
        self._states: dict[int, ShortcutState] = {}
        self._versions: list[int] = []

    def load_snapshot(self, snapshot: GraphSnapshot) -> None:
        with self._lock:
            self._nodes = dict(snapshot.nodes)
            self._edges = dict(snapshot.edges)
            self._states = dict(snapshot.shortcut_states)
            self._versions = [snapshot.version]

    def get_node(self, node_id: int) -> Node | None:
        with self._lock:
            return self._nodes.get(int(node_id))

    def get_edge(self, edge_id: int) -> Edge | None:
        with self._lock:
            return self._edges.get(int(edge_id))

    def shortcut_state(self, edge_id: int) -> ShortcutState | None:
        with self._lock:
            return self._states.get(int(edge_id))

    def range_by_partition(self, key: PartitionKey) -> PartitionSlice:
        with self._lock:
            nodes = tuple(
                sorted(
                    (node for node in self._nodes.values() if partition_key_for(node.lat, node.lon) == key),
                    key=lambda node: node.node_id,
                )
            )
            members = {node.node_id for node in nodes}
            edges = tuple(
                sorted(
                    (edge for edge in self._edges.values() if edge.from_node in members),
                    key=lambda edge: edge.edge_id,
                )
            )
        return PartitionSlice(key=key, nodes=nodes, edges=edges)

    def put_snapshot(self, version: int, delta: SnapshotDelta) -> None:
        with self._lock:
            if self._versions and int(version) <= self._versions[-1]:
                return
            if delta.replace:
                self._nodes, self._edges, self._states = {}, {}, {}
            for node in delta.nodes:
                self._nodes[node.node_id] = node
            for edge in delta.edges:
                self._edges[edge.edge_id] = edge
            self._states.update(delta.shortcut_states)
            self._versions.append(int(version))

    def versions(self) -> tuple[int, ...]:
        with self._lock:
            return tuple(self._versions)


class HttpGraphStore:
    """Graph store behind an HTTP service, with bounded retry on transient failures."""

    def __init__(self, base_url: str | None = None, *, client: httpx.Client | None = None) -> None:
        url = (base_url or settings.graph_store_url or "").rstrip("/")
        if not url and client is None:
            raise ValueError("HttpGraphStore needs a base url (GRAPH_STORE_URL) or a client")
        self._client = client or httpx.Client(base_url=url, timeout=float(settings.graph_store_timeout_s))

    def close(self) -> None:
        self._client.close()

    def _get_json(self, operation: str, path: str) -> dict[str, Any] | None:
        def _call() -> dict[str, Any] | None:
            response = self._client.get(path)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
            return payload if isinstance(payload, dict) else None

        return call_with_bounded_retry(operation, _call)

    def get_node(self, node_id: int) -> Node | None:
        payload = self._get_json("get_node", f"/nodes/{int(node_id)}")
        return node_from_dict(payload) if payload is not None else None

    def get_edge(self, edge_id: int) -> Edge | None:
        payload = self._get_json("get_edge", f"/edges/{int(edge_id)}")
        return edge_from_dict(payload) if payload is not None else None

    def range_by_partition(self, key: PartitionKey) -> PartitionSlice:
        payload = self._get_json("range_by_partition", f"/partitions/{int(key[0])}/{int(key[1])}") or {}
        nodes = tuple(node_from_dict(raw) for raw in payload.get("nodes", ()) if isinstance(raw, dict))
        edges = tuple(edge_from_dict(raw) for raw in payload.get("edges", ()) if isinstance(raw, dict))
        return PartitionSlice(key=key, nodes=nodes, edges=edges)

    def put_snapshot(self, version: int, delta: SnapshotDelta) -> None:
        body = delta.as_payload()

        def _call() -> None:
            response = self._client.put(f"/snapshots/{int(version)}", json=body)
            response.raise_for_status()

        call_with_bounded_retry("put_snapshot", _call)
        log_event("graph_store_snapshot_put", version=int(version), edge_count=len(delta.edges))
