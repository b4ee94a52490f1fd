from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from traffic_router.main import app
from traffic_router.routing_errors import RebuildInProgress, RoutingError
from traffic_router.settings import settings


@pytest.fixture
def client(tmp_path: Path, road_payload: dict, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    asset = tmp_path / "road_graph.json"
    asset.write_text(json.dumps(road_payload), encoding="utf-8")
    monkeypatch.setattr(settings, "graph_asset_path", str(asset))
    monkeypatch.setattr(settings, "pipeline_workers_enabled", False)
    monkeypatch.setattr(settings, "rebuild_on_startup", False)
    with TestClient(app) as test_client:
        yield test_client


def test_health_reports_the_live_snapshot(client: TestClient) -> None:
    resp = client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["snapshot_version"] == 1
    assert body["workers_running"] is False


def test_route_between_node_ids(client: TestClient) -> None:
    resp = client.post("/route", json={"origin": 1, "destination": 5})

    assert resp.status_code == 200
    body = resp.json()
    assert body["path"] == [0, 2]
    assert body["eta_seconds"] == pytest.approx(6.0)
    assert body["snapshot_version"] == 1
    assert body["approximate"] is False
    assert body["segment_count"] == 2


def test_route_between_coordinates(client: TestClient) -> None:
    resp = client.post(
        "/route",
        json={"origin": {"lat": 52.00001, "lon": -1.00001}, "destination": {"lat": 52.00299, "lon": -0.99801}},
    )

    assert resp.status_code == 200
    assert resp.json()["path"] == [0, 2]


@pytest.mark.parametrize(
    "payload",
    [
        {"destination": 5},
        {"origin": 1.5, "destination": 5},
        {"origin": {"lat": 123.0, "lon": -1.0}, "destination": 5},
        {"origin": 1, "destination": 5, "deadline_ms": 0},
        {"origin": 1, "destination": 5, "departure_time": -1},
    ],
)
def test_malformed_route_requests_are_rejected(client: TestClient, payload: dict) -> None:
    assert client.post("/route", json=payload).status_code == 422


def test_routing_errors_map_to_http_statuses(client: TestClient) -> None:
    missing = client.post("/route", json={"origin": 99, "destination": 5})
    assert missing.status_code == 404
    assert missing.json()["detail"]["reason_code"] == "node_not_found"

    unreachable = client.post("/route", json={"origin": 5, "destination": 1})
    assert unreachable.status_code == 404
    detail = unreachable.json()["detail"]
    assert detail["reason_code"] == "no_path_exists"
    assert detail["details"]["source"] == 5


def test_ingest_runs_inline_without_workers(client: TestClient) -> None:
    resp = client.post(
        "/ingest",
        json={"samples": [{"device_id": "van-1", "lat": 52.5, "lon": -1.5, "timestamp": 100.0}]},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["queued"] is False
    assert body["accepted"] == 1
    assert body["report"]["no_candidates"] == 1
    assert body["report"]["snapshot_version"] == 1


def test_ingest_validates_samples(client: TestClient) -> None:
    assert client.post("/ingest", json={"samples": []}).status_code == 422
    bad_lat = {"samples": [{"device_id": "van-1", "lat": 123.0, "lon": 0.0, "timestamp": 1.0}]}
    assert client.post("/ingest", json=bad_lat).status_code == 422


def test_snapshot_summary(client: TestClient) -> None:
    body = client.get("/snapshot").json()

    assert body["summary"]["node_count"] == 5
    assert body["summary"]["version"] == 1
    assert body["registry"]["current_version"] == 1
    assert body["stale"] is False
    assert body["pending_aggregates"] == 0


def test_rebuild_on_request_publishes_a_new_version(client: TestClient) -> None:
    assert client.get("/hierarchy/rebuild").json()["state"] == "idle"

    resp = client.post("/hierarchy/rebuild", params={"wait": True})

    assert resp.status_code == 200
    body = resp.json()
    assert body["state"] == "ready"
    assert body["accepted"] is True
    assert body["last_version"] == 2
    route = client.post("/route", json={"origin": 1, "destination": 5}).json()
    assert route["snapshot_version"] == 2
    assert route["eta_seconds"] == pytest.approx(6.0)


def test_metrics_count_requests_and_errors(client: TestClient) -> None:
    client.post("/route", json={"origin": 1, "destination": 5})
    client.post("/route", json={"origin": 99, "destination": 5})

    body = client.get("/metrics").json()

    route_stats = body["endpoints"]["POST /route"]
    assert route_stats["request_count"] == 2
    assert route_stats["error_count"] == 1


def test_ingest_queues_when_workers_run(tmp_path: Path, road_payload: dict, monkeypatch: pytest.MonkeyPatch) -> None:
    asset = tmp_path / "road_graph.json"
    asset.write_text(json.dumps(road_payload), encoding="utf-8")
    monkeypatch.setattr(settings, "graph_asset_path", str(asset))
    monkeypatch.setattr(settings, "pipeline_workers_enabled", True)
    monkeypatch.setattr(settings, "rebuild_on_startup", False)

    with TestClient(app) as client:
        resp = client.post(
            "/ingest",
            json={"samples": [{"device_id": "van-9", "lat": 52.0, "lon": -1.0, "timestamp": 5.0}]},
        )
        assert client.get("/health").json()["workers_running"] is True

    assert resp.status_code == 200
    assert resp.json()["queued"] is True
    assert resp.json()["accepted"] == 1


def test_departure_time_is_echoed_with_an_arrival_time(client: TestClient) -> None:
    resp = client.post("/route", json={"origin": 1, "destination": 5, "departure_time": 1000.0, "deadline_ms": 500})

    assert resp.status_code == 200
    body = resp.json()
    assert body["departure_time"] == pytest.approx(1000.0)
    assert body["arrival_time"] == pytest.approx(1006.0)


def test_unrecognised_reason_codes_surface_as_generic_routing_errors(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _fail(*_args, **_kwargs):
        raise RoutingError("Weird Failure", "something odd")

    monkeypatch.setattr(client.app.state.pipeline.planner, "find_route", _fail)

    resp = client.post("/route", json={"origin": 1, "destination": 5})

    assert resp.status_code == 400
    assert resp.json()["detail"]["reason_code"] == "routing_error"
    assert resp.json()["detail"]["message"] == "something odd"


def test_inline_rebuild_conflicts_with_a_running_one(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def _busy() -> int:
        raise RebuildInProgress("2026-01-01T00:00:00+00:00")

    monkeypatch.setattr(client.app.state.pipeline.rebuilder, "rebuild_now", _busy)

    resp = client.post("/hierarchy/rebuild", params={"wait": True})

    assert resp.status_code == 409
    assert resp.json()["detail"]["reason_code"] == "rebuild_in_progress"
