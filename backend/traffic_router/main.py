from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .logging_utils import log_event
from .map_matcher import PositionFix
from .metrics_store import metrics_snapshot, record_request
from .models import (
    IngestRequest,
    IngestResponse,
    RebuildStatusResponse,
    RouteRequest,
    RouteResponse,
    SnapshotResponse,
)
from .pipeline import TrafficPipeline
from .routing_errors import RoutingError, normalize_reason_code
from .settings import settings

# Reason code -> HTTP status for errors surfaced to API callers.
_STATUS_BY_REASON: dict[str, int] = {
    "node_not_found": 404,
    "no_path_exists": 404,
    "snapshot_unavailable": 503,
    "graph_store_unavailable": 503,
    "ingestion_backlog": 429,
    "invalid_sample": 422,
    "rebuild_in_progress": 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    pipeline = TrafficPipeline.bootstrap()
    app.state.pipeline = pipeline
    if settings.pipeline_workers_enabled:
        pipeline.start()
    if settings.rebuild_on_startup:
        pipeline.rebuilder.start()
    yield
    pipeline.stop()
    app.state.pipeline = None


app = FastAPI(title="Live Traffic Router", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_metrics(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    record_request(
        f"{request.method} {request.url.path}",
        duration_ms=(time.perf_counter() - started) * 1000.0,
        error=response.status_code >= 400,
    )
    return response


def traffic_pipeline(request: Request) -> TrafficPipeline:
    pipeline: TrafficPipeline | None = getattr(request.app.state, "pipeline", None)  # type: ignore[attr-defined]
    if pipeline is None:
        raise HTTPException(status_code=503, detail="pipeline not initialised")
    return pipeline


PipelineDep = Annotated[TrafficPipeline, Depends(traffic_pipeline)]


def _http_error(exc: RoutingError) -> HTTPException:
    reason_code = normalize_reason_code(exc.reason_code, default="routing_error")
    return HTTPException(
        status_code=_STATUS_BY_REASON.get(reason_code, 400),
        detail={"reason_code": reason_code, "message": exc.message, "details": exc.details or {}},
    )


@app.get("/health")
async def health(pipeline: PipelineDep) -> dict[str, Any]:
    snapshot = pipeline.registry.current()
    return {
        "status": "ok",
        "snapshot_version": snapshot.version,
        "stale": pipeline.registry.is_stale(),
        "workers_running": pipeline.running,
    }


@app.post("/route", response_model=RouteResponse)
def compute_route(req: RouteRequest, pipeline: PipelineDep) -> RouteResponse:
    try:
        result = pipeline.planner.find_route(
            req.source_endpoint(),
            req.destination_endpoint(),
            deadline_ms=req.deadline_ms,
        )
    except RoutingError as e:
        log_event("route_failed", reason_code=e.reason_code, error=e.message)
        raise _http_error(e) from e
    log_event(
        "route_request",
        snapshot_version=result.snapshot_version,
        mode=result.mode,
        segment_count=result.segment_count,
        total_weight=round(result.total_weight, 3),
        approximate=result.approximate,
        stale=result.stale,
    )
    eta = round(result.total_weight, 3)
    departure = req.departure_time
    return RouteResponse(
        path=list(result.edges),
        eta_seconds=eta,
        snapshot_version=result.snapshot_version,
        approximate=result.approximate,
        stale=result.stale,
        mode=result.mode,  # type: ignore[arg-type]
        segment_count=result.segment_count,
        departure_time=departure,
        arrival_time=None if departure is None else departure + eta,
        diagnostics=result.diagnostics,
    )


@app.post("/ingest", response_model=IngestResponse)
def ingest(req: IngestRequest, pipeline: PipelineDep) -> IngestResponse:
    fixes = [PositionFix(device_id=s.device_id, lat=s.lat, lon=s.lon, timestamp=s.timestamp) for s in req.samples]
    if pipeline.running:
        accepted, dropped = pipeline.ingest(fixes)
        return IngestResponse(accepted=accepted, dropped=dropped, queued=True)
    report = pipeline.process(fixes)
    log_event("ingest_processed", **report.as_dict())
    return IngestResponse(accepted=report.fixes, report=report.as_dict())


@app.get("/snapshot", response_model=SnapshotResponse)
async def snapshot_summary(pipeline: PipelineDep) -> SnapshotResponse:
    status = pipeline.status()
    return SnapshotResponse(
        summary=pipeline.registry.current().summary(),
        registry=status["registry"],
        stale=status["stale"],
        pending_aggregates=status["pending_aggregates"],
        shortcut_states=status["shortcut_states"],
    )


@app.get("/metrics")
async def metrics() -> dict[str, object]:
    return metrics_snapshot()


@app.post("/hierarchy/rebuild", response_model=RebuildStatusResponse)
def trigger_rebuild(pipeline: PipelineDep, wait: bool = False) -> RebuildStatusResponse:
    if wait:
        try:
            pipeline.rebuilder.rebuild_now()
        except RoutingError as e:
            raise _http_error(e) from e
        return RebuildStatusResponse(**pipeline.rebuilder.status(), accepted=True)
    accepted = pipeline.rebuilder.start()
    return RebuildStatusResponse(**pipeline.rebuilder.status(), accepted=accepted)


@app.get("/hierarchy/rebuild", response_model=RebuildStatusResponse)
async def rebuild_status(pipeline: PipelineDep) -> RebuildStatusResponse:
    return RebuildStatusResponse(**pipeline.rebuilder.status())
