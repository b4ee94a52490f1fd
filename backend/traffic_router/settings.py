from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_out_dir() -> str:
    # Keep runtime artifacts in backend/out by default to avoid polluting source assets.
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping config out of code for easy extension."""

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    graph_asset_path: str = Field(default="", alias="GRAPH_ASSET_PATH")
    snapshot_asset_path: str = Field(default="", alias="SNAPSHOT_ASSET_PATH")
    graph_store_url: str = Field(default="", alias="GRAPH_STORE_URL")
    graph_store_timeout_s: float = Field(default=5.0, ge=0.1, le=120.0, alias="GRAPH_STORE_TIMEOUT_S")
    graph_partition_bucket_deg: float = Field(default=0.15, gt=0.0, le=10.0, alias="GRAPH_PARTITION_BUCKET_DEG")

    # Storage boundary retry policy
    store_max_attempts: int = Field(default=4, ge=1, le=20, alias="STORE_MAX_ATTEMPTS")
    store_retry_backoff_base_ms: int = Field(default=100, ge=0, alias="STORE_RETRY_BACKOFF_BASE_MS")
    store_retry_backoff_max_ms: int = Field(default=2000, ge=0, alias="STORE_RETRY_BACKOFF_MAX_MS")
    store_retry_jitter_ms: int = Field(default=25, ge=0, alias="STORE_RETRY_JITTER_MS")
    store_retry_deadline_ms: int = Field(default=10_000, ge=1, alias="STORE_RETRY_DEADLINE_MS")
    store_retryable_status_codes: str = Field(default="429,500,502,503,504", alias="STORE_RETRYABLE_STATUS_CODES")

    # Hierarchy build
    witness_settle_limit: int = Field(default=500, ge=1, alias="WITNESS_SETTLE_LIMIT")
    witness_hop_limit: int = Field(default=8, ge=1, alias="WITNESS_HOP_LIMIT")
    contraction_node_budget: int = Field(default=5000, ge=1, alias="CONTRACTION_NODE_BUDGET")
    contraction_time_budget_s: float = Field(default=600.0, gt=0.0, alias="CONTRACTION_TIME_BUDGET_S")
    priority_edge_difference_weight: float = Field(default=4.0, ge=0.0, alias="PRIORITY_EDGE_DIFFERENCE_WEIGHT")
    priority_contracted_neighbors_weight: float = Field(
        default=2.0,
        ge=0.0,
        alias="PRIORITY_CONTRACTED_NEIGHBORS_WEIGHT",
    )
    priority_search_space_weight: float = Field(default=0.05, ge=0.0, alias="PRIORITY_SEARCH_SPACE_WEIGHT")
    level2_percentile: float = Field(default=0.70, gt=0.0, lt=1.0, alias="LEVEL2_PERCENTILE")
    level3_percentile: float = Field(default=0.90, gt=0.0, lt=1.0, alias="LEVEL3_PERCENTILE")

    # Route planner
    route_short_distance_m: float = Field(default=3_000.0, ge=0.0, alias="ROUTE_SHORT_DISTANCE_M")
    route_long_distance_m: float = Field(default=60_000.0, ge=0.0, alias="ROUTE_LONG_DISTANCE_M")
    route_short_radius_factor: float = Field(default=1.5, ge=1.0, alias="ROUTE_SHORT_RADIUS_FACTOR")
    route_short_radius_min_m: float = Field(default=1_000.0, ge=0.0, alias="ROUTE_SHORT_RADIUS_MIN_M")
    route_default_deadline_ms: int = Field(default=200, ge=1, le=120_000, alias="ROUTE_DEFAULT_DEADLINE_MS")
    route_snap_max_distance_m: float = Field(default=2_000.0, gt=0.0, alias="ROUTE_SNAP_MAX_DISTANCE_M")

    # Map matching
    match_gps_sigma_m: float = Field(default=10.0, gt=0.0, alias="MATCH_GPS_SIGMA_M")
    match_candidate_radius_m: float = Field(default=50.0, gt=0.0, alias="MATCH_CANDIDATE_RADIUS_M")
    match_widen_factor: float = Field(default=2.0, ge=1.0, alias="MATCH_WIDEN_FACTOR")
    match_max_radius_m: float = Field(default=400.0, gt=0.0, alias="MATCH_MAX_RADIUS_M")
    match_max_candidates: int = Field(default=8, ge=1, le=128, alias="MATCH_MAX_CANDIDATES")
    match_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0, alias="MATCH_CONFIDENCE_THRESHOLD")
    match_transition_beta_m: float = Field(default=30.0, gt=0.0, alias="MATCH_TRANSITION_BETA_M")
    match_heading_kappa: float = Field(default=2.0, ge=0.0, alias="MATCH_HEADING_KAPPA")
    match_heading_min_displacement_m: float = Field(default=5.0, ge=0.0, alias="MATCH_HEADING_MIN_DISPLACEMENT_M")
    match_max_gap_s: float = Field(default=120.0, gt=0.0, alias="MATCH_MAX_GAP_S")
    match_max_speed_mps: float = Field(default=70.0, gt=0.0, alias="MATCH_MAX_SPEED_MPS")
    match_checkpoint_interval_s: float = Field(default=60.0, gt=0.0, alias="MATCH_CHECKPOINT_INTERVAL_S")
    match_partitions: int = Field(default=4, ge=1, le=256, alias="MATCH_PARTITIONS")

    # Speed aggregation
    aggregate_window_s: float = Field(default=300.0, gt=0.0, alias="AGGREGATE_WINDOW_S")
    aggregate_publish_threshold: float = Field(default=0.05, ge=0.0, alias="AGGREGATE_PUBLISH_THRESHOLD")
    aggregate_partitions: int = Field(default=4, ge=1, le=256, alias="AGGREGATE_PARTITIONS")
    partition_queue_capacity: int = Field(default=10_000, ge=1, alias="PARTITION_QUEUE_CAPACITY")

    # Edge weight updates
    updater_min_speed_mps: float = Field(default=0.5, gt=0.0, alias="UPDATER_MIN_SPEED_MPS")
    updater_cheap_tolerance: float = Field(default=0.10, ge=0.0, alias="UPDATER_CHEAP_TOLERANCE")
    updater_debounce_ms: int = Field(default=1_000, ge=0, alias="UPDATER_DEBOUNCE_MS")
    updater_max_recompute_attempts: int = Field(default=3, ge=1, le=100, alias="UPDATER_MAX_RECOMPUTE_ATTEMPTS")
    updater_triangle_budget: int = Field(default=256, ge=1, alias="UPDATER_TRIANGLE_BUDGET")
    staleness_bound_s: float = Field(default=300.0, gt=0.0, alias="STALENESS_BOUND_S")
    snapshot_retain_versions: int = Field(default=4, ge=1, le=64, alias="SNAPSHOT_RETAIN_VERSIONS")

    # Background rebuilds
    rebuild_interval_s: float = Field(default=3_600.0, gt=0.0, alias="REBUILD_INTERVAL_S")
    rebuild_on_startup: bool = Field(default=False, alias="REBUILD_ON_STARTUP")
    pipeline_workers_enabled: bool = Field(default=True, alias="PIPELINE_WORKERS_ENABLED")

    @model_validator(mode="after")
    def _keep_thresholds_ordered(self) -> "Settings":
        if self.level3_percentile <= self.level2_percentile:
            self.level3_percentile = min(0.99, self.level2_percentile + 0.05)
        if self.route_long_distance_m < self.route_short_distance_m:
            self.route_long_distance_m = self.route_short_distance_m
        self.match_max_radius_m = max(self.match_max_radius_m, self.match_candidate_radius_m)
        self.store_retry_backoff_max_ms = max(self.store_retry_backoff_max_ms, self.store_retry_backoff_base_ms)
        return self


settings = Settings()
