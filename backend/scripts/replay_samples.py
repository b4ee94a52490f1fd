from __future__ import annotations

import argparse
import csv
import json
import sys
from pathlib import Path
from typing import Any, Iterator, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from traffic_router.graph_store import InMemoryGraphStore
from traffic_router.map_matcher import PositionFix
from traffic_router.pipeline import TrafficPipeline
from traffic_router.snapshot_codec import write_snapshot

REQUIRED_COLUMNS = ("device_id", "lat", "lon", "timestamp")


def read_fixes(path: Path) -> Iterator[PositionFix]:
    if not path.exists():
        raise ValueError(f"fixes CSV not found: {path}")
    with path.open("r", encoding="utf-8", newline="") as fh:
        reader = csv.DictReader(fh)
        missing = [col for col in REQUIRED_COLUMNS if col not in (reader.fieldnames or ())]
        if missing:
            raise ValueError(f"fixes CSV missing columns: {', '.join(missing)}")
        for row in reader:
            try:
                yield PositionFix(
                    device_id=str(row["device_id"]).strip(),
                    lat=float(row["lat"]),
                    lon=float(row["lon"]),
                    timestamp=float(row["timestamp"]),
                )
            except (TypeError, ValueError):
                continue


def run_replay(args: argparse.Namespace) -> dict[str, Any]:
    pipeline = TrafficPipeline.bootstrap(
        graph_path=Path(args.graph) if args.graph else None,
        snapshot_file=Path(args.snapshot) if args.snapshot else None,
        graph_store=InMemoryGraphStore(),
    )
    start_version = pipeline.registry.current().version
    # Fixes are processed in order so per-device tracks see a monotone clock.
    fixes = sorted(read_fixes(Path(args.fixes)), key=lambda fix: (fix.timestamp, fix.device_id))
    report = pipeline.process(fixes)
    if args.rebuild:
        pipeline.rebuilder.rebuild_now()
    snapshot = pipeline.registry.current()
    payload: dict[str, Any] = {
        "fixes_csv": str(args.fixes),
        "start_version": start_version,
        "final_version": snapshot.version,
        "report": report.as_dict(),
        "shortcut_states": pipeline.updater.tracker.counts(),
    }
    if args.output:
        payload["snapshot_output"] = str(write_snapshot(snapshot, Path(args.output)))
    return payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay a CSV of GPS fixes through matching, aggregation and updates.")
    parser.add_argument("--fixes", required=True, help="CSV with device_id,lat,lon,timestamp columns.")
    parser.add_argument("--graph", default=None, help="Road graph JSON to contract before replaying.")
    parser.add_argument("--snapshot", default=None, help="Persisted snapshot to start from instead of a graph.")
    parser.add_argument("--output", default=None, help="Write the final snapshot here.")
    parser.add_argument("--rebuild", action="store_true", help="Rebuild the hierarchy after the replay.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    payload = run_replay(args)
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
