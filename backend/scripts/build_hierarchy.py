from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from traffic_router.graph_loader import load_road_graph
from traffic_router.hierarchy_builder import HierarchyBuilder
from traffic_router.snapshot_codec import snapshot_path, write_snapshot


def run_build(args: argparse.Namespace) -> dict[str, Any]:
    graph_path = Path(args.graph)
    graph = load_road_graph(graph_path)
    builder = HierarchyBuilder(
        witness_settle_limit=args.witness_settle_limit,
        node_budget=args.node_budget,
        time_budget_s=args.time_budget_s,
    )
    result = builder.build(graph, version=max(1, int(args.version)))
    output = Path(args.output) if args.output else snapshot_path()
    written = write_snapshot(result.snapshot, output)
    summary = result.snapshot.summary()
    return {
        "graph": str(graph_path),
        "output": str(written),
        "version": result.snapshot.version,
        "node_count": summary["node_count"],
        "edge_count": summary["edge_count"],
        "shortcut_count": summary["shortcut_count"],
        "core_node_count": summary["core_node_count"],
        "nodes_by_level": summary["nodes_by_level"],
        "dependency_rows": len(result.dependencies),
        "stats": result.stats,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Contract a road graph JSON asset into a hierarchy snapshot.")
    parser.add_argument("--graph", required=True, help="Road graph JSON (nodes + edges arrays).")
    parser.add_argument("--output", default=None, help="Snapshot path (defaults to OUT_DIR/snapshots).")
    parser.add_argument("--version", type=int, default=1)
    parser.add_argument("--witness-settle-limit", type=int, default=None)
    parser.add_argument("--node-budget", type=int, default=None)
    parser.add_argument("--time-budget-s", type=float, default=None)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    report = run_build(args)
    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
