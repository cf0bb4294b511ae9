from __future__ import annotations

import argparse
import csv
import json
from pathlib import Path
from typing import Any, Dict, List

from routeack.eval.metrics import compute_metrics

FIELDS = [
    "run_id",
    "name",
    "backend",
    "ok",
    "reached_state",
    "failed_stage",
    "failure_kind",
    "loss_pct",
    "tx_packets",
    "rx_packets",
    "traffic_elapsed_s",
    "teardown_errors",
]


def summarize_runs(runs_dir: str, out_csv: str) -> List[Dict[str, Any]]:
    rows = []
    for report_file in sorted(Path(runs_dir).rglob("report.json")):
        with report_file.open("r", encoding="utf-8") as f:
            rows.append(compute_metrics(json.load(f)))

    out_path = Path(out_csv)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDS)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
    return rows


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Summarize run reports into CSV")
    parser.add_argument("--runs", required=True, help="Directory containing run folders")
    parser.add_argument("--out", required=True, help="Output CSV path")
    args = parser.parse_args()
    summarize_runs(args.runs, args.out)
