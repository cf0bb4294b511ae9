from __future__ import annotations

from typing import Any, Dict, List


def compute_metrics(report: Dict[str, Any]) -> Dict[str, Any]:
    stages: List[Dict[str, Any]] = report.get("stages", [])
    failure = report.get("failure") or {}
    error = failure.get("error") or {}
    traffic = report.get("traffic") or {}
    return {
        "run_id": report.get("run_id"),
        "name": report.get("name"),
        "backend": report.get("backend"),
        "ok": bool(report.get("ok", False)),
        "reached_state": _reached_state(stages),
        "failed_stage": failure.get("stage", ""),
        "failure_kind": error.get("kind", ""),
        "loss_pct": traffic.get("loss_pct"),
        "tx_packets": traffic.get("tx_packets"),
        "rx_packets": traffic.get("rx_packets"),
        "traffic_elapsed_s": traffic.get("elapsed_s"),
        "teardown_errors": len(report.get("teardown_errors", [])),
    }


def _reached_state(stages: List[Dict[str, Any]]) -> str:
    reached = "Unconfigured"
    for stage in stages:
        if not stage.get("ok"):
            break
        if stage.get("state"):
            reached = str(stage["state"])
    return reached
