from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class RunState(str, Enum):
    UNCONFIGURED = "Unconfigured"
    PROVISIONED = "Provisioned"
    STATIC_INSTALLED = "StaticInstalled"
    STATIC_VERIFIED = "StaticVerified"
    DYNAMIC_INSTALLED = "DynamicInstalled"
    DYNAMIC_VERIFIED = "DynamicVerified"
    TRAFFIC_VALIDATED = "TrafficValidated"
    TORN_DOWN = "TornDown"


@dataclass(frozen=True)
class ConvergenceExpectation:
    prefix: str
    expected: Any
    timeout_s: float
    leaf: str = "prefix"


@dataclass(frozen=True)
class TrafficResult:
    flow: str
    loss_pct: float
    tx_packets: int
    rx_packets: int
    polls: int = 0
    elapsed_s: float = 0.0


@dataclass
class StageResult:
    stage: str
    ok: bool
    state: Optional[RunState] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "ok": self.ok,
            "state": self.state.value if self.state else None,
            "detail": self.detail,
            "error": self.error,
        }


@dataclass
class RunReport:
    run_id: str
    name: str
    backend: str
    state: RunState = RunState.UNCONFIGURED
    stages: List[StageResult] = field(default_factory=list)
    teardown: List[Dict[str, Any]] = field(default_factory=list)
    traffic: Optional[TrafficResult] = None

    @property
    def ok(self) -> bool:
        if not self.stages or self.traffic is None:
            return False
        return all(s.ok for s in self.stages)

    @property
    def failure(self) -> Optional[StageResult]:
        for stage in self.stages:
            if not stage.ok:
                return stage
        return None

    @property
    def teardown_errors(self) -> List[Dict[str, Any]]:
        return [step for step in self.teardown if not step.get("ok", False)]

    def to_dict(self) -> Dict[str, Any]:
        failure = self.failure
        return {
            "run_id": self.run_id,
            "name": self.name,
            "backend": self.backend,
            "ok": self.ok,
            "state": self.state.value,
            "stages": [s.to_dict() for s in self.stages],
            "failure": failure.to_dict() if failure else None,
            "teardown": list(self.teardown),
            "teardown_errors": self.teardown_errors,
            "traffic": asdict(self.traffic) if self.traffic else None,
        }
