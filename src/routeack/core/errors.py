from __future__ import annotations

from typing import Any, Dict


class HarnessError(RuntimeError):
    """Base class for failures reported in a run report."""

    kind = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class ConfigError(HarnessError):
    kind = "config"


class SetupError(HarnessError):
    kind = "setup"


class ProgrammingError(HarnessError):
    kind = "programming"

    def __init__(self, operation: str, target: str, reason: str) -> None:
        super().__init__(f"{operation} {target} failed: {reason}")
        self.operation = operation
        self.target = target
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update(operation=self.operation, target=self.target, reason=self.reason)
        return out


class ConvergenceError(HarnessError):
    kind = "convergence"

    def __init__(self, path: str, expected: Any, observed: Any, timeout_s: float) -> None:
        super().__init__(
            f"{path} got {observed!r}, want {expected!r} (no match after {timeout_s:g}s)"
        )
        self.path = path
        self.expected = expected
        self.observed = observed
        self.timeout_s = timeout_s

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update(
            path=self.path,
            expected=self.expected,
            observed=self.observed,
            timeout_s=self.timeout_s,
        )
        return out


class TrafficLossError(HarnessError):
    kind = "traffic"

    def __init__(self, flow: str, loss_pct: float) -> None:
        super().__init__(f"LossPct for flow {flow} got {loss_pct:g}, want 0")
        self.flow = flow
        self.loss_pct = loss_pct

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update(flow=self.flow, loss_pct=self.loss_pct)
        return out
