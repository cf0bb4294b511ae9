from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from routeack.backends.base import Lab, RoutingSession, SessionConfig
from routeack.backends.registry import build_lab
from routeack.core.convergence import ConvergenceVerifier
from routeack.core.errors import HarnessError, SetupError
from routeack.core.installer import RouteInstaller
from routeack.core.logging import JsonlLogger
from routeack.core.traffic import TrafficValidator
from routeack.core.types import ConvergenceExpectation, RunReport, RunState, StageResult
from routeack.runtime.config import ScenarioConfig
from routeack.utils.io import dump_json, ensure_dir, now_tag

StageFn = Callable[[], Dict[str, Any]]
Stage = Tuple[str, str, Optional[RunState], StageFn]


class ScenarioRunner:
    """Drives one static-versus-dynamic route run against a lab.

    Stages run in order and the first failed stage ends the pipeline.
    ``teardown`` always runs afterwards; its steps are best-effort and their
    errors land in the report without replacing the stage failure.
    """

    def __init__(
        self,
        config: ScenarioConfig,
        lab: Lab,
        events: JsonlLogger | None = None,
        run_id: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.lab = lab
        self.run_id = run_id or config.name
        self._events = events or JsonlLogger(path=None)
        self._log = logger or logging.getLogger("routeack.orchestrator")
        ni = config.network_instance
        timers = config.timers
        self.installer = RouteInstaller(lab.device, ni)
        self.verifier = ConvergenceVerifier(
            lab.telemetry,
            ni,
            poll_interval_s=timers.poll_interval_s,
            clock=lab.clock,
            sleep=lab.sleep,
            events=self._events,
        )
        self.validator = TrafficValidator(
            lab.traffic,
            poll_interval_s=timers.traffic_poll_interval_s,
            settle_polls=timers.settle_polls,
            clock=lab.clock,
            sleep=lab.sleep,
            events=self._events,
        )
        self.report = RunReport(
            run_id=self.run_id,
            name=config.name,
            backend=str(config.backend.get("type", "emu")),
        )
        self._session: Optional[RoutingSession] = None
        self._instance_created = False
        self._protocols_started = False

    def stages(self) -> List[Stage]:
        return [
            ("provision", "setup", RunState.PROVISIONED, self._provision),
            ("install_static", "programming", RunState.STATIC_INSTALLED, self._install_static),
            ("verify_static", "convergence", RunState.STATIC_VERIFIED, self._verify_static),
            ("open_session", "setup", None, self._open_session),
            ("install_dynamic", "programming", RunState.DYNAMIC_INSTALLED, self._install_dynamic),
            ("verify_dynamic", "convergence", RunState.DYNAMIC_VERIFIED, self._verify_dynamic),
            ("validate_traffic", "traffic", RunState.TRAFFIC_VALIDATED, self._validate_traffic),
        ]

    def run(self) -> RunReport:
        self._log.info(
            "run %s: prefix %s in %s", self.run_id, self.config.prefix, self.config.network_instance
        )
        try:
            for name, kind, state, fn in self.stages():
                result = self._run_stage(name, kind, state, fn)
                self.report.stages.append(result)
                if not result.ok:
                    break
                if state is not None:
                    self.report.state = state
        finally:
            self.report.teardown = self.teardown()
            self.report.state = RunState.TORN_DOWN

        failure = self.report.failure
        if failure is None:
            self._log.info("run %s passed", self.run_id)
        else:
            message = (failure.error or {}).get("message", "")
            self._log.error("run %s failed at %s: %s", self.run_id, failure.stage, message)
        return self.report

    def teardown(self) -> List[Dict[str, Any]]:
        steps: List[Dict[str, Any]] = []
        if self._session is not None:
            if self.config.teardown.flush_dynamic:
                flush = self.installer.remove_dynamic_routes
                steps.append(self._teardown_step("remove_dynamic_routes", flush))
            steps.append(self._teardown_step("close_session", self._close_session))
        if self._protocols_started:
            steps.append(self._teardown_step("stop_protocols", self._stop_protocols))
        if self._instance_created:
            steps.append(self._teardown_step("delete_network_instance", self._delete_instance))
        return steps

    # -- stages ----------------------------------------------------------

    def _provision(self) -> Dict[str, Any]:
        cfg = self.config
        self.lab.device.replace_network_instance(cfg.network_instance)
        self._instance_created = True
        for name in sorted(cfg.ports):
            port = cfg.port(name)
            self.lab.provisioner.configure_dut_interface(name, port.dut)
            self.lab.provisioner.configure_ate_interface(name, port.ate, gateway=port.dut.ipv4)
        self.lab.provisioner.start_protocols()
        self._protocols_started = True
        return {"ports": sorted(cfg.ports)}

    def _install_static(self) -> Dict[str, Any]:
        route = self.installer.install_static_route(self.config.prefix, self.config.static_next_hop)
        return {"prefix": route.prefix, "next_hop": route.next_hop}

    def _verify_static(self) -> Dict[str, Any]:
        prefix = self.config.prefix
        observed = self.verifier.require_prefix_state(
            prefix, prefix, self.config.timers.convergence_timeout_s
        )
        return {"path": self.verifier.path(prefix).xpath, "observed": observed}

    def _open_session(self) -> Dict[str, Any]:
        settings = self.config.session
        session_cfg = SessionConfig(
            persistence=settings.persistence,
            election_id=settings.election_id,
        )
        try:
            self._session = self.lab.routing.open(session_cfg)
        except RuntimeError as exc:
            raise SetupError(f"open routing session: {exc}") from exc
        self.installer.attach_session(self._session)
        return {"persistence": settings.persistence, "election_id": settings.election_id}

    def _install_dynamic(self) -> Dict[str, Any]:
        dyn = self.config.dynamic
        self.installer.install_dynamic_route(
            self.config.prefix,
            dyn.nh_index,
            dyn.next_hop,
            dyn.nhg_index,
            dyn.ack_mode,
            weight=dyn.weight,
        )
        return {"ack_mode": dyn.ack_mode.value, **self.installer.installed}

    def _verify_dynamic(self) -> Dict[str, Any]:
        prefix = self.config.prefix
        timeout_s = self.config.timers.convergence_timeout_s
        expectations = [ConvergenceExpectation(prefix, prefix, timeout_s)]
        preferred = self.config.expect.preferred_channel
        if preferred is not None:
            expectations.append(
                ConvergenceExpectation(prefix, preferred.value, timeout_s, leaf="origin-protocol")
            )
        detail: Dict[str, Any] = {e.leaf: self.verifier.require(e) for e in expectations}
        for e in expectations:
            self.verifier.require_stable(prefix, leaf=e.leaf)
        detail["stable"] = True
        return detail

    def _validate_traffic(self) -> Dict[str, Any]:
        t = self.config.traffic
        result = self.validator.run_traffic_check(
            t.src_port,
            t.dst_port,
            t.range_min,
            t.range_max,
            t.address_count,
            t.packet_count,
            self.config.timers.traffic_duration_s,
            pps=t.pps,
            flow_name=t.flow_name,
        )
        self.report.traffic = result
        self.validator.require_zero_loss(result)
        return {"flow": result.flow, "loss_pct": result.loss_pct}

    # -- teardown steps --------------------------------------------------

    def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.close()

    def _stop_protocols(self) -> None:
        self.lab.provisioner.stop_protocols()
        self._protocols_started = False

    def _delete_instance(self) -> None:
        self.lab.device.delete_network_instance(self.config.network_instance)
        self._instance_created = False

    # -- helpers ---------------------------------------------------------

    def _run_stage(
        self, name: str, kind: str, state: Optional[RunState], fn: StageFn
    ) -> StageResult:
        self._log.debug("stage %s", name)
        try:
            detail = fn()
        except HarnessError as exc:
            result = StageResult(stage=name, ok=False, error=exc.to_dict())
        except Exception as exc:  # noqa: BLE001
            result = StageResult(stage=name, ok=False, error={"kind": kind, "message": str(exc)})
        else:
            result = StageResult(stage=name, ok=True, state=state, detail=detail)
        self._events.log("stage", run_id=self.run_id, **result.to_dict())
        if not result.ok:
            self._log.error("stage %s failed: %s", name, result.error["message"])
        return result

    def _teardown_step(self, name: str, fn: Callable[[], None]) -> Dict[str, Any]:
        step: Dict[str, Any] = {"step": name, "ok": True}
        try:
            fn()
        except Exception as exc:  # noqa: BLE001
            step.update(ok=False, error=str(exc))
            self._log.warning("teardown %s failed: %s", name, exc)
        self._events.log("teardown", run_id=self.run_id, **step)
        return step


def run_scenario(
    config: ScenarioConfig,
    lab: Lab | None = None,
    output_dir: str | Path | None = None,
    run_index: int | None = None,
) -> RunReport:
    run_id = f"{config.name}_{now_tag()}"
    if run_index is not None:
        run_id = f"{run_id}_{run_index:03d}"
    run_dir = ensure_dir(Path(output_dir or config.output_dir) / run_id)
    dump_json(run_dir / "config.effective.json", config.to_dict())

    events = JsonlLogger(run_dir / "events.jsonl")
    try:
        if lab is None:
            lab = build_lab(config.backend, config.network_instance)
        report = ScenarioRunner(config, lab, events=events, run_id=run_id).run()
    finally:
        events.close()
    dump_json(run_dir / "report.json", report.to_dict())
    return report
