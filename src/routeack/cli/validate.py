from __future__ import annotations

import ipaddress
from typing import Any, Dict

from routeack.backends.registry import available_backends
from routeack.core.errors import ConfigError
from routeack.runtime.config import ScenarioConfig, parse_scenario_config


def validate_config(cfg: Dict[str, Any]) -> list[str]:
    try:
        scenario = parse_scenario_config(cfg)
    except ConfigError as exc:
        return [str(exc)]
    return validate_scenario(scenario)


def validate_scenario(cfg: ScenarioConfig) -> list[str]:
    errors: list[str] = []

    backend = str(cfg.backend.get("type", "emu"))
    if backend not in available_backends():
        errors.append(f"backend.type must be one of {available_backends()}, got {backend!r}")
    if backend == "clab" and not cfg.backend.get("topo"):
        errors.append("backend.topo is required for the clab backend")

    for name, port in sorted(cfg.ports.items()):
        try:
            same = port.dut.network == port.ate.network
        except ValueError as exc:
            errors.append(f"ports.{name}: {exc}")
            continue
        if not same:
            errors.append(f"ports.{name}: dut {port.dut.ipv4_cidr} and ate {port.ate.ipv4} differ")

    if not _reachable(cfg, cfg.static_next_hop):
        errors.append(f"static.next_hop {cfg.static_next_hop} is not on any ATE port subnet")
    if not _reachable(cfg, cfg.dynamic.next_hop):
        errors.append(f"dynamic.next_hop {cfg.dynamic.next_hop} is not on any ATE port subnet")
    if cfg.dynamic.weight <= 0:
        errors.append("dynamic.weight must be > 0")

    t = cfg.traffic
    for key in ("src_port", "dst_port"):
        if getattr(t, key) not in cfg.ports:
            errors.append(f"traffic.{key} {getattr(t, key)!r} is not a configured port")
    if t.src_port == t.dst_port:
        errors.append("traffic.src_port and traffic.dst_port must differ")
    try:
        lo = ipaddress.IPv4Address(t.range_min)
        hi = ipaddress.IPv4Address(t.range_max)
        if hi < lo:
            errors.append("traffic.range_max must not be below traffic.range_min")
        net = ipaddress.IPv4Network(cfg.prefix)
        if lo not in net or hi not in net:
            errors.append(f"traffic range {lo}..{hi} is outside {cfg.prefix}")
    except ValueError as exc:
        errors.append(f"traffic range: {exc}")
    if t.address_count <= 0:
        errors.append("traffic.address_count must be > 0")
    if t.packet_count <= 0:
        errors.append("traffic.packet_count must be > 0")
    if t.pps <= 0:
        errors.append("traffic.pps must be > 0")

    timers = cfg.timers
    for key in ("convergence_timeout_s", "poll_interval_s", "traffic_duration_s"):
        if float(getattr(timers, key)) <= 0:
            errors.append(f"timers.{key} must be > 0")
    if timers.traffic_poll_interval_s <= 0:
        errors.append("timers.traffic_poll_interval_s must be > 0")
    if timers.settle_polls < 1:
        errors.append("timers.settle_polls must be >= 1")
    if t.packet_count / t.pps > timers.traffic_duration_s:
        errors.append(
            "timers.traffic_duration_s is shorter than traffic.packet_count / traffic.pps"
        )

    return errors


def _reachable(cfg: ScenarioConfig, address: str) -> bool:
    try:
        return any(port.ate.same_subnet(address) for port in cfg.ports.values())
    except ValueError:
        return False
