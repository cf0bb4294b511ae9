from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from routeack.core.errors import ConfigError
from routeack.model.attrs import PortAttrs
from routeack.model.routing import AckMode, Channel, normalize_prefix
from routeack.utils.io import load_yaml

DEFAULT_PREFIX_LEN = 30

# ate:port1 -> dut:port1 192.0.2.0/30, dut:port2 -> ate:port2 192.0.2.4/30,
# dut:port3 -> ate:port3 192.0.2.8/30.
DEFAULT_PORTS: Dict[str, Dict[str, Dict[str, str]]] = {
    "port1": {
        "dut": {"name": "port1", "desc": "dutPort1", "ipv4": "192.0.2.1"},
        "ate": {"name": "atePort1", "ipv4": "192.0.2.2"},
    },
    "port2": {
        "dut": {"name": "port2", "desc": "dutPort2", "ipv4": "192.0.2.5"},
        "ate": {"name": "atePort2", "ipv4": "192.0.2.6"},
    },
    "port3": {
        "dut": {"name": "port3", "desc": "dutPort3", "ipv4": "192.0.2.9"},
        "ate": {"name": "atePort3", "ipv4": "192.0.2.10"},
    },
}


@dataclass(frozen=True)
class PortConfig:
    port: str
    dut: PortAttrs
    ate: PortAttrs


@dataclass(frozen=True)
class DynamicRouteConfig:
    nh_index: int = 1
    nhg_index: int = 42
    next_hop: str = "192.0.2.10"
    weight: int = 1
    ack_mode: AckMode = AckMode.RIB_ACK


@dataclass(frozen=True)
class SessionSettings:
    persistence: bool = True
    election_id: int = 10


@dataclass(frozen=True)
class TrafficConfig:
    flow_name: str = "Flow"
    src_port: str = "port1"
    dst_port: str = "port2"
    range_min: str = "203.0.113.0"
    range_max: str = "203.0.113.254"
    address_count: int = 250
    packet_count: int = 10000
    pps: float = 1000.0


@dataclass(frozen=True)
class TimersConfig:
    convergence_timeout_s: float = 30.0
    poll_interval_s: float = 1.0
    traffic_duration_s: float = 15.0
    traffic_poll_interval_s: float = 1.0
    settle_polls: int = 2


@dataclass(frozen=True)
class ExpectConfig:
    preferred_channel: Optional[Channel] = Channel.STATIC


@dataclass(frozen=True)
class TeardownConfig:
    flush_dynamic: bool = True


@dataclass(frozen=True)
class ScenarioConfig:
    name: str
    network_instance: str
    prefix: str
    static_next_hop: str
    ports: Dict[str, PortConfig]
    dynamic: DynamicRouteConfig = field(default_factory=DynamicRouteConfig)
    session: SessionSettings = field(default_factory=SessionSettings)
    traffic: TrafficConfig = field(default_factory=TrafficConfig)
    timers: TimersConfig = field(default_factory=TimersConfig)
    expect: ExpectConfig = field(default_factory=ExpectConfig)
    teardown: TeardownConfig = field(default_factory=TeardownConfig)
    backend: Dict[str, Any] = field(default_factory=lambda: {"type": "emu"})
    output_dir: str = "results/runs"

    def port(self, name: str) -> PortConfig:
        try:
            return self.ports[name]
        except KeyError:
            raise ConfigError(f"unknown port: {name}") from None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


def load_scenario_config(path: str | Path) -> ScenarioConfig:
    try:
        raw = load_yaml(path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot load {path}: {exc}") from exc
    return parse_scenario_config(raw)


def parse_scenario_config(raw: Dict[str, Any]) -> ScenarioConfig:
    try:
        return _parse(dict(raw))
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"invalid scenario config: {exc}") from exc


def _parse(raw: Dict[str, Any]) -> ScenarioConfig:
    static_raw = dict(raw.get("static", {}) or {})
    dynamic_raw = dict(raw.get("dynamic", {}) or {})
    session_raw = dict(raw.get("session", {}) or {})
    traffic_raw = dict(raw.get("traffic", {}) or {})
    timers_raw = dict(raw.get("timers", {}) or {})
    expect_raw = dict(raw.get("expect", {}) or {})
    teardown_raw = dict(raw.get("teardown", {}) or {})

    prefix_len = int(raw.get("ipv4_prefix_len", DEFAULT_PREFIX_LEN))
    ports_raw = raw.get("ports") or DEFAULT_PORTS
    ports = {
        str(name): PortConfig(
            port=str(name),
            dut=_port_attrs(dict(item.get("dut", {})), str(name), prefix_len),
            ate=_port_attrs(dict(item.get("ate", {})), f"ate{str(name).capitalize()}", prefix_len),
        )
        for name, item in dict(ports_raw).items()
    }

    dynamic = DynamicRouteConfig(
        nh_index=int(dynamic_raw.get("nh_index", 1)),
        nhg_index=int(dynamic_raw.get("nhg_index", 42)),
        next_hop=str(dynamic_raw.get("next_hop", "192.0.2.10")),
        weight=int(dynamic_raw.get("weight", 1)),
        ack_mode=AckMode(str(dynamic_raw.get("ack_mode", AckMode.RIB_ACK.value)).lower()),
    )
    session = SessionSettings(
        persistence=bool(session_raw.get("persistence", True)),
        election_id=int(session_raw.get("election_id", 10)),
    )
    traffic = TrafficConfig(
        flow_name=str(traffic_raw.get("flow_name", "Flow")),
        src_port=str(traffic_raw.get("src_port", "port1")),
        dst_port=str(traffic_raw.get("dst_port", "port2")),
        range_min=str(traffic_raw.get("range_min", "203.0.113.0")),
        range_max=str(traffic_raw.get("range_max", "203.0.113.254")),
        address_count=int(traffic_raw.get("address_count", 250)),
        packet_count=int(traffic_raw.get("packet_count", 10000)),
        pps=float(traffic_raw.get("pps", 1000.0)),
    )
    timers = TimersConfig(
        convergence_timeout_s=float(timers_raw.get("convergence_timeout_s", 30.0)),
        poll_interval_s=float(timers_raw.get("poll_interval_s", 1.0)),
        traffic_duration_s=float(timers_raw.get("traffic_duration_s", 15.0)),
        traffic_poll_interval_s=float(timers_raw.get("traffic_poll_interval_s", 1.0)),
        settle_polls=int(timers_raw.get("settle_polls", 2)),
    )
    preferred = expect_raw.get("preferred_channel", Channel.STATIC.value)
    expect = ExpectConfig(
        preferred_channel=Channel(str(preferred).lower()) if preferred else None,
    )
    teardown = TeardownConfig(flush_dynamic=bool(teardown_raw.get("flush_dynamic", True)))

    backend = dict(raw.get("backend", {}) or {})
    backend.setdefault("type", "emu")

    return ScenarioConfig(
        name=str(raw.get("name", "route_ack")),
        network_instance=str(raw.get("network_instance", "DEFAULT")),
        prefix=normalize_prefix(str(raw.get("prefix", "203.0.113.0/24"))),
        static_next_hop=str(static_raw.get("next_hop", "192.0.2.6")),
        ports=ports,
        dynamic=dynamic,
        session=session,
        traffic=traffic,
        timers=timers,
        expect=expect,
        teardown=teardown,
        backend=backend,
        output_dir=str(raw.get("output_dir", "results/runs")),
    )


def _port_attrs(raw: Dict[str, Any], default_name: str, prefix_len: int) -> PortAttrs:
    return PortAttrs(
        name=str(raw.get("name", default_name)),
        ipv4=str(raw["ipv4"]),
        ipv4_len=int(raw.get("ipv4_len", prefix_len)),
        desc=str(raw.get("desc", "")),
    )


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, (AckMode, Channel)):
        return obj.value
    return obj
