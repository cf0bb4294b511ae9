from __future__ import annotations

import json
import logging
import re
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from routeack.backends.base import (
    DeviceConfig,
    FlowCounters,
    FlowSpec,
    Lab,
    RoutingControlClient,
    RoutingSession,
    SessionConfig,
    StatePath,
    TelemetrySurface,
    TopologyProvisioner,
    TrafficSurface,
)
from routeack.model.attrs import PortAttrs
from routeack.model.routing import (
    AckMode,
    Ipv4Entry,
    NextHop,
    NextHopGroup,
    StaticRoute,
    normalize_prefix,
)
from routeack.runtime.poll import PollingConfig, poll_until

STATS_RE = re.compile(
    r"(?P<mode>udp send(?: final)?|udp sink(?: final)?)\s+"
    r"elapsed=(?P<elapsed>[0-9.]+)s\s+"
    r"packets=(?P<packets>\d+)\s+"
    r"bytes=(?P<bytes>\d+)"
)

SINK_READY = "udp sink listening"
NH_ID_BASE = 10000
NHG_ID_BASE = 20000


def _require_containerlab() -> None:
    if shutil.which("containerlab") is None:
        raise RuntimeError("missing required tool: containerlab (install it on the host)")


def run_cmd(argv: List[str], check: bool = True) -> str:
    proc = subprocess.run(
        argv,
        check=False,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    )
    if check and proc.returncode != 0:
        out = (proc.stdout or "").strip()
        pretty = " ".join(shlex.quote(token) for token in argv)
        raise RuntimeError(f"Command failed ({proc.returncode}): {pretty}\n{out}")
    return (proc.stdout or "").strip()


class ClabExec:
    """Runs shell commands inside containerlab nodes."""

    def __init__(self, topo: str, use_sudo: bool = False) -> None:
        self.topo = topo
        self.use_sudo = use_sudo

    def __call__(self, node: str, cmd: str, check: bool = True) -> str:
        _require_containerlab()
        argv = ["containerlab", "exec", "-t", self.topo, "--node", node]
        argv += ["--cmd", f"sh -lc {shlex.quote(cmd)}"]
        if self.use_sudo:
            argv = ["sudo", *argv]
        return run_cmd(argv, check=check)

    def json(self, node: str, cmd: str) -> List[Dict[str, Any]]:
        raw = self(node, cmd, check=False)
        if not raw or not raw.lstrip().startswith("["):
            return []
        return json.loads(raw)

    def start_background(self, node: str, cmd: str, log_path: str) -> int:
        out = self(node, f"rm -f {log_path} ; ({cmd}) >{log_path} 2>&1 & echo $!")
        pid_s = out.splitlines()[-1].strip() if out else ""
        if not pid_s.isdigit():
            raise RuntimeError(f"failed to start background job on {node}: {out}")
        return int(pid_s)

    def stop_background(self, node: str, pid: int) -> None:
        self(node, f"kill {int(pid)} 2>/dev/null || true")

    def read_file(self, node: str, path: str) -> str:
        return self(node, f"cat {path} 2>/dev/null || true")


@dataclass
class ClabDut:
    """DUT-side state shared by the config, session and telemetry adapters."""

    run: ClabExec
    node: str
    interfaces: Dict[str, str]
    tables: Dict[str, str]
    static_metric: int = 10
    dynamic_metric: int = 50
    dynamic_proto: int = 200
    fib_ack: PollingConfig = field(
        default_factory=lambda: PollingConfig(interval_s=0.2, timeout_s=10.0)
    )
    ports: Dict[str, PortAttrs] = field(default_factory=dict)
    instances: Set[str] = field(default_factory=set)

    def table(self, network_instance: str) -> str:
        if network_instance not in self.instances:
            raise RuntimeError(f"network-instance {network_instance} does not exist")
        return self.tables.get(network_instance, network_instance)

    def device_for(self, address: str) -> str:
        for port, attrs in sorted(self.ports.items()):
            if attrs.same_subnet(address):
                return self.interfaces.get(port, port)
        raise RuntimeError(f"no connected interface for next-hop {address}")


class ClabProvisioner(TopologyProvisioner):
    def __init__(
        self,
        dut: ClabDut,
        ate_nodes: Dict[str, str],
        ate_interface: str,
        accept_prefixes: List[str],
    ) -> None:
        self._dut = dut
        self._ate_nodes = ate_nodes
        self._ate_interface = ate_interface
        self._accept_prefixes = accept_prefixes
        self._gateways: Dict[str, str] = {}

    def configure_dut_interface(self, port: str, attrs: PortAttrs) -> None:
        ifname = self._dut.interfaces.get(port, port)
        self._dut.run(
            self._dut.node,
            f"ip addr replace {attrs.ipv4_cidr} dev {ifname} && ip link set {ifname} up",
        )
        self._dut.ports[port] = attrs

    def configure_ate_interface(self, port: str, attrs: PortAttrs, gateway: str) -> None:
        node = self._ate_node(port)
        ifname = self._ate_interface
        cmds = [
            f"ip addr replace {attrs.ipv4_cidr} dev {ifname}",
            f"ip link set {ifname} up",
            f"ip route replace default via {gateway} dev {ifname}",
        ]
        cmds.extend(f"ip route replace local {p} dev lo" for p in self._accept_prefixes)
        self._dut.run(node, " && ".join(cmds))
        self._gateways[port] = gateway

    def start_protocols(self) -> None:
        for port, gateway in sorted(self._gateways.items()):
            node = self._ate_node(port)
            self._dut.run(node, f"ping -c 1 -W 1 {gateway} >/dev/null", check=False)

    def stop_protocols(self) -> None:
        for port in sorted(self._gateways):
            node = self._ate_node(port)
            self._dut.run(node, f"ip neigh flush dev {self._ate_interface}", check=False)

    def _ate_node(self, port: str) -> str:
        try:
            return self._ate_nodes[port]
        except KeyError:
            raise RuntimeError(f"no ATE node mapped to {port}") from None


class ClabDeviceConfig(DeviceConfig):
    def __init__(self, dut: ClabDut) -> None:
        self._dut = dut

    def replace_network_instance(self, name: str) -> None:
        table = self._dut.tables.get(name, name)
        if table not in {"main", "254"}:
            self._dut.run(
                self._dut.node,
                f"ip link show {name} >/dev/null 2>&1 "
                f"|| ip link add {name} type vrf table {table}; "
                f"ip link set {name} up",
            )
        self._dut.instances.add(name)

    def delete_network_instance(self, name: str) -> None:
        table = self._dut.table(name)
        if table in {"main", "254"}:
            self._dut.run(
                self._dut.node,
                f"ip route flush table {table} proto static; "
                f"ip route flush table {table} proto {self._dut.dynamic_proto}",
                check=False,
            )
        else:
            self._dut.run(self._dut.node, f"ip link del {name}")
        self._dut.instances.discard(name)

    def replace_static_route(self, route: StaticRoute) -> None:
        table = self._dut.table(route.network_instance)
        self._dut.run(
            self._dut.node,
            f"ip route replace {normalize_prefix(route.prefix)} via {route.next_hop} "
            f"table {table} proto static metric {self._dut.static_metric}",
        )


class ClabRoutingSession(RoutingSession):
    """Dynamic channel backed by Linux nexthop objects and ``nhid`` routes."""

    def __init__(self, dut: ClabDut, config: SessionConfig, clock, sleep) -> None:
        self._dut = dut
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._next_hops: Dict[int, NextHop] = {}
        self._groups: Dict[int, NextHopGroup] = {}
        self._entries: Dict[str, Ipv4Entry] = {}
        self._open = True

    def add_next_hop(self, next_hop: NextHop, ack_mode: AckMode) -> None:
        self._require_open()
        self._dut.table(next_hop.network_instance)
        nh_id = NH_ID_BASE + int(next_hop.index)
        dev = self._dut.device_for(next_hop.ip_address)
        self._dut.run(
            self._dut.node,
            f"ip nexthop replace id {nh_id} via {next_hop.ip_address} dev {dev}",
        )
        self._next_hops[next_hop.index] = next_hop
        if ack_mode == AckMode.FIB_ACK:
            self._await_fib(f"ip -j nexthop show id {nh_id}", f"next-hop {next_hop.index}")

    def add_next_hop_group(self, group: NextHopGroup, ack_mode: AckMode) -> None:
        self._require_open()
        self._dut.table(group.network_instance)
        missing = sorted(set(group.weights) - set(self._next_hops))
        if missing:
            raise RuntimeError(
                f"next-hop-group {group.index} references unknown next-hops {missing}"
            )
        members = "/".join(
            f"{NH_ID_BASE + int(i)},{int(w)}" for i, w in sorted(group.weights.items())
        )
        nhg_id = NHG_ID_BASE + int(group.index)
        self._dut.run(self._dut.node, f"ip nexthop replace id {nhg_id} group {members}")
        self._groups[group.index] = group
        if ack_mode == AckMode.FIB_ACK:
            self._await_fib(f"ip -j nexthop show id {nhg_id}", f"next-hop-group {group.index}")

    def add_ipv4_entry(self, entry: Ipv4Entry, ack_mode: AckMode) -> None:
        self._require_open()
        table = self._dut.table(entry.network_instance)
        if entry.next_hop_group not in self._groups:
            raise RuntimeError(
                f"ipv4-entry {entry.prefix} references unknown "
                f"next-hop-group {entry.next_hop_group}"
            )
        prefix = normalize_prefix(entry.prefix)
        self._dut.run(
            self._dut.node,
            f"ip route replace {prefix} nhid {NHG_ID_BASE + int(entry.next_hop_group)} "
            f"table {table} proto {self._dut.dynamic_proto} metric {self._dut.dynamic_metric}",
        )
        self._entries[prefix] = entry
        if ack_mode == AckMode.FIB_ACK:
            self._await_fib(
                f"ip -j -4 route show {prefix} table {table} proto {self._dut.dynamic_proto}",
                f"ipv4-entry {prefix}",
            )

    def delete_ipv4_entry(self, entry: Ipv4Entry) -> None:
        table = self._dut.table(entry.network_instance)
        prefix = normalize_prefix(entry.prefix)
        self._dut.run(
            self._dut.node,
            f"ip route del {prefix} table {table} proto {self._dut.dynamic_proto}",
        )
        self._entries.pop(prefix, None)

    def delete_next_hop_group(self, group: NextHopGroup) -> None:
        self._dut.run(self._dut.node, f"ip nexthop del id {NHG_ID_BASE + int(group.index)}")
        self._groups.pop(group.index, None)

    def delete_next_hop(self, next_hop: NextHop) -> None:
        self._dut.run(self._dut.node, f"ip nexthop del id {NH_ID_BASE + int(next_hop.index)}")
        self._next_hops.pop(next_hop.index, None)

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        if self._config.persistence:
            return
        for entry in list(self._entries.values()):
            self.delete_ipv4_entry(entry)
        for group in list(self._groups.values()):
            self.delete_next_hop_group(group)
        for next_hop in list(self._next_hops.values()):
            self.delete_next_hop(next_hop)

    def _require_open(self) -> None:
        if not self._open:
            raise RuntimeError("session is closed")

    def _await_fib(self, cmd: str, what: str) -> None:
        result = poll_until(
            lambda: (bool(self._dut.run.json(self._dut.node, cmd)), None),
            self._dut.fib_ack,
            clock=self._clock,
            sleep=self._sleep,
        )
        if not result.matched:
            timeout_s = self._dut.fib_ack.timeout_s
            raise RuntimeError(f"{what} not installed in FIB after {timeout_s:g}s")


class ClabRoutingClient(RoutingControlClient):
    def __init__(self, dut: ClabDut, clock=time.monotonic, sleep=time.sleep) -> None:
        self._dut = dut
        self._clock = clock
        self._sleep = sleep
        self._log = logging.getLogger("routeack.backends.clab")

    def open(self, config: SessionConfig) -> RoutingSession:
        self._dut.run(self._dut.node, "ip nexthop show >/dev/null")
        self._log.info(
            "routing session open node=%s persistence=%s election_id=%s",
            self._dut.node,
            config.persistence,
            config.election_id,
        )
        return ClabRoutingSession(self._dut, config, self._clock, self._sleep)


class ClabTelemetry(TelemetrySurface):
    def __init__(self, dut: ClabDut) -> None:
        self._dut = dut

    def read(self, path: StatePath) -> Optional[Any]:
        table = self._dut.tables.get(path.network_instance, path.network_instance)
        prefix = normalize_prefix(path.prefix)
        rows = self._dut.run.json(self._dut.node, f"ip -j -4 route show {prefix} table {table}")
        rows = [r for r in rows if _row_prefix(r) == prefix]
        if not rows:
            return None
        best = min(rows, key=lambda r: int(r.get("metric", 0)))
        if path.leaf == "prefix":
            return prefix
        if path.leaf == "origin-protocol":
            return self._origin(best)
        if path.leaf == "next-hop-group":
            nhid = best.get("nhid")
            return int(nhid) - NHG_ID_BASE if nhid is not None else None
        return self._next_hops(best)

    def _origin(self, row: Dict[str, Any]) -> str:
        proto = str(row.get("protocol", ""))
        if proto == str(self._dut.dynamic_proto) or "nhid" in row:
            return "dynamic"
        return proto

    def _next_hops(self, row: Dict[str, Any]) -> List[str]:
        if "gateway" in row:
            return [str(row["gateway"])]
        nhid = row.get("nhid")
        if nhid is None:
            return []
        out: Set[str] = set()
        for group in self._dut.run.json(self._dut.node, f"ip -j nexthop show id {int(nhid)}"):
            for member in group.get("group", []):
                member_cmd = f"ip -j nexthop show id {int(member['id'])}"
                for nh in self._dut.run.json(self._dut.node, member_cmd):
                    if "gateway" in nh:
                        out.add(str(nh["gateway"]))
        return sorted(out)


def _row_prefix(row: Dict[str, Any]) -> str:
    dst = str(row.get("dst", ""))
    if dst == "default":
        return "0.0.0.0/0"
    if "/" not in dst:
        dst = f"{dst}/32"
    return normalize_prefix(dst)


def parse_stats(text: str, mode: str) -> Optional[Tuple[int, bool]]:
    """Return ``(packets, final)`` of the latest ``mode`` report line."""
    for line in reversed(text.splitlines()):
        match = STATS_RE.search(line.strip())
        if not match or not match.group("mode").startswith(mode):
            continue
        return int(match.group("packets")), match.group("mode").endswith("final")
    return None


@dataclass
class _ClabFlow:
    spec: FlowSpec
    src_node: str
    dst_node: str
    sender_pid: int
    sink_pid: int
    final: Optional[FlowCounters] = None


class ClabTraffic(TrafficSurface):
    SENDER_LOG = "/tmp/routeack-send.log"
    SINK_LOG = "/tmp/routeack-sink.log"

    def __init__(
        self,
        run: ClabExec,
        ate_nodes: Dict[str, str],
        app_cmd: str,
        udp_port: int,
        report_interval_s: float = 0.5,
        sink_ready_timeout_s: float = 5.0,
        clock=time.monotonic,
        sleep=time.sleep,
    ) -> None:
        self._run = run
        self._ate_nodes = ate_nodes
        self._app_cmd = app_cmd
        self._udp_port = udp_port
        self._report_interval_s = report_interval_s
        self._sink_ready = PollingConfig(
            interval_s=0.2, timeout_s=float(sink_ready_timeout_s)
        )
        self._clock = clock
        self._sleep = sleep
        self._flows: Dict[str, _ClabFlow] = {}

    def start(self, flow: FlowSpec) -> None:
        src_node = self._ate_nodes[flow.src_port]
        dst_node = self._ate_nodes[flow.dst_port]
        sink_pid = self._run.start_background(
            dst_node,
            f"{self._app_cmd} sink --port {self._udp_port} "
            f"--report-interval-s {self._report_interval_s}",
            self.SINK_LOG,
        )
        self._await_sink(dst_node, sink_pid)
        sender_pid = self._run.start_background(
            src_node,
            f"{self._app_cmd} send --target-min {flow.range_min} --target-max {flow.range_max} "
            f"--address-count {int(flow.address_count)} --port {self._udp_port} "
            f"--count {int(flow.packet_count)} --pps {float(flow.pps)} "
            f"--report-interval-s {self._report_interval_s}",
            self.SENDER_LOG,
        )
        self._flows[flow.name] = _ClabFlow(flow, src_node, dst_node, sender_pid, sink_pid)

    def _await_sink(self, node: str, pid: int) -> None:
        result = poll_until(
            lambda: (SINK_READY in self._run.read_file(node, self.SINK_LOG), None),
            self._sink_ready,
            clock=self._clock,
            sleep=self._sleep,
        )
        if not result.matched:
            self._run.stop_background(node, pid)
            raise RuntimeError(
                f"traffic sink on {node} not listening after {self._sink_ready.timeout_s:g}s"
            )

    def stop(self, flow: FlowSpec) -> None:
        state = self._flows.get(flow.name)
        if state is None or state.final is not None:
            return
        self._run.stop_background(state.src_node, state.sender_pid)
        # Let in-flight datagrams land before the sink reports its final count.
        self._sleep(self._report_interval_s)
        self._run.stop_background(state.dst_node, state.sink_pid)
        self._sleep(self._report_interval_s)
        state.final = self._counters(state)

    def read_counters(self, flow_name: str) -> FlowCounters:
        state = self._flows.get(flow_name)
        if state is None:
            raise RuntimeError(f"unknown flow: {flow_name}")
        if state.final is not None:
            return state.final
        return self._counters(state)

    def _counters(self, state: _ClabFlow) -> FlowCounters:
        sent = parse_stats(self._run.read_file(state.src_node, self.SENDER_LOG), "udp send")
        received = parse_stats(self._run.read_file(state.dst_node, self.SINK_LOG), "udp sink")
        return FlowCounters(
            tx_packets=sent[0] if sent else 0,
            rx_packets=received[0] if received else 0,
        )


def build_clab_lab(params: Dict[str, Any], network_instance: str) -> Lab:
    _ = network_instance
    topo = str(params.get("topo", "")).strip()
    if not topo:
        raise RuntimeError("backend.topo is required for the clab backend")
    run = ClabExec(topo=topo, use_sudo=bool(params.get("sudo", False)))
    ate_nodes = {str(k): str(v) for k, v in dict(params.get("ate_nodes", {})).items()}
    tables = {"DEFAULT": "main"}
    tables.update({str(k): str(v) for k, v in dict(params.get("tables", {})).items()})
    metrics = dict(params.get("metrics", {}))
    dut = ClabDut(
        run=run,
        node=str(params.get("dut_node", "dut")),
        interfaces={str(k): str(v) for k, v in dict(params.get("dut_interfaces", {})).items()},
        tables=tables,
        static_metric=int(metrics.get("static", 10)),
        dynamic_metric=int(metrics.get("dynamic", 50)),
        dynamic_proto=int(params.get("dynamic_proto", 200)),
        fib_ack=PollingConfig(
            interval_s=float(params.get("fib_ack_poll_interval_s", 0.2)),
            timeout_s=float(params.get("fib_ack_timeout_s", 10.0)),
        ),
    )
    return Lab(
        provisioner=ClabProvisioner(
            dut,
            ate_nodes=ate_nodes,
            ate_interface=str(params.get("ate_interface", "eth1")),
            accept_prefixes=[str(p) for p in params.get("accept_prefixes", [])],
        ),
        device=ClabDeviceConfig(dut),
        routing=ClabRoutingClient(dut),
        telemetry=ClabTelemetry(dut),
        traffic=ClabTraffic(
            run,
            ate_nodes=ate_nodes,
            app_cmd=str(params.get("traffic_app", "routeack-traffic")),
            udp_port=int(params.get("traffic_port", 9000)),
            report_interval_s=float(params.get("traffic_report_interval_s", 0.5)),
            sink_ready_timeout_s=float(params.get("traffic_sink_ready_timeout_s", 5.0)),
        ),
    )
