from __future__ import annotations

import types
from typing import Any, Dict, List

import pytest

from routeack.backends import clab
from routeack.backends.base import FlowSpec, SessionConfig, StatePath
from routeack.backends.clab import (
    ClabDeviceConfig,
    ClabDut,
    ClabExec,
    ClabRoutingClient,
    ClabTelemetry,
    ClabTraffic,
    build_clab_lab,
    parse_stats,
)
from routeack.backends.emu import ManualClock
from routeack.model.attrs import PortAttrs
from routeack.model.routing import AckMode, Ipv4Entry, NextHop, NextHopGroup, StaticRoute
from routeack.runtime.poll import PollingConfig

PREFIX = "203.0.113.0/24"


class FakeExec:
    """Records node commands; ``json`` answers come from a per-command queue."""

    def __init__(self, answers: Dict[str, List[List[Dict[str, Any]]]] | None = None) -> None:
        self.commands: List[tuple] = []
        self.answers = answers or {}
        self.files: Dict[tuple, str] = {}
        self.killed: List[tuple] = []

    def __call__(self, node: str, cmd: str, check: bool = True) -> str:
        self.commands.append((node, cmd))
        return ""

    def json(self, node: str, cmd: str) -> List[Dict[str, Any]]:
        queue = self.answers.get(cmd, [[]])
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def start_background(self, node: str, cmd: str, log_path: str) -> int:
        self.commands.append((node, cmd))
        return 100 + len(self.commands)

    def stop_background(self, node: str, pid: int) -> None:
        self.killed.append((node, pid))

    def read_file(self, node: str, path: str) -> str:
        return self.files.get((node, path), "")


def _dut(run: FakeExec) -> ClabDut:
    dut = ClabDut(
        run=run,
        node="dut",
        interfaces={"port2": "eth2", "port3": "eth3"},
        tables={"DEFAULT": "main"},
        fib_ack=PollingConfig(interval_s=0.5, timeout_s=2.0),
    )
    dut.ports["port2"] = PortAttrs(name="port2", ipv4="192.0.2.5")
    dut.ports["port3"] = PortAttrs(name="port3", ipv4="192.0.2.9")
    dut.instances.add("DEFAULT")
    return dut


def test_run_cmd_raises_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        clab.subprocess,
        "run",
        lambda *a, **kw: types.SimpleNamespace(returncode=2, stdout="boom\n"),
    )
    with pytest.raises(RuntimeError, match="Command failed \\(2\\)"):
        clab.run_cmd(["ip", "route"])
    assert clab.run_cmd(["ip", "route"], check=False) == "boom"


def test_exec_wraps_command_for_containerlab(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: List[List[str]] = []
    monkeypatch.setattr(clab.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(clab, "run_cmd", lambda argv, check=True: seen.append(argv) or "4242")

    run = ClabExec(topo="lab.clab.yaml", use_sudo=True)
    pid = run.start_background("ate1", "routeack-traffic sink --port 9000", "/tmp/sink.log")

    assert pid == 4242
    argv = seen[0]
    assert argv[:7] == ["sudo", "containerlab", "exec", "-t", "lab.clab.yaml", "--node", "ate1"]
    assert argv[7] == "--cmd"
    assert argv[8].startswith("sh -lc ")
    assert "routeack-traffic sink --port 9000" in argv[8]


def test_exec_requires_containerlab(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(clab.shutil, "which", lambda name: None)
    with pytest.raises(RuntimeError, match="containerlab"):
        ClabExec(topo="lab.clab.yaml")("dut", "true")


def test_static_route_maps_to_ip_route_replace() -> None:
    run = FakeExec()
    device = ClabDeviceConfig(_dut(run))

    device.replace_static_route(StaticRoute(PREFIX, "192.0.2.6", "DEFAULT"))

    assert run.commands == [
        ("dut", "ip route replace 203.0.113.0/24 via 192.0.2.6 table main proto static metric 10")
    ]
    with pytest.raises(RuntimeError, match="does not exist"):
        device.replace_static_route(StaticRoute(PREFIX, "192.0.2.6", "VRF-X"))


def test_dynamic_objects_map_to_nexthop_ids() -> None:
    run = FakeExec()
    session = ClabRoutingClient(_dut(run)).open(SessionConfig(persistence=False, election_id=10))

    session.add_next_hop(NextHop(1, "192.0.2.10", "DEFAULT"), AckMode.RIB_ACK)
    session.add_next_hop_group(NextHopGroup(42, {1: 1}, "DEFAULT"), AckMode.RIB_ACK)
    session.add_ipv4_entry(Ipv4Entry(PREFIX, 42, "DEFAULT"), AckMode.RIB_ACK)
    session.close()

    cmds = [cmd for _, cmd in run.commands]
    assert cmds[1:] == [
        "ip nexthop replace id 10001 via 192.0.2.10 dev eth3",
        "ip nexthop replace id 20042 group 10001,1",
        "ip route replace 203.0.113.0/24 nhid 20042 table main proto 200 metric 50",
        "ip route del 203.0.113.0/24 table main proto 200",
        "ip nexthop del id 20042",
        "ip nexthop del id 10001",
    ]
    with pytest.raises(RuntimeError, match="closed"):
        session.add_next_hop(NextHop(2, "192.0.2.10", "DEFAULT"), AckMode.RIB_ACK)


def test_group_with_unknown_next_hop_is_rejected() -> None:
    session = ClabRoutingClient(_dut(FakeExec())).open(SessionConfig())
    with pytest.raises(RuntimeError, match="unknown next-hops"):
        session.add_next_hop_group(NextHopGroup(42, {7: 1}, "DEFAULT"), AckMode.RIB_ACK)


def test_fib_ack_polls_until_kernel_reports_object() -> None:
    clock = ManualClock()
    run = FakeExec({"ip -j nexthop show id 10001": [[], [], [{"id": 10001}]]})
    client = ClabRoutingClient(_dut(run), clock=clock, sleep=clock.sleep)
    session = client.open(SessionConfig())

    session.add_next_hop(NextHop(1, "192.0.2.10", "DEFAULT"), AckMode.FIB_ACK)
    assert clock() == 1.0

    with pytest.raises(RuntimeError, match="not installed in FIB"):
        session.add_next_hop(NextHop(2, "192.0.2.10", "DEFAULT"), AckMode.FIB_ACK)


def test_telemetry_reports_lowest_metric_route() -> None:
    show = "ip -j -4 route show 203.0.113.0/24 table main"
    rows = [
        {"dst": PREFIX, "nhid": 20042, "protocol": "200", "metric": 50},
        {"dst": PREFIX, "gateway": "192.0.2.6", "protocol": "static", "metric": 10},
        {"dst": "203.0.113.0/25", "gateway": "192.0.2.10", "protocol": "static"},
    ]
    telemetry = ClabTelemetry(_dut(FakeExec({show: [rows]})))

    assert telemetry.read(StatePath("DEFAULT", PREFIX)) == PREFIX
    assert telemetry.read(StatePath("DEFAULT", PREFIX, "origin-protocol")) == "static"
    assert telemetry.read(StatePath("DEFAULT", PREFIX, "next-hops")) == ["192.0.2.6"]
    assert telemetry.read(StatePath("DEFAULT", PREFIX, "next-hop-group")) is None


def test_telemetry_resolves_dynamic_group_members() -> None:
    show = "ip -j -4 route show 203.0.113.0/24 table main"
    run = FakeExec(
        {
            show: [[{"dst": PREFIX, "nhid": 20042, "protocol": "200", "metric": 50}]],
            "ip -j nexthop show id 20042": [[{"id": 20042, "group": [{"id": 10001}]}]],
            "ip -j nexthop show id 10001": [[{"id": 10001, "gateway": "192.0.2.10"}]],
        }
    )
    telemetry = ClabTelemetry(_dut(run))

    assert telemetry.read(StatePath("DEFAULT", PREFIX, "origin-protocol")) == "dynamic"
    assert telemetry.read(StatePath("DEFAULT", PREFIX, "next-hop-group")) == 42
    assert telemetry.read(StatePath("DEFAULT", PREFIX, "next-hops")) == ["192.0.2.10"]
    assert telemetry.read(StatePath("DEFAULT", "198.51.100.0/24")) is None


def test_parse_stats_picks_latest_line() -> None:
    text = "\n".join(
        [
            "udp send targets=203.0.113.0..203.0.113.249 (250) port=9000",
            "udp send elapsed=1.000s packets=500 bytes=128000 avg_pps=500.00 avg_mbps=1.024",
            "udp send final elapsed=2.000s packets=1000 bytes=256000 avg_pps=500.00 avg_mbps=1.0",
        ]
    )
    assert parse_stats(text, "udp send") == (1000, True)
    assert parse_stats(text, "udp sink") is None


def test_traffic_counters_come_from_app_logs() -> None:
    run = FakeExec()
    traffic = ClabTraffic(
        run, {"port1": "ate1", "port2": "ate2"}, "routeack-traffic", 9000, sleep=lambda s: None
    )
    flow = FlowSpec("Flow", "port1", "port2", "203.0.113.0", "203.0.113.254", 250, 1000, 500.0)
    run.files[("ate2", ClabTraffic.SINK_LOG)] = "udp sink listening on 0.0.0.0:9000\n"

    traffic.start(flow)
    run.files[("ate1", ClabTraffic.SENDER_LOG)] = (
        "udp send final elapsed=2.000s packets=1000 bytes=256000 avg_pps=500.00 avg_mbps=1.0"
    )
    run.files[("ate2", ClabTraffic.SINK_LOG)] = (
        "udp sink elapsed=2.000s packets=990 bytes=253440 avg_pps=495.00 avg_mbps=1.0"
    )
    assert traffic.read_counters("Flow").rx_packets == 990

    traffic.stop(flow)
    run.files[("ate2", ClabTraffic.SINK_LOG)] = ""
    counters = traffic.read_counters("Flow")
    assert (counters.tx_packets, counters.rx_packets) == (1000, 990)
    assert traffic.read_loss_pct("Flow") == pytest.approx(1.0)
    assert [node for node, _ in run.killed] == ["ate1", "ate2"]
    assert "--address-count 250" in run.commands[1][1]


def test_sender_waits_for_sink_to_listen() -> None:
    run = FakeExec()
    clock = ManualClock()
    traffic = ClabTraffic(
        run,
        {"port1": "ate1", "port2": "ate2"},
        "routeack-traffic",
        9000,
        sink_ready_timeout_s=1.0,
        clock=clock,
        sleep=clock.sleep,
    )
    flow = FlowSpec("Flow", "port1", "port2", "203.0.113.0", "203.0.113.254", 250, 1000, 500.0)

    with pytest.raises(RuntimeError, match="not listening"):
        traffic.start(flow)

    assert [node for node, _ in run.commands] == ["ate2"]
    assert [node for node, _ in run.killed] == ["ate2"]
    assert clock() == pytest.approx(1.0)


def test_build_clab_lab_requires_topology() -> None:
    with pytest.raises(RuntimeError, match="topo"):
        build_clab_lab({}, "DEFAULT")
