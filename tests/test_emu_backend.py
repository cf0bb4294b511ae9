from __future__ import annotations

from typing import Tuple

import pytest

from routeack.backends.base import FlowSpec, Lab, SessionConfig, StatePath
from routeack.backends.emu import address_range, build_emu_lab
from routeack.model.routing import AckMode, Ipv4Entry, NextHop, NextHopGroup
from routeack.runtime.config import ScenarioConfig

PREFIX = "203.0.113.0/24"
NH = NextHop(1, "192.0.2.10", "DEFAULT")
NHG = NextHopGroup(42, {1: 1}, "DEFAULT")
ENTRY = Ipv4Entry(PREFIX, 42, "DEFAULT")


def _flow(**overrides) -> FlowSpec:
    fields = dict(
        name="Flow",
        src_port="port1",
        dst_port="port3",
        range_min="203.0.113.0",
        range_max="203.0.113.254",
        address_count=250,
        packet_count=1000,
        pps=100.0,
    )
    fields.update(overrides)
    return FlowSpec(**fields)


def _program(lab: Lab, persistence: bool = True, election_id: int = 10):
    session = lab.routing.open(SessionConfig(persistence=persistence, election_id=election_id))
    session.add_next_hop(NH, AckMode.RIB_ACK)
    session.add_next_hop_group(NHG, AckMode.RIB_ACK)
    session.add_ipv4_entry(ENTRY, AckMode.RIB_ACK)
    return session


def test_writes_from_non_primary_session_are_rejected(
    provisioned: Tuple[Lab, ScenarioConfig],
) -> None:
    lab, _ = provisioned
    backup = lab.routing.open(SessionConfig(election_id=10))
    lab.routing.open(SessionConfig(election_id=20))

    with pytest.raises(RuntimeError, match="not primary"):
        backup.add_next_hop(NH, AckMode.RIB_ACK)


def test_device_checks_references(provisioned: Tuple[Lab, ScenarioConfig]) -> None:
    lab, _ = provisioned
    session = lab.routing.open(SessionConfig(election_id=10))

    with pytest.raises(RuntimeError, match="unknown next-hops"):
        session.add_next_hop_group(NHG, AckMode.RIB_ACK)
    with pytest.raises(RuntimeError, match="unknown next-hop-group"):
        session.add_ipv4_entry(ENTRY, AckMode.RIB_ACK)


def test_in_use_objects_cannot_be_deleted(provisioned: Tuple[Lab, ScenarioConfig]) -> None:
    lab, _ = provisioned
    session = _program(lab)

    with pytest.raises(RuntimeError, match="still used"):
        session.delete_next_hop_group(NHG)
    with pytest.raises(RuntimeError, match="still used"):
        session.delete_next_hop(NH)
    session.delete_ipv4_entry(ENTRY)
    session.delete_next_hop_group(NHG)
    session.delete_next_hop(NH)


def test_closing_a_non_persistent_session_flushes_its_entries(
    provisioned: Tuple[Lab, ScenarioConfig],
) -> None:
    lab, _ = provisioned
    path = StatePath("DEFAULT", PREFIX, "origin-protocol")

    _program(lab, persistence=True).close()
    assert lab.telemetry.read(path) == "dynamic"

    lab.device.delete_network_instance("DEFAULT")
    lab.device.replace_network_instance("DEFAULT")
    _program(lab, persistence=False).close()
    assert lab.telemetry.read(path) is None


def test_dynamic_route_carries_traffic_to_its_port(
    provisioned: Tuple[Lab, ScenarioConfig],
) -> None:
    lab, _ = provisioned
    _program(lab)
    flow = _flow()

    lab.traffic.start(flow)
    lab.sleep(5.0)
    running = lab.traffic.read_counters("Flow")
    assert running.tx_packets == 500
    assert running.rx_packets == 500

    lab.traffic.stop(flow)
    lab.sleep(5.0)
    assert lab.traffic.read_counters("Flow") == running
    assert lab.traffic.read_loss_pct("Flow") == 0.0


def test_traffic_requires_configured_source(scenario: ScenarioConfig) -> None:
    lab = build_emu_lab({"virtual_time": True}, scenario.network_instance)
    with pytest.raises(RuntimeError, match="not configured"):
        lab.traffic.start(_flow())
    with pytest.raises(RuntimeError, match="unknown flow"):
        lab.traffic.read_counters("Flow")


def test_address_range_cycles_over_short_ranges() -> None:
    assert address_range("10.0.0.1", "10.0.0.2", 5) == [
        "10.0.0.1",
        "10.0.0.2",
        "10.0.0.1",
        "10.0.0.2",
        "10.0.0.1",
    ]
    assert len(set(address_range("203.0.113.0", "203.0.113.254", 250))) == 250
    with pytest.raises(ValueError):
        address_range("10.0.0.2", "10.0.0.1", 1)
