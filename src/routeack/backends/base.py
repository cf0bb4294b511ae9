from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from routeack.model.attrs import PortAttrs
from routeack.model.routing import AckMode, Ipv4Entry, NextHop, NextHopGroup, StaticRoute

AFT_LEAVES = ("prefix", "origin-protocol", "next-hop-group", "next-hops")


@dataclass(frozen=True)
class StatePath:
    """One leaf of an AFT ipv4-entry, addressed by network instance and prefix."""

    network_instance: str
    prefix: str
    leaf: str = "prefix"

    def __post_init__(self) -> None:
        if self.leaf not in AFT_LEAVES:
            raise ValueError(f"unsupported AFT leaf: {self.leaf}")

    @property
    def xpath(self) -> str:
        return (
            f"/network-instances/network-instance[name={self.network_instance}]"
            f"/afts/ipv4-unicast/ipv4-entry[prefix={self.prefix}]/state/{self.leaf}"
        )


@dataclass(frozen=True)
class SessionConfig:
    persistence: bool = True
    election_id: int = 1


@dataclass(frozen=True)
class FlowSpec:
    name: str
    src_port: str
    dst_port: str
    range_min: str
    range_max: str
    address_count: int
    packet_count: int
    pps: float


@dataclass(frozen=True)
class FlowCounters:
    tx_packets: int = 0
    rx_packets: int = 0

    @property
    def loss_pct(self) -> float:
        if self.tx_packets <= 0:
            return 0.0
        lost = max(0, self.tx_packets - self.rx_packets)
        return 100.0 * lost / self.tx_packets


class TopologyProvisioner(ABC):
    @abstractmethod
    def configure_dut_interface(self, port: str, attrs: PortAttrs) -> None:
        raise NotImplementedError

    @abstractmethod
    def configure_ate_interface(self, port: str, attrs: PortAttrs, gateway: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def start_protocols(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop_protocols(self) -> None:
        raise NotImplementedError


class DeviceConfig(ABC):
    @abstractmethod
    def replace_network_instance(self, name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_network_instance(self, name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def replace_static_route(self, route: StaticRoute) -> None:
        """Replace the static route for ``route.prefix``; raise if the instance is missing."""
        raise NotImplementedError


class RoutingSession(ABC):
    """An open routing-control session. Calls return once acknowledged per ``ack_mode``."""

    @abstractmethod
    def add_next_hop(self, next_hop: NextHop, ack_mode: AckMode) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_next_hop_group(self, group: NextHopGroup, ack_mode: AckMode) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_ipv4_entry(self, entry: Ipv4Entry, ack_mode: AckMode) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_ipv4_entry(self, entry: Ipv4Entry) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_next_hop_group(self, group: NextHopGroup) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_next_hop(self, next_hop: NextHop) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError


class RoutingControlClient(ABC):
    @abstractmethod
    def open(self, config: SessionConfig) -> RoutingSession:
        raise NotImplementedError


class TelemetrySurface(ABC):
    @abstractmethod
    def read(self, path: StatePath) -> Optional[Any]:
        """Return the leaf value, or None while the entry is absent."""
        raise NotImplementedError


class TrafficSurface(ABC):
    @abstractmethod
    def start(self, flow: FlowSpec) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop(self, flow: FlowSpec) -> None:
        raise NotImplementedError

    @abstractmethod
    def read_counters(self, flow_name: str) -> FlowCounters:
        raise NotImplementedError

    def read_loss_pct(self, flow_name: str) -> float:
        return self.read_counters(flow_name).loss_pct


@dataclass
class Lab:
    provisioner: TopologyProvisioner
    device: DeviceConfig
    routing: RoutingControlClient
    telemetry: TelemetrySurface
    traffic: TrafficSurface
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
