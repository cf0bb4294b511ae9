from __future__ import annotations

import ipaddress
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

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
    AftEntry,
    Channel,
    ForwardingTable,
    Ipv4Entry,
    NextHop,
    NextHopGroup,
    Route,
    RouteTable,
    StaticRoute,
    normalize_prefix,
)

DEFAULT_PREFERENCES: Dict[Channel, int] = {Channel.STATIC: 1, Channel.DYNAMIC: 5}

T = TypeVar("T")


class ManualClock:
    """Virtual time: ``sleep`` advances ``now`` instead of blocking."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(0.0, float(seconds))


@dataclass
class _Programmed(Generic[T]):
    obj: T
    fib_at: float
    owner: Optional[int] = None


@dataclass
class _Instance:
    name: str
    static_routes: Dict[str, _Programmed[StaticRoute]] = field(default_factory=dict)
    next_hops: Dict[int, _Programmed[NextHop]] = field(default_factory=dict)
    groups: Dict[int, _Programmed[NextHopGroup]] = field(default_factory=dict)
    entries: Dict[str, _Programmed[Ipv4Entry]] = field(default_factory=dict)


class EmulatedDut:
    """In-memory device holding interfaces, network instances and both route channels."""

    def __init__(
        self,
        *,
        preferences: Optional[Dict[Channel, int]] = None,
        fib_delay_s: float = 0.0,
        clock=time.monotonic,
        sleep=time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.preferences = dict(DEFAULT_PREFERENCES)
        self.preferences.update(preferences or {})
        self.fib_delay_s = max(0.0, float(fib_delay_s))
        self.clock = clock
        self.sleep = sleep
        self.interfaces: Dict[str, PortAttrs] = {}
        self.instances: Dict[str, _Instance] = {}
        self._sessions: Dict[int, SessionConfig] = {}
        self._session_ids = itertools.count(1)
        self._log = logger or logging.getLogger("routeack.backends.emu")

    # -- config surface --------------------------------------------------

    def configure_interface(self, port: str, attrs: PortAttrs) -> None:
        self.interfaces[port] = attrs

    def replace_network_instance(self, name: str) -> None:
        self.instances.setdefault(name, _Instance(name=name))

    def delete_network_instance(self, name: str) -> None:
        if self.instances.pop(name, None) is None:
            raise RuntimeError(f"network-instance {name} does not exist")

    def replace_static_route(self, route: StaticRoute) -> None:
        inst = self._instance(route.network_instance)
        prefix = normalize_prefix(route.prefix)
        route = StaticRoute(prefix=prefix, next_hop=route.next_hop, network_instance=inst.name)
        current = inst.static_routes.get(prefix)
        if current is not None and current.obj == route:
            return
        inst.static_routes[prefix] = _Programmed(route, fib_at=self.clock() + self.fib_delay_s)

    # -- routing-control sessions ----------------------------------------

    def open_session(self, config: SessionConfig) -> int:
        session_id = next(self._session_ids)
        self._sessions[session_id] = config
        self._log.debug("session %s opened election_id=%s", session_id, config.election_id)
        return session_id

    def close_session(self, session_id: int) -> None:
        config = self._sessions.pop(session_id, None)
        if config is None or config.persistence:
            return
        for inst in self.instances.values():
            for table in (inst.entries, inst.groups, inst.next_hops):
                for key in [k for k, p in table.items() if p.owner == session_id]:
                    del table[key]
        self._log.debug("session %s closed, entries flushed", session_id)

    def program(self, session_id: int, obj: Any, ack_mode: AckMode) -> None:
        self._require_primary(session_id)
        inst = self._instance(obj.network_instance)
        if isinstance(obj, NextHop):
            table: Dict[Any, _Programmed[Any]] = inst.next_hops
            key: Any = obj.index
        elif isinstance(obj, NextHopGroup):
            missing = sorted(set(obj.weights) - set(inst.next_hops))
            if missing:
                raise RuntimeError(
                    f"next-hop-group {obj.index} references unknown next-hops {missing}"
                )
            table, key = inst.groups, obj.index
        elif isinstance(obj, Ipv4Entry):
            if obj.next_hop_group not in inst.groups:
                raise RuntimeError(
                    f"ipv4-entry {obj.prefix} references unknown "
                    f"next-hop-group {obj.next_hop_group}"
                )
            table, key = inst.entries, normalize_prefix(obj.prefix)
        else:
            raise TypeError(f"cannot program {type(obj).__name__}")

        current = table.get(key)
        if current is not None and current.obj == obj:
            fib_at = current.fib_at
        else:
            fib_at = self.clock() + self.fib_delay_s
        table[key] = _Programmed(obj, fib_at=fib_at, owner=session_id)
        if ack_mode == AckMode.FIB_ACK:
            wait = fib_at - self.clock()
            if wait > 0:
                self.sleep(wait)

    def unprogram(self, session_id: int, obj: Any) -> None:
        self._require_primary(session_id)
        inst = self._instance(obj.network_instance)
        if isinstance(obj, Ipv4Entry):
            inst.entries.pop(normalize_prefix(obj.prefix), None)
        elif isinstance(obj, NextHopGroup):
            users = [p for p, e in inst.entries.items() if e.obj.next_hop_group == obj.index]
            if users:
                raise RuntimeError(f"next-hop-group {obj.index} still used by {users}")
            inst.groups.pop(obj.index, None)
        elif isinstance(obj, NextHop):
            users = [i for i, g in inst.groups.items() if obj.index in g.obj.weights]
            if users:
                raise RuntimeError(f"next-hop {obj.index} still used by groups {users}")
            inst.next_hops.pop(obj.index, None)
        else:
            raise TypeError(f"cannot delete {type(obj).__name__}")

    # -- forwarding view -------------------------------------------------

    def aft(self, network_instance: str) -> ForwardingTable:
        fib = ForwardingTable(network_instance)
        inst = self.instances.get(network_instance)
        if inst is None:
            return fib
        rib = self._rib(inst, self.clock())
        fib.sync_from_routes(rib.selected())
        return fib

    def egress_port(self, network_instance: str, address: str) -> Optional[Tuple[str, str]]:
        """Resolve ``address`` to ``(port, next_hop)``; None when unroutable."""
        connected = self._connected(address)
        if connected is not None:
            return connected, address
        inst = self.instances.get(network_instance)
        if inst is None:
            return None
        route = self._rib(inst, self.clock()).lookup(address)
        if route is None:
            return None
        next_hop = _pick_next_hop(route, address)
        port = self._connected(next_hop)
        if port is None:
            return None
        return port, next_hop

    def _rib(self, inst: _Instance, now: float) -> RouteTable:
        rib = RouteTable()
        rib.replace_channel_routes(
            Channel.STATIC,
            [
                Route(
                    prefix=p.obj.prefix,
                    channel=Channel.STATIC,
                    next_hops=(p.obj.next_hop,),
                    preference=self.preferences[Channel.STATIC],
                )
                for p in inst.static_routes.values()
                if p.fib_at <= now and self._connected(p.obj.next_hop) is not None
            ],
        )
        dynamic: List[Route] = []
        for prefix, programmed in inst.entries.items():
            if programmed.fib_at > now:
                continue
            group = inst.groups.get(programmed.obj.next_hop_group)
            if group is None or group.fib_at > now:
                continue
            hops = []
            for nh_index, weight in sorted(group.obj.weights.items()):
                nh = inst.next_hops.get(nh_index)
                if nh is None or nh.fib_at > now or self._connected(nh.obj.ip_address) is None:
                    continue
                hops.extend([nh.obj.ip_address] * int(weight))
            if not hops:
                continue
            dynamic.append(
                Route(
                    prefix=prefix,
                    channel=Channel.DYNAMIC,
                    next_hops=tuple(hops),
                    preference=self.preferences[Channel.DYNAMIC],
                    next_hop_group=group.obj.index,
                )
            )
        rib.replace_channel_routes(Channel.DYNAMIC, dynamic)
        return rib

    def _connected(self, address: str) -> Optional[str]:
        for port, attrs in sorted(self.interfaces.items()):
            if attrs.same_subnet(address) and attrs.ipv4 != address:
                return port
        return None

    def _instance(self, name: str) -> _Instance:
        inst = self.instances.get(name)
        if inst is None:
            raise RuntimeError(f"network-instance {name} does not exist")
        return inst

    def _require_primary(self, session_id: int) -> None:
        config = self._sessions.get(session_id)
        if config is None:
            raise RuntimeError(f"session {session_id} is closed")
        top = max(c.election_id for c in self._sessions.values())
        if config.election_id < top:
            raise RuntimeError(
                f"session {session_id} is not primary (election_id {config.election_id} < {top})"
            )


def _pick_next_hop(route: Route, address: str) -> str:
    # Weighted members are expanded in next_hops; hash on the destination.
    return route.next_hops[int(ipaddress.IPv4Address(address)) % len(route.next_hops)]


class EmulatedAte:
    def __init__(self) -> None:
        self.interfaces: Dict[str, Tuple[PortAttrs, str]] = {}
        self.protocols_running = False

    def owns(self, port: str, address: str) -> bool:
        item = self.interfaces.get(port)
        return item is not None and item[0].ipv4 == address


class EmuProvisioner(TopologyProvisioner):
    def __init__(self, dut: EmulatedDut, ate: EmulatedAte) -> None:
        self._dut = dut
        self._ate = ate

    def configure_dut_interface(self, port: str, attrs: PortAttrs) -> None:
        self._dut.configure_interface(port, attrs)

    def configure_ate_interface(self, port: str, attrs: PortAttrs, gateway: str) -> None:
        if not attrs.same_subnet(gateway):
            raise RuntimeError(f"gateway {gateway} is not on {attrs.ipv4_cidr}")
        self._ate.interfaces[port] = (attrs, gateway)

    def start_protocols(self) -> None:
        self._ate.protocols_running = True

    def stop_protocols(self) -> None:
        self._ate.protocols_running = False


class EmuDeviceConfig(DeviceConfig):
    def __init__(self, dut: EmulatedDut) -> None:
        self._dut = dut

    def replace_network_instance(self, name: str) -> None:
        self._dut.replace_network_instance(name)

    def delete_network_instance(self, name: str) -> None:
        self._dut.delete_network_instance(name)

    def replace_static_route(self, route: StaticRoute) -> None:
        self._dut.replace_static_route(route)


class EmuRoutingSession(RoutingSession):
    def __init__(self, dut: EmulatedDut, session_id: int) -> None:
        self._dut = dut
        self.session_id = session_id

    def add_next_hop(self, next_hop: NextHop, ack_mode: AckMode) -> None:
        self._dut.program(self.session_id, next_hop, ack_mode)

    def add_next_hop_group(self, group: NextHopGroup, ack_mode: AckMode) -> None:
        self._dut.program(self.session_id, group, ack_mode)

    def add_ipv4_entry(self, entry: Ipv4Entry, ack_mode: AckMode) -> None:
        self._dut.program(self.session_id, entry, ack_mode)

    def delete_ipv4_entry(self, entry: Ipv4Entry) -> None:
        self._dut.unprogram(self.session_id, entry)

    def delete_next_hop_group(self, group: NextHopGroup) -> None:
        self._dut.unprogram(self.session_id, group)

    def delete_next_hop(self, next_hop: NextHop) -> None:
        self._dut.unprogram(self.session_id, next_hop)

    def close(self) -> None:
        self._dut.close_session(self.session_id)


class EmuRoutingClient(RoutingControlClient):
    def __init__(self, dut: EmulatedDut) -> None:
        self._dut = dut

    def open(self, config: SessionConfig) -> RoutingSession:
        return EmuRoutingSession(self._dut, self._dut.open_session(config))


class EmuTelemetry(TelemetrySurface):
    def __init__(self, dut: EmulatedDut) -> None:
        self._dut = dut

    def read(self, path: StatePath) -> Optional[Any]:
        entry = self._dut.aft(path.network_instance).get(path.prefix)
        if entry is None:
            return None
        return _leaf(entry, path.leaf)


def _leaf(entry: AftEntry, leaf: str) -> Any:
    if leaf == "prefix":
        return entry.prefix
    if leaf == "origin-protocol":
        return entry.origin_protocol.value
    if leaf == "next-hop-group":
        return entry.next_hop_group
    return sorted(set(entry.next_hops))


@dataclass
class _FlowState:
    spec: FlowSpec
    started_at: float
    addresses: List[str]
    final: Optional[FlowCounters] = None


class EmuTraffic(TrafficSurface):
    """Packet counters derived from the DUT forwarding view at read time."""

    def __init__(self, dut: EmulatedDut, ate: EmulatedAte, network_instance: str) -> None:
        self._dut = dut
        self._ate = ate
        self._network_instance = network_instance
        self._flows: Dict[str, _FlowState] = {}

    def start(self, flow: FlowSpec) -> None:
        if flow.src_port not in self._ate.interfaces:
            raise RuntimeError(f"flow {flow.name}: source port {flow.src_port} not configured")
        self._flows[flow.name] = _FlowState(
            spec=flow,
            started_at=self._dut.clock(),
            addresses=address_range(flow.range_min, flow.range_max, flow.address_count),
        )

    def stop(self, flow: FlowSpec) -> None:
        state = self._flows.get(flow.name)
        if state is None or state.final is not None:
            return
        state.final = self._counters(state)

    def read_counters(self, flow_name: str) -> FlowCounters:
        state = self._flows.get(flow_name)
        if state is None:
            raise RuntimeError(f"unknown flow: {flow_name}")
        if state.final is not None:
            return state.final
        return self._counters(state)

    def _counters(self, state: _FlowState) -> FlowCounters:
        spec = state.spec
        elapsed = max(0.0, self._dut.clock() - state.started_at)
        tx = min(int(spec.packet_count), int(elapsed * float(spec.pps)))
        if tx <= 0 or not state.addresses:
            return FlowCounters(tx_packets=max(0, tx), rx_packets=0)
        delivered = [self._delivered(spec, addr) for addr in state.addresses]
        n = len(delivered)
        rx = (tx // n) * sum(delivered) + sum(delivered[: tx % n])
        return FlowCounters(tx_packets=tx, rx_packets=rx)

    def _delivered(self, spec: FlowSpec, address: str) -> int:
        if not self._ate.protocols_running:
            return 0
        resolved = self._dut.egress_port(self._network_instance, address)
        if resolved is None:
            return 0
        port, next_hop = resolved
        if port != spec.dst_port:
            return 0
        if port not in self._ate.interfaces:
            return 0
        # Routed traffic needs the next-hop to be the ATE port itself (ARP resolves).
        if next_hop != address and not self._ate.owns(port, next_hop):
            return 0
        return 1


def address_range(range_min: str, range_max: str, count: int) -> List[str]:
    lo = int(ipaddress.IPv4Address(range_min))
    hi = int(ipaddress.IPv4Address(range_max))
    if hi < lo:
        raise ValueError(f"address range {range_min}..{range_max} is empty")
    span = hi - lo + 1
    return [str(ipaddress.IPv4Address(lo + (i % span))) for i in range(max(0, int(count)))]


def build_emu_lab(params: Dict[str, Any], network_instance: str) -> Lab:
    preferences = {
        Channel(str(k).lower()): int(v) for k, v in dict(params.get("preferences", {})).items()
    }
    if bool(params.get("virtual_time", False)):
        clock = ManualClock()
        clock_fn, sleep_fn = clock, clock.sleep
    else:
        clock_fn, sleep_fn = time.monotonic, time.sleep
    dut = EmulatedDut(
        preferences=preferences,
        fib_delay_s=float(params.get("fib_delay_s", 0.0)),
        clock=clock_fn,
        sleep=sleep_fn,
    )
    ate = EmulatedAte()
    return Lab(
        provisioner=EmuProvisioner(dut, ate),
        device=EmuDeviceConfig(dut),
        routing=EmuRoutingClient(dut),
        telemetry=EmuTelemetry(dut),
        traffic=EmuTraffic(dut, ate, network_instance),
        clock=clock_fn,
        sleep=sleep_fn,
    )
