from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple


class AckMode(str, Enum):
    RIB_ACK = "rib_ack"
    FIB_ACK = "fib_ack"


class Channel(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class StaticRoute:
    prefix: str
    next_hop: str
    network_instance: str


@dataclass(frozen=True)
class NextHop:
    index: int
    ip_address: str
    network_instance: str


@dataclass(frozen=True)
class NextHopGroup:
    index: int
    weights: Dict[int, int]
    network_instance: str

    def __post_init__(self) -> None:
        if not self.weights:
            raise ValueError(f"next-hop-group {self.index} has no next-hops")
        for nh_index, weight in self.weights.items():
            if int(weight) <= 0:
                raise ValueError(
                    f"next-hop-group {self.index}: weight for next-hop {nh_index} must be > 0"
                )

    def __hash__(self) -> int:
        return hash((self.index, tuple(sorted(self.weights.items())), self.network_instance))


@dataclass(frozen=True)
class Ipv4Entry:
    prefix: str
    next_hop_group: int
    network_instance: str
    tag: str = ""


@dataclass(frozen=True)
class Route:
    prefix: str
    channel: Channel
    next_hops: Tuple[str, ...]
    preference: int
    next_hop_group: Optional[int] = None


@dataclass(frozen=True)
class AftEntry:
    prefix: str
    network_instance: str
    origin_protocol: Channel
    next_hops: Tuple[str, ...] = field(default_factory=tuple)
    next_hop_group: Optional[int] = None


def normalize_prefix(prefix: str) -> str:
    return str(ipaddress.IPv4Network(prefix, strict=False))


class RouteTable:
    """Candidate routes of one network instance, keyed by prefix and channel."""

    def __init__(self) -> None:
        self._routes: Dict[str, Dict[Channel, Route]] = {}

    def replace(self, route: Route) -> bool:
        prefix = normalize_prefix(route.prefix)
        by_channel = self._routes.setdefault(prefix, {})
        prev = by_channel.get(route.channel)
        if prev == route:
            return False
        by_channel[route.channel] = route
        return True

    def remove(self, prefix: str, channel: Channel) -> bool:
        prefix = normalize_prefix(prefix)
        by_channel = self._routes.get(prefix)
        if not by_channel or channel not in by_channel:
            return False
        del by_channel[channel]
        if not by_channel:
            del self._routes[prefix]
        return True

    def replace_channel_routes(self, channel: Channel, routes: Iterable[Route]) -> bool:
        updated = False
        stale = [prefix for prefix, by_channel in self._routes.items() if channel in by_channel]
        fresh = {normalize_prefix(r.prefix): r for r in routes}
        for prefix in stale:
            if prefix not in fresh:
                self.remove(prefix, channel)
                updated = True
        for route in fresh.values():
            if self.replace(route):
                updated = True
        return updated

    def candidates(self, prefix: str) -> List[Route]:
        by_channel = self._routes.get(normalize_prefix(prefix), {})
        return sorted(by_channel.values(), key=lambda r: (r.preference, r.channel.value))

    def best(self, prefix: str) -> Optional[Route]:
        candidates = self.candidates(prefix)
        return candidates[0] if candidates else None

    def selected(self) -> List[Route]:
        out: List[Route] = []
        for prefix in sorted(self._routes):
            best = self.best(prefix)
            if best is not None:
                out.append(best)
        return out

    def lookup(self, address: str) -> Optional[Route]:
        addr = ipaddress.IPv4Address(address)
        match: Optional[Route] = None
        match_len = -1
        for prefix in self._routes:
            net = ipaddress.IPv4Network(prefix)
            if addr in net and net.prefixlen > match_len:
                best = self.best(prefix)
                if best is not None:
                    match = best
                    match_len = net.prefixlen
        return match


class ForwardingTable:
    def __init__(self, network_instance: str) -> None:
        self.network_instance = network_instance
        self._entries: Dict[str, AftEntry] = {}

    def sync_from_routes(self, routes: Iterable[Route]) -> bool:
        next_entries = {
            normalize_prefix(route.prefix): AftEntry(
                prefix=normalize_prefix(route.prefix),
                network_instance=self.network_instance,
                origin_protocol=route.channel,
                next_hops=tuple(route.next_hops),
                next_hop_group=route.next_hop_group,
            )
            for route in routes
        }
        if next_entries == self._entries:
            return False
        self._entries = next_entries
        return True

    def get(self, prefix: str) -> Optional[AftEntry]:
        return self._entries.get(normalize_prefix(prefix))
