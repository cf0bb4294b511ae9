from __future__ import annotations

import pytest

from routeack.model.attrs import PortAttrs
from routeack.model.routing import (
    Channel,
    ForwardingTable,
    NextHopGroup,
    Route,
    RouteTable,
    normalize_prefix,
)


def _route(prefix: str, channel: Channel, preference: int, hop: str) -> Route:
    return Route(prefix=prefix, channel=channel, next_hops=(hop,), preference=preference)


def test_best_route_is_lowest_preference() -> None:
    rib = RouteTable()
    rib.replace(_route("203.0.113.0/24", Channel.DYNAMIC, 5, "192.0.2.10"))
    rib.replace(_route("203.0.113.0/24", Channel.STATIC, 1, "192.0.2.6"))

    best = rib.best("203.0.113.0/24")
    assert best is not None
    assert best.channel == Channel.STATIC
    assert [r.channel for r in rib.candidates("203.0.113.0/24")] == [
        Channel.STATIC,
        Channel.DYNAMIC,
    ]


def test_replace_is_idempotent() -> None:
    rib = RouteTable()
    route = _route("203.0.113.0/24", Channel.STATIC, 1, "192.0.2.6")

    assert rib.replace(route) is True
    assert rib.replace(route) is False


def test_replace_channel_routes_drops_stale_prefixes() -> None:
    rib = RouteTable()
    rib.replace(_route("198.51.100.0/24", Channel.DYNAMIC, 5, "192.0.2.10"))
    rib.replace(_route("198.51.100.0/24", Channel.STATIC, 1, "192.0.2.6"))

    assert rib.replace_channel_routes(Channel.DYNAMIC, []) is True
    assert [r.channel for r in rib.candidates("198.51.100.0/24")] == [Channel.STATIC]


def test_lookup_uses_longest_prefix() -> None:
    rib = RouteTable()
    rib.replace(_route("203.0.113.0/24", Channel.STATIC, 1, "192.0.2.6"))
    rib.replace(_route("203.0.113.128/25", Channel.DYNAMIC, 5, "192.0.2.10"))

    assert rib.lookup("203.0.113.200").next_hops == ("192.0.2.10",)
    assert rib.lookup("203.0.113.5").next_hops == ("192.0.2.6",)
    assert rib.lookup("198.51.100.1") is None


def test_forwarding_table_tracks_origin() -> None:
    fib = ForwardingTable("DEFAULT")
    routes = [_route("203.0.113.0/24", Channel.STATIC, 1, "192.0.2.6")]

    assert fib.sync_from_routes(routes) is True
    assert fib.sync_from_routes(routes) is False
    entry = fib.get("203.0.113.0/24")
    assert entry is not None
    assert entry.origin_protocol == Channel.STATIC
    assert entry.network_instance == "DEFAULT"
    assert fib.get("198.51.100.0/24") is None


def test_next_hop_group_requires_positive_weights() -> None:
    with pytest.raises(ValueError):
        NextHopGroup(index=42, weights={}, network_instance="DEFAULT")
    with pytest.raises(ValueError):
        NextHopGroup(index=42, weights={1: 0}, network_instance="DEFAULT")
    group = NextHopGroup(index=42, weights={1: 1}, network_instance="DEFAULT")
    assert hash(group) == hash(NextHopGroup(index=42, weights={1: 1}, network_instance="DEFAULT"))


def test_normalize_prefix_and_port_subnet() -> None:
    assert normalize_prefix("203.0.113.9/24") == "203.0.113.0/24"
    port = PortAttrs(name="port2", ipv4="192.0.2.5")
    assert port.ipv4_cidr == "192.0.2.5/30"
    assert port.same_subnet("192.0.2.6")
    assert not port.same_subnet("192.0.2.10")
