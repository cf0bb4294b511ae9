"""Route objects, acknowledgment modes and port addressing."""

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

__all__ = [
    "AckMode",
    "AftEntry",
    "Channel",
    "ForwardingTable",
    "Ipv4Entry",
    "NextHop",
    "NextHopGroup",
    "PortAttrs",
    "Route",
    "RouteTable",
    "StaticRoute",
    "normalize_prefix",
]
