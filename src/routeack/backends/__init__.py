"""Collaborator contracts and the testbeds that implement them."""

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
from routeack.backends.registry import available_backends, build_lab, register_backend

__all__ = [
    "DeviceConfig",
    "FlowCounters",
    "FlowSpec",
    "Lab",
    "RoutingControlClient",
    "RoutingSession",
    "SessionConfig",
    "StatePath",
    "TelemetrySurface",
    "TopologyProvisioner",
    "TrafficSurface",
    "available_backends",
    "build_lab",
    "register_backend",
]
