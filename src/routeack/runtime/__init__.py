"""Scenario configuration and polling primitives."""

from routeack.runtime.config import (
    PortConfig,
    ScenarioConfig,
    load_scenario_config,
    parse_scenario_config,
)
from routeack.runtime.poll import PollingConfig, PollResult, poll_until

__all__ = [
    "PollResult",
    "PollingConfig",
    "PortConfig",
    "ScenarioConfig",
    "load_scenario_config",
    "parse_scenario_config",
    "poll_until",
]
