from __future__ import annotations

from typing import Tuple

import pytest

from routeack.backends.base import Lab
from routeack.backends.emu import build_emu_lab
from routeack.runtime.config import ScenarioConfig, parse_scenario_config


@pytest.fixture
def scenario() -> ScenarioConfig:
    return parse_scenario_config({"backend": {"type": "emu", "virtual_time": True}})


@pytest.fixture
def emu_lab(scenario: ScenarioConfig) -> Lab:
    return build_emu_lab({"virtual_time": True}, scenario.network_instance)


@pytest.fixture
def provisioned(emu_lab: Lab, scenario: ScenarioConfig) -> Tuple[Lab, ScenarioConfig]:
    """Emulated lab with the instance, all three ports and ATE protocols up."""
    emu_lab.device.replace_network_instance(scenario.network_instance)
    for name, port in sorted(scenario.ports.items()):
        emu_lab.provisioner.configure_dut_interface(name, port.dut)
        emu_lab.provisioner.configure_ate_interface(name, port.ate, gateway=port.dut.ipv4)
    emu_lab.provisioner.start_protocols()
    return emu_lab, scenario
