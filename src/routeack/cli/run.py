from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import yaml

from routeack.cli.validate import validate_scenario
from routeack.core.errors import ConfigError
from routeack.core.orchestrator import run_scenario
from routeack.core.types import RunReport
from routeack.runtime.config import ScenarioConfig, parse_scenario_config
from routeack.utils.io import deep_merge, load_yaml


def load_effective_config(config_path: str) -> Dict[str, Any]:
    """Scenario YAML merged over ``defaults.yaml`` from the same directory, if present."""
    cfg_path = Path(config_path).resolve()
    defaults_path = cfg_path.parent / "defaults.yaml"

    cfg: Dict[str, Any] = {}
    try:
        if defaults_path.exists() and defaults_path != cfg_path:
            cfg = load_yaml(defaults_path)
        exp = load_yaml(cfg_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot load {config_path}: {exc}") from exc
    return deep_merge(cfg, exp)


def load_checked_scenario(config_path: str) -> ScenarioConfig:
    scenario = parse_scenario_config(load_effective_config(config_path))
    errors = validate_scenario(scenario)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return scenario


def run_config(config_path: str, repeat: int = 1, output_dir: str = "") -> List[RunReport]:
    scenario = load_checked_scenario(config_path)
    reports = []
    for index in range(max(1, int(repeat))):
        run_index = index if repeat > 1 else None
        reports.append(run_scenario(scenario, output_dir=output_dir or None, run_index=run_index))
    return reports
