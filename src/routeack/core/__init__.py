"""Route installation, convergence and traffic checks, and the run pipeline."""

from routeack.core.errors import (
    ConfigError,
    ConvergenceError,
    HarnessError,
    ProgrammingError,
    SetupError,
    TrafficLossError,
)

__all__ = [
    "ConfigError",
    "ConvergenceError",
    "HarnessError",
    "ProgrammingError",
    "SetupError",
    "TrafficLossError",
]
