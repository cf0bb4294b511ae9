from __future__ import annotations

from typing import Any, Callable, Dict

from routeack.backends.base import Lab
from routeack.backends.clab import build_clab_lab
from routeack.backends.emu import build_emu_lab

LabFactory = Callable[[Dict[str, Any], str], Lab]

_REGISTRY: Dict[str, LabFactory] = {
    "emu": build_emu_lab,
    "clab": build_clab_lab,
}


def register_backend(name: str, factory: LabFactory) -> None:
    _REGISTRY[name] = factory


def load_backend(name: str) -> LabFactory:
    if name not in _REGISTRY:
        raise KeyError(f"Unknown backend: {name}. Available: {sorted(_REGISTRY.keys())}")
    return _REGISTRY[name]


def available_backends() -> list[str]:
    return sorted(_REGISTRY.keys())


def build_lab(backend: Dict[str, Any], network_instance: str) -> Lab:
    params = dict(backend)
    name = str(params.pop("type", "emu"))
    return load_backend(name)(params, network_instance)
