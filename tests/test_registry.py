from __future__ import annotations

from typing import Any, Dict

import pytest

from routeack.backends import available_backends, build_lab, register_backend
from routeack.backends.base import Lab
from routeack.backends.emu import ManualClock, build_emu_lab


def test_builtin_backends_are_registered() -> None:
    assert {"clab", "emu"} <= set(available_backends())


def test_build_lab_passes_params_without_type() -> None:
    seen: Dict[str, Any] = {}

    def factory(params: Dict[str, Any], network_instance: str) -> Lab:
        seen.update(params=params, network_instance=network_instance)
        return build_emu_lab({"virtual_time": True}, network_instance)

    register_backend("recording", factory)
    lab = build_lab({"type": "recording", "speed": 3}, "VRF-A")

    assert seen == {"params": {"speed": 3}, "network_instance": "VRF-A"}
    assert isinstance(lab.clock, ManualClock)


def test_unknown_backend_is_rejected() -> None:
    with pytest.raises(KeyError, match="Unknown backend"):
        build_lab({"type": "nope"}, "DEFAULT")
