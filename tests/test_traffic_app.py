from __future__ import annotations

import pytest

from routeack.apps.traffic_app import _build_parser, _payload, _validate_args, targets


def test_payload_size_matches_request() -> None:
    payload = _payload(packet_size=128, seq=1)
    assert len(payload) == 128


def test_validate_send_args_ok() -> None:
    parser = _build_parser()
    args = parser.parse_args(
        [
            "send",
            "--target-min",
            "203.0.113.0",
            "--target-max",
            "203.0.113.254",
            "--address-count",
            "250",
            "--port",
            "9000",
            "--count",
            "10000",
            "--pps",
            "1000",
        ]
    )
    _validate_args(args)


def test_validate_args_rejects_bad_port() -> None:
    parser = _build_parser()
    args = parser.parse_args(["sink", "--bind", "0.0.0.0", "--port", "70000"])
    with pytest.raises(ValueError):
        _validate_args(args)


def test_validate_args_rejects_inverted_range() -> None:
    parser = _build_parser()
    args = parser.parse_args(
        ["send", "--target-min", "203.0.113.9", "--target-max", "203.0.113.1", "--port", "9000"]
    )
    with pytest.raises(ValueError, match="empty target range"):
        _validate_args(args)


def test_targets_walk_the_range() -> None:
    dsts = targets("203.0.113.0", "203.0.113.254", 250)
    assert len(dsts) == 250
    assert dsts[0] == "203.0.113.0"
    assert dsts[-1] == "203.0.113.249"
    assert targets("203.0.113.7", "203.0.113.7", 3) == ["203.0.113.7"] * 3
