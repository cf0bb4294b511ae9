from __future__ import annotations

from routeack.backends.emu import ManualClock
from routeack.runtime.poll import PollingConfig, poll_until


def test_poll_returns_on_first_match() -> None:
    clock = ManualClock()
    seen = []

    def check():
        seen.append(clock())
        return clock() >= 2.0, clock()

    result = poll_until(
        check, PollingConfig(interval_s=1.0, timeout_s=10.0), clock=clock, sleep=clock.sleep
    )

    assert result.matched is True
    assert result.polls == 3
    assert seen == [0.0, 1.0, 2.0]
    assert result.elapsed_s == 2.0


def test_poll_checks_once_more_at_deadline() -> None:
    clock = ManualClock()
    seen = []

    def check():
        seen.append(clock())
        return False, None

    result = poll_until(
        check, PollingConfig(interval_s=1.0, timeout_s=3.0), clock=clock, sleep=clock.sleep
    )

    assert result.matched is False
    assert seen == [0.0, 1.0, 2.0, 3.0]
    assert result.elapsed_s == 3.0


def test_value_converging_at_deadline_is_observed() -> None:
    clock = ManualClock()

    result = poll_until(
        lambda: (clock() >= 2.5, clock()),
        PollingConfig(interval_s=2.0, timeout_s=2.5),
        clock=clock,
        sleep=clock.sleep,
    )

    assert result.matched is True
    assert result.value == 2.5
    assert result.polls == 3


def test_interval_longer_than_timeout_is_clamped() -> None:
    clock = ManualClock()
    seen = []

    def check():
        seen.append(clock())
        return False, None

    poll_until(
        check, PollingConfig(interval_s=10.0, timeout_s=3.0), clock=clock, sleep=clock.sleep
    )

    assert seen == [0.0, 3.0]
