from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Tuple

Clock = Callable[[], float]
Sleep = Callable[[float], None]


@dataclass(frozen=True)
class PollingConfig:
    interval_s: float = 1.0
    timeout_s: float = 30.0


@dataclass(frozen=True)
class PollResult:
    matched: bool
    value: Any
    polls: int
    elapsed_s: float


def poll_until(
    check: Callable[[], Tuple[bool, Any]],
    config: PollingConfig,
    *,
    clock: Clock = time.monotonic,
    sleep: Sleep = time.sleep,
) -> PollResult:
    """Call ``check`` until it reports a match or the timeout passes.

    ``check`` returns ``(matched, value)``. The last call always starts at or
    after the deadline, so a value that converges just before the timeout is
    still observed.
    """
    start = clock()
    deadline = start + max(0.0, float(config.timeout_s))
    interval = max(0.0, float(config.interval_s))
    polls = 0
    while True:
        started = clock()
        matched, value = check()
        polls += 1
        if matched:
            return PollResult(True, value, polls, clock() - start)
        if started >= deadline:
            return PollResult(False, value, polls, clock() - start)
        now = clock()
        sleep(max(0.0, min(interval, deadline - now)))
