from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Tuple

from routeack.backends.base import StatePath, TelemetrySurface
from routeack.core.errors import ConvergenceError
from routeack.core.logging import JsonlLogger
from routeack.core.types import ConvergenceExpectation
from routeack.model.routing import normalize_prefix
from routeack.runtime.poll import PollingConfig, poll_until


class ConvergenceVerifier:
    """Polls AFT telemetry for one prefix until it reports an expected value."""

    def __init__(
        self,
        telemetry: TelemetrySurface,
        network_instance: str,
        poll_interval_s: float = 1.0,
        clock=time.monotonic,
        sleep=time.sleep,
        events: JsonlLogger | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._telemetry = telemetry
        self.network_instance = network_instance
        self.poll_interval_s = float(poll_interval_s)
        self._clock = clock
        self._sleep = sleep
        self._events = events or JsonlLogger(path=None)
        self._log = logger or logging.getLogger("routeack.convergence")
        self.last_match: Dict[StatePath, Any] = {}

    def path(self, prefix: str, leaf: str = "prefix") -> StatePath:
        return StatePath(self.network_instance, normalize_prefix(prefix), leaf)

    def await_prefix_state(
        self,
        prefix: str,
        expected: Any,
        timeout_s: float,
        leaf: str = "prefix",
    ) -> Tuple[Optional[Any], bool]:
        path = self.path(prefix, leaf)

        def check() -> Tuple[bool, Any]:
            observed = self._telemetry.read(path)
            return observed is not None and observed == expected, observed

        result = poll_until(
            check,
            PollingConfig(interval_s=self.poll_interval_s, timeout_s=timeout_s),
            clock=self._clock,
            sleep=self._sleep,
        )
        self._events.log(
            "convergence_poll",
            path=path.xpath,
            expected=expected,
            observed=result.value,
            matched=result.matched,
            polls=result.polls,
            elapsed_s=round(result.elapsed_s, 3),
        )
        if result.matched:
            self.last_match[path] = result.value
            self._log.info("%s = %r after %d poll(s)", path.xpath, result.value, result.polls)
        else:
            self._log.warning("%s got %r, want %r", path.xpath, result.value, expected)
        return result.value, result.matched

    def require_prefix_state(
        self,
        prefix: str,
        expected: Any,
        timeout_s: float,
        leaf: str = "prefix",
    ) -> Any:
        observed, matched = self.await_prefix_state(prefix, expected, timeout_s, leaf=leaf)
        if not matched:
            raise ConvergenceError(self.path(prefix, leaf).xpath, expected, observed, timeout_s)
        return observed

    def require(self, expectation: ConvergenceExpectation) -> Any:
        return self.require_prefix_state(
            expectation.prefix, expectation.expected, expectation.timeout_s, leaf=expectation.leaf
        )

    def require_stable(self, prefix: str, leaf: str = "prefix") -> Any:
        """Re-read a matched path once; a value that moved away since the match fails."""
        path = self.path(prefix, leaf)
        expected = self.last_match.get(path)
        observed = self._telemetry.read(path)
        self._events.log("stability_check", path=path.xpath, expected=expected, observed=observed)
        if path not in self.last_match or observed != expected:
            self._log.warning("%s flapped to %r after matching %r", path.xpath, observed, expected)
            raise ConvergenceError(path.xpath, expected, observed, 0)
        return observed
