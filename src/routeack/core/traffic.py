from __future__ import annotations

import logging
import time
from typing import Any, Dict, Tuple

from routeack.backends.base import FlowCounters, FlowSpec, TrafficSurface
from routeack.core.errors import TrafficLossError
from routeack.core.logging import JsonlLogger
from routeack.core.types import TrafficResult
from routeack.runtime.poll import PollingConfig, poll_until


class TrafficValidator:
    """Runs one flow and reports its loss.

    The flow is observed until every packet is sent and the receive counter
    holds still for ``settle_polls`` reads, bounded by the flow duration.
    """

    def __init__(
        self,
        traffic: TrafficSurface,
        poll_interval_s: float = 1.0,
        settle_polls: int = 2,
        clock=time.monotonic,
        sleep=time.sleep,
        events: JsonlLogger | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._traffic = traffic
        self.poll_interval_s = float(poll_interval_s)
        self.settle_polls = max(1, int(settle_polls))
        self._clock = clock
        self._sleep = sleep
        self._events = events or JsonlLogger(path=None)
        self._log = logger or logging.getLogger("routeack.traffic")

    def run_traffic_check(
        self,
        src_port: str,
        dst_port: str,
        range_min: str,
        range_max: str,
        address_count: int,
        packet_count: int,
        duration_s: float,
        pps: float = 1000.0,
        flow_name: str = "Flow",
    ) -> TrafficResult:
        flow = FlowSpec(
            name=flow_name,
            src_port=src_port,
            dst_port=dst_port,
            range_min=range_min,
            range_max=range_max,
            address_count=int(address_count),
            packet_count=int(packet_count),
            pps=float(pps),
        )
        return self._check_flow(flow, duration_s)

    def _check_flow(self, flow: FlowSpec, duration_s: float) -> TrafficResult:
        state: Dict[str, Any] = {"rx": None, "same": 0}

        def drained() -> Tuple[bool, FlowCounters]:
            counters = self._traffic.read_counters(flow.name)
            if counters.rx_packets == state["rx"]:
                state["same"] += 1
            else:
                state["rx"] = counters.rx_packets
                state["same"] = 0
            done = counters.tx_packets >= flow.packet_count and state["same"] >= self.settle_polls
            return done, counters

        self._log.info(
            "flow %s %s -> %s dst %s..%s (%d addrs) packets=%d",
            flow.name,
            flow.src_port,
            flow.dst_port,
            flow.range_min,
            flow.range_max,
            flow.address_count,
            flow.packet_count,
        )
        self._traffic.start(flow)
        try:
            result = poll_until(
                drained,
                PollingConfig(interval_s=self.poll_interval_s, timeout_s=duration_s),
                clock=self._clock,
                sleep=self._sleep,
            )
        finally:
            self._traffic.stop(flow)

        counters = self._traffic.read_counters(flow.name)
        loss_pct = self._traffic.read_loss_pct(flow.name)
        if not result.matched:
            self._log.warning(
                "flow %s did not drain within %gs (tx=%d rx=%d)",
                flow.name,
                duration_s,
                counters.tx_packets,
                counters.rx_packets,
            )
        traffic = TrafficResult(
            flow=flow.name,
            loss_pct=float(loss_pct),
            tx_packets=counters.tx_packets,
            rx_packets=counters.rx_packets,
            polls=result.polls,
            elapsed_s=round(result.elapsed_s, 3),
        )
        self._events.log("traffic_result", **traffic.__dict__, drained=result.matched)
        return traffic

    @staticmethod
    def require_zero_loss(result: TrafficResult) -> TrafficResult:
        if result.loss_pct > 0 or result.tx_packets <= 0:
            raise TrafficLossError(result.flow, result.loss_pct if result.tx_packets > 0 else 100.0)
        return result
