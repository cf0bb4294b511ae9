#!/usr/bin/env python3
from __future__ import annotations

import argparse
import ipaddress
import signal
import socket
import time
from dataclasses import dataclass
from typing import List


@dataclass
class ThroughputStats:
    packets: int = 0
    bytes_total: int = 0

    def add(self, payload_len: int) -> None:
        self.packets += 1
        self.bytes_total += payload_len


class _Stop(Exception):
    pass


def _raise_stop(_signum, _frame) -> None:  # type: ignore[no-untyped-def]
    raise _Stop()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="UDP sender/sink for ATE nodes; the sender walks a destination address range."
    )
    sub = parser.add_subparsers(dest="role", required=True)

    sink = sub.add_parser("sink", help="Count received datagrams.")
    sink.add_argument("--bind", default="0.0.0.0", help="Bind address.")
    sink.add_argument("--port", type=int, required=True, help="Bind port.")
    sink.add_argument("--buffer-size", type=int, default=65535)
    sink.add_argument("--report-interval-s", type=float, default=1.0)

    send = sub.add_parser("send", help="Send datagrams across a destination range.")
    send.add_argument("--target-min", required=True, help="First destination address.")
    send.add_argument("--target-max", default="", help="Last destination address (default: min).")
    send.add_argument(
        "--address-count",
        type=int,
        default=1,
        help="Number of destinations drawn from the range, cycling when the range is smaller.",
    )
    send.add_argument("--port", type=int, required=True, help="Destination port.")
    send.add_argument("--packet-size", type=int, default=256)
    send.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of datagrams to send. 0 means unlimited (until duration or SIGTERM).",
    )
    send.add_argument("--duration-s", type=float, default=0.0, help="0 means no time limit.")
    send.add_argument("--pps", type=float, default=0.0, help="0 means no pacing.")
    send.add_argument("--report-interval-s", type=float, default=1.0)
    return parser


def _validate_args(args: argparse.Namespace) -> None:
    if int(args.port) <= 0 or int(args.port) > 65535:
        raise ValueError(f"invalid port: {args.port}")
    if float(args.report_interval_s) <= 0:
        raise ValueError("--report-interval-s must be > 0")
    if args.role == "sink":
        if int(args.buffer_size) <= 0:
            raise ValueError("--buffer-size must be > 0")
        return

    if int(args.address_count) <= 0:
        raise ValueError("--address-count must be > 0")
    targets(args.target_min, args.target_max or args.target_min, args.address_count)
    if int(args.packet_size) <= 0:
        raise ValueError("--packet-size must be > 0")
    if int(args.count) < 0:
        raise ValueError("--count must be >= 0")
    if float(args.duration_s) < 0:
        raise ValueError("--duration-s must be >= 0")
    if float(args.pps) < 0:
        raise ValueError("--pps must be >= 0")


def targets(target_min: str, target_max: str, count: int) -> List[str]:
    lo = int(ipaddress.IPv4Address(target_min))
    hi = int(ipaddress.IPv4Address(target_max))
    if hi < lo:
        raise ValueError(f"empty target range: {target_min}..{target_max}")
    span = hi - lo + 1
    return [str(ipaddress.IPv4Address(lo + (i % span))) for i in range(max(0, int(count)))]


def _payload(packet_size: int, seq: int) -> bytes:
    header = f"seq={seq} ts={time.time_ns()} ".encode("ascii")
    if len(header) >= packet_size:
        return header[:packet_size]
    return header + (b"x" * (packet_size - len(header)))


def _report(prefix: str, start_ts: float, stats: ThroughputStats) -> float:
    now = time.monotonic()
    elapsed = max(now - start_ts, 1e-9)
    pps = stats.packets / elapsed
    bps = stats.bytes_total * 8.0 / elapsed
    print(
        f"{prefix} elapsed={elapsed:.3f}s packets={stats.packets} bytes={stats.bytes_total} "
        f"avg_pps={pps:.2f} avg_mbps={bps / 1_000_000.0:.3f}",
        flush=True,
    )
    return now


def run_sink(args: argparse.Namespace) -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind((str(args.bind), int(args.port)))
    sock.settimeout(float(args.report_interval_s))
    stats = ThroughputStats()
    start_ts = time.monotonic()
    last_report_ts = start_ts
    print(f"udp sink listening on {args.bind}:{args.port}", flush=True)
    try:
        while True:
            try:
                payload, _addr = sock.recvfrom(int(args.buffer_size))
                stats.add(len(payload))
            except TimeoutError:
                pass
            if time.monotonic() - last_report_ts >= float(args.report_interval_s):
                last_report_ts = _report("udp sink", start_ts, stats)
    except (KeyboardInterrupt, _Stop):
        pass
    finally:
        sock.close()
    _report("udp sink final", start_ts, stats)
    return 0


def run_send(args: argparse.Namespace) -> int:
    dsts = targets(args.target_min, args.target_max or args.target_min, args.address_count)
    port = int(args.port)
    count = int(args.count)
    duration_s = float(args.duration_s)
    pps = float(args.pps)
    report_interval_s = float(args.report_interval_s)

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    stats = ThroughputStats()
    start_ts = time.monotonic()
    last_report_ts = start_ts
    print(
        f"udp send targets={dsts[0]}..{dsts[-1]} ({len(dsts)}) port={port} "
        f"count={count} duration_s={duration_s} pps={pps}",
        flush=True,
    )
    try:
        while True:
            now = time.monotonic()
            if count > 0 and stats.packets >= count:
                break
            if duration_s > 0 and now - start_ts >= duration_s:
                break
            if pps > 0:
                target_send_ts = start_ts + (stats.packets / pps)
                if target_send_ts > now:
                    time.sleep(min(target_send_ts - now, 0.2))
                    continue

            payload = _payload(int(args.packet_size), stats.packets + 1)
            try:
                sock.sendto(payload, (dsts[stats.packets % len(dsts)], port))
            except OSError:
                # Unroutable destinations still count as transmitted.
                pass
            stats.add(len(payload))

            if time.monotonic() - last_report_ts >= report_interval_s:
                last_report_ts = _report("udp send", start_ts, stats)
    except (KeyboardInterrupt, _Stop):
        pass
    finally:
        sock.close()
    _report("udp send final", start_ts, stats)
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        _validate_args(args)
    except ValueError as exc:
        parser.error(str(exc))

    signal.signal(signal.SIGTERM, _raise_stop)
    if args.role == "sink":
        return run_sink(args)
    return run_send(args)


if __name__ == "__main__":
    raise SystemExit(main())
