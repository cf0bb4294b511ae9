from __future__ import annotations

import logging
from typing import Dict, List, Optional

from routeack.backends.base import DeviceConfig, RoutingSession
from routeack.core.errors import ProgrammingError
from routeack.model.routing import (
    AckMode,
    Ipv4Entry,
    NextHop,
    NextHopGroup,
    StaticRoute,
    normalize_prefix,
)


class RouteInstaller:
    """Programs one network instance through the static and the dynamic channel.

    Dynamic objects are submitted strictly in dependency order. The installer
    remembers which next-hops and groups were acknowledged and refuses to
    submit anything that references an object that was not. Nothing is rolled
    back on failure; ``remove_dynamic_routes`` is the explicit cleanup.
    """

    def __init__(
        self,
        device: DeviceConfig,
        network_instance: str,
        session: Optional[RoutingSession] = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._device = device
        self.network_instance = network_instance
        self._session = session
        self._log = logger or logging.getLogger("routeack.installer")
        self._next_hops: Dict[int, NextHop] = {}
        self._groups: Dict[int, NextHopGroup] = {}
        self._entries: Dict[str, Ipv4Entry] = {}

    def attach_session(self, session: RoutingSession) -> None:
        self._session = session

    @property
    def installed(self) -> Dict[str, List]:
        return {
            "next_hops": sorted(self._next_hops),
            "next_hop_groups": sorted(self._groups),
            "ipv4_entries": sorted(self._entries),
        }

    def install_static_route(self, prefix: str, next_hop: str) -> StaticRoute:
        route = StaticRoute(
            prefix=normalize_prefix(prefix),
            next_hop=next_hop,
            network_instance=self.network_instance,
        )
        try:
            self._device.replace_static_route(route)
        except RuntimeError as exc:
            raise ProgrammingError("replace static route", route.prefix, str(exc)) from exc
        self._log.info("static route %s via %s replaced", route.prefix, next_hop)
        return route

    def install_next_hop(self, index: int, address: str, ack_mode: AckMode) -> NextHop:
        next_hop = NextHop(
            index=int(index), ip_address=address, network_instance=self.network_instance
        )
        self._call("add next-hop", f"index {index}", lambda s: s.add_next_hop(next_hop, ack_mode))
        self._next_hops[next_hop.index] = next_hop
        self._log.info("next-hop %s -> %s acknowledged (%s)", index, address, ack_mode.value)
        return next_hop

    def install_next_hop_group(
        self, index: int, weights: Dict[int, int], ack_mode: AckMode
    ) -> NextHopGroup:
        target = f"index {index}"
        unacked = sorted(int(i) for i in weights if int(i) not in self._next_hops)
        if unacked:
            raise ProgrammingError(
                "add next-hop-group", target, f"next-hops {unacked} not acknowledged"
            )
        try:
            group = NextHopGroup(
                index=int(index),
                weights={int(k): int(v) for k, v in weights.items()},
                network_instance=self.network_instance,
            )
        except ValueError as exc:
            raise ProgrammingError("add next-hop-group", target, str(exc)) from exc
        self._call("add next-hop-group", target, lambda s: s.add_next_hop_group(group, ack_mode))
        self._groups[group.index] = group
        self._log.info(
            "next-hop-group %s %s acknowledged (%s)", index, group.weights, ack_mode.value
        )
        return group

    def install_ipv4_entry(
        self, prefix: str, group_index: int, ack_mode: AckMode, tag: str = ""
    ) -> Ipv4Entry:
        prefix = normalize_prefix(prefix)
        if int(group_index) not in self._groups:
            raise ProgrammingError(
                "add ipv4-entry", prefix, f"next-hop-group {group_index} not acknowledged"
            )
        entry = Ipv4Entry(
            prefix=prefix,
            next_hop_group=int(group_index),
            network_instance=self.network_instance,
            tag=tag,
        )
        self._call("add ipv4-entry", prefix, lambda s: s.add_ipv4_entry(entry, ack_mode))
        self._entries[prefix] = entry
        self._log.info(
            "ipv4-entry %s -> nhg %s acknowledged (%s)", prefix, group_index, ack_mode.value
        )
        return entry

    def install_dynamic_route(
        self,
        prefix: str,
        next_hop_index: int,
        next_hop_address: str,
        group_index: int,
        ack_mode: AckMode,
        weight: int = 1,
    ) -> Ipv4Entry:
        self.install_next_hop(next_hop_index, next_hop_address, ack_mode)
        self.install_next_hop_group(group_index, {next_hop_index: weight}, ack_mode)
        return self.install_ipv4_entry(prefix, group_index, ack_mode)

    def remove_dynamic_routes(self) -> None:
        """Delete every acknowledged dynamic object, entries first.

        Each delete is attempted even when an earlier one failed; objects whose
        delete failed stay in ``installed`` and one ``ProgrammingError`` lists
        them all.
        """
        failures: List[str] = []
        for prefix, entry in sorted(self._entries.items()):
            if self._try_call("delete ipv4-entry", prefix, failures,
                              lambda s, e=entry: s.delete_ipv4_entry(e)):
                del self._entries[prefix]
        for index, group in sorted(self._groups.items()):
            if self._try_call("delete next-hop-group", f"index {index}", failures,
                              lambda s, g=group: s.delete_next_hop_group(g)):
                del self._groups[index]
        for index, next_hop in sorted(self._next_hops.items()):
            if self._try_call("delete next-hop", f"index {index}", failures,
                              lambda s, n=next_hop: s.delete_next_hop(n)):
                del self._next_hops[index]
        if failures:
            raise ProgrammingError(
                "remove dynamic routes", self.network_instance, "; ".join(failures)
            )

    def _try_call(self, operation: str, target: str, failures: List[str], fn) -> bool:
        try:
            self._call(operation, target, fn)
        except ProgrammingError as exc:
            self._log.warning("%s", exc)
            failures.append(str(exc))
            return False
        return True

    def _call(self, operation: str, target: str, fn) -> None:
        if self._session is None:
            raise ProgrammingError(operation, target, "no routing session")
        try:
            fn(self._session)
        except ProgrammingError:
            raise
        except (RuntimeError, ValueError) as exc:
            raise ProgrammingError(operation, target, str(exc)) from exc
