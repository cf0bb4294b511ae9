from __future__ import annotations

import ipaddress
from dataclasses import dataclass


@dataclass(frozen=True)
class PortAttrs:
    """Addressing of one DUT or ATE port."""

    name: str
    ipv4: str
    ipv4_len: int = 30
    desc: str = ""

    @property
    def ipv4_cidr(self) -> str:
        return f"{self.ipv4}/{int(self.ipv4_len)}"

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(self.ipv4_cidr, strict=False)

    def same_subnet(self, address: str) -> bool:
        return ipaddress.IPv4Address(address) in self.network
