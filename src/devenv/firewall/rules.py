from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Literal, Tuple, Union

from pydantic import BaseModel, Field, field_validator

from devenv.core.errors import FirewallApplicationError

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
Resolver = Callable[[str], Iterable[str]]

ALWAYS_ALLOWED = (
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
)


class AllowlistRule(BaseModel):
    # domain ("api.github.com", "*.githubusercontent.com"), IP or CIDR
    destination: str = Field(..., min_length=1)
    protocol: Literal["tcp", "udp"] = "tcp"
    port: int = Field(default=443, ge=1, le=65535)
    comment: str = ""

    @field_validator("destination")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()

    def literal_network(self) -> Network | None:
        """The rule as a network if it is an IP/CIDR literal, else None."""
        try:
            return ipaddress.ip_network(self.destination, strict=False)
        except ValueError:
            return None

    def hostname(self) -> str:
        """Name to resolve; `*.example.com` resolves its apex."""
        return self.destination[2:] if self.destination.startswith("*.") else self.destination


class Allowlist(BaseModel):
    rules: List[AllowlistRule] = Field(default_factory=list)
    dns_servers: List[str] = Field(default_factory=list)


def system_resolver(host: str) -> List[str]:
    """All A/AAAA records for host. Raises socket.gaierror on failure."""
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def read_resolv_conf(path: str = "/etc/resolv.conf") -> List[str]:
    servers: List[str] = []
    try:
        with open(path, encoding="utf-8") as fh:
            for line in fh:
                parts = line.split()
                if len(parts) >= 2 and parts[0] == "nameserver":
                    servers.append(parts[1])
    except OSError:
        return []
    return servers


@dataclass(frozen=True)
class AppliedState:
    """
    Resolved allowlist: (protocol, port) -> permitted networks.
    Everything not listed is denied.
    """
    allowed: Dict[Tuple[str, int], FrozenSet[Network]] = field(default_factory=dict)
    dns_servers: FrozenSet[str] = frozenset()

    def permits(self, ip: str, protocol: str, port: int) -> bool:
        addr = ipaddress.ip_address(ip)
        if any(addr in net for net in ALWAYS_ALLOWED if net.version == addr.version):
            return True
        if port == 53 and str(addr) in self.dns_servers:
            return True
        nets = self.allowed.get((protocol, port), frozenset())
        return any(addr.version == net.version and addr in net for net in nets)

    def entries(self) -> List[Tuple[str, int, str]]:
        """Flat, sorted (protocol, port, cidr) triples; stable across runs."""
        out = [
            (proto, port, str(net))
            for (proto, port), nets in self.allowed.items()
            for net in nets
        ]
        return sorted(out)


def plan(rules: Iterable[AllowlistRule], resolver: Resolver = system_resolver,
         dns_servers: Iterable[str] = ()) -> AppliedState:
    """
    Pure function from rule-set (plus a resolver) to applied state. Hostnames are
    resolved now and every returned address is allowed as a host route.
    """
    allowed: Dict[Tuple[str, int], set] = {}
    for rule in rules:
        net = rule.literal_network()
        if net is not None:
            nets = [net]
        else:
            host = rule.hostname()
            try:
                ips = list(resolver(host))
            except OSError as e:
                raise FirewallApplicationError(
                    f"cannot resolve allowlisted host {host!r}: {e}",
                    code="E_FIREWALL_RESOLVE",
                    meta={"destination": rule.destination},
                ) from e
            if not ips:
                raise FirewallApplicationError(
                    f"allowlisted host {host!r} resolved to no addresses",
                    code="E_FIREWALL_RESOLVE",
                    meta={"destination": rule.destination},
                )
            nets = [ipaddress.ip_network(ip) for ip in ips]
        allowed.setdefault((rule.protocol, rule.port), set()).update(nets)

    try:
        resolvers = frozenset(str(ipaddress.ip_address(s)) for s in dns_servers)
    except ValueError as e:
        raise FirewallApplicationError(f"invalid DNS server address: {e}", code="E_FIREWALL_DNS") from e

    return AppliedState(
        allowed={k: frozenset(v) for k, v in allowed.items()},
        dns_servers=resolvers,
    )
