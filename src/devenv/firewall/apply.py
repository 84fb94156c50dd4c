from __future__ import annotations

import asyncio
import ipaddress
from typing import Callable, List, Optional

from devenv.core.ctx import log_ctx
from devenv.core.errors import FirewallApplicationError
from devenv.core.logging import get_logger
from devenv.core.manifest import load_manifest
from devenv.firewall.backend import NetworkFilter
from devenv.firewall.rules import Allowlist, AppliedState, Resolver, plan, system_resolver

log = get_logger(__name__)


class Firewall:
    """Allowlist rule-set bound to a network filter, with apply / verify / refresh."""

    def __init__(self, allowlist: Allowlist, backend: NetworkFilter,
                 resolver: Resolver = system_resolver,
                 dns_servers: Optional[List[str]] = None,
                 dns_provider: Optional[Callable[[], List[str]]] = None) -> None:
        self.allowlist = allowlist
        self.backend = backend
        self.resolver = resolver
        self.dns_servers = list(dns_servers if dns_servers is not None else allowlist.dns_servers)
        # used at plan time when no resolvers are configured
        self.dns_provider = dns_provider

    @classmethod
    def from_manifest(cls, path: str, backend: NetworkFilter, **kw) -> "Firewall":
        return cls(load_manifest(Allowlist, path), backend, **kw)

    def plan(self) -> AppliedState:
        dns = self.dns_servers
        if not dns and self.dns_provider is not None:
            dns = self.dns_provider()
        return plan(self.allowlist.rules, self.resolver, dns)

    def apply(self) -> AppliedState:
        with log_ctx(phase="firewall"):
            state = self.plan()
            self.backend.apply(state)
            log.info(
                "egress allowlist applied: %d rule(s) -> %d entr(y/ies)",
                len(self.allowlist.rules),
                len(state.entries()),
            )
            return state

    def _addresses(self, host: str) -> List[str]:
        try:
            return [str(ipaddress.ip_address(host))]
        except ValueError:
            pass
        try:
            return list(self.resolver(host))
        except OSError:
            return []

    def verify(self, host: str, port: int, protocol: str = "tcp") -> bool:
        """
        Would a connection to host:port be let through by the currently applied
        state? Answered from the filter's state, not by sending traffic.
        """
        state = self.backend.current()
        if state is None:
            raise FirewallApplicationError("no egress allowlist is applied", code="E_FIREWALL_NOT_APPLIED")
        ips = self._addresses(host)
        return any(state.permits(ip, protocol, port) for ip in ips)

    def refresh(self) -> bool:
        """Re-resolve the allowlist; re-apply only if addresses rotated. True if re-applied."""
        new = self.plan()
        cur = self.backend.current()
        if cur is not None and cur.entries() == new.entries() and cur.dns_servers == new.dns_servers:
            log.debug("allowlist resolution unchanged")
            return False
        self.backend.apply(new)
        log.info("allowlist addresses changed; re-applied (%d entries)", len(new.entries()))
        return True

    async def refresh_forever(self, interval: float) -> None:
        with log_ctx(phase="firewall"):
            while True:
                await asyncio.sleep(interval)
                await asyncio.to_thread(self.refresh)
