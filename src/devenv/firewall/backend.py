from __future__ import annotations

import ipaddress
import os
import shutil
import subprocess
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from devenv.core.errors import FirewallApplicationError
from devenv.core.logging import get_logger
from devenv.firewall.rules import AppliedState

logger = get_logger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]

DNS_COMMENT = "devenv-dns"


class NetworkFilter(Protocol):
    def apply(self, state: AppliedState) -> None: ...
    def current(self) -> Optional[AppliedState]: ...


class InMemoryFilter:
    """Holds the applied state in process; used for dry runs and tests."""

    def __init__(self) -> None:
        self._state: Optional[AppliedState] = None
        self.applications = 0

    def apply(self, state: AppliedState) -> None:
        self._state = state
        self.applications += 1

    def current(self) -> Optional[AppliedState]:
        return self._state


def _default_runner(argv: Sequence[str], input: Optional[str] = None) -> subprocess.CompletedProcess:
    return subprocess.run(list(argv), input=input, capture_output=True, text=True, check=False)


def ipv6_active(pid: Optional[int] = None) -> bool:
    """True if the network namespace of `pid` (default: our own) has any IPv6 address."""
    path = f"/proc/{pid if pid is not None else 'self'}/net/if_inet6"
    try:
        with open(path, encoding="utf-8") as fh:
            return bool(fh.read().strip())
    except FileNotFoundError:
        return False


class IptablesFilter:
    """
    Default-deny egress on a dedicated chain jumped to from OUTPUT, for both
    IPv4 and IPv6.

    The chain is replaced in one iptables-restore transaction per family
    (--noflush keeps every other chain intact), so reapplying never duplicates
    rules. The OUTPUT jump is inserted only when missing.

    With `netns` set, every command runs through `nsenter -n` inside the network
    namespace of the pid it returns (the workspace container), so the host's
    own OUTPUT chain is never touched.
    """

    FAMILIES = {4: ("iptables", "icmp-admin-prohibited"), 6: ("ip6tables", "icmp6-adm-prohibited")}

    def __init__(self, chain: str = "DEVENV-EGRESS", runner: Optional[Runner] = None,
                 geteuid: Callable[[], int] = os.geteuid,
                 netns: Optional[Callable[[], Optional[int]]] = None,
                 ipv6_probe: Callable[[Optional[int]], bool] = ipv6_active) -> None:
        self.chain = chain
        self._run = runner or _default_runner
        self._geteuid = geteuid
        self._netns = netns
        self._ipv6_active = ipv6_probe

    # ---------- preflight ----------

    def _target(self) -> Optional[int]:
        if self._netns is None:
            return None
        pid = self._netns()
        if not pid:
            raise FirewallApplicationError(
                "target container is not running; cannot enter its network namespace",
                code="E_FIREWALL_TARGET",
            )
        return pid

    @staticmethod
    def _has(tool: str) -> bool:
        return shutil.which(tool) is not None and shutil.which(f"{tool}-restore") is not None

    def _families(self, pid: Optional[int]) -> List[int]:
        """Families to program: both, unless ip6tables is absent and IPv6 is off in the namespace."""
        if self._geteuid() != 0:
            raise FirewallApplicationError(
                "egress firewall needs root (CAP_NET_ADMIN); refusing to continue without it",
                code="E_FIREWALL_PRIVILEGE",
            )
        if pid is not None and shutil.which("nsenter") is None:
            raise FirewallApplicationError("nsenter not found on PATH", code="E_FIREWALL_UNAVAILABLE")
        if not self._has("iptables"):
            raise FirewallApplicationError(
                "iptables / iptables-restore not found on PATH", code="E_FIREWALL_UNAVAILABLE"
            )
        if self._has("ip6tables"):
            return [4, 6]
        if self._ipv6_active(pid):
            raise FirewallApplicationError(
                "ip6tables not found but IPv6 is enabled; IPv6 egress would stay open",
                code="E_FIREWALL_UNAVAILABLE",
            )
        logger.warning("ip6tables not found and IPv6 is disabled; filtering IPv4 only")
        return [4]

    def _exec(self, argv: Sequence[str], pid: Optional[int],
              input: Optional[str] = None) -> subprocess.CompletedProcess:
        if pid is not None:
            argv = ["nsenter", "-t", str(pid), "-n", "--", *argv]
        return self._run(argv, input=input)

    def _check(self, argv: Sequence[str], pid: Optional[int],
               input: Optional[str] = None) -> subprocess.CompletedProcess:
        res = self._exec(argv, pid, input=input)
        if res.returncode != 0:
            raise FirewallApplicationError(
                f"{' '.join(argv)} failed (exit {res.returncode}): {(res.stderr or '').strip()}",
                code="E_FIREWALL_COMMAND",
            )
        return res

    # ---------- rendering ----------

    def render(self, state: AppliedState, version: int) -> str:
        """iptables-restore payload replacing the chain for one address family."""
        _, reject = self.FAMILIES[version]
        c = self.chain
        lines = [
            "*filter",
            f":{c} - [0:0]",
            f"-A {c} -o lo -j ACCEPT",
            f"-A {c} -m conntrack --ctstate ESTABLISHED,RELATED -j ACCEPT",
        ]
        for ip in sorted(state.dns_servers):
            if ipaddress.ip_address(ip).version != version:
                continue
            for proto in ("udp", "tcp"):
                lines.append(
                    f"-A {c} -d {ip} -p {proto} -m {proto} --dport 53 "
                    f"-m comment --comment {DNS_COMMENT} -j ACCEPT"
                )
        for proto, port, cidr in state.entries():
            if ipaddress.ip_network(cidr).version != version:
                continue
            lines.append(f"-A {c} -d {cidr} -p {proto} -m {proto} --dport {port} -j ACCEPT")
        lines.append(f"-A {c} -j REJECT --reject-with {reject}")
        lines.append("COMMIT")
        return "\n".join(lines) + "\n"

    # ---------- NetworkFilter ----------

    def apply(self, state: AppliedState) -> None:
        pid = self._target()
        for version in self._families(pid):
            tool, _ = self.FAMILIES[version]
            self._check([f"{tool}-restore", "--noflush"], pid, input=self.render(state, version))
            if self._exec([tool, "-C", "OUTPUT", "-j", self.chain], pid).returncode != 0:
                self._check([tool, "-I", "OUTPUT", "1", "-j", self.chain], pid)
            logger.info("%s: chain %s applied%s", tool, self.chain, f" in netns of pid {pid}" if pid else "")

    def current(self) -> Optional[AppliedState]:
        """Applied state of both families merged; None if the IPv4 chain is absent."""
        pid = self._target()
        states: List[AppliedState] = []
        for version, (tool, _) in sorted(self.FAMILIES.items()):
            if version == 6 and shutil.which(tool) is None:
                continue
            res = self._exec([tool, "-S", self.chain], pid)
            if res.returncode != 0:
                if version == 4:
                    return None
                continue
            states.append(parse_rules(res.stdout or ""))
        return merge_states(states)


def parse_rules(text: str) -> AppliedState:
    """Rebuild an AppliedState from `iptables -S <chain>` output (ACCEPT rules with -d/--dport)."""
    allowed: Dict[Tuple[str, int], Set] = {}
    dns: Set[str] = set()
    for line in text.splitlines():
        tok = line.split()
        if not tok or tok[0] != "-A" or "ACCEPT" not in tok:
            continue
        opts: Dict[str, str] = {}
        for i, t in enumerate(tok[:-1]):
            if t in ("-d", "-p", "--dport"):
                opts[t] = tok[i + 1]
        if not {"-d", "-p", "--dport"} <= opts.keys():
            continue
        net = ipaddress.ip_network(opts["-d"], strict=False)
        if DNS_COMMENT in tok:
            dns.add(str(net.network_address))
            continue
        key = (opts["-p"], int(opts["--dport"]))
        allowed.setdefault(key, set()).add(net)
    return AppliedState(allowed={k: frozenset(v) for k, v in allowed.items()}, dns_servers=frozenset(dns))


def merge_states(states: Sequence[AppliedState]) -> AppliedState:
    allowed: Dict[Tuple[str, int], Set] = {}
    dns: Set[str] = set()
    for s in states:
        for key, nets in s.allowed.items():
            allowed.setdefault(key, set()).update(nets)
        dns.update(s.dns_servers)
    return AppliedState(allowed={k: frozenset(v) for k, v in allowed.items()}, dns_servers=frozenset(dns))
