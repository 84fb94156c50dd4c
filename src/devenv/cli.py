"""
devenv: bring up the local development environment.

Examples:
  devenv launch
  devenv apply-firewall --dry-run
  devenv apply-firewall --watch
  devenv provision
  devenv validate --json
  devenv up
  devenv down
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Callable, Dict, List, Optional

from devenv.core.config import settings
from devenv.core.errors import DevenvError, ValidationFailure
from devenv.core.logging import configure_logging, get_logger
from devenv.firewall.apply import Firewall
from devenv.firewall.backend import InMemoryFilter, IptablesFilter, NetworkFilter
from devenv.firewall.rules import read_resolv_conf
from devenv.kernel.retry import RetryPolicy
from devenv.provisioning.emulator import Boto3Emulator, wait_for_emulator
from devenv.provisioning.provisioner import Provisioner
from devenv.topology.launcher import Launcher
from devenv.topology.runtime import DockerRuntime
from devenv.validation.checks import load_checks
from devenv.validation.validator import ValidationReport, Validator
from devenv.bootstrap import Bootstrapper

log = get_logger("devenv.cli")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="devenv", description="Local development-environment bootstrapper.")
    p.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("launch", help="Start the service topology in dependency order.")
    s.add_argument("--manifest", default=None, help="Topology manifest (default: settings.TOPOLOGY_MANIFEST).")

    s = sub.add_parser("down", help="Stop the service topology (reverse order).")
    s.add_argument("--manifest", default=None)

    s = sub.add_parser("apply-firewall", help="Apply the default-deny egress allowlist.")
    s.add_argument("--manifest", default=None, help="Allowlist manifest (default: settings.ALLOWLIST_MANIFEST).")
    s.add_argument("--dry-run", action="store_true", help="Resolve and print the plan; touch nothing.")
    s.add_argument("--watch", action="store_true", help="Keep re-resolving and re-applying on IP rotation.")
    s.add_argument(
        "--target", default=None,
        help="Container whose network namespace is filtered (default: settings.FIREWALL_TARGET; '' = this namespace).",
    )

    s = sub.add_parser("provision", help="Create emulator resources that do not exist yet.")
    s.add_argument("--manifest", default=None, help="Resource manifest (default: settings.RESOURCES_MANIFEST).")
    s.add_argument("--no-wait", action="store_true", help="Skip the emulator readiness poll.")
    s.add_argument("--json", action="store_true")

    s = sub.add_parser("validate", help="Run connection checks; non-zero exit if any fails.")
    s.add_argument("--manifest", default=None, help="Checks manifest (default: settings.CHECKS_MANIFEST).")
    s.add_argument("--json", action="store_true")

    s = sub.add_parser("up", help="launch -> apply-firewall -> provision -> validate.")
    s.add_argument("--json", action="store_true")
    return p.parse_args(argv)


# ---------------------------------------------------------------------------
# builders
# ---------------------------------------------------------------------------

def _launcher(manifest: Optional[str]) -> Launcher:
    runtime = DockerRuntime(network=settings.DEVENV_NETWORK, topology=settings.TOPOLOGY_NAME)
    return Launcher.from_manifest(manifest or settings.TOPOLOGY_MANIFEST, runtime)


NetnsTarget = Callable[[], Optional[int]]


def _netns(target: str) -> Optional[NetnsTarget]:
    if not target:
        return None
    runtime = DockerRuntime(network=settings.DEVENV_NETWORK, topology=settings.TOPOLOGY_NAME)
    return lambda: runtime.pid(target)


def _dns_servers(netns: Optional[NetnsTarget]) -> List[str]:
    raw = settings.FIREWALL_DNS_SERVERS
    if raw:
        return [s.strip() for s in raw.split(",") if s.strip()]
    if netns is not None:
        pid = netns()
        if pid:
            return read_resolv_conf(f"/proc/{pid}/root/etc/resolv.conf")
    return read_resolv_conf()


def _firewall(manifest: Optional[str], dry_run: bool = False, target: Optional[str] = None) -> Firewall:
    netns = _netns(settings.FIREWALL_TARGET if target is None else target)
    if dry_run:
        backend: NetworkFilter = InMemoryFilter()
    else:
        backend = IptablesFilter(chain=settings.FIREWALL_CHAIN, netns=netns)
    return Firewall.from_manifest(
        manifest or settings.ALLOWLIST_MANIFEST,
        backend,
        dns_provider=lambda: _dns_servers(None if dry_run else netns),
    )


def _provisioner(manifest: Optional[str]) -> Provisioner:
    return Provisioner.from_manifest(manifest or settings.RESOURCES_MANIFEST, Boto3Emulator())


def _emulator_wait(prov: Provisioner):
    policy = RetryPolicy(
        interval=settings.EMULATOR_READY_INTERVAL_SEC,
        max_attempts=settings.EMULATOR_READY_RETRIES,
        timeout=5.0,
    )
    url = prov.backend.endpoint_url  # type: ignore[attr-defined]
    return lambda: wait_for_emulator(url, prov.services(), policy)


def _validator(manifest: Optional[str]) -> Validator:
    return Validator(load_checks(manifest or settings.CHECKS_MANIFEST))


def _print(data: Dict[str, Any]) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _gate(report: ValidationReport) -> None:
    if not report.ok:
        failed = [r.name for r in report.results if not r.passed]
        raise ValidationFailure(
            f"{report.failed} of {report.total} check(s) failed", meta={"failed": failed}
        )


# ---------------------------------------------------------------------------
# commands
# ---------------------------------------------------------------------------

def cmd_launch(args: argparse.Namespace) -> int:
    report = asyncio.run(_launcher(args.manifest).launch())
    print(f"started: {', '.join(report.started) or '-'}")
    print(f"already healthy: {', '.join(report.skipped) or '-'}")
    return 0


def cmd_down(args: argparse.Namespace) -> int:
    stopped = asyncio.run(_launcher(args.manifest).stop())
    print(f"stopped: {', '.join(stopped) or '-'}")
    return 0


def cmd_apply_firewall(args: argparse.Namespace) -> int:
    fw = _firewall(args.manifest, dry_run=args.dry_run, target=args.target)
    state = fw.apply()
    for proto, port, cidr in state.entries():
        print(f"allow {proto}/{port} -> {cidr}")
    if args.watch and not args.dry_run:
        asyncio.run(fw.refresh_forever(settings.FIREWALL_REFRESH_SEC))
    return 0


def cmd_provision(args: argparse.Namespace) -> int:
    prov = _provisioner(args.manifest)

    async def _run():
        if not args.no_wait:
            await _emulator_wait(prov)()
        return await prov.provision()

    report = asyncio.run(_run())
    if args.json:
        _print(report.to_dict())
    else:
        print(f"created: {len(report.created)}  existing: {len(report.existing)}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    report = asyncio.run(_validator(args.manifest).run())
    if args.json:
        _print(report.to_dict())
    else:
        print(report.render())
    _gate(report)
    return 0


def cmd_up(args: argparse.Namespace) -> int:
    prov = _provisioner(None)
    boot = Bootstrapper(
        _launcher(None),
        _firewall(None),
        prov,
        _validator(None),
        wait_for_emulator=_emulator_wait(prov),
    )
    result = asyncio.run(boot.run())
    if args.json:
        _print(result.to_dict())
    else:
        print(f"state: {result.state.value}")
        if result.validation is not None:
            print(result.validation.render())
    if result.validation is not None:
        _gate(result.validation)
    return 0


COMMANDS = {
    "launch": cmd_launch,
    "down": cmd_down,
    "apply-firewall": cmd_apply_firewall,
    "provision": cmd_provision,
    "validate": cmd_validate,
    "up": cmd_up,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level)
    try:
        return COMMANDS[args.command](args)
    except DevenvError as e:
        log.debug("command failed", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        if e.meta:
            print(json.dumps(e.to_dict(), ensure_ascii=False, default=str), file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
