from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from devenv.core.config import settings
from devenv.core.ctx import log_ctx
from devenv.core.errors import ConfigurationError, ServiceUnhealthy
from devenv.core.logging import get_logger
from devenv.core.manifest import load_manifest, parse_model
from devenv.kernel.probes import ProbeRunner
from devenv.kernel.retry import AttemptsExhausted, poll_until
from devenv.topology.runtime import ContainerRuntime, ContainerStartError
from devenv.topology.schemas import HealthProbe, ServiceSpec, Topology

log = get_logger(__name__)

Probe = Callable[[HealthProbe], Awaitable[bool]]


@dataclass
class LaunchReport:
    waves: List[List[str]]
    started: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"waves": self.waves, "started": self.started, "skipped": self.skipped}


class Launcher:
    """
    Brings a Topology up wave by wave:
      - a wave starts only after every service of the previous wave is healthy
      - services inside a wave start and are polled concurrently
      - already-running healthy services are left alone
      - the first unhealthy wave stops the launch; nothing after it is started
    """

    def __init__(
        self,
        topology: Topology,
        runtime: ContainerRuntime,
        *,
        probe: Optional[Probe] = None,
        deadline: Optional[float] = None,
    ) -> None:
        try:
            self.waves = topology.waves()
        except ValueError as e:
            raise ConfigurationError(str(e), code="E_TOPOLOGY_CYCLE") from e
        self.topology = topology
        self.runtime = runtime
        self.probe: Probe = probe or ProbeRunner()
        self.deadline = deadline if deadline is not None else settings.DEVENV_STARTUP_DEADLINE_SEC
        self._services = topology.service_map()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], runtime: ContainerRuntime, **kw: Any) -> "Launcher":
        return cls(parse_model(Topology, data, source="topology"), runtime, **kw)

    @classmethod
    def from_manifest(cls, path: str, runtime: ContainerRuntime, **kw: Any) -> "Launcher":
        return cls(load_manifest(Topology, path), runtime, **kw)

    # ---------- single service ----------

    async def _probe_once(self, spec: ServiceSpec) -> bool:
        hc = spec.healthcheck
        if hc is None:
            return True
        try:
            return bool(await asyncio.wait_for(self.probe(hc), timeout=hc.timeout))
        except asyncio.TimeoutError:
            return False
        except Exception as e:
            log.debug("probe raised: %r", e)
            return False

    async def _bring_up(self, spec: ServiceSpec, report: LaunchReport, healthy: Set[str]) -> None:
        with log_ctx(service=spec.name):
            if await self.runtime.is_running(spec.name):
                if await self._probe_once(spec):
                    log.info("already running and healthy; skipping start")
                    report.skipped.append(spec.name)
                    healthy.add(spec.name)
                    return
                log.info("already running but not healthy yet; waiting")
            else:
                try:
                    await self.runtime.start(spec)
                except ContainerStartError as e:
                    raise ServiceUnhealthy(spec.name, f"could not start {spec.name!r}: {e.detail}") from e
                report.started.append(spec.name)

            hc = spec.healthcheck
            if hc is not None:
                try:
                    n = await poll_until(lambda: self.probe(hc), hc.policy(), label=f"health[{spec.name}]")
                except AttemptsExhausted as e:
                    raise ServiceUnhealthy(
                        spec.name,
                        f"service {spec.name!r} not healthy after {e.attempts} {hc.kind} probe attempt(s)",
                        meta={"service": spec.name, "probe": hc.kind, "target": hc.target or hc.command},
                    ) from e
                log.info("healthy after %d probe attempt(s)", n)
            healthy.add(spec.name)

    # ---------- topology ----------

    async def _launch(self, report: LaunchReport, healthy: Set[str]) -> None:
        for idx, wave in enumerate(self.waves, start=1):
            log.info("wave %d/%d: %s", idx, len(self.waves), ", ".join(wave))
            results = await asyncio.gather(
                *(self._bring_up(self._services[n], report, healthy) for n in wave),
                return_exceptions=True,
            )
            failed = [r for r in results if isinstance(r, BaseException)]
            if not failed:
                continue
            for r in failed:
                if not isinstance(r, ServiceUnhealthy):
                    raise r
            blocked = sorted(set(n for w in self.waves[idx:] for n in w))
            first = failed[0]
            log.error(
                "wave %d failed (%s); not starting: %s",
                idx,
                ", ".join(f.service for f in failed),
                ", ".join(blocked) or "-",
            )
            first.meta = {
                **(first.meta or {}),
                "failed": [f.service for f in failed],
                "not_started": blocked,
            }
            raise first

    async def launch(self) -> LaunchReport:
        report = LaunchReport(waves=[list(w) for w in self.waves])
        healthy: Set[str] = set()
        with log_ctx(phase="launch"):
            try:
                await asyncio.wait_for(self._launch(report, healthy), timeout=self.deadline)
            except asyncio.TimeoutError:
                pending = [n for n in self.topology.order() if n not in healthy]
                raise ServiceUnhealthy(
                    pending[0],
                    f"startup deadline of {self.deadline:g}s exceeded; pending: {', '.join(pending)}",
                    code="E_STARTUP_DEADLINE",
                    meta={"pending": pending},
                )
            log.info("topology up: started=%d skipped=%d", len(report.started), len(report.skipped))
        return report

    async def stop(self) -> List[str]:
        """Stop services in reverse topological order."""
        stopped: List[str] = []
        with log_ctx(phase="stop"):
            for name in reversed(self.topology.order()):
                await self.runtime.stop(name)
                stopped.append(name)
        return stopped
