from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

from devenv.core.ctx import log_ctx
from devenv.core.errors import ResourceFailure, ResourceProvisioningError
from devenv.core.logging import get_logger
from devenv.core.manifest import load_manifest
from devenv.provisioning.emulator import SERVICE_FOR_KIND, EmulatorBackend
from devenv.provisioning.resources import (
    Key,
    ResourceManifest,
    dependency_levels,
    key_of,
    label,
    references,
)

log = get_logger(__name__)


@dataclass
class ProvisionReport:
    created: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    failures: List[ResourceFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "existing": self.existing,
            "failures": [f.to_dict() for f in self.failures],
        }


class Provisioner:
    """
    Idempotently creates a resource manifest inside the emulator.

    Levels run in order (redrive targets before the queues that use them);
    resources inside a level are independent and run concurrently. A failure is
    recorded and the batch continues; anything referencing a failed resource is
    reported as failed without being attempted.
    """

    def __init__(self, resources: List[Any], backend: EmulatorBackend) -> None:
        self.resources = list(resources)
        self.backend = backend
        self.levels = dependency_levels(self.resources)

    @classmethod
    def from_manifest(cls, path: str, backend: EmulatorBackend) -> "Provisioner":
        return cls(load_manifest(ResourceManifest, path).resources, backend)

    def services(self) -> List[str]:
        """Emulator service families this manifest needs."""
        return sorted({SERVICE_FOR_KIND[r.kind] for r in self.resources})

    async def _one(self, desc: Any, report: ProvisionReport, failed: Set[Key]) -> None:
        name = label(desc)
        with log_ctx(resource=name):
            broken = [k for k in references(desc) if k in failed]
            if broken:
                cause = "dependency failed: " + ", ".join(f"{k}:{n}" for k, n in broken)
                log.warning("skipping: %s", cause)
                report.failures.append(ResourceFailure(desc.name, desc.kind, cause))
                failed.add(key_of(desc))
                return
            try:
                if await asyncio.to_thread(self.backend.exists, desc):
                    log.info("exists; leaving untouched")
                    report.existing.append(name)
                    return
                await asyncio.to_thread(self.backend.create, desc)
            except Exception as e:
                log.error("provisioning failed: %r", e)
                report.failures.append(ResourceFailure(desc.name, desc.kind, str(e) or repr(e)))
                failed.add(key_of(desc))
                return
            report.created.append(name)

    async def provision(self) -> ProvisionReport:
        report = ProvisionReport()
        failed: Set[Key] = set()
        with log_ctx(phase="provision"):
            for level in self.levels:
                await asyncio.gather(*(self._one(d, report, failed) for d in level))
            log.info(
                "provisioning done: created=%d existing=%d failed=%d",
                len(report.created),
                len(report.existing),
                len(report.failures),
            )
        if report.failures:
            raise ResourceProvisioningError(report.failures, report)
        return report
