# Container runtime adapter

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, Optional, Protocol

import docker
from docker.errors import APIError, DockerException, NotFound

from devenv.core.errors import ConfigurationError, DevenvError
from devenv.core.logging import get_logger
from devenv.topology.schemas import ServiceSpec

logger = get_logger(__name__)

TOPOLOGY_LABEL = "devenv.topology"


def _host_source(source: str) -> str:
    """Relative bind sources ("./x", "../x", "~/x", ".") become absolute; anything else is a named volume."""
    if source == "." or source.startswith(("./", "../", "~")):
        return str(Path(source).expanduser().resolve())
    return source


class ContainerRuntime(Protocol):
    async def is_running(self, name: str) -> bool: ...
    async def start(self, spec: ServiceSpec) -> None: ...
    async def stop(self, name: str) -> None: ...


class ContainerStartError(DevenvError):
    title = "Container start failed"
    default_code = "E_CONTAINER"


class DockerRuntime:
    """
    Runs each ServiceSpec as a detached container on one user-defined network,
    so services reach each other by name. Blocking SDK calls run in a thread.
    """

    def __init__(self, network: str = "devenv", topology: str = "devenv", client=None):
        self.network = network
        self.topology = topology
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ConfigurationError(
                    f"docker daemon unavailable: {e}", code="E_DOCKER_UNAVAILABLE"
                ) from e
            logger.info("connected to docker engine")
        return self._client

    # ---- sync helpers (thread) ----

    def _ensure_network(self) -> None:
        if not self.client.networks.list(names=[self.network]):
            self.client.networks.create(
                self.network, driver="bridge", labels={TOPOLOGY_LABEL: self.topology}
            )
            logger.info("created network %s", self.network)

    def _is_running(self, name: str) -> bool:
        try:
            c = self.client.containers.get(name)
        except NotFound:
            return False
        return c.status == "running"

    def _start(self, spec: ServiceSpec) -> None:
        self._ensure_network()
        try:
            existing = self.client.containers.get(spec.name)
        except NotFound:
            existing = None

        try:
            if existing is not None:
                # stopped container from a previous session: restart it as-is
                existing.start()
                logger.info("restarted container %s (%s)", spec.name, existing.short_id)
                return

            ports: Dict[str, Optional[int]] = {
                f"{p.container}/{p.protocol}": p.host for p in spec.ports
            }
            volumes = {
                _host_source(v.source): {"bind": v.target, "mode": "ro" if v.read_only else "rw"}
                for v in spec.volumes
            }
            c = self.client.containers.run(
                image=spec.image,
                name=spec.name,
                command=spec.command,
                detach=True,
                environment=dict(spec.environment),
                ports=ports,
                volumes=volumes,
                network=self.network,
                hostname=spec.name,
                labels={TOPOLOGY_LABEL: self.topology},
                restart_policy={"Name": "no"},
            )
            logger.info("started container %s from %s (%s)", spec.name, spec.image, c.short_id)
        except APIError as e:
            raise ContainerStartError(
                f"{spec.name}: {e.explanation or e}", meta={"service": spec.name}
            ) from e

    def pid(self, name: str) -> Optional[int]:
        """Host pid of a running container's init process, i.e. a handle on its network namespace."""
        try:
            c = self.client.containers.get(name)
        except NotFound:
            return None
        if c.status != "running":
            return None
        return int(c.attrs.get("State", {}).get("Pid") or 0) or None

    def _stop(self, name: str) -> None:
        try:
            c = self.client.containers.get(name)
        except NotFound:
            return
        c.stop(timeout=10)
        logger.info("stopped container %s", name)

    # ---- async surface ----

    async def is_running(self, name: str) -> bool:
        return await asyncio.to_thread(self._is_running, name)

    async def start(self, spec: ServiceSpec) -> None:
        await asyncio.to_thread(self._start, spec)

    async def stop(self, name: str) -> None:
        await asyncio.to_thread(self._stop, name)
