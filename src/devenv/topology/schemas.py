from __future__ import annotations

"""
Pydantic v2 models for the service topology manifest.

Usage:
- topo = Topology.model_validate(yaml.safe_load(...))
- for wave in topo.waves(): ...
"""

from typing import Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field, model_validator

from devenv.kernel.retry import RetryPolicy

ProbeKind = Literal["tcp", "http", "command", "dns"]


class HealthProbe(BaseModel):
    kind: ProbeKind
    # tcp: "host:port"; http: URL; dns: hostname; command: ignored (uses `command`)
    target: str = ""
    interval: float = Field(default=2.0, ge=0)
    timeout: float = Field(default=5.0, gt=0)
    max_retries: int = Field(default=30, ge=1)
    expect_status: int = 200
    expect_body: Optional[str] = None
    command: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_target(self) -> "HealthProbe":
        if self.kind == "command":
            if not self.command:
                raise ValueError("command probe requires a non-empty 'command' list")
            return self
        if not self.target:
            raise ValueError(f"{self.kind} probe requires 'target'")
        if self.kind == "tcp":
            host, sep, port = self.target.rpartition(":")
            if not sep or not host or not port.isdigit():
                raise ValueError(f"tcp probe target must be host:port, got {self.target!r}")
        if self.kind == "http" and not self.target.startswith(("http://", "https://")):
            raise ValueError(f"http probe target must be an http(s) URL, got {self.target!r}")
        return self

    def policy(self) -> RetryPolicy:
        return RetryPolicy(interval=self.interval, max_attempts=self.max_retries, timeout=self.timeout)


class PortMapping(BaseModel):
    container: int = Field(..., ge=1, le=65535)
    host: Optional[int] = Field(default=None, ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"


class VolumeMount(BaseModel):
    source: str
    target: str
    read_only: bool = False


class ServiceSpec(BaseModel):
    name: str = Field(..., min_length=1, description="Unique service name (also the container name)")
    image: str = Field(..., min_length=1)
    ports: List[PortMapping] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    healthcheck: Optional[HealthProbe] = None
    environment: Dict[str, str] = Field(default_factory=dict)
    volumes: List[VolumeMount] = Field(default_factory=list)
    command: Optional[List[str]] = None

    @model_validator(mode="after")
    def _normalize(self) -> "ServiceSpec":
        # De-duplicate depends_on while preserving order
        seen: Set[str] = set()
        unique: List[str] = []
        for d in self.depends_on:
            if d == self.name:
                raise ValueError(f"service {self.name} depends on itself")
            if d not in seen:
                seen.add(d)
                unique.append(d)
        self.depends_on = unique
        return self


class Topology(BaseModel):
    name: str = "devenv"
    services: List[ServiceSpec]

    @model_validator(mode="after")
    def _validate_graph(self) -> "Topology":
        ids: Set[str] = set()
        for s in self.services:
            if s.name in ids:
                raise ValueError(f"duplicate service name={s.name}")
            ids.add(s.name)

        for s in self.services:
            for d in s.depends_on:
                if d not in ids:
                    raise ValueError(f"service {s.name} depends on unknown service {d}")

        by_name = self.service_map()
        for s in self.services:
            for d in s.depends_on:
                if by_name[d].healthcheck is None:
                    raise ValueError(
                        f"service {d} has dependents ({s.name}) but no healthcheck"
                    )

        # raises on cycles
        self.waves()
        return self

    def service_map(self) -> Dict[str, ServiceSpec]:
        return {s.name: s for s in self.services}

    def waves(self) -> List[List[str]]:
        """
        Kahn's algorithm, grouped: each wave holds services whose dependencies
        are all in earlier waves. Names are sorted inside a wave.
        """
        remaining: Dict[str, Set[str]] = {s.name: set(s.depends_on) for s in self.services}
        done: Set[str] = set()
        waves: List[List[str]] = []
        while remaining:
            ready = sorted(n for n, deps in remaining.items() if deps <= done)
            if not ready:
                cycle = ", ".join(sorted(remaining))
                raise ValueError(f"dependency cycle among services: {cycle}")
            waves.append(ready)
            for n in ready:
                del remaining[n]
            done.update(ready)
        return waves

    def order(self) -> List[str]:
        return [n for wave in self.waves() for n in wave]
