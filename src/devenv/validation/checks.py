from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional

import psycopg
import redis.asyncio as aioredis
from pydantic import BaseModel, Field, model_validator

from devenv.core.config import require, settings
from devenv.core.errors import ConfigurationError
from devenv.core.manifest import load_yaml, expand_env, parse_model
from devenv.kernel import probes

CheckKind = Literal["tcp", "http", "command", "dns", "postgres", "redis", "path"]


class CheckSpec(BaseModel):
    name: str
    kind: CheckKind
    # tcp: host:port | http: URL | dns: hostname | postgres: DSN | redis: host:port | path: directory
    target: str = ""
    description: str = ""
    group: str = "general"
    expect_status: int = 200
    expect_body: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    command: List[str] = Field(default_factory=list)
    expect_code: int = 0
    access: Literal["read", "write"] = "write"
    # postgres: database to connect to when no DSN target is given (default: POSTGRES_DB)
    database: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    # passes when the predicate fails (e.g. a non-allowlisted domain must be blocked)
    expect_failure: bool = False
    optional: bool = False
    requires_env: List[str] = Field(default_factory=list)
    skip_reason: Optional[str] = None

    @model_validator(mode="after")
    def _shape(self) -> "CheckSpec":
        if self.kind == "command" and not self.command:
            raise ValueError(f"check {self.name}: command check needs 'command'")
        if self.kind not in ("command", "postgres", "redis") and not self.target and not self.skip_reason:
            raise ValueError(f"check {self.name}: {self.kind} check needs 'target'")
        return self


def postgres_dsn(database: Optional[str] = None) -> str:
    user = require("POSTGRES_USER")
    password = require("POSTGRES_PASSWORD")
    return (
        f"postgresql://{user}:{password}@{settings.POSTGRES_HOST}:{settings.POSTGRES_PORT}"
        f"/{database or settings.POSTGRES_DB}"
    )


def load_checks(path: str | Path, env: Optional[Mapping[str, str]] = None) -> List[CheckSpec]:
    """
    Load the check battery. Optional checks whose `requires_env` is unset are
    kept as skipped; a required check with unset env is a configuration error.
    """
    env = os.environ if env is None else env
    raw = load_yaml(Path(path).expanduser())
    items = raw.get("checks") or []
    if not isinstance(items, list):
        raise ConfigurationError(f"{path}: 'checks' must be a list", code="E_MANIFEST_SHAPE")

    out: List[CheckSpec] = []
    names = set()
    for i, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise ConfigurationError(f"{path}: check #{i} must be a mapping", code="E_MANIFEST_SHAPE")
        missing = [v for v in item.get("requires_env") or [] if not env.get(v)]
        if missing and item.get("optional"):
            spec = parse_model(
                CheckSpec,
                {**item, "skip_reason": f"{', '.join(missing)} not set (optional)"},
                source=f"{path} check #{i}",
            )
        elif missing:
            raise ConfigurationError(
                f"check {item.get('name')!r} requires {', '.join(missing)}",
                code="E_MISSING_ENV",
                meta={"variables": missing},
            )
        else:
            spec = parse_model(CheckSpec, expand_env(item, env), source=f"{path} check #{i}")
            if spec.kind == "postgres" and not spec.target:
                spec.target = postgres_dsn(spec.database)
            if spec.kind == "redis" and not spec.target:
                spec.target = f"{settings.REDIS_HOST}:{settings.REDIS_PORT}"
        if spec.name in names:
            raise ConfigurationError(f"duplicate check name {spec.name!r}", code="E_MANIFEST_INVALID")
        names.add(spec.name)
        out.append(spec)
    return out


# ---------------------------------------------------------------------------
# Predicates: one attempt each, read-only. Timeouts are applied by the caller.
# ---------------------------------------------------------------------------

async def check_tcp(spec: CheckSpec, timeout: float) -> bool:
    host, port = probes.split_host_port(spec.target)
    return await probes.tcp_connect(host, port)


async def check_http(spec: CheckSpec, timeout: float) -> bool:
    return await probes.http_status(
        spec.target,
        expect_status=spec.expect_status,
        expect_body=spec.expect_body,
        timeout=timeout,
        headers=spec.headers or None,
    )


async def check_command(spec: CheckSpec, timeout: float) -> bool:
    return await probes.command_ok(spec.command, expect_code=spec.expect_code)


async def check_dns(spec: CheckSpec, timeout: float) -> bool:
    return await probes.dns_resolves(spec.target)


async def check_postgres(spec: CheckSpec, timeout: float) -> bool:
    async with await psycopg.AsyncConnection.connect(
        spec.target, connect_timeout=max(1, int(timeout))
    ) as conn:
        async with conn.cursor() as cur:
            await cur.execute("select version()")
            row = await cur.fetchone()
    return bool(row)


async def check_redis(spec: CheckSpec, timeout: float) -> bool:
    host, port = probes.split_host_port(spec.target)
    r = aioredis.Redis(host=host, port=port, socket_timeout=timeout, socket_connect_timeout=timeout)
    try:
        return bool(await r.ping())
    finally:
        await r.aclose()


async def check_path(spec: CheckSpec, timeout: float) -> bool:
    p = Path(spec.target).expanduser()
    mode = os.W_OK if spec.access == "write" else os.R_OK
    return await asyncio.to_thread(lambda: p.is_dir() and os.access(p, mode))


Predicate = Callable[[CheckSpec, float], Awaitable[bool]]

PREDICATES: Dict[str, Predicate] = {
    "tcp": check_tcp,
    "http": check_http,
    "command": check_command,
    "dns": check_dns,
    "postgres": check_postgres,
    "redis": check_redis,
    "path": check_path,
}


def describe(spec: CheckSpec) -> str:
    if spec.description:
        return spec.description
    target: Any = spec.command if spec.kind == "command" else spec.target
    if spec.kind == "postgres":
        target = spec.target.rsplit("@", 1)[-1]
    return f"{spec.kind} {target}"
