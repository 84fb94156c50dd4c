from __future__ import annotations

import asyncio
import socket
from typing import List, Optional

import httpx

from devenv.core.logging import get_logger

log = get_logger(__name__)


def split_host_port(target: str) -> tuple[str, int]:
    host, _, port = target.rpartition(":")
    return host.strip("[]"), int(port)


async def tcp_connect(host: str, port: int) -> bool:
    """True if a TCP handshake to host:port completes."""
    try:
        _, writer = await asyncio.open_connection(host, port)
    except OSError as e:
        log.debug("tcp %s:%d unreachable: %r", host, port, e)
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def http_status(
    url: str,
    *,
    expect_status: int = 200,
    expect_body: Optional[str] = None,
    timeout: float = 5.0,
    headers: Optional[dict] = None,
) -> bool:
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as x:
            r = await x.get(url, headers=headers)
    except httpx.HTTPError as e:
        log.debug("http %s failed: %r", url, e)
        return False
    if r.status_code != expect_status:
        log.debug("http %s status=%d expected=%d", url, r.status_code, expect_status)
        return False
    if expect_body is not None and expect_body not in r.text:
        log.debug("http %s body missing %r", url, expect_body)
        return False
    return True


async def command_ok(argv: List[str], *, expect_code: int = 0) -> bool:
    """
    Run argv (no shell) and compare its exit code. The process is killed and reaped if the
    awaiting task is cancelled (e.g. by a per-attempt timeout).
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except (FileNotFoundError, PermissionError) as e:
        log.debug("command %s not runnable: %r", argv[0], e)
        return False
    try:
        code = await proc.wait()
    finally:
        if proc.returncode is None:
            proc.kill()
            # reap it even if we are being cancelled
            await asyncio.shield(proc.wait())
    return code == expect_code


async def dns_resolves(host: str) -> bool:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror as e:
        log.debug("dns %s failed: %r", host, e)
        return False
    return bool(infos)


class ProbeRunner:
    """Executes a single attempt of a HealthProbe. Injectable for tests."""

    async def __call__(self, probe) -> bool:
        if probe.kind == "tcp":
            host, port = split_host_port(probe.target)
            return await tcp_connect(host, port)
        if probe.kind == "http":
            return await http_status(
                probe.target,
                expect_status=probe.expect_status,
                expect_body=probe.expect_body,
                timeout=probe.timeout,
            )
        if probe.kind == "command":
            return await command_ok(list(probe.command))
        if probe.kind == "dns":
            return await dns_resolves(probe.target)
        raise ValueError(f"unknown probe kind: {probe.kind}")
