from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from devenv.core.config import settings
from devenv.core.ctx import log_ctx
from devenv.core.logging import get_logger
from devenv.validation.checks import PREDICATES, CheckSpec, Predicate, describe

log = get_logger(__name__)


@dataclass(frozen=True)
class ConnectionCheckResult:
    name: str
    passed: bool
    message: str
    group: str = "general"
    duration_ms: int = 0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "group": self.group,
            "passed": self.passed,
            "skipped": self.skipped,
            "message": self.message,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ValidationReport:
    results: List[ConnectionCheckResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        return self.total - self.passed

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }

    def render(self) -> str:
        lines: List[str] = []
        group = None
        for r in self.results:
            if r.group != group:
                group = r.group
                lines.append(f"{group}:")
            mark = "SKIP" if r.skipped else ("PASS" if r.passed else "FAIL")
            lines.append(f"  [{mark}] {r.name} - {r.message}")
        lines.append("")
        lines.append(f"Total: {self.total}  Passed: {self.passed}  Failed: {self.failed}")
        return "\n".join(lines)


class Validator:
    """
    Runs a battery of read-only checks concurrently, each bounded by a timeout.
    Every run probes afresh; nothing is cached between runs.
    """

    def __init__(
        self,
        checks: List[CheckSpec],
        *,
        timeout: Optional[float] = None,
        predicates: Optional[Dict[str, Predicate]] = None,
    ) -> None:
        self.checks = list(checks)
        self.timeout = timeout if timeout is not None else settings.DEVENV_CHECK_TIMEOUT_SEC
        self.predicates = {**PREDICATES, **(predicates or {})}

    async def _run_one(self, spec: CheckSpec) -> ConnectionCheckResult:
        if spec.skip_reason:
            return ConnectionCheckResult(spec.name, True, f"skipped: {spec.skip_reason}", spec.group, skipped=True)

        timeout = spec.timeout or self.timeout
        predicate = self.predicates[spec.kind]
        t0 = time.monotonic()
        error: Optional[str] = None
        try:
            ok = bool(await asyncio.wait_for(predicate(spec, timeout), timeout=timeout))
        except asyncio.TimeoutError:
            ok, error = False, f"timed out after {timeout:g}s"
        except Exception as e:
            ok, error = False, f"{type(e).__name__}: {e}"
        ms = int((time.monotonic() - t0) * 1000)

        what = describe(spec)
        if spec.expect_failure:
            passed = not ok
            msg = f"{what} blocked as expected" if passed else f"{what} reachable but should be blocked"
        else:
            passed = ok
            msg = what if passed else f"{what}: {error or 'check failed'}"
        log.log(logging.INFO if passed else logging.WARNING, "check %s %s (%dms)", spec.name, "passed" if passed else "failed", ms)
        return ConnectionCheckResult(spec.name, passed, msg, spec.group, ms)

    async def run(self) -> ValidationReport:
        with log_ctx(phase="validate"):
            results = await asyncio.gather(*(self._run_one(c) for c in self.checks))
        report = ValidationReport(list(results))
        log.info("validation: total=%d passed=%d failed=%d", report.total, report.passed, report.failed)
        return report
