from __future__ import annotations

"""
Bounded retry-with-timeout primitive.

Every poll loop in the bootstrapper (health probes, emulator readiness) goes
through `poll_until`, parameterised by interval, max attempts and a per-attempt
timeout. Cancellation of the awaiting task propagates into the in-flight
attempt; there is no unbounded mode.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from devenv.core.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    interval: float = 2.0
    max_attempts: int = 30
    timeout: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.interval < 0 or self.timeout <= 0:
            raise ValueError("interval must be >= 0 and timeout > 0")


class AttemptsExhausted(Exception):
    def __init__(self, attempts: int, last_error: Optional[BaseException] = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        why = f": {last_error!r}" if last_error is not None else ""
        super().__init__(f"gave up after {attempts} attempt(s){why}")


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    policy: RetryPolicy,
    *,
    label: str = "poll",
) -> int:
    """
    Call `check` until it returns True. Each attempt is bounded by policy.timeout;
    a False result, a timeout or an exception counts as a failed attempt.
    Returns the number of attempts used; raises AttemptsExhausted otherwise.
    """
    attempts = 0

    async def _attempt() -> bool:
        nonlocal attempts
        attempts += 1
        return bool(await asyncio.wait_for(check(), timeout=policy.timeout))

    def _before_sleep(state) -> None:
        outcome = state.outcome
        why = repr(outcome.exception()) if outcome.failed else "not ready"
        log.debug("%s attempt %d/%d failed (%s)", label, state.attempt_number, policy.max_attempts, why)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_fixed(policy.interval),
        retry=retry_if_result(lambda ok: not ok) | retry_if_exception_type(Exception),
        before_sleep=_before_sleep,
    )
    try:
        await retrying(_attempt)
    except RetryError as e:
        last = e.last_attempt
        err = last.exception() if last.failed else None
        raise AttemptsExhausted(attempts, err) from err
    return attempts
