import asyncio

import pytest

from devenv.kernel.retry import AttemptsExhausted, RetryPolicy, poll_until


def test_returns_attempts_used():
    calls = []

    async def check():
        calls.append(1)
        return len(calls) >= 3

    n = asyncio.run(poll_until(check, RetryPolicy(interval=0, max_attempts=5, timeout=1)))
    assert n == 3


def test_exceptions_and_timeouts_count_as_failed_attempts():
    calls = []

    async def check():
        calls.append(1)
        if len(calls) == 1:
            raise ConnectionRefusedError("nope")
        if len(calls) == 2:
            await asyncio.sleep(1)
        return True

    n = asyncio.run(poll_until(check, RetryPolicy(interval=0, max_attempts=5, timeout=0.05)))
    assert n == 3


def test_gives_up_after_max_attempts():
    async def never():
        return False

    with pytest.raises(AttemptsExhausted) as e:
        asyncio.run(poll_until(never, RetryPolicy(interval=0, max_attempts=4, timeout=1)))
    assert e.value.attempts == 4
    assert e.value.last_error is None


def test_last_error_is_kept():
    async def boom():
        raise RuntimeError("down")

    with pytest.raises(AttemptsExhausted) as e:
        asyncio.run(poll_until(boom, RetryPolicy(interval=0, max_attempts=2, timeout=1)))
    assert isinstance(e.value.last_error, RuntimeError)


def test_policy_rejects_nonsense():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(timeout=0)
