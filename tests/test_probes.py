import asyncio

import pytest

from devenv.kernel import probes
from devenv.kernel.probes import command_ok


class FakeProc:
    def __init__(self, exit_code=None):
        self.returncode = None
        self.killed = False
        self.waits = 0
        self._exit = exit_code
        self._done = None

    async def wait(self):
        self.waits += 1
        if self._done is None:
            self._done = asyncio.Event()
            if self._exit is not None:
                self.returncode = self._exit
                self._done.set()
        await self._done.wait()
        return self.returncode

    def kill(self):
        self.killed = True
        self.returncode = -9
        self._done.set()


@pytest.fixture
def spawn(monkeypatch):
    procs = []

    def install(exit_code=None):
        async def create(*argv, **kw):
            proc = FakeProc(exit_code)
            procs.append((argv, proc))
            return proc

        monkeypatch.setattr(probes.asyncio, "create_subprocess_exec", create)
        return procs

    return install


def test_exit_code_is_compared(spawn):
    spawn(exit_code=7)
    assert asyncio.run(command_ok(["curl", "https://example.com"], expect_code=7))
    assert not asyncio.run(command_ok(["curl", "https://example.com"]))


def test_timed_out_command_is_killed_and_reaped(spawn):
    procs = spawn()

    async def run():
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(command_ok(["sleep", "60"]), timeout=0.05)

    asyncio.run(run())
    (argv, proc), = procs
    assert argv == ("sleep", "60")
    assert proc.killed
    # once for the exit code, once more after the kill
    assert proc.waits == 2
    assert proc.returncode == -9


def test_missing_binary_is_a_failed_check(monkeypatch):
    async def create(*argv, **kw):
        raise FileNotFoundError(argv[0])

    monkeypatch.setattr(probes.asyncio, "create_subprocess_exec", create)
    assert asyncio.run(command_ok(["no-such-tool"])) is False
