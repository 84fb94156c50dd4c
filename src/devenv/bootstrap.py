from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from devenv.core.logging import get_logger
from devenv.firewall.apply import Firewall
from devenv.provisioning.provisioner import ProvisionReport, Provisioner
from devenv.topology.launcher import LaunchReport, Launcher
from devenv.validation.validator import ValidationReport, Validator

log = get_logger(__name__)


class BootstrapState(str, Enum):
    UNSTARTED = "unstarted"
    LAUNCHING = "launching"
    NETWORK_RESTRICTED = "network_restricted"
    PROVISIONING = "provisioning"
    READY = "ready"
    FAILED = "failed"


_TRANSITIONS = {
    BootstrapState.UNSTARTED: {BootstrapState.LAUNCHING},
    BootstrapState.LAUNCHING: {BootstrapState.NETWORK_RESTRICTED},
    BootstrapState.NETWORK_RESTRICTED: {BootstrapState.PROVISIONING},
    BootstrapState.PROVISIONING: {BootstrapState.READY},
    # re-entering the sequence from Ready re-validates health
    BootstrapState.READY: {BootstrapState.LAUNCHING},
    BootstrapState.FAILED: {BootstrapState.LAUNCHING},
}


@dataclass
class BootstrapResult:
    state: BootstrapState
    launch: Optional[LaunchReport] = None
    provision: Optional[ProvisionReport] = None
    validation: Optional[ValidationReport] = None
    history: List[Tuple[BootstrapState, BootstrapState]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "launch": self.launch.to_dict() if self.launch else None,
            "provision": self.provision.to_dict() if self.provision else None,
            "validation": self.validation.to_dict() if self.validation else None,
        }


class Bootstrapper:
    """
    Unstarted -> Launching -> NetworkRestricted -> Provisioning -> Ready,
    with Failed reachable from any state. Each step is idempotent, so running
    again from Ready only re-checks health.
    """

    def __init__(
        self,
        launcher: Launcher,
        firewall: Firewall,
        provisioner: Provisioner,
        validator: Optional[Validator] = None,
        *,
        wait_for_emulator: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self.launcher = launcher
        self.firewall = firewall
        self.provisioner = provisioner
        self.validator = validator
        self.wait_for_emulator = wait_for_emulator
        self.state = BootstrapState.UNSTARTED
        self.history: List[Tuple[BootstrapState, BootstrapState]] = []

    def _to(self, new: BootstrapState) -> None:
        if new is not BootstrapState.FAILED and new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal bootstrap transition {self.state.value} -> {new.value}")
        log.info("bootstrap: %s -> %s", self.state.value, new.value)
        self.history.append((self.state, new))
        self.state = new

    async def run(self) -> BootstrapResult:
        result = BootstrapResult(state=self.state)
        try:
            self._to(BootstrapState.LAUNCHING)
            result.launch = await self.launcher.launch()

            await asyncio.to_thread(self.firewall.apply)
            self._to(BootstrapState.NETWORK_RESTRICTED)

            self._to(BootstrapState.PROVISIONING)
            if self.wait_for_emulator is not None:
                await self.wait_for_emulator()
            result.provision = await self.provisioner.provision()

            self._to(BootstrapState.READY)
        except BaseException as e:
            log.error("bootstrap failed in %s: %s", self.state.value, e)
            self._to(BootstrapState.FAILED)
            raise
        finally:
            result.state = self.state
            result.history = list(self.history)

        # failed checks do not leave Ready; callers decide the exit status from the report
        if self.validator is not None:
            result.validation = await self.validator.run()
        return result
