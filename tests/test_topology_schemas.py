import pytest

from devenv.core.errors import ConfigurationError
from devenv.topology.launcher import Launcher
from devenv.topology.schemas import HealthProbe, Topology


def _svc(name, deps=(), probe=True):
    d = {"name": name, "image": f"{name}:latest", "depends_on": list(deps)}
    if probe:
        d["healthcheck"] = {"kind": "tcp", "target": f"{name}:1"}
    return d


class NullRuntime:
    async def is_running(self, name): return False
    async def start(self, spec): pass
    async def stop(self, name): pass


def test_waves_group_independent_services():
    topo = Topology.model_validate({"services": [
        _svc("app", ["db", "emulator"], probe=False),
        _svc("emulator"),
        _svc("db"),
    ]})
    assert topo.waves() == [["db", "emulator"], ["app"]]
    assert topo.order() == ["db", "emulator", "app"]


def test_depends_on_is_deduplicated():
    topo = Topology.model_validate({"services": [_svc("db"), _svc("app", ["db", "db"])]})
    assert topo.service_map()["app"].depends_on == ["db"]


def test_cycle_is_configuration_error():
    data = {"services": [_svc("a", ["b"]), _svc("b", ["a"])]}
    with pytest.raises(ConfigurationError):
        Launcher.from_dict(data, NullRuntime())


def test_unknown_dependency_rejected():
    with pytest.raises(ConfigurationError) as e:
        Launcher.from_dict({"services": [_svc("app", ["ghost"])]}, NullRuntime())
    assert "ghost" in e.value.detail


def test_dependency_without_healthcheck_rejected():
    with pytest.raises(ConfigurationError):
        Launcher.from_dict({"services": [_svc("db", probe=False), _svc("app", ["db"])]}, NullRuntime())


def test_self_dependency_rejected():
    with pytest.raises(ValueError):
        Topology.model_validate({"services": [_svc("db", ["db"])]})


@pytest.mark.parametrize("probe", [
    {"kind": "tcp", "target": "no-port"},
    {"kind": "http", "target": "localhost:80"},
    {"kind": "command"},
])
def test_probe_shape_validation(probe):
    with pytest.raises(ValueError):
        HealthProbe.model_validate(probe)


def test_probe_policy_maps_fields():
    p = HealthProbe(kind="tcp", target="db:5432", interval=1, timeout=3, max_retries=7)
    pol = p.policy()
    assert (pol.interval, pol.max_attempts, pol.timeout) == (1, 7, 3)
