import pytest

from devenv import cli
from devenv.firewall.apply import Firewall
from devenv.firewall.backend import InMemoryFilter, IptablesFilter
from devenv.firewall.rules import Allowlist, AllowlistRule
from devenv.core.errors import ConfigurationError, ServiceUnhealthy
from devenv.validation.checks import CheckSpec
from devenv.validation.validator import Validator


def test_config_error_exits_2(monkeypatch, capsys):
    def bad(manifest):
        raise ConfigurationError("dependency cycle among services: a, b", code="E_TOPOLOGY_CYCLE")

    monkeypatch.setattr(cli, "_launcher", bad)
    assert cli.main(["launch"]) == 2
    assert "E_TOPOLOGY_CYCLE" in capsys.readouterr().err


def test_unhealthy_exits_1(monkeypatch, capsys):
    class Launcher:
        async def launch(self):
            raise ServiceUnhealthy("db", meta={"not_started": ["app"]})

    monkeypatch.setattr(cli, "_launcher", lambda manifest: Launcher())
    assert cli.main(["launch"]) == 1
    err = capsys.readouterr().err
    assert "db" in err and "not_started" in err


def test_validate_exit_code_follows_report(monkeypatch, capsys):
    async def up(spec, timeout):
        return spec.target == "a:1"

    def validator(checks):
        return lambda manifest: Validator(checks, predicates={"tcp": up})

    ok = [CheckSpec(name="a", kind="tcp", target="a:1")]
    monkeypatch.setattr(cli, "_validator", validator(ok))
    assert cli.main(["validate"]) == 0
    assert "Total: 1  Passed: 1  Failed: 0" in capsys.readouterr().out

    bad = ok + [CheckSpec(name="b", kind="tcp", target="b:1")]
    monkeypatch.setattr(cli, "_validator", validator(bad))
    assert cli.main(["validate", "--json"]) == 1
    captured = capsys.readouterr()
    assert '"failed": 1' in captured.out
    assert "E_VALIDATION" in captured.err and '"b"' in captured.err


def test_dry_run_firewall_touches_nothing(monkeypatch, tmp_path, capsys):
    p = tmp_path / "allow.yaml"
    p.write_text("dns_servers: [10.0.0.2]\nrules:\n  - {destination: 10.1.0.0/16, port: 443}\n", encoding="utf-8")
    assert cli.main(["apply-firewall", "--dry-run", "--manifest", str(p)]) == 0
    assert "allow tcp/443 -> 10.1.0.0/16" in capsys.readouterr().out


def test_unknown_command_is_usage_error():
    with pytest.raises(SystemExit) as e:
        cli.main(["frobnicate"])
    assert e.value.code == 2


# ---------- up ----------

class _Launcher:
    async def launch(self):
        return None


class _Provisioner:
    async def provision(self):
        return None


def _wire_up(monkeypatch, checks, calls):
    backend = InMemoryFilter()

    async def reachable(spec, timeout):
        return spec.target.endswith(":1")

    async def emulator_ready():
        calls.append("emulator")

    fw = Firewall(Allowlist(rules=[AllowlistRule(destination="10.1.0.0/16")]), backend)
    monkeypatch.setattr(cli, "_launcher", lambda manifest: _Launcher())
    monkeypatch.setattr(cli, "_firewall", lambda manifest: fw)
    monkeypatch.setattr(cli, "_provisioner", lambda manifest: _Provisioner())
    monkeypatch.setattr(cli, "_emulator_wait", lambda prov: emulator_ready)
    monkeypatch.setattr(cli, "_validator", lambda manifest: Validator(checks, predicates={"tcp": reachable}))
    return backend


def test_up_reaches_ready_and_exits_0(monkeypatch, capsys):
    calls = []
    backend = _wire_up(monkeypatch, [CheckSpec(name="db", kind="tcp", target="db:1")], calls)
    assert cli.main(["up"]) == 0
    out = capsys.readouterr().out
    assert "state: ready" in out and "Passed: 1" in out
    assert backend.applications == 1
    assert calls == ["emulator"]


def test_up_with_failing_checks_exits_1(monkeypatch, capsys):
    checks = [
        CheckSpec(name="db", kind="tcp", target="db:1"),
        CheckSpec(name="cache", kind="tcp", target="cache:2"),
    ]
    _wire_up(monkeypatch, checks, [])
    assert cli.main(["up", "--json"]) == 1
    captured = capsys.readouterr()
    assert '"state": "ready"' in captured.out
    assert "E_VALIDATION" in captured.err and '"cache"' in captured.err


# ---------- firewall target ----------

class _Runtime:
    def __init__(self, network, topology):
        self.asked = []

    def pid(self, name):
        self.asked.append(name)
        return 4242


def test_firewall_targets_workspace_namespace(monkeypatch, tmp_path):
    p = tmp_path / "allow.yaml"
    p.write_text("dns_servers: [10.0.0.2]\nrules: []\n", encoding="utf-8")
    monkeypatch.setattr(cli.settings, "FIREWALL_TARGET", "workspace")
    monkeypatch.setattr(cli, "DockerRuntime", _Runtime)
    fw = cli._firewall(str(p))
    assert isinstance(fw.backend, IptablesFilter)
    assert fw.backend._target() == 4242

    fw = cli._firewall(str(p), target="")
    assert fw.backend._target() is None


def test_dns_servers_come_from_target_container(monkeypatch, tmp_path):
    monkeypatch.setattr(cli.settings, "FIREWALL_DNS_SERVERS", "")
    seen = []
    monkeypatch.setattr(cli, "read_resolv_conf", lambda path="/etc/resolv.conf": seen.append(path) or ["127.0.0.11"])
    assert cli._dns_servers(lambda: 4242) == ["127.0.0.11"]
    assert cli._dns_servers(None) == ["127.0.0.11"]
    assert seen == ["/proc/4242/root/etc/resolv.conf", "/etc/resolv.conf"]

    monkeypatch.setattr(cli.settings, "FIREWALL_DNS_SERVERS", "10.0.0.2, 10.0.0.3")
    assert cli._dns_servers(lambda: 4242) == ["10.0.0.2", "10.0.0.3"]


def test_dry_run_without_target_never_looks_up_containers(monkeypatch, tmp_path, capsys):
    def boom(*a, **kw):
        raise AssertionError("docker should not be touched")

    monkeypatch.setattr(cli, "DockerRuntime", boom)
    p = tmp_path / "allow.yaml"
    p.write_text("dns_servers: [10.0.0.2]\nrules:\n  - {destination: 10.1.0.0/16, port: 443}\n", encoding="utf-8")
    assert cli.main(["apply-firewall", "--dry-run", "--target", "", "--manifest", str(p)]) == 0
    assert "allow tcp/443 -> 10.1.0.0/16" in capsys.readouterr().out
