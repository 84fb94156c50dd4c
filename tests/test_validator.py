import asyncio
from pathlib import Path

import pytest

from devenv.core.errors import ConfigurationError
from devenv.validation.checks import CheckSpec, check_path, load_checks
from devenv.validation.validator import Validator


class Reachability:
    """Fake tcp predicate backed by a mutable set of reachable targets."""

    def __init__(self, up=()):
        self.up = set(up)
        self.calls = 0

    async def __call__(self, spec, timeout):
        self.calls += 1
        return spec.target in self.up


def _tcp(name, target, **kw):
    return CheckSpec(name=name, kind="tcp", target=target, **kw)


def test_unreachable_then_reachable_without_restart():
    net = Reachability()
    v = Validator([_tcp("db", "db:5432")], predicates={"tcp": net})
    first = asyncio.run(v.run())
    assert not first.ok and first.failed == 1

    net.up.add("db:5432")
    second = asyncio.run(v.run())
    assert second.ok
    assert net.calls == 2


def test_expect_failure_inverts_result():
    net = Reachability(up={"github.com:443"})
    v = Validator(
        [
            _tcp("blocked", "example.com:443", expect_failure=True),
            _tcp("leaky", "github.com:443", expect_failure=True),
        ],
        predicates={"tcp": net},
    )
    report = asyncio.run(v.run())
    by_name = {r.name: r for r in report.results}
    assert by_name["blocked"].passed
    assert "blocked as expected" in by_name["blocked"].message
    assert not by_name["leaky"].passed


def test_timeout_and_exception_are_failures():
    async def hang(spec, timeout):
        await asyncio.sleep(10)

    async def boom(spec, timeout):
        raise ConnectionRefusedError("refused")

    v = Validator(
        [_tcp("slow", "a:1"), CheckSpec(name="dns", kind="dns", target="x")],
        timeout=0.05,
        predicates={"tcp": hang, "dns": boom},
    )
    report = asyncio.run(v.run())
    msgs = {r.name: r.message for r in report.results}
    assert report.failed == 2
    assert "timed out" in msgs["slow"]
    assert "ConnectionRefusedError" in msgs["dns"]


def test_report_render_counts():
    net = Reachability(up={"a:1"})
    v = Validator([_tcp("a", "a:1", group="db"), _tcp("b", "b:1", group="db")], predicates={"tcp": net})
    text = asyncio.run(v.run()).render()
    assert "db:" in text
    assert "[PASS] a" in text and "[FAIL] b" in text
    assert text.splitlines()[-1] == "Total: 2  Passed: 1  Failed: 1"


CHECKS = """
checks:
  - name: api
    kind: http
    target: ${API_URL:-http://localhost:8080}/health
  - name: openai
    kind: http
    target: https://api.openai.com/v1/models
    headers: {Authorization: "Bearer ${OPENAI_API_KEY}"}
    optional: true
    requires_env: [OPENAI_API_KEY]
"""


def test_optional_check_without_env_is_skipped(tmp_path: Path):
    p = tmp_path / "checks.yaml"
    p.write_text(CHECKS, encoding="utf-8")
    specs = load_checks(p, env={})
    assert specs[0].target == "http://localhost:8080/health"
    assert specs[1].skip_reason

    report = asyncio.run(Validator(specs, predicates={"http": Reachability(up={specs[0].target})}).run())
    skipped = [r for r in report.results if r.skipped]
    assert [r.name for r in skipped] == ["openai"]
    assert report.ok


def test_optional_check_with_env_is_expanded(tmp_path: Path):
    p = tmp_path / "checks.yaml"
    p.write_text(CHECKS, encoding="utf-8")
    specs = load_checks(p, env={"OPENAI_API_KEY": "sk-test"})
    assert specs[1].headers["Authorization"] == "Bearer sk-test"
    assert specs[1].skip_reason is None


def test_required_check_with_missing_env_is_config_error(tmp_path: Path):
    p = tmp_path / "checks.yaml"
    p.write_text(
        "checks:\n  - {name: secret-api, kind: http, target: 'https://x', requires_env: [TOKEN]}\n",
        encoding="utf-8",
    )
    with pytest.raises(ConfigurationError) as e:
        load_checks(p, env={})
    assert e.value.meta == {"variables": ["TOKEN"]}


def test_duplicate_check_names_rejected(tmp_path: Path):
    p = tmp_path / "checks.yaml"
    p.write_text("checks:\n  - {name: a, kind: dns, target: x}\n  - {name: a, kind: dns, target: y}\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_checks(p, env={})


def test_redis_check_defaults_to_settings_target(tmp_path: Path, monkeypatch):
    from devenv.core.config import settings
    monkeypatch.setattr(settings, "REDIS_HOST", "cache")
    monkeypatch.setattr(settings, "REDIS_PORT", 6379)
    p = tmp_path / "checks.yaml"
    p.write_text("checks:\n  - {name: cache, kind: redis}\n", encoding="utf-8")
    (spec,) = load_checks(p, env={})
    assert spec.target == "cache:6379"


def test_path_check(tmp_path: Path):
    ok = CheckSpec(name="ws", kind="path", target=str(tmp_path))
    missing = CheckSpec(name="ws", kind="path", target=str(tmp_path / "nope"))
    assert asyncio.run(check_path(ok, 1.0)) is True
    assert asyncio.run(check_path(missing, 1.0)) is False


def test_postgres_check_can_name_its_database(tmp_path: Path, monkeypatch):
    from devenv.core.config import settings
    for name, value in {"POSTGRES_USER": "u", "POSTGRES_PASSWORD": "p", "POSTGRES_HOST": "db",
                        "POSTGRES_PORT": 5432, "POSTGRES_DB": "devdb"}.items():
        monkeypatch.setattr(settings, name, value)
    p = tmp_path / "checks.yaml"
    p.write_text(
        "checks:\n  - {name: main, kind: postgres}\n  - {name: test, kind: postgres, database: testdb}\n",
        encoding="utf-8",
    )
    main, test = load_checks(p, env={})
    assert main.target == "postgresql://u:p@db:5432/devdb"
    assert test.target == "postgresql://u:p@db:5432/testdb"
