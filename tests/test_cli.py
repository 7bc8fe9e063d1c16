import json

import pytest

import cli
from conftest import FakeRuntime, make_adapters
from stackrec import engine
from stackrec.errors import AdapterError


@pytest.fixture
def fake_rt(monkeypatch):
    rt = FakeRuntime()
    adapters = make_adapters(rt)
    monkeypatch.setattr(engine, "default_adapters", lambda stack: adapters)
    return rt


def _json_tail(out):
    return json.loads(out[out.index("{"):])


def test_plan_apply_plan(fake_rt, tmp_path, capsys):
    state = str(tmp_path / "cli.db")

    assert cli.main(["--state", state, "plan", "--stack", "prod"]) == 0
    out = capsys.readouterr().out
    assert "create network" in out
    assert "create nginx" in out

    assert cli.main(["--state", state, "apply", "--stack", "prod"]) == 0
    report = _json_tail(capsys.readouterr().out)
    assert report["ok"] is True
    assert report["outputs"]["nginx_url"] == "http://localhost:8080"
    assert report["outputs"]["redis_port"] == 7080

    assert cli.main(["--state", state, "plan", "--stack", "prod"]) == 0
    assert "No changes." in capsys.readouterr().out


def test_apply_failure_exit_code(fake_rt, tmp_path, capsys):
    fake_rt.fail("create", "redis", AdapterError("port is already allocated"))
    code = cli.main(["--state", str(tmp_path / "cli.db"), "apply"])
    assert code == 1
    report = _json_tail(capsys.readouterr().out)
    statuses = {r["name"]: r["status"] for r in report["resources"]}
    assert statuses["redis"] == "failed"
    assert statuses["nginx"] == "created"


def test_destroy_and_outputs(fake_rt, tmp_path, capsys):
    state = str(tmp_path / "cli.db")
    cli.main(["--state", state, "apply", "--stack", "dev"])
    capsys.readouterr()

    assert cli.main(["--state", state, "outputs", "--stack", "dev"]) == 0
    outputs = json.loads(capsys.readouterr().out)
    assert outputs["stack_info"]["nginx_container"] == "nginx-dev"
    assert outputs["redis_port"] == 7081

    assert cli.main(["--state", state, "destroy", "--stack", "dev"]) == 0
    assert fake_rt.objects == {}
    capsys.readouterr()

    assert cli.main(["--state", state, "events", "--limit", "3"]) == 0
    events = json.loads(capsys.readouterr().out)
    assert len(events) == 3
    assert events[0]["message"].startswith("Run finished")


def test_structural_error_exit_code(fake_rt, tmp_path, capsys):
    bad = tmp_path / "cycle.yaml"
    bad.write_text(
        "resources:\n"
        "  - {name: a, kind: container, properties: {x: {$ref: b.id}}}\n"
        "  - {name: b, kind: container, properties: {x: {$ref: a.id}}}\n"
    )
    assert cli.main(["--state", str(tmp_path / "cli.db"), "apply", "--file", str(bad)]) == 2
    assert "Dependency cycle" in capsys.readouterr().err
    assert fake_rt.calls == []
