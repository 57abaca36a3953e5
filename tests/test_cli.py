import json
import os

import yaml

import cli

EXAMPLE = os.path.join(os.path.dirname(os.path.dirname(__file__)), "deploy.example.yml")


def test_plan_prints_order_and_routes(capsys):
    assert cli.main(["--manifest", EXAMPLE, "plan"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["order"] == ["db", "backend", "frontend", "proxy"]
    assert out["build"] == ["backend", "frontend"]
    assert out["routes"][0]["prefix"] == "/api/"


def test_render_writes_compose_and_router(tmp_path, capsys):
    out_dir = tmp_path / "out"
    assert cli.main(["--manifest", EXAMPLE, "render", "--out", str(out_dir), "--tag", "sha-abc"]) == 0
    written = json.loads(capsys.readouterr().out)["written"]
    assert len(written) == 2

    doc = yaml.safe_load((out_dir / "docker-compose.yml").read_text(encoding="utf-8"))
    assert doc["services"]["backend"]["image"] == "ghcr.io/acme/tutorial-backend:sha-abc"
    assert doc["services"]["db"]["image"] == "mongo:6"
    assert "proxy_pass http://backend:4000;" in (out_dir / "nginx.conf").read_text(encoding="utf-8")


def test_bad_manifest_exits_non_zero(tmp_path, capsys):
    assert cli.main(["--manifest", str(tmp_path / "nope.yml"), "plan"]) == 1
    assert "error:" in capsys.readouterr().err
