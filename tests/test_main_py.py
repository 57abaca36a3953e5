import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

import main
from conftest import FakeBuilder, FakePublisher
from sdp.manifest import parse_manifest
from sdp.models import PipelineRun, Trigger
from sdp.pipeline import PipelineEngine
from sdp.router import RuleTable

MANIFEST = {
    "project": "app",
    "registry": "registry.example.com",
    "services": [
        {"name": "db", "image": "mongo:6", "networks": ["backend"]},
        {"name": "backend", "build": "./backend", "networks": ["backend", "frontend"], "depends_on": ["db"]},
        {"name": "frontend", "build": "./frontend", "networks": ["frontend"], "depends_on": ["backend"]},
    ],
    "routes": [
        {"prefix": "/api/", "service": "backend", "port": 4000},
        {"prefix": "/", "service": "frontend", "port": 80},
    ],
    "target": {"host": "app.example.com", "credentials_ref": "prod", "remote_root_path": "/srv/app"},
}


@pytest.fixture
def engine(fake_host):
    return PipelineEngine(FakeBuilder(), FakePublisher(), host_factory=lambda t, p: fake_host, project="app")


@pytest.fixture
def client(engine, tmp_path):
    manifest = parse_manifest(MANIFEST, base_dir=str(tmp_path))
    main.app.dependency_overrides[main.get_manifest] = lambda: manifest
    main.app.dependency_overrides[main.get_engine] = lambda: engine
    main.router_holder.swap(RuleTable())
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
    main.router_holder.swap(RuleTable())


def _wait_finished(client, run_id):
    deadline = time.time() + 5
    body = client.get(f"/pipeline/runs/{run_id}").json()
    while body["status"] == "running" and time.time() < deadline:
        time.sleep(0.01)
        body = client.get(f"/pipeline/runs/{run_id}").json()
    return body


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_trigger_run_and_follow_it(client, fake_host):
    r = client.post("/pipeline/runs", json={"revision": "1a2b3c"})
    assert r.status_code == 202
    run_id = r.json()["id"]
    assert r.json()["trigger"] == "push"

    body = _wait_finished(client, run_id)
    assert body["status"] == "succeeded"
    assert [s["stage_name"] for s in body["stages"]][-1] == "deploy"
    assert body["recreated"] == ["db", "backend", "frontend"]
    assert fake_host.running_image("backend") == "registry.example.com/app/backend:sha-1a2b3c"

    assert client.get("/pipeline/runs/latest").json()["id"] == run_id
    assert [x["id"] for x in client.get("/pipeline/runs").json()] == [run_id]
    deployed = client.get("/deployments", params={"host": "app.example.com"}).json()
    assert {d["service_name"] for d in deployed} == {"db", "backend", "frontend"}
    assert any(e["run_id"] == run_id for e in client.get("/events").json())


def test_failed_build_is_reported(client, engine):
    engine.builder = FakeBuilder(fail={"backend"})
    run_id = client.post("/pipeline/runs", json={"revision": "abc", "trigger": "manual"}).json()["id"]
    body = _wait_finished(client, run_id)
    assert body["status"] == "failed"
    assert body["failed_stage"] == "build"
    assert body["error_kind"] == "BuildError"
    assert body["trigger"] == "manual"


def test_second_trigger_while_running_is_409(client, engine):
    engine.registry.register(PipelineRun(id="busy", trigger=Trigger.PUSH, revision="1"))
    r = client.post("/pipeline/runs", json={"revision": "2"})
    assert r.status_code == 409


def test_no_runs_yet(client):
    assert client.get("/pipeline/runs/latest").status_code == 404
    assert client.get("/pipeline/runs/nope").status_code == 404


def test_cancel_unknown_and_finished_runs(client):
    assert client.post("/pipeline/runs/nope/cancel").status_code == 404

    run_id = client.post("/pipeline/runs", json={"revision": "1"}).json()["id"]
    _wait_finished(client, run_id)
    r = client.post(f"/pipeline/runs/{run_id}/cancel")
    assert r.status_code == 409


def test_cancel_pending_run(client, engine):
    engine.registry.register(PipelineRun(id="queued", trigger=Trigger.PUSH, revision="1"))
    r = client.post("/pipeline/runs/queued/cancel")
    assert r.status_code == 200
    assert "queued" in engine.registry.cancel_requested


def test_rollback_endpoint(client, fake_host):
    first = client.post("/pipeline/runs", json={"revision": "111"}).json()["id"]
    _wait_finished(client, first)
    second = client.post("/pipeline/runs", json={"revision": "222"}).json()["id"]
    _wait_finished(client, second)

    r = client.post("/pipeline/rollback", json={"tag": "sha-111", "services": ["backend"]})
    assert r.status_code == 202
    body = _wait_finished(client, r.json()["id"])
    assert body["status"] == "succeeded"
    assert fake_host.running_image("backend").endswith(":sha-111")
    assert fake_host.running_image("frontend").endswith(":sha-222")


def test_manifest_without_target_is_422(client, tmp_path):
    no_target = dict(MANIFEST)
    no_target.pop("target")
    manifest = parse_manifest(no_target, base_dir=str(tmp_path))
    main.app.dependency_overrides[main.get_manifest] = lambda: manifest
    assert client.post("/pipeline/runs", json={"revision": "1"}).status_code == 422


def test_broken_manifest_is_422(client, monkeypatch, tmp_path):
    main.app.dependency_overrides.pop(main.get_manifest)
    monkeypatch.setattr(main, "settings", replace(main.settings, manifest_path=str(tmp_path / "missing.yml")))
    r = client.post("/routes/reload")
    assert r.status_code == 422
    assert "not found" in r.json()["detail"]


def test_routes_reload_swaps_table(client):
    assert client.get("/routes").json() == []
    r = client.post("/routes/reload")
    assert r.status_code == 200
    assert [x["prefix"] for x in r.json()] == ["/api/", "/"]
    assert client.get("/routes").json()[0] == {"prefix": "/api/", "service": "backend", "port": 4000, "strip_prefix": False}


def test_backend_health_without_route_is_404(client):
    assert client.get("/backend/health").status_code == 404


def test_backend_health_uses_active_route(client, monkeypatch):
    seen = {}

    def fake_check(url):
        seen["url"] = url
        return True, "ok", 1.5

    monkeypatch.setattr(main, "check_health", fake_check)
    client.post("/routes/reload")
    r = client.get("/backend/health")
    assert r.json() == {"healthy": True, "message": "ok", "latency_ms": 1.5, "service": "backend"}
    assert seen["url"] == "http://backend:4000/api/health"


def test_malformed_revision_or_tag_is_422(client):
    assert client.post("/pipeline/runs", json={"revision": "main; rm -rf /"}).status_code == 422
    assert client.post("/pipeline/rollback", json={"tag": "sha-a/b"}).status_code == 422


def test_branch_revision_is_accepted(client, fake_host):
    r = client.post("/pipeline/runs", json={"revision": "feature/login"})
    assert r.status_code == 202
    assert _wait_finished(client, r.json()["id"])["status"] == "succeeded"
    assert fake_host.running_image("backend").endswith(":sha-feature-logi")
