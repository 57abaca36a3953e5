"""Control API for the stack deploy pipeline.

Run with ``uvicorn main:app`` (pipeline control) and ``uvicorn main:proxy_app``
(public listener that routes through the active rule table).
"""
from __future__ import annotations

from threading import Lock

from fastapi import Depends, FastAPI, HTTPException, Query, status

from sdp import db
from sdp.api_models import RollbackRequest, RouteOut, RunOut, TriggerRequest
from sdp.docker_ops import DockerImageBuilder, DockerImagePublisher
from sdp.errors import CancellationRejected, ConfigurationError, PipelineBusy, UnknownRun
from sdp.gateway import create_proxy_app
from sdp.health import check_health
from sdp.manifest import Manifest, load_manifest
from sdp.pipeline import PipelineEngine
from sdp.router import NoRoute, RouterHolder
from sdp.settings import settings

app = FastAPI(title="Stack Deploy Pipeline")

router_holder = RouterHolder()
proxy_app = create_proxy_app(router_holder)

_engine_lock = Lock()
_engine: PipelineEngine | None = None


def get_manifest() -> Manifest:
    try:
        return load_manifest(settings.manifest_path)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


def get_engine(manifest: Manifest = Depends(get_manifest)) -> PipelineEngine:
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = PipelineEngine(DockerImageBuilder(), DockerImagePublisher(), project=manifest.project)
        return _engine


def _target(manifest: Manifest):
    if manifest.target is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Manifest has no deploy target.")
    return manifest.target


def _load_routes() -> None:
    try:
        manifest = load_manifest(settings.manifest_path)
    except ConfigurationError as e:
        db.log_event("WARN", f"Routes not loaded: {e}")
        return
    router_holder.swap(manifest.rules)
    db.log_event("INFO", f"Loaded {len(manifest.rules)} route(s)")


@app.on_event("startup")
def startup() -> None:
    db.init_db()
    _load_routes()


@proxy_app.on_event("startup")
def proxy_startup() -> None:
    db.init_db()
    _load_routes()


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/pipeline/runs", status_code=status.HTTP_202_ACCEPTED, response_model=RunOut)
def trigger_run(
    req: TriggerRequest,
    manifest: Manifest = Depends(get_manifest),
    engine: PipelineEngine = Depends(get_engine),
) -> RunOut:
    try:
        run = engine.start(manifest.topology, _target(manifest), req.revision, trigger=req.trigger, rules=manifest.rules)
    except PipelineBusy as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return RunOut.from_run(run)


@app.post("/pipeline/rollback", status_code=status.HTTP_202_ACCEPTED, response_model=RunOut)
def rollback(
    req: RollbackRequest,
    manifest: Manifest = Depends(get_manifest),
    engine: PipelineEngine = Depends(get_engine),
) -> RunOut:
    try:
        run = engine.start_rollback(
            manifest.topology, _target(manifest), req.tag, services=req.services, rules=manifest.rules
        )
    except PipelineBusy as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return RunOut.from_run(run)


@app.get("/pipeline/runs", response_model=list[RunOut])
def list_runs(limit: int = Query(20, ge=1, le=500)) -> list[RunOut]:
    return [RunOut.from_run(r) for r in db.list_runs(limit=limit)]


@app.get("/pipeline/runs/latest", response_model=RunOut)
def latest_run() -> RunOut:
    run = db.latest_run()
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No pipeline run yet.")
    return RunOut.from_run(run)


@app.get("/pipeline/runs/{run_id}", response_model=RunOut)
def get_run(run_id: str) -> RunOut:
    run = db.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown run.")
    return RunOut.from_run(run)


@app.post("/pipeline/runs/{run_id}/cancel", response_model=RunOut)
def cancel_run(run_id: str, engine: PipelineEngine = Depends(get_engine)) -> RunOut:
    try:
        run = engine.cancel(run_id)
    except UnknownRun:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown or finished run.")
    except CancellationRejected as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return RunOut.from_run(run)


@app.get("/routes", response_model=list[RouteOut])
def list_routes() -> list[RouteOut]:
    return [
        RouteOut(prefix=r.path_prefix, service=r.target_service, port=r.target_port, strip_prefix=r.strip_prefix)
        for r in router_holder.current().rules
    ]


@app.post("/routes/reload", response_model=list[RouteOut])
def reload_routes(manifest: Manifest = Depends(get_manifest)) -> list[RouteOut]:
    router_holder.swap(manifest.rules)
    db.log_event("INFO", f"Swapped in {len(manifest.rules)} route(s)")
    return list_routes()


@app.get("/backend/health")
def backend_health() -> dict:
    path = settings.backend_health_path
    try:
        match = router_holder.current().route(path)
    except NoRoute:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No route for {path}.")
    ok, msg, latency = check_health(f"{match.upstream}{match.forward_path}")
    return {"healthy": ok, "message": msg, "latency_ms": latency, "service": match.rule.target_service}


@app.get("/deployments")
def deployments(host: str | None = None, limit: int = Query(100, ge=1, le=1000)) -> list[dict]:
    return [row.__dict__ for row in db.list_deployments(host=host, limit=limit)]


@app.get("/events")
def events(limit: int = Query(100, ge=1, le=1000)) -> list[dict]:
    return db.latest_events(limit=limit)
