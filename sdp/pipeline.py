"""Build -> publish -> deploy pipeline.

A run moves through ``pending -> building -> publishing -> deploying ->
succeeded``; any stage can end it in ``failed``. Each unit of work (one image
build, one push, the deploy) leaves a StageResult on the run so a failure is
something you can query, not just an exit code.
"""
from __future__ import annotations

import re
import secrets
import threading
from concurrent.futures import ThreadPoolExecutor
from threading import Thread
from typing import Callable, Iterable, Mapping

from . import db
from .alerts import notify_run_finished
from .compose import render
from .deployer import ComposeHost, Deployer
from .errors import BuildError, ConfigurationError, PublishError, RunCancelled, SdpError
from .models import (
    DeployTarget,
    ImageReference,
    PipelineRun,
    RunState,
    RunStatus,
    StageOutcome,
    StageResult,
    TAG_RE,
    Topology,
    Trigger,
    utc_now,
)
from .remote import RemoteGateway, resolve_credentials
from .router import RuleTable, render_nginx_conf
from .runtime import RunRegistry
from .settings import settings

STAGES = ("build", "publish", "deploy")
UNSAFE_TAG_CHARS = re.compile(r"[^a-z0-9_.-]")


def content_tag(revision: str) -> str:
    """Immutable tag for a source revision, e.g. ``sha-1a2b3c4d5e6f``.

    Characters a registry tag cannot hold become '-'. A revision already in
    ``sha-`` form is used as is and must be a valid tag.
    """
    rev = revision.strip().lower()
    if not rev:
        raise ConfigurationError("Revision must not be empty.")
    tag = rev if rev.startswith("sha-") else "sha-" + UNSAFE_TAG_CHARS.sub("-", rev[:12])
    if not TAG_RE.match(tag):
        raise ConfigurationError(f"Revision {revision!r} does not give a valid image tag.")
    return tag


def default_host_factory(target: DeployTarget, project: str) -> ComposeHost:
    gateway = RemoteGateway(target, resolve_credentials(target.credentials_ref))
    return ComposeHost(gateway, target, project)


class PipelineEngine:
    """Runs pipelines against one deployment target at a time."""

    def __init__(
        self,
        builder,
        publisher,
        host_factory: Callable[[DeployTarget, str], object] = default_host_factory,
        project: str = "app",
        parallelism: int | None = None,
        registry: RunRegistry | None = None,
    ):
        self.builder = builder
        self.publisher = publisher
        self.host_factory = host_factory
        self.project = project
        self.parallelism = max(1, int(parallelism or settings.parallelism))
        self.registry = registry or RunRegistry()

    # -- entry points -------------------------------------------------------

    def create_run(self, trigger: Trigger, revision: str) -> PipelineRun:
        run = PipelineRun(id=secrets.token_hex(6), trigger=trigger, revision=revision)
        self.registry.register(run)
        db.save_run(run)
        db.log_event("INFO", f"Run created ({trigger.value} {revision})", run_id=run.id)
        return run

    def run(
        self,
        topology: Topology,
        target: DeployTarget,
        revision: str,
        trigger: Trigger = Trigger.PUSH,
        rules: RuleTable | None = None,
    ) -> PipelineRun:
        """Build, publish and deploy ``revision``; blocks until the run is terminal."""
        run = self.create_run(trigger, revision)
        self._execute(run, lambda: self._full(run, topology, target, revision, rules))
        return run

    def rollback(
        self,
        topology: Topology,
        target: DeployTarget,
        tag: str,
        services: Iterable[str] | None = None,
        rules: RuleTable | None = None,
    ) -> PipelineRun:
        """Deploy an already published content-addressed tag; nothing is rebuilt."""
        run = self.create_run(Trigger.MANUAL, tag)
        self._execute(run, lambda: self._rollback(run, topology, target, tag, services, rules))
        return run

    def start(
        self,
        topology: Topology,
        target: DeployTarget,
        revision: str,
        trigger: Trigger = Trigger.PUSH,
        rules: RuleTable | None = None,
    ) -> PipelineRun:
        """Register a run and execute it on a background thread."""
        run = self.create_run(trigger, revision)
        Thread(
            target=self._execute,
            args=(run, lambda: self._full(run, topology, target, revision, rules)),
            daemon=True,
        ).start()
        return run

    def start_rollback(
        self,
        topology: Topology,
        target: DeployTarget,
        tag: str,
        services: Iterable[str] | None = None,
        rules: RuleTable | None = None,
    ) -> PipelineRun:
        run = self.create_run(Trigger.MANUAL, tag)
        Thread(
            target=self._execute,
            args=(run, lambda: self._rollback(run, topology, target, tag, services, rules)),
            daemon=True,
        ).start()
        return run

    def cancel(self, run_id: str) -> PipelineRun:
        run = self.registry.request_cancel(run_id)
        db.log_event("WARN", "Cancellation requested", run_id=run_id)
        return run

    def get_run(self, run_id: str) -> PipelineRun | None:
        return self.registry.get(run_id) or db.get_run(run_id)

    # -- execution ----------------------------------------------------------

    def _execute(self, run: PipelineRun, body: Callable[[], None]) -> None:
        try:
            body()
        except SdpError as e:
            self._fail(run, e)
        except Exception as e:
            # Unexpected failures still end the run instead of leaving it "running".
            self._fail(run, e)
            db.log_event("ERROR", f"Pipeline crashed: {type(e).__name__}: {e}", run_id=run.id)
        else:
            run.state = RunState.SUCCEEDED
            run.status = RunStatus.SUCCEEDED
            run.finished_at = utc_now()
            db.log_event("INFO", "Run succeeded", run_id=run.id)
        finally:
            self.registry.finish(run)
            db.save_run(run)
            notify_run_finished(run)

    def _fail(self, run: PipelineRun, err: Exception) -> None:
        now = utc_now()
        if isinstance(err, RunCancelled) and err.next_state is not None:
            # Nothing failed; the stage about to start and everything after it never ran.
            stage = self._stage_of(err.next_state)
            first_skipped = STAGES.index(stage) if stage in STAGES else len(STAGES)
            reason = "cancelled"
        else:
            stage = self._stage_of(run.state)
            if stage in STAGES:
                self._record(run, stage, now, StageOutcome.FAILED, str(err))
                first_skipped = STAGES.index(stage) + 1
            else:
                first_skipped = 0
            reason = f"not run: {stage} failed"
        for later in STAGES[first_skipped:]:
            self._record(run, later, now, StageOutcome.SKIPPED, reason)

        run.failed_stage = stage
        run.error_kind = getattr(err, "kind", type(err).__name__)
        run.detail = str(err)
        run.state = RunState.FAILED
        run.status = RunStatus.FAILED
        run.finished_at = now
        db.log_event("ERROR", f"Run failed in {stage}: {run.error_kind}: {run.detail}", run_id=run.id)

    @staticmethod
    def _stage_of(state: RunState) -> str:
        return {
            RunState.PENDING: "pending",
            RunState.BUILDING: "build",
            RunState.PUBLISHING: "publish",
            RunState.DEPLOYING: "deploy",
        }.get(state, state.value)

    def _record(self, run: PipelineRun, name: str, started: str, outcome: StageOutcome, detail: str = "") -> StageResult:
        result = StageResult(stage_name=name, started_at=started, finished_at=utc_now(), outcome=outcome, detail=detail)
        run.stages.append(result)
        return result

    def _enter(self, run: PipelineRun, state: RunState) -> None:
        self.registry.transition(run, state)
        db.save_run(run)
        db.log_event("INFO", f"Entering {state.value}", run_id=run.id)

    def _full(
        self,
        run: PipelineRun,
        topology: Topology,
        target: DeployTarget,
        revision: str,
        rules: RuleTable | None,
    ) -> None:
        tag = content_tag(revision)
        built = topology.built_services()

        self._enter(run, RunState.BUILDING)
        self._build(run, built, tag)

        self._enter(run, RunState.PUBLISHING)
        self._publish(run, built, tag)

        images = {d.name: d.image.with_tag(tag) for d in built}
        self._enter(run, RunState.DEPLOYING)
        host = self.host_factory(target, self.project)
        try:
            self._deploy(run, topology, target, images, rules, host)
        finally:
            host.close()

    def _rollback(
        self,
        run: PipelineRun,
        topology: Topology,
        target: DeployTarget,
        tag: str,
        services: Iterable[str] | None,
        rules: RuleTable | None,
    ) -> None:
        tag = content_tag(tag)
        built = {d.name: d for d in topology.built_services()}
        wanted = list(services) if services is not None else list(built)
        unknown = [s for s in wanted if s not in built]
        if unknown:
            raise ConfigurationError(f"Cannot roll back services without a build source: {', '.join(unknown)}")

        now = utc_now()
        self._enter(run, RunState.BUILDING)
        self._record(run, "build", now, StageOutcome.SKIPPED, f"rollback to {tag}: nothing to build")
        self._enter(run, RunState.PUBLISHING)
        self._record(run, "publish", now, StageOutcome.SKIPPED, f"rollback to {tag}: reusing published images")

        self._enter(run, RunState.DEPLOYING)
        host = self.host_factory(target, self.project)
        try:
            running = Deployer(host, self.parallelism, run_id=run.id).current_state(topology)
            images: dict[str, ImageReference] = {}
            for name, d in built.items():
                if name in wanted:
                    images[name] = d.image.with_tag(tag)
                elif running.get(name) is not None:
                    images[name] = ImageReference.parse(running[name].image)
            self._deploy(run, topology, target, images, rules, host)
        finally:
            host.close()

    # -- stages -------------------------------------------------------------

    def _units(
        self,
        run: PipelineRun,
        stage: str,
        names: list[str],
        work: Callable[[str], str],
        expected: tuple[type[Exception], ...],
        skip_after_failure: bool,
    ) -> list[StageResult]:
        """Run one work item per name on a bounded pool, collecting every result.

        With ``skip_after_failure`` items that have not started when another
        one fails are recorded as skipped instead of run.
        """
        failed = threading.Event()

        def unit(name: str) -> StageResult:
            started = utc_now()
            if skip_after_failure and failed.is_set():
                return StageResult(f"{stage}:{name}", started, utc_now(), StageOutcome.SKIPPED, "skipped after an earlier failure")
            try:
                detail = work(name)
            except expected as e:
                failed.set()
                return StageResult(f"{stage}:{name}", started, utc_now(), StageOutcome.FAILED, str(e))
            return StageResult(f"{stage}:{name}", started, utc_now(), StageOutcome.OK, detail)

        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            futures = [pool.submit(unit, n) for n in names]
            results = [f.result() for f in futures]
        run.stages.extend(results)
        db.save_run(run)
        return results

    def _build(self, run: PipelineRun, built: list, tag: str) -> None:
        by_name = {d.name: d for d in built}

        def work(name: str) -> str:
            d = by_name[name]
            refs = [d.image.with_tag(tag), d.image.with_tag("latest")]
            image_id = self.builder.build(name, d.source, refs)
            return f"built {refs[0]} ({image_id})"

        started = utc_now()
        results = self._units(run, "build", list(by_name), work, (BuildError,), skip_after_failure=True)
        failures = [r for r in results if r.outcome is StageOutcome.FAILED]
        if failures:
            raise BuildError("; ".join(r.detail for r in failures))
        self._record(run, "build", started, StageOutcome.OK, f"{len(results)} image(s) built")

    def _publish(self, run: PipelineRun, built: list, tag: str) -> None:
        by_name = {d.name: d for d in built}

        def work(name: str) -> str:
            d = by_name[name]
            pushed = []
            for ref in (d.image.with_tag(tag), d.image.with_tag("latest")):
                self.publisher.push(ref)
                pushed.append(str(ref))
            return "pushed " + ", ".join(pushed)

        started = utc_now()
        results = self._units(run, "publish", list(by_name), work, (PublishError,), skip_after_failure=False)
        failures = [r for r in results if r.outcome is StageOutcome.FAILED]
        if failures:
            raise PublishError("; ".join(r.detail for r in failures))
        self._record(run, "publish", started, StageOutcome.OK, f"{len(results)} image(s) pushed")

    def _deploy(
        self,
        run: PipelineRun,
        topology: Topology,
        target: DeployTarget,
        images: Mapping[str, ImageReference],
        rules: RuleTable | None,
        host,
    ) -> None:
        started = utc_now()
        router_config = render_nginx_conf(rules) if rules is not None and len(rules) else None
        bundle = render(self.project, topology, images, router_config)
        deployer = Deployer(host, self.parallelism, run_id=run.id)
        try:
            report = deployer.deploy(topology, bundle)
        finally:
            run.recreated = list(deployer.report.recreated)
            for name in run.recreated:
                want = bundle.services[name]
                db.record_deployment(target.host, name, want.image, want.config_hash, run.id)
        detail = f"recreated: {', '.join(report.recreated) or 'none'}"
        if report.unchanged:
            detail += f"; unchanged: {', '.join(report.unchanged)}"
        self._record(run, "deploy", started, StageOutcome.OK, detail)
