from __future__ import annotations

import posixpath
import shlex
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Mapping

from .compose import HASH_LABEL, DesiredService, RenderedBundle, container_name
from .db import log_event
from .errors import SdpError
from .models import DeployTarget, Topology
from .remote import RemoteGateway
from .settings import settings


@dataclass(frozen=True)
class RunningService:
    image: str
    config_hash: str


class ComposeHost:
    """Container runtime on the target host, driven through the gateway."""

    def __init__(self, gateway: RemoteGateway, target: DeployTarget, project: str):
        self.gateway = gateway
        self.target = target
        self.project = project
        self.root = target.remote_root_path.rstrip("/") or "/"
        self._live: list[str] = []

    @property
    def compose_path(self) -> str:
        return posixpath.join(self.root, settings.compose_file_name)

    @property
    def router_path(self) -> str:
        return posixpath.join(self.root, settings.router_file_name)

    def _compose(self, *args: str, compose_file: str | None = None) -> str:
        parts = ["docker", "compose", "-p", self.project, "-f", compose_file or self.compose_path, *args]
        return " ".join(shlex.quote(p) for p in parts)

    @staticmethod
    def staged(path: str) -> str:
        return path + ".next"

    def _files(self, bundle: RenderedBundle) -> list[str]:
        paths = [self.compose_path]
        if bundle.router_config is not None:
            paths.append(self.router_path)
        return paths

    def stage(self, bundle: RenderedBundle) -> None:
        """Upload the bundle next to the live files; the running stack is untouched."""
        self._live = self._files(bundle)
        docs = {self.compose_path: bundle.compose, self.router_path: bundle.router_config}
        self.gateway.upload_text({self.staged(p): docs[p] for p in self._live})

    def activate(self) -> None:
        """Move staged files over the live ones in one command."""
        self.gateway.execute(" && ".join(f"mv -f {shlex.quote(self.staged(p))} {shlex.quote(p)}" for p in self._live))

    def discard(self) -> None:
        self.gateway.execute("rm -f " + " ".join(shlex.quote(self.staged(p)) for p in self._live), check=False)

    def close(self) -> None:
        self.gateway.close()

    def inspect(self, container: str) -> RunningService | None:
        fmt = "{{.Config.Image}}|{{index .Config.Labels \"%s\"}}" % HASH_LABEL
        cmd = f"docker inspect --type container --format {shlex.quote(fmt)} {shlex.quote(container)}"
        res = self.gateway.execute(cmd, check=False)
        if res.exit_code != 0:
            # No such container: treat as not running.
            return None
        image, _, chash = res.stdout.strip().partition("|")
        if chash == "<no value>":
            chash = ""
        return RunningService(image=image, config_hash=chash)

    def pull(self, services: list[str]) -> None:
        if services:
            # Pulls against the staged file: live containers keep the old one.
            self.gateway.execute(self._compose("pull", "--quiet", *services, compose_file=self.staged(self.compose_path)))

    def recreate(self, service: str) -> None:
        # compose stops the old container and starts the new one under the same name.
        self.gateway.execute(self._compose("up", "-d", "--no-deps", "--force-recreate", service))

    def prune(self) -> None:
        self.gateway.execute("docker image prune -f")


@dataclass
class DeployReport:
    recreated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)


def plan_changes(
    desired: Mapping[str, DesiredService], running: Mapping[str, RunningService | None]
) -> dict[str, str]:
    """Services that need recreating, mapped to the reason."""
    changes: dict[str, str] = {}
    for name, want in desired.items():
        have = running.get(name)
        if have is None:
            changes[name] = "not running"
        elif have.image != want.image:
            changes[name] = f"image {have.image} -> {want.image}"
        elif have.config_hash != want.config_hash:
            changes[name] = "configuration changed"
    return changes


class Deployer:
    """Materializes a rendered bundle on one host.

    Recreation walks the topology rank by rank; services in the same rank do
    not depend on each other and are recreated concurrently. A failing rank
    stops the walk, so dependents of a failed service keep their old container.

    The bundle is staged first and only moved over the live files once every
    changed image has been pulled; a failure before that leaves the host's
    files and containers as they were.
    """

    def __init__(self, host, parallelism: int | None = None, run_id: str | None = None):
        self.host = host
        self.parallelism = max(1, int(parallelism or settings.parallelism))
        self.run_id = run_id
        self.report = DeployReport()

    def current_state(self, topology: Topology) -> dict[str, RunningService | None]:
        return {name: self.host.inspect(container_name(self.host.project, name)) for name in topology.order}

    def deploy(self, topology: Topology, bundle: RenderedBundle) -> DeployReport:
        running = self.current_state(topology)
        changes = plan_changes(bundle.services, running)
        report = self.report = DeployReport(reasons=dict(changes))
        report.unchanged = [n for n in topology.order if n not in changes]

        self.host.stage(bundle)
        try:
            if changes:
                self.host.pull([n for n in topology.order if n in changes])
        except SdpError:
            self._discard()
            raise
        self.host.activate()

        if not changes:
            log_event("INFO", "No service changed; nothing to recreate", run_id=self.run_id)
            self.host.prune()
            return report

        for rank in topology.ranks:
            todo = [n for n in rank if n in changes]
            if not todo:
                continue
            errors = self._recreate_rank(todo, report)
            if errors:
                for name, err in errors[1:]:
                    log_event("ERROR", f"Recreate failed: {err}", service_name=name, run_id=self.run_id)
                raise errors[0][1]

        self.host.prune()
        return report

    def _discard(self) -> None:
        try:
            self.host.discard()
        except SdpError as e:
            log_event("WARN", f"Staged files not removed: {e}", run_id=self.run_id)

    def _recreate_rank(self, names: list[str], report: DeployReport) -> list[tuple[str, SdpError]]:
        def one(name: str) -> tuple[str, SdpError | None]:
            try:
                self.host.recreate(name)
            except SdpError as e:
                return name, e
            log_event("INFO", f"Recreated ({report.reasons[name]})", service_name=name, run_id=self.run_id)
            return name, None

        with ThreadPoolExecutor(max_workers=min(self.parallelism, len(names))) as pool:
            results = list(pool.map(one, names))

        errors: list[tuple[str, SdpError]] = []
        for name, err in results:
            if err is None:
                report.recreated.append(name)
            else:
                errors.append((name, err))
        return errors
