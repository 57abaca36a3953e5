import os
import sys
import threading

import pytest

# Ensure project root is importable (so `import main` / `import sdp` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from sdp import db  # noqa: E402
from sdp.compose import container_name  # noqa: E402
from sdp.deployer import RunningService  # noqa: E402
from sdp.errors import BuildError, PublishError, RemoteCommandError  # noqa: E402
from sdp.models import (  # noqa: E402
    BuildSource,
    DeployTarget,
    ImageReference,
    PortMapping,
    RoutingRule,
    ServiceDescriptor,
)


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    path = str(tmp_path / "sdp-test.db")
    monkeypatch.setattr(db, "_resolve_db_path", lambda: path)
    db.init_db()
    return path


def image_svc(name, image="mongo:6", depends_on=(), **kw):
    return ServiceDescriptor(name=name, source=ImageReference.parse(image), depends_on=frozenset(depends_on), **kw)


def built_svc(name, depends_on=(), **kw):
    ref = ImageReference("registry.example.com", f"acme/{name}", "latest")
    return ServiceDescriptor(
        name=name,
        source=BuildSource(context_path=f"./{name}", produces=ref),
        depends_on=frozenset(depends_on),
        **kw,
    )


@pytest.fixture
def app_descriptors():
    return [
        image_svc("db", networks=frozenset({"backend"})),
        built_svc("backend", depends_on=["db"], networks=frozenset({"backend", "frontend"}), env={"PORT": "4000"}),
        built_svc("frontend", depends_on=["backend"], networks=frozenset({"frontend"}), ports=(PortMapping(80, 80),)),
    ]


@pytest.fixture
def app_routes():
    return [
        RoutingRule("/api/", "backend", 4000),
        RoutingRule("/", "frontend", 80),
    ]


@pytest.fixture
def target():
    return DeployTarget(host="app.example.com", credentials_ref="prod", remote_root_path="/srv/app")


class FakeBuilder:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.built = []
        self._lock = threading.Lock()

    def build(self, service, source, tags):
        if service in self.fail:
            raise BuildError(f"{service}: exit status 1")
        with self._lock:
            self.built.append((service, [str(t) for t in tags]))
        return f"sha256:{service}"


class FakePublisher:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.pushed = []
        self._lock = threading.Lock()

    def push(self, ref):
        if ref.repository.rsplit("/", 1)[-1] in self.fail:
            raise PublishError(f"{ref}: denied")
        with self._lock:
            self.pushed.append(str(ref))


class FakeHost:
    """Stands in for the container runtime on the target host."""

    def __init__(self, project="app", fail_recreate=(), fail_pull=False):
        self.project = project
        self.fail_recreate = set(fail_recreate)
        self.fail_pull = fail_pull
        self.containers = {}
        # bundles that became the live files on the host
        self.uploads = []
        self.staged = None
        self.discarded = 0
        self.closed = 0
        self.pulls = []
        self.recreations = []
        self.prunes = 0
        self.calls = 0
        self._bundle = None
        self._lock = threading.Lock()

    def stage(self, bundle):
        self.calls += 1
        self.staged = bundle

    def activate(self):
        self.calls += 1
        self._bundle, self.staged = self.staged, None
        self.uploads.append(self._bundle)

    def discard(self):
        self.calls += 1
        self.staged = None
        self.discarded += 1

    def close(self):
        self.closed += 1

    def inspect(self, container):
        self.calls += 1
        return self.containers.get(container)

    def pull(self, services):
        self.calls += 1
        if self.fail_pull:
            raise RemoteCommandError("docker compose pull", 1, "manifest unknown")
        self.pulls.append(list(services))

    def recreate(self, service):
        self.calls += 1
        if service in self.fail_recreate:
            raise RemoteCommandError(f"docker compose up {service}", 1, "port is already allocated")
        want = self._bundle.services[service]
        with self._lock:
            self.containers[container_name(self.project, service)] = RunningService(want.image, want.config_hash)
            self.recreations.append(service)

    def prune(self):
        self.calls += 1
        self.prunes += 1

    def running_image(self, service):
        state = self.containers.get(container_name(self.project, service))
        return state.image if state else None


@pytest.fixture
def fake_host():
    return FakeHost()
