from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Union

from .errors import ConfigurationError, InvalidImageReference


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")
PORT_RE = re.compile(r"^(?:(\d{1,5}):)?(\d{1,5})(?:/(tcp|udp))?$")


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: str = "latest"

    def __post_init__(self) -> None:
        if not self.repository:
            raise InvalidImageReference("Image repository must not be empty.")
        if not self.tag or not TAG_RE.match(self.tag):
            raise InvalidImageReference(f"Invalid image tag {self.tag!r}.")

    @classmethod
    def parse(cls, ref: str, default_registry: str = "") -> "ImageReference":
        """Parse ``[registry/]repository[:tag]``.

        The first path component is a registry when it looks like a host
        (contains '.' or ':' or is 'localhost'). Digest references are not
        supported because tags are what rollouts compare.
        """
        ref = ref.strip()
        if not ref or "@" in ref:
            raise InvalidImageReference(f"Unsupported image reference {ref!r}.")
        registry = default_registry
        rest = ref
        first, sep, remainder = ref.partition("/")
        if sep and ("." in first or ":" in first or first == "localhost"):
            registry, rest = first, remainder
        repository, tag = rest, "latest"
        if ":" in rest:
            repository, tag = rest.rsplit(":", 1)
        return cls(registry=registry, repository=repository, tag=tag)

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.repository}" if self.registry else self.repository

    def with_tag(self, tag: str) -> "ImageReference":
        return ImageReference(self.registry, self.repository, tag)

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


@dataclass(frozen=True)
class BuildSource:
    context_path: str
    produces: ImageReference


Source = Union[BuildSource, ImageReference]


@dataclass(frozen=True)
class PortMapping:
    container: int
    host: int | None = None
    protocol: str = "tcp"

    @classmethod
    def parse(cls, raw: str | int) -> "PortMapping":
        m = PORT_RE.match(str(raw).strip())
        if not m:
            raise ConfigurationError(f"Invalid port mapping {raw!r}.")
        host, container, proto = m.groups()
        return cls(container=int(container), host=int(host) if host else None, protocol=proto or "tcp")

    def compose(self) -> str:
        base = f"{self.host}:{self.container}" if self.host is not None else str(self.container)
        return base if self.protocol == "tcp" else f"{base}/{self.protocol}"


class RestartPolicy(str, Enum):
    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"

    def compose(self) -> str:
        return "no" if self is RestartPolicy.NEVER else self.value


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str
    source: Source
    networks: frozenset[str] = frozenset()
    ports: tuple[PortMapping, ...] = ()
    # Excluded from the hash; equality still compares it.
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    restart_policy: RestartPolicy = RestartPolicy.ALWAYS
    depends_on: frozenset[str] = frozenset()
    volumes: tuple[str, ...] = ()
    command: tuple[str, ...] | None = None
    # Mounts the rendered router config; router changes recreate it.
    serves_routes: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @property
    def is_built(self) -> bool:
        return isinstance(self.source, BuildSource)

    @property
    def image(self) -> ImageReference:
        return self.source.produces if isinstance(self.source, BuildSource) else self.source


@dataclass(frozen=True)
class Topology:
    services: Mapping[str, ServiceDescriptor]
    order: tuple[str, ...]
    shared_networks: frozenset[str]
    ranks: tuple[tuple[str, ...], ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "services", MappingProxyType(dict(self.services)))

    def __contains__(self, name: object) -> bool:
        return name in self.services

    def __getitem__(self, name: str) -> ServiceDescriptor:
        return self.services[name]

    def built_services(self) -> list[ServiceDescriptor]:
        return [self.services[n] for n in self.order if self.services[n].is_built]


@dataclass(frozen=True)
class RoutingRule:
    path_prefix: str
    target_service: str
    target_port: int
    strip_prefix: bool = False


@dataclass(frozen=True)
class DeployTarget:
    host: str
    credentials_ref: str
    remote_root_path: str
    port: int = 22


class Trigger(str, Enum):
    PUSH = "push"
    MANUAL = "manual"


class RunState(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    PUBLISHING = "publishing"
    DEPLOYING = "deploying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.FAILED)


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StageOutcome(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StageResult:
    stage_name: str
    started_at: str
    finished_at: str
    outcome: StageOutcome
    detail: str = ""


@dataclass
class PipelineRun:
    id: str
    trigger: Trigger
    revision: str
    status: RunStatus = RunStatus.RUNNING
    state: RunState = RunState.PENDING
    stages: list[StageResult] = field(default_factory=list)
    failed_stage: str | None = None
    error_kind: str | None = None
    detail: str = ""
    recreated: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    finished_at: str | None = None

    def stage(self, name: str) -> StageResult | None:
        for s in self.stages:
            if s.stage_name == name:
                return s
        return None
