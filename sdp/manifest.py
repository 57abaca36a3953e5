from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from typing import Any, Literal, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .docker_ops import validate_service_name
from .errors import ConfigurationError
from .models import (
    BuildSource,
    DeployTarget,
    ImageReference,
    PortMapping,
    RestartPolicy,
    RoutingRule,
    ServiceDescriptor,
    Topology,
)
from .router import RuleTable, build_rules
from .topology import resolve


class BuildSpec(BaseModel):
    context: str = Field(..., description="Build context, relative to the manifest file")
    repository: str | None = Field(None, description="Repository to publish to (default: <project>/<service>)")


class ServiceSpec(BaseModel):
    name: str
    image: str | None = Field(None, description="Prebuilt image (name:tag)")
    build: Union[BuildSpec, str, None] = None
    networks: list[str] = Field(default_factory=list)
    ports: list[Union[str, int]] = Field(default_factory=list)
    env: dict[str, Union[str, int, float, bool]] = Field(default_factory=dict)
    # YAML 1.1 reads a bare `no` as false
    restart: Union[Literal["never", "no", "on-failure", "always"], bool] = "always"
    depends_on: list[str] = Field(default_factory=list)
    volumes: list[str] = Field(default_factory=list)
    command: Union[list[str], str, None] = None
    serves_routes: bool = False


class RouteSpec(BaseModel):
    prefix: str
    service: str
    port: int = Field(..., ge=1, le=65535)
    strip_prefix: bool = False


class TargetSpec(BaseModel):
    host: str
    credentials_ref: str
    remote_root_path: str
    port: int = Field(22, ge=1, le=65535)


class ManifestDoc(BaseModel):
    project: str
    registry: str = ""
    default_network: str = "default"
    services: list[ServiceSpec]
    routes: list[RouteSpec] = Field(default_factory=list)
    target: TargetSpec | None = None


@dataclass(frozen=True)
class Manifest:
    project: str
    registry: str
    topology: Topology
    routes: tuple[RoutingRule, ...]
    rules: RuleTable
    target: DeployTarget | None


def _env_value(v: Union[str, int, float, bool]) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _descriptor(doc: ManifestDoc, spec: ServiceSpec, base_dir: str) -> ServiceDescriptor:
    try:
        validate_service_name(spec.name)
    except ValueError as e:
        raise ConfigurationError(f"{spec.name!r}: {e}") from e
    if (spec.image is None) == (spec.build is None):
        raise ConfigurationError(f"Service '{spec.name}' needs exactly one of 'image' or 'build'.")

    if spec.build is not None:
        build = spec.build if isinstance(spec.build, BuildSpec) else BuildSpec(context=spec.build)
        repository = build.repository or f"{doc.project}/{spec.name}"
        produces = ImageReference.parse(repository, default_registry=doc.registry)
        context = build.context if os.path.isabs(build.context) else os.path.normpath(os.path.join(base_dir, build.context))
        source: BuildSource | ImageReference = BuildSource(context_path=context, produces=produces.with_tag("latest"))
    else:
        source = ImageReference.parse(spec.image or "")

    command: tuple[str, ...] | None = None
    if isinstance(spec.command, str):
        command = tuple(shlex.split(spec.command))
    elif spec.command:
        command = tuple(spec.command)

    if spec.restart is False or spec.restart == "no":
        restart = "never"
    elif spec.restart is True:
        restart = "always"
    else:
        restart = spec.restart
    return ServiceDescriptor(
        name=spec.name,
        source=source,
        networks=frozenset(spec.networks),
        ports=tuple(PortMapping.parse(p) for p in spec.ports),
        env={k: _env_value(v) for k, v in spec.env.items()},
        restart_policy=RestartPolicy(restart),
        depends_on=frozenset(spec.depends_on),
        volumes=tuple(spec.volumes),
        command=command,
        serves_routes=spec.serves_routes,
    )


def parse_manifest(data: Any, base_dir: str = ".") -> Manifest:
    """Validate a manifest document and resolve it into a topology and rule table."""
    try:
        doc = ManifestDoc.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid manifest: {e}") from e
    try:
        validate_service_name(doc.project)
    except ValueError as e:
        raise ConfigurationError(f"Invalid project name {doc.project!r}.") from e

    topology = resolve([_descriptor(doc, s, base_dir) for s in doc.services], default_network=doc.default_network)
    routes = tuple(
        RoutingRule(path_prefix=r.prefix, target_service=r.service, target_port=r.port, strip_prefix=r.strip_prefix)
        for r in doc.routes
    )
    rules = build_rules(topology, routes)
    target = None
    if doc.target is not None:
        target = DeployTarget(
            host=doc.target.host,
            credentials_ref=doc.target.credentials_ref,
            remote_root_path=doc.target.remote_root_path,
            port=doc.target.port,
        )
    return Manifest(project=doc.project, registry=doc.registry, topology=topology, routes=routes, rules=rules, target=target)


def load_manifest(path: str) -> Manifest:
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Manifest {path} not found.") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Manifest {path} is not valid YAML: {e}") from e
    return parse_manifest(data, base_dir=os.path.dirname(os.path.abspath(path)))
