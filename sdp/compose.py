"""Render a resolved topology as a docker compose project.

Every service gets a fixed container name (``<project>-<service>``) so a
recreate swaps the container in place, and a ``sdp.config-hash`` label that
the deployer compares against the running container to decide whether the
service needs recreating.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping

import yaml

from .models import ImageReference, ServiceDescriptor, Topology

SERVICE_LABEL = "sdp.service"
HASH_LABEL = "sdp.config-hash"


@dataclass(frozen=True)
class DesiredService:
    name: str
    container_name: str
    image: str
    config_hash: str


@dataclass(frozen=True)
class RenderedBundle:
    compose: str
    router_config: str | None
    services: Mapping[str, DesiredService]


def container_name(project: str, service: str) -> str:
    return f"{project}-{service}"


def _digest(payload: Any) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def _service_entry(project: str, d: ServiceDescriptor) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "container_name": container_name(project, d.name),
        "restart": d.restart_policy.compose(),
        "networks": sorted(d.networks),
    }
    if d.command:
        entry["command"] = list(d.command)
    if d.ports:
        entry["ports"] = [p.compose() for p in d.ports]
    if d.env:
        entry["environment"] = {k: str(v) for k, v in sorted(d.env.items())}
    if d.volumes:
        entry["volumes"] = list(d.volumes)
    if d.depends_on:
        entry["depends_on"] = sorted(d.depends_on)
    return entry


def config_hash(project: str, d: ServiceDescriptor, router_config: str | None = None) -> str:
    """Hash of everything about a service except its image."""
    payload: dict[str, Any] = {"service": _service_entry(project, d)}
    if d.serves_routes and router_config is not None:
        payload["router"] = hashlib.sha256(router_config.encode("utf-8")).hexdigest()
    return _digest(payload)


def _named_volumes(topology: Topology) -> list[str]:
    names: list[str] = []
    for name in topology.order:
        for v in topology[name].volumes:
            src = v.split(":", 1)[0]
            if src and not src.startswith((".", "/", "~", "$")) and src not in names:
                names.append(src)
    return names


def render(
    project: str,
    topology: Topology,
    images: Mapping[str, ImageReference],
    router_config: str | None = None,
) -> RenderedBundle:
    """Render the compose file for ``topology`` running ``images``.

    ``images`` maps service name to the exact reference to run; services not
    in it run their declared image.
    """
    services: dict[str, Any] = {}
    desired: dict[str, DesiredService] = {}
    for name in topology.order:
        d = topology[name]
        image = str(images.get(name, d.image))
        chash = config_hash(project, d, router_config)
        entry = {"image": image, **_service_entry(project, d)}
        entry["labels"] = {SERVICE_LABEL: name, HASH_LABEL: chash}
        services[name] = entry
        desired[name] = DesiredService(name=name, container_name=entry["container_name"], image=image, config_hash=chash)

    doc: dict[str, Any] = {
        "name": project,
        "services": services,
        "networks": {net: {"name": f"{project}_{net}"} for net in sorted(topology.shared_networks)},
    }
    volumes = _named_volumes(topology)
    if volumes:
        doc["volumes"] = {v: {} for v in volumes}

    header = "# Generated by sdp from the deployment manifest. Do not edit on the host.\n"
    text = header + yaml.safe_dump(doc, default_flow_style=False, sort_keys=False, allow_unicode=True)
    return RenderedBundle(compose=text, router_config=router_config, services=desired)
