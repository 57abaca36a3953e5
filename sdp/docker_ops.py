from __future__ import annotations

import os
import re
from typing import Any

import docker
from docker.errors import APIError, BuildError as DockerBuildError, DockerException, ImageNotFound

from .db import log_event
from .errors import BuildError, PublishError
from .models import BuildSource, ImageReference
from .settings import settings


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-_]{0,62}$")


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers, '-' and '_', starting with a letter (max 63 chars)."
        )


def _client() -> docker.DockerClient:
    return docker.from_env()


def _last_log_line(logs: Any) -> str:
    last = ""
    for chunk in logs or []:
        if isinstance(chunk, dict):
            text = chunk.get("stream") or chunk.get("error") or ""
            if text.strip():
                last = text.strip()
    return last


class DockerImageBuilder:
    """Builds images from a local build context with the Docker daemon."""

    def __init__(self, client_factory=_client):
        self._client_factory = client_factory

    def build(self, service: str, source: BuildSource, tags: list[ImageReference]) -> str:
        """Build ``source`` and tag the result with every reference in ``tags``.

        Returns the image id.
        """
        if not tags:
            raise BuildError(f"{service}: no tags to build")
        if not os.path.isdir(source.context_path):
            raise BuildError(f"{service}: build context {source.context_path} does not exist")
        try:
            c = self._client_factory()
            image, logs = c.images.build(path=source.context_path, tag=str(tags[0]), rm=True, pull=True)
            for ref in tags[1:]:
                image.tag(ref.name, tag=ref.tag)
        except DockerBuildError as e:
            raise BuildError(f"{service}: {e.msg} ({_last_log_line(e.build_log)})") from e
        except (APIError, DockerException) as e:
            raise BuildError(f"{service}: {e}") from e
        log_event("INFO", f"Built image {tags[0]} ({_last_log_line(logs) or 'ok'})", service_name=service)
        return image.id


class DockerImagePublisher:
    """Pushes tagged images to their registry."""

    def __init__(self, client_factory=_client):
        self._client_factory = client_factory

    def _auth(self) -> dict[str, str] | None:
        if settings.registry_user and settings.registry_password:
            return {"username": settings.registry_user, "password": settings.registry_password}
        return None

    def push(self, ref: ImageReference) -> None:
        try:
            c = self._client_factory()
            c.images.get(str(ref))
            stream = c.images.push(ref.name, tag=ref.tag, stream=True, decode=True, auth_config=self._auth())
            for line in stream:
                if isinstance(line, dict) and line.get("error"):
                    raise PublishError(f"{ref}: {line['error']}")
        except ImageNotFound as e:
            raise PublishError(f"{ref}: image not found locally") from e
        except (APIError, DockerException) as e:
            raise PublishError(f"{ref}: {e}") from e
        log_event("INFO", f"Pushed {ref}")
