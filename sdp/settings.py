from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("SDP_DB_PATH", "sdp.db")
    manifest_path: str = os.getenv("SDP_MANIFEST", "deploy.yml")
    parallelism: int = _env_int("SDP_PARALLELISM", 2)

    # Remote execution
    remote_timeout_s: int = _env_int("SDP_REMOTE_TIMEOUT_S", 120)
    remote_retries: int = _env_int("SDP_REMOTE_RETRIES", 3)
    remote_backoff_s: float = _env_float("SDP_REMOTE_BACKOFF_S", 1.0)
    ssh_strict_host_keys: bool = _env_bool("SDP_SSH_STRICT_HOST_KEYS", True)

    # Files written under the target's remote root
    compose_file_name: str = os.getenv("SDP_COMPOSE_FILE", "docker-compose.yml")
    router_file_name: str = os.getenv("SDP_ROUTER_FILE", "nginx.conf")

    # Public listener / health probe
    proxy_timeout_s: int = _env_int("SDP_PROXY_TIMEOUT_S", 10)
    backend_health_path: str = os.getenv("SDP_BACKEND_HEALTH_PATH", "/api/health")

    # Registry auth for pushes (optional)
    registry_user: str | None = os.getenv("SDP_REGISTRY_USER")
    registry_password: str | None = os.getenv("SDP_REGISTRY_PASSWORD")

    # Email alerting (optional)
    enable_email: bool = _env_bool("SDP_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("SDP_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("SDP_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("SDP_SMTP_USER")
    smtp_password: str | None = os.getenv("SDP_SMTP_PASSWORD")
    email_from: str | None = os.getenv("SDP_EMAIL_FROM")
    email_to: str | None = os.getenv("SDP_EMAIL_TO")


settings = Settings()
