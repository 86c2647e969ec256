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


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("FLEET_DB_PATH", "fleet.db")
    reconcile_interval_s: float = _env_float("FLEET_RECONCILE_INTERVAL_S", 15.0)
    gateway_timeout_s: int = _env_int("FLEET_GATEWAY_TIMEOUT_S", 10)

    # Desired state
    capacity: int = _env_int("FLEET_CAPACITY", 2)
    domains: tuple[str, ...] = _env_list("FLEET_DOMAINS", "zone-a,zone-b,zone-c")

    # Health policy
    health_path: str = os.getenv("FLEET_HEALTH_PATH", "/health")
    probe_interval_s: float = _env_float("FLEET_PROBE_INTERVAL_S", 15.0)
    probe_timeout_s: float = _env_float("FLEET_PROBE_TIMEOUT_S", 5.0)
    grace_period_s: float = _env_float("FLEET_GRACE_PERIOD_S", 600.0)
    fail_threshold: int = _env_int("FLEET_FAIL_THRESHOLD", 2)
    pass_threshold: int = _env_int("FLEET_PASS_THRESHOLD", 2)
    history_size: int = _env_int("FLEET_HISTORY_SIZE", 10)

    # Collaborator calls
    backoff_base_s: float = _env_float("FLEET_BACKOFF_BASE_S", 5.0)
    backoff_factor: float = _env_float("FLEET_BACKOFF_FACTOR", 2.0)
    backoff_max_attempts: int = _env_int("FLEET_BACKOFF_MAX_ATTEMPTS", 5)
    call_timeout_s: float = _env_float("FLEET_CALL_TIMEOUT_S", 30.0)

    # Docker platform
    docker_network: str = os.getenv("FLEET_DOCKER_NETWORK", "fleet")
    image: str = os.getenv("FLEET_IMAGE", "fleet-instance:latest")
    internal_port: int = _env_int("FLEET_INTERNAL_PORT", 80)

    # API auth for mutating endpoints
    admin_user: str = os.getenv("FLEET_ADMIN_USER", "admin")
    admin_password: str = os.getenv("FLEET_ADMIN_PASSWORD", "change-me")

    # Email alerting (optional)
    enable_email: bool = _env_bool("FLEET_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("FLEET_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("FLEET_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("FLEET_SMTP_USER")
    smtp_password: str | None = os.getenv("FLEET_SMTP_PASSWORD")
    email_from: str | None = os.getenv("FLEET_EMAIL_FROM")
    email_to: str | None = os.getenv("FLEET_EMAIL_TO")


settings = Settings()
