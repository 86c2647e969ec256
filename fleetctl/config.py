from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any

from .errors import ConfigurationError
from .settings import Settings, settings as default_settings


DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9\-\._]{0,62}$")


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes cannot be pointed at arbitrary hosts.
    if not path.startswith("/"):
        raise ConfigurationError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ConfigurationError("health_path must be a simple absolute path (no scheme, no '..').")


@dataclass(frozen=True)
class FleetDesiredState:
    """Desired capacity and placement. Immutable for the duration of one reconciliation tick."""

    capacity: int
    domains: tuple[str, ...]

    def __post_init__(self) -> None:
        if int(self.capacity) < 2:
            raise ConfigurationError(f"capacity must be >= 2 (got {self.capacity}).")
        doms = tuple(self.domains)
        if not doms:
            raise ConfigurationError("at least one failure domain is required.")
        if len(set(doms)) != len(doms):
            raise ConfigurationError(f"duplicate failure domains: {list(doms)}")
        for d in doms:
            if not DOMAIN_RE.match(d):
                raise ConfigurationError(
                    f"invalid failure domain '{d}'. Use lowercase letters/numbers and -._ (max 63 chars)."
                )
        object.__setattr__(self, "capacity", int(self.capacity))
        object.__setattr__(self, "domains", tuple(sorted(doms)))


@dataclass(frozen=True)
class HealthPolicy:
    probe_interval_s: float = 15.0
    probe_timeout_s: float = 5.0
    grace_period_s: float = 600.0
    fail_threshold: int = 2
    pass_threshold: int = 2
    history_size: int = 10
    health_path: str = "/health"

    def __post_init__(self) -> None:
        if self.probe_interval_s <= 0:
            raise ConfigurationError("probe_interval_s must be > 0.")
        if not 0 < self.probe_timeout_s < self.probe_interval_s:
            raise ConfigurationError("probe_timeout_s must be > 0 and shorter than probe_interval_s.")
        if self.grace_period_s <= 0:
            raise ConfigurationError("grace_period_s must be > 0.")
        if self.fail_threshold < 1 or self.pass_threshold < 1:
            raise ConfigurationError("fail_threshold and pass_threshold must be >= 1.")
        if self.history_size < max(self.fail_threshold, self.pass_threshold):
            raise ConfigurationError("history_size must hold at least max(fail_threshold, pass_threshold) verdicts.")
        validate_health_path(self.health_path)


@dataclass(frozen=True)
class BackoffPolicy:
    base_s: float = 5.0
    factor: float = 2.0
    max_attempts: int = 5
    call_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if self.base_s < 0:
            raise ConfigurationError("backoff base must be >= 0.")
        if self.factor < 1:
            raise ConfigurationError("backoff factor must be >= 1.")
        if self.max_attempts < 1:
            raise ConfigurationError("backoff max_attempts must be >= 1.")
        if self.call_timeout_s <= 0:
            raise ConfigurationError("call_timeout_s must be > 0.")

    def delays(self) -> list[float]:
        """Sleep before each retry (one fewer than the number of attempts)."""
        return [self.base_s * (self.factor**i) for i in range(self.max_attempts - 1)]


# Flat names accepted by FleetConfig.with_updates(), mapped to (section, field).
_FLAT_FIELDS: dict[str, tuple[str, str]] = {
    "capacity": ("desired", "capacity"),
    "domains": ("desired", "domains"),
    "probe_interval_s": ("health", "probe_interval_s"),
    "probe_timeout_s": ("health", "probe_timeout_s"),
    "grace_period_s": ("health", "grace_period_s"),
    "fail_threshold": ("health", "fail_threshold"),
    "pass_threshold": ("health", "pass_threshold"),
    "history_size": ("health", "history_size"),
    "health_path": ("health", "health_path"),
    "backoff_base_s": ("backoff", "base_s"),
    "backoff_factor": ("backoff", "factor"),
    "backoff_max_attempts": ("backoff", "max_attempts"),
    "call_timeout_s": ("backoff", "call_timeout_s"),
}


@dataclass(frozen=True)
class FleetConfig:
    desired: FleetDesiredState
    health: HealthPolicy = field(default_factory=HealthPolicy)
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    reconcile_interval_s: float = 15.0

    def __post_init__(self) -> None:
        if self.reconcile_interval_s <= 0:
            raise ConfigurationError("reconcile_interval_s must be > 0.")

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> "FleetConfig":
        s = s or default_settings
        return cls(
            desired=FleetDesiredState(capacity=s.capacity, domains=s.domains),
            health=HealthPolicy(
                probe_interval_s=s.probe_interval_s,
                probe_timeout_s=s.probe_timeout_s,
                grace_period_s=s.grace_period_s,
                fail_threshold=s.fail_threshold,
                pass_threshold=s.pass_threshold,
                history_size=s.history_size,
                health_path=s.health_path,
            ),
            backoff=BackoffPolicy(
                base_s=s.backoff_base_s,
                factor=s.backoff_factor,
                max_attempts=s.backoff_max_attempts,
                call_timeout_s=s.call_timeout_s,
            ),
            reconcile_interval_s=s.reconcile_interval_s,
        )

    def with_updates(self, **changes: Any) -> "FleetConfig":
        """Return a new validated config. Raises ConfigurationError; self is never modified."""
        sections: dict[str, dict[str, Any]] = {"desired": {}, "health": {}, "backoff": {}}
        top: dict[str, Any] = {}
        for key, value in changes.items():
            if value is None:
                continue
            if key == "reconcile_interval_s":
                top[key] = value
            elif key in _FLAT_FIELDS:
                section, name = _FLAT_FIELDS[key]
                sections[section][name] = tuple(value) if name == "domains" else value
            else:
                raise ConfigurationError(f"unknown configuration key '{key}'.")
        try:
            return replace(
                self,
                desired=replace(self.desired, **sections["desired"]),
                health=replace(self.health, **sections["health"]),
                backoff=replace(self.backoff, **sections["backoff"]),
                **top,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(str(e)) from e

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"reconcile_interval_s": self.reconcile_interval_s}
        out["capacity"] = self.desired.capacity
        out["domains"] = list(self.desired.domains)
        for f in fields(self.health):
            out[f.name] = getattr(self.health, f.name)
        for key, (section, name) in _FLAT_FIELDS.items():
            if section == "backoff":
                out[key] = asdict(self.backoff)[name]
        return out
