from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ConfigUpdateRequest(BaseModel):
    capacity: int | None = Field(None, ge=2, le=1000, description="Desired number of instances (N >= 2)")
    domains: list[str] | None = Field(None, min_length=1, description="Eligible failure domains")
    probe_interval_s: float | None = Field(None, gt=0, le=3600)
    probe_timeout_s: float | None = Field(None, gt=0, le=600, description="Must be shorter than the probe interval")
    grace_period_s: float | None = Field(None, gt=0, le=86400)
    fail_threshold: int | None = Field(None, ge=1, le=100, description="Consecutive failing probes to enter the grace period")
    pass_threshold: int | None = Field(None, ge=1, le=100, description="Consecutive passing probes to become healthy")
    history_size: int | None = Field(None, ge=1, le=1000)
    health_path: str | None = None
    backoff_base_s: float | None = Field(None, ge=0, le=3600)
    backoff_factor: float | None = Field(None, ge=1, le=10)
    backoff_max_attempts: int | None = Field(None, ge=1, le=20)
    call_timeout_s: float | None = Field(None, gt=0, le=600)
    reconcile_interval_s: float | None = Field(None, gt=0, le=3600)


class VerdictEntry(BaseModel):
    ts: str
    verdict: str


class InstanceStatus(BaseModel):
    id: str
    domain: str
    lifecycle: str
    health: str
    registration: str
    created_at: str
    address: str | None = None
    stalled: str | None = None
    grace_deadline: str | None = None
    history: list[VerdictEntry] = []


class FleetStatus(BaseModel):
    capacity: int
    domains: list[str]
    present: int
    distribution: dict[str, int]
    instances: list[InstanceStatus]
    backends: list[str]
    alerts: list[dict[str, Any]]
    config: dict[str, Any]


class DrainResponse(BaseModel):
    id: str
    draining: bool
