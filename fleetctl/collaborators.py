"""Narrow interfaces to the systems the controller drives.

Implementations translate their library errors into TransientCollaboratorError
(retry) or ConflictError (already done).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .lifecycle import Verdict


@dataclass(frozen=True)
class InstanceHandle:
    """Platform-side reference to a running instance."""

    id: str
    name: str
    domain: str
    address: str  # base URL, e.g. http://fleet-zone-a-1f2e3d:80


class Platform(Protocol):
    def create_instance(self, domain: str) -> InstanceHandle: ...

    def delete_instance(self, handle: InstanceHandle) -> None: ...

    def list_instances(self) -> list[InstanceHandle]: ...


class Probe(Protocol):
    def check(self, handle: InstanceHandle) -> Verdict: ...


class LoadBalancer(Protocol):
    def register(self, handle: InstanceHandle) -> None: ...

    def deregister(self, handle: InstanceHandle) -> None: ...
