from __future__ import annotations

from threading import Lock

from .collaborators import InstanceHandle
from .errors import ConflictError


class NoHealthyBackends(Exception):
    pass


class BackendPool:
    """In-process load balancer: the set of backends traffic may be routed to.

    register/deregister follow the LoadBalancer collaborator contract
    (ConflictError when the pool already is in the requested state).
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._backends: dict[str, InstanceHandle] = {}
        self._rr_index = 0

    def register(self, handle: InstanceHandle) -> None:
        with self._lock:
            if handle.id in self._backends:
                raise ConflictError(f"{handle.name} already registered")
            self._backends[handle.id] = handle

    def deregister(self, handle: InstanceHandle) -> None:
        with self._lock:
            if self._backends.pop(handle.id, None) is None:
                raise ConflictError(f"{handle.name} not registered")

    def members(self) -> list[InstanceHandle]:
        with self._lock:
            return sorted(self._backends.values(), key=lambda h: h.id)

    def select_backend(self) -> InstanceHandle:
        """Round-robin across registered backends."""
        with self._lock:
            targets = sorted(self._backends.values(), key=lambda h: h.id)
            if not targets:
                raise NoHealthyBackends("No healthy backends registered.")
            i = self._rr_index % len(targets)
            self._rr_index = (i + 1) % len(targets)
            return targets[i]
