from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import RLock
from typing import Callable

from .collaborators import InstanceHandle
from .errors import FleetError, IllegalTransitionError, UnknownInstanceError
from .lifecycle import REMOVAL_STATES, HealthState, LifecycleState, Registration, can_transition


def new_instance_id() -> str:
    return f"i-{secrets.token_hex(6)}"


def iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Instance:
    """Snapshot of one instance. The store hands out copies; only the store replaces them."""

    id: str
    domain: str
    lifecycle: LifecycleState
    created_at: float
    seq: int
    health: HealthState = HealthState.PENDING
    registration: Registration = Registration.NOT_REGISTERED
    handle: InstanceHandle | None = None
    handle_at: float | None = None
    stalled: str | None = None

    @property
    def present(self) -> bool:
        return self.lifecycle not in REMOVAL_STATES


class FleetStore:
    """Authoritative in-memory record of the fleet.

    Single mutation discipline: every change goes through a method of this class
    under one lock, and the lock is never held across a collaborator call.
    Lifecycle changes are checked against the transition table.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = RLock()
        self._instances: dict[str, Instance] = {}
        self._retired: set[str] = set()
        self._seq = 0

    # --- creation / removal -------------------------------------------------

    def add(
        self,
        domain: str,
        lifecycle: LifecycleState = LifecycleState.PROVISIONING,
        handle: InstanceHandle | None = None,
        instance_id: str | None = None,
    ) -> Instance:
        with self._lock:
            iid = instance_id or new_instance_id()
            while instance_id is None and (iid in self._instances or iid in self._retired):
                iid = new_instance_id()
            if iid in self._instances or iid in self._retired:
                raise FleetError(f"Instance id '{iid}' was already used.")
            self._seq += 1
            now = self._clock()
            inst = Instance(
                id=iid,
                domain=domain,
                lifecycle=lifecycle,
                created_at=now,
                seq=self._seq,
                handle=handle,
                handle_at=now if handle else None,
            )
            self._instances[iid] = inst
            return inst

    def remove(self, instance_id: str) -> Instance:
        """Drop a TERMINATED instance. Its id is retired for good."""
        with self._lock:
            inst = self._require(instance_id)
            if inst.lifecycle != LifecycleState.TERMINATED:
                raise IllegalTransitionError(instance_id, inst.lifecycle, "removed")
            del self._instances[instance_id]
            self._retired.add(instance_id)
            return inst

    # --- lifecycle ----------------------------------------------------------

    def transition(self, instance_id: str, target: LifecycleState) -> Instance:
        with self._lock:
            inst = self._require(instance_id)
            if not can_transition(inst.lifecycle, target):
                raise IllegalTransitionError(instance_id, inst.lifecycle.value, target.value)
            return self._put(replace(inst, lifecycle=target))

    def try_transition(self, instance_id: str, target: LifecycleState, expect: frozenset[LifecycleState] | None = None) -> bool:
        """Transition if legal (and, when given, only from one of `expect`). Returns whether it happened."""
        with self._lock:
            inst = self._instances.get(instance_id)
            if inst is None:
                return False
            if expect is not None and inst.lifecycle not in expect:
                return False
            if not can_transition(inst.lifecycle, target):
                return False
            self._put(replace(inst, lifecycle=target))
            return True

    def claim_for_removal(self, instance_id: str, voluntary: bool = False) -> LifecycleState | None:
        """Atomically start removing an instance.

        HEALTHY instances go to DRAINING when removal is voluntary; anything else
        that can, goes straight to TERMINATING. Returns the new state, or None if
        the instance is unknown or already being removed, so a removal is only
        ever started once.
        """
        with self._lock:
            inst = self._instances.get(instance_id)
            if inst is None or inst.lifecycle in REMOVAL_STATES or inst.lifecycle == LifecycleState.DRAINING:
                return None
            if inst.lifecycle == LifecycleState.HEALTHY:
                if not voluntary:
                    return None
                target = LifecycleState.DRAINING
            else:
                target = LifecycleState.TERMINATING
            if not can_transition(inst.lifecycle, target):
                return None
            self._put(replace(inst, lifecycle=target))
            return target

    # --- attributes ---------------------------------------------------------

    def attach_handle(self, instance_id: str, handle: InstanceHandle) -> Instance:
        with self._lock:
            inst = self._require(instance_id)
            return self._put(replace(inst, handle=handle, handle_at=self._clock()))

    def set_health(self, instance_id: str, health: HealthState) -> None:
        with self._lock:
            inst = self._instances.get(instance_id)
            if inst is not None:
                self._put(replace(inst, health=health))

    def set_registration(self, instance_id: str, registration: Registration) -> None:
        with self._lock:
            inst = self._instances.get(instance_id)
            if inst is not None:
                self._put(replace(inst, registration=registration))

    def set_stalled(self, instance_id: str, reason: str | None) -> None:
        with self._lock:
            inst = self._instances.get(instance_id)
            if inst is not None:
                self._put(replace(inst, stalled=reason))

    # --- queries ------------------------------------------------------------

    def get(self, instance_id: str) -> Instance | None:
        with self._lock:
            return self._instances.get(instance_id)

    def snapshot(self) -> list[Instance]:
        with self._lock:
            return sorted(self._instances.values(), key=lambda i: i.seq)

    def present(self) -> list[Instance]:
        return [i for i in self.snapshot() if i.present]

    def is_retired(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._retired

    def find_by_handle(self, handle_id: str) -> Instance | None:
        with self._lock:
            for inst in self._instances.values():
                if inst.handle is not None and inst.handle.id == handle_id:
                    return inst
            return None

    def _require(self, instance_id: str) -> Instance:
        inst = self._instances.get(instance_id)
        if inst is None:
            raise UnknownInstanceError(instance_id)
        return inst

    def _put(self, inst: Instance) -> Instance:
        self._instances[inst.id] = inst
        return inst
