from __future__ import annotations

from collections import defaultdict
from threading import Lock

from . import db
from .alerts import fatal_alert
from .collaborators import LoadBalancer
from .lifecycle import LifecycleState, Registration
from .retry import Retrier
from .store import FleetStore


class BackendRegistrar:
    """Keeps backend pool membership equal to the set of HEALTHY instances.

    Calls for one instance are serialized by a per-instance lock so a register
    and a deregister can never overtake each other. Failures are alerted and
    left for the next reconciler tick; they never block a lifecycle transition.
    """

    def __init__(self, store: FleetStore, lb: LoadBalancer, retrier: Retrier):
        self.store = store
        self.lb = lb
        self.retrier = retrier
        self._locks: defaultdict[str, Lock] = defaultdict(Lock)
        self._locks_guard = Lock()

    def _lock_for(self, instance_id: str) -> Lock:
        with self._locks_guard:
            return self._locks[instance_id]

    def forget(self, instance_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(instance_id, None)

    def register(self, instance_id: str) -> bool:
        """Add a HEALTHY instance to the backend pool. Returns True if it is registered afterwards."""
        with self._lock_for(instance_id):
            inst = self.store.get(instance_id)
            if inst is None or inst.handle is None or inst.lifecycle != LifecycleState.HEALTHY:
                return False
            if inst.registration == Registration.REGISTERED:
                return True
            try:
                self.retrier.call("register", self.lb.register, inst.handle, instance_id=instance_id)
            except Exception as e:
                fatal_alert(f"Backend registration failed: {type(e).__name__}: {e}", instance_id=instance_id, domain=inst.domain)
                return False
            self.store.set_registration(instance_id, Registration.REGISTERED)
            db.log_event("INFO", "Registered with load balancer", instance_id=instance_id, domain=inst.domain)

            current = self.store.get(instance_id)
            if current is None or current.lifecycle != LifecycleState.HEALTHY:
                # Left HEALTHY while the call was in flight.
                self._deregister_locked(instance_id)
                return False
            return True

    def deregister(self, instance_id: str) -> bool:
        """Remove an instance from the backend pool. Returns True if it is not registered afterwards."""
        with self._lock_for(instance_id):
            return self._deregister_locked(instance_id)

    def _deregister_locked(self, instance_id: str) -> bool:
        inst = self.store.get(instance_id)
        if inst is None or inst.handle is None or inst.registration != Registration.REGISTERED:
            return True
        try:
            self.retrier.call("deregister", self.lb.deregister, inst.handle, instance_id=instance_id)
        except Exception as e:
            fatal_alert(f"Backend deregistration failed: {type(e).__name__}: {e}", instance_id=instance_id, domain=inst.domain)
            return False
        self.store.set_registration(instance_id, Registration.NOT_REGISTERED)
        db.log_event("INFO", "Deregistered from load balancer", instance_id=instance_id, domain=inst.domain)
        return True

    def sync(self) -> None:
        """Level-triggered correction: registered iff HEALTHY."""
        for inst in self.store.snapshot():
            healthy = inst.lifecycle == LifecycleState.HEALTHY
            registered = inst.registration == Registration.REGISTERED
            if healthy and not registered:
                self.register(inst.id)
            elif registered and not healthy:
                self.deregister(inst.id)
