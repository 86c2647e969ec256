from __future__ import annotations

from threading import Lock
from typing import Callable

from . import db
from .alerts import fatal_alert
from .collaborators import Platform
from .lifecycle import LifecycleState, Registration
from .registrar import BackendRegistrar
from .retry import Retrier
from .store import FleetStore

Spawn = Callable[..., None]


class RepairController:
    """Terminates instances: failed ones (repair) and surplus ones (drain).

    A removal is started at most once per instance: the store's atomic claim
    decides who wins, so duplicate ConfirmedUnhealthy events or a repair racing
    a scale-down issue a single delete. Deregistration always completes (or is
    alerted) before the delete command is sent.
    """

    def __init__(
        self,
        store: FleetStore,
        registrar: BackendRegistrar,
        platform: Platform,
        retrier: Retrier,
        spawn: Spawn,
        stop_monitoring: Callable[[str], None] = lambda _id: None,
        on_removed: Callable[[str, str], None] = lambda _id, _domain: None,
    ):
        self.store = store
        self.registrar = registrar
        self.platform = platform
        self.retrier = retrier
        self.spawn = spawn
        self.stop_monitoring = stop_monitoring
        self.on_removed = on_removed
        self._deleting: set[str] = set()
        self._lock = Lock()

    def handle_confirmed_unhealthy(self, instance_id: str) -> bool:
        """Start replacing a confirmed-unhealthy instance. Returns False for duplicates."""
        claimed = self.store.claim_for_removal(instance_id, voluntary=False)
        if claimed is None:
            return False
        inst = self.store.get(instance_id)
        db.log_event(
            "ERROR",
            "Self-healing: grace period expired, terminating instance",
            instance_id=instance_id,
            domain=inst.domain if inst else None,
        )
        self.stop_monitoring(instance_id)
        self.registrar.deregister(instance_id)
        self.delete_async(instance_id)
        return True

    def drain(self, instance_id: str, reason: str = "scale-down") -> bool:
        """Voluntary removal. HEALTHY instances pass through DRAINING first."""
        claimed = self.store.claim_for_removal(instance_id, voluntary=True)
        if claimed is None:
            return False
        inst = self.store.get(instance_id)
        db.log_event("INFO", f"Removing instance ({reason})", instance_id=instance_id, domain=inst.domain if inst else None)
        self.stop_monitoring(instance_id)
        self.registrar.deregister(instance_id)
        if claimed == LifecycleState.DRAINING:
            self.store.transition(instance_id, LifecycleState.TERMINATING)
        self.delete_async(instance_id)
        return True

    def handle_vanished(self, instance_id: str) -> None:
        """The platform lost the instance on its own (host failure, manual delete)."""
        claimed = self.store.claim_for_removal(instance_id, voluntary=True)
        inst = self.store.get(instance_id)
        if inst is None:
            return
        if claimed is None and inst.lifecycle != LifecycleState.TERMINATING:
            return
        with self._lock:
            if instance_id in self._deleting:
                return
        db.log_event("WARN", "Instance disappeared from the platform", instance_id=instance_id, domain=inst.domain)
        self.stop_monitoring(instance_id)
        self.registrar.deregister(instance_id)
        if claimed == LifecycleState.DRAINING:
            self.store.transition(instance_id, LifecycleState.TERMINATING)
        self.finish_removal(instance_id)

    def retry_stalled(self) -> None:
        """Re-issue deletes for TERMINATING instances whose last attempt gave up."""
        for inst in self.store.snapshot():
            if inst.lifecycle == LifecycleState.TERMINATING and inst.stalled:
                self.delete_async(inst.id)

    def delete_async(self, instance_id: str) -> None:
        with self._lock:
            if instance_id in self._deleting:
                return
            self._deleting.add(instance_id)
        self.spawn(self._delete, instance_id)

    def _delete(self, instance_id: str) -> None:
        try:
            inst = self.store.get(instance_id)
            if inst is None or inst.lifecycle != LifecycleState.TERMINATING:
                return
            if inst.handle is not None:
                try:
                    self.retrier.call("delete", self.platform.delete_instance, inst.handle, instance_id=instance_id)
                except Exception as e:
                    # Exhausted retries, or an error the platform did not translate.
                    reason = f"{type(e).__name__}: {e}"
                    self.store.set_stalled(instance_id, reason)
                    fatal_alert(
                        f"Delete failed, instance left TERMINATING until it can be removed: {reason}",
                        instance_id=instance_id,
                        domain=inst.domain,
                    )
                    return
            self.finish_removal(instance_id)
        finally:
            with self._lock:
                self._deleting.discard(instance_id)

    def finish_removal(self, instance_id: str) -> None:
        """The platform no longer has the instance: drop it from accounting."""
        inst = self.store.get(instance_id)
        if inst is None:
            return
        if inst.registration == Registration.REGISTERED and not self.registrar.deregister(instance_id):
            fatal_alert("Instance removed while still registered with the load balancer", instance_id=instance_id, domain=inst.domain)
        self.store.set_stalled(instance_id, None)
        self.store.transition(instance_id, LifecycleState.TERMINATED)
        self.store.remove(instance_id)
        self.on_removed(instance_id, inst.domain)
        db.log_event("INFO", "Instance terminated", instance_id=instance_id, domain=inst.domain)
