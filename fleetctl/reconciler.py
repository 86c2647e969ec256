from __future__ import annotations

import time
from collections import Counter
from threading import Event, Lock, Thread
from typing import Callable, Iterable

from . import db
from .alerts import fatal_alert
from .collaborators import InstanceHandle, Platform
from .config import FleetDesiredState
from .errors import ExhaustedRetriesError
from .lifecycle import LifecycleState
from .registrar import BackendRegistrar
from .repair import RepairController, Spawn
from .retry import Retrier
from .store import FleetStore, Instance


def domain_occupancy(
    instances: Iterable[Instance], domains: Iterable[str], recently_removed: Iterable[str] = ()
) -> dict[str, int]:
    """Instances per eligible domain, counting everything not yet TERMINATED.

    In-flight removals still occupy their domain, and so do removals that
    finished since the previous placement, so a replacement goes somewhere
    else when there is a choice.
    """
    counts = {d: 0 for d in domains}
    for inst in instances:
        if inst.lifecycle != LifecycleState.TERMINATED and inst.domain in counts:
            counts[inst.domain] += 1
    for domain in recently_removed:
        if domain in counts:
            counts[domain] += 1
    return counts


def plan_placements(occupancy: dict[str, int], count: int) -> list[str]:
    """Pick a domain for each new instance: fewest instances first, ties by domain id."""
    counts = dict(occupancy)
    out: list[str] = []
    for _ in range(max(0, count)):
        domain = min(sorted(counts), key=lambda d: counts[d])
        counts[domain] += 1
        out.append(domain)
    return out


def plan_removals(present: list[Instance], domains: Iterable[str], count: int) -> list[Instance]:
    """Pick instances for voluntary removal.

    Instances in domains that are no longer eligible go first, then the most
    populated domain; within a domain the most recently created instance.
    Only instances that already have a platform handle can be picked.
    """
    eligible = set(domains)
    counts = Counter(i.domain for i in present)
    candidates = [i for i in present if i.handle is not None]
    chosen: list[Instance] = []
    for _ in range(max(0, count)):
        if not candidates:
            break
        pick = min(
            candidates,
            key=lambda i: (i.domain in eligible, -counts[i.domain], i.domain, -i.created_at, -i.seq),
        )
        candidates.remove(pick)
        counts[pick.domain] -= 1
        chosen.append(pick)
    return chosen


def imbalance(present: Iterable[Instance], domains: Iterable[str]) -> int:
    counts = domain_occupancy(present, domains)
    return max(counts.values()) - min(counts.values()) if counts else 0


class CapacityReconciler:
    """Continuously reconciles desired capacity and placement with the observed fleet.

    A tick is level-triggered and self-correcting: anything that failed is
    simply looked at again on the next tick. Create and delete commands run
    asynchronously (via `spawn`); a new instance is recorded as PROVISIONING
    before its create command is issued, so concurrent ticks never over-create.
    """

    def __init__(
        self,
        store: FleetStore,
        platform: Platform,
        retrier: Retrier,
        registrar: BackendRegistrar,
        repair: RepairController,
        desired: Callable[[], FleetDesiredState],
        spawn: Spawn,
        on_booted: Callable[[str], None],
        before_tick: Callable[[], None] = lambda: None,
        interval_s: Callable[[], float] = lambda: 15.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.platform = platform
        self.retrier = retrier
        self.registrar = registrar
        self.repair = repair
        self.desired = desired
        self.spawn = spawn
        self.on_booted = on_booted
        self.before_tick = before_tick
        self.interval_s = interval_s
        self.clock = clock
        self._stop = Event()
        self._thr: Thread | None = None
        self._creating: set[str] = set()
        self._recently_removed: list[str] = []
        self._lock = Lock()

    # --- loop ---------------------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            self._stop.wait(max(1.0, self.interval_s()))

    def tick(self) -> dict[str, list[str]]:
        desired = self.desired()
        for step in (self.before_tick, self.sync_inventory, self.repair.retry_stalled, self.registrar.sync):
            try:
                step()
            except Exception as e:
                db.log_event("ERROR", f"Reconcile step {getattr(step, '__name__', step)} failed: {type(e).__name__}: {e}")
        return self.reconcile_capacity(desired)

    # --- inventory ----------------------------------------------------------

    def sync_inventory(self) -> None:
        """Align the store with what the platform actually runs.

        Unknown instances are adopted (this is how a restarted controller with an
        empty store picks up its fleet); instances the platform no longer has are
        dropped from accounting.
        """
        started = self.clock()
        try:
            handles = self.retrier.call("list instances", self.platform.list_instances)
        except ExhaustedRetriesError as e:
            db.log_event("WARN", f"Inventory sync skipped: {e}")
            return
        if handles is None:
            return
        live = {h.id: h for h in handles}

        snapshot = self.store.snapshot()
        for inst in snapshot:
            if inst.handle is None or inst.handle.id in live:
                continue
            if inst.handle_at is not None and inst.handle_at < started:
                self.repair.handle_vanished(inst.id)

        with self._lock:
            creating = bool(self._creating)
        if creating or any(i.lifecycle == LifecycleState.PROVISIONING for i in snapshot):
            # A finished create may not have attached its handle yet.
            return
        for handle in handles:
            if self.store.find_by_handle(handle.id) is None:
                inst = self.store.add(handle.domain, lifecycle=LifecycleState.BOOTING, handle=handle)
                db.log_event("INFO", f"Adopted running instance {handle.name}", instance_id=inst.id, domain=inst.domain)
                self.on_booted(inst.id)

    def note_removed(self, domain: str) -> None:
        """Record a finished removal; its domain counts as occupied at the next capacity step."""
        with self._lock:
            self._recently_removed.append(domain)

    # --- capacity -----------------------------------------------------------

    def reconcile_capacity(self, desired: FleetDesiredState) -> dict[str, list[str]]:
        """Create or remove instances so that `present == capacity` and domains stay balanced.

        At most one kind of action per tick: fill a deficit, remove a surplus, or
        move one instance to rebalance. A tick therefore never creates and
        deletes in the same domain.
        """
        actions: dict[str, list[str]] = {"created": [], "removed": []}
        snapshot = self.store.snapshot()
        present = [i for i in snapshot if i.present]
        n = desired.capacity
        with self._lock:
            recent, self._recently_removed = self._recently_removed, []

        if len(present) < n:
            occupancy = domain_occupancy(snapshot, desired.domains, recently_removed=recent)
            for domain in plan_placements(occupancy, n - len(present)):
                inst = self.store.add(domain)
                actions["created"].append(inst.id)
                db.log_event("INFO", f"Scaling up: creating instance in {domain}", instance_id=inst.id, domain=domain)
                with self._lock:
                    self._creating.add(inst.id)
                self.spawn(self._create, inst.id, domain)
            return actions

        if len(present) > n:
            for inst in plan_removals(present, desired.domains, len(present) - n):
                if self.repair.drain(inst.id, reason="scale-down"):
                    actions["removed"].append(inst.id)
            return actions

        settled = all(i.lifecycle == LifecycleState.HEALTHY for i in snapshot)
        misplaced = any(i.domain not in desired.domains for i in present)
        if settled and (misplaced or imbalance(present, desired.domains) > 1):
            for inst in plan_removals(present, desired.domains, 1):
                if self.repair.drain(inst.id, reason="rebalance"):
                    actions["removed"].append(inst.id)
        return actions

    def _create(self, instance_id: str, domain: str) -> None:
        try:
            try:
                handle = self.retrier.call("create", self.platform.create_instance, domain, instance_id=instance_id)
            except Exception as e:
                # Exhausted retries, or an error the platform did not translate.
                fatal_alert(
                    f"Create failed, will retry on a later tick: {type(e).__name__}: {e}",
                    instance_id=instance_id,
                    domain=domain,
                )
                self._abandon(instance_id)
                return
            if handle is None:
                self._abandon(instance_id)
                return

            if self.store.get(instance_id) is None:
                # Removed while the create was in flight; do not leak the new instance.
                self._delete_orphan(instance_id, handle)
                return
            self.store.attach_handle(instance_id, handle)
            if not self.store.try_transition(
                instance_id, LifecycleState.BOOTING, expect=frozenset({LifecycleState.PROVISIONING})
            ):
                # Claimed for removal while provisioning.
                self.repair.delete_async(instance_id)
                return
            db.log_event("INFO", f"Instance {handle.name} created", instance_id=instance_id, domain=domain)
            self.on_booted(instance_id)
        finally:
            with self._lock:
                self._creating.discard(instance_id)

    def _abandon(self, instance_id: str) -> None:
        if self.store.try_transition(instance_id, LifecycleState.TERMINATING):
            self.repair.finish_removal(instance_id)

    def _delete_orphan(self, instance_id: str, handle: InstanceHandle) -> None:
        try:
            self.retrier.call("delete", self.platform.delete_instance, handle, instance_id=instance_id)
        except Exception as e:
            fatal_alert(f"Could not delete orphaned instance {handle.name}: {type(e).__name__}: {e}", instance_id=instance_id, domain=handle.domain)
