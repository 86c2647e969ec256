from __future__ import annotations

import time
from collections import defaultdict
from threading import Lock, Thread
from typing import Any, Callable

from . import db
from .alerts import send_email
from .collaborators import LoadBalancer, Platform, Probe
from .config import FleetConfig
from .errors import UnknownInstanceError
from .lifecycle import PROBED_STATES, LifecycleState, Registration, Verdict
from .monitor import MonitorRegistry
from .reconciler import CapacityReconciler
from .registrar import BackendRegistrar
from .repair import RepairController, Spawn
from .retry import Retrier
from .store import FleetStore, Instance, iso
from .tracker import HealthEvent, HealthTracker


def spawn_thread(fn: Callable[..., None], *args: Any) -> None:
    Thread(target=fn, args=args, daemon=True).start()


class FleetController:
    """Wires prober, tracker, repair, reconciler and registrar around one store.

    Health events for an instance are handled under a per-instance lock, so
    verdicts and grace expiry for the same instance are applied one at a time
    and in order. Different instances never wait on each other.
    """

    def __init__(
        self,
        platform: Platform,
        probe: Probe,
        lb: LoadBalancer,
        config: FleetConfig | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        spawn: Spawn = spawn_thread,
        threaded: bool = True,
    ):
        self.config = config or FleetConfig.from_settings()
        self.clock = clock
        self.platform = platform
        self.probe = probe
        self.lb = lb
        self._spawn = spawn
        self._config_lock = Lock()
        self._dispatch_guard = Lock()
        self._dispatch_locks: defaultdict[str, Lock] = defaultdict(Lock)

        self.store = FleetStore(clock=clock)
        self.tracker = HealthTracker(self.config.health)
        self.retrier = Retrier(self.config.backoff, sleep=sleep)
        self.registrar = BackendRegistrar(self.store, lb, self.retrier)
        self.monitors = MonitorRegistry(
            probe_once=self.probe_instance,
            on_grace_expired=self.on_grace_expired,
            interval_s=lambda: self.config.health.probe_interval_s,
            threaded=threaded,
        )
        self.repair = RepairController(
            self.store,
            self.registrar,
            platform,
            self.retrier,
            spawn=self._run_job,
            stop_monitoring=self.monitors.stop,
            on_removed=self._forget,
        )
        self.reconciler = CapacityReconciler(
            self.store,
            platform,
            self.retrier,
            self.registrar,
            self.repair,
            desired=lambda: self.config.desired,
            spawn=self._run_job,
            on_booted=self.start_monitoring,
            before_tick=self.check_grace_expiry,
            interval_s=lambda: self.config.reconcile_interval_s,
            clock=clock,
        )

    # --- lifecycle of the controller -----------------------------------------

    def start(self) -> None:
        self.reconciler.start()

    def stop(self) -> None:
        self.reconciler.stop()
        self.monitors.stop_all()
        self.retrier.shutdown()

    def reconcile_once(self) -> dict[str, list[str]]:
        return self.reconciler.tick()

    def _run_job(self, fn: Callable[..., None], *args: Any) -> None:
        def job() -> None:
            try:
                fn(*args)
            except Exception as e:
                db.log_event("ERROR", f"Background job {getattr(fn, '__name__', fn)} failed: {type(e).__name__}: {e}")

        self._spawn(job)

    # --- probing & health events ----------------------------------------------

    def start_monitoring(self, instance_id: str) -> None:
        if not self.store.try_transition(
            instance_id, LifecycleState.HEALTH_CHECK_PENDING, expect=frozenset({LifecycleState.BOOTING})
        ):
            return
        self.tracker.track(instance_id)
        self.monitors.start(instance_id)

    def probe_instance(self, instance_id: str) -> Verdict | None:
        """Run one health check for the instance and apply the verdict."""
        inst = self.store.get(instance_id)
        if inst is None or inst.handle is None or inst.lifecycle not in PROBED_STATES:
            return None
        try:
            verdict = self.probe.check(inst.handle)
        except Exception:
            verdict = Verdict.UNREACHABLE
        self.handle_verdict(instance_id, verdict)
        return verdict

    def handle_verdict(self, instance_id: str, verdict: Verdict) -> list[HealthEvent]:
        with self._dispatch_lock(instance_id):
            inst = self.store.get(instance_id)
            if inst is None or inst.lifecycle not in PROBED_STATES:
                return []
            events = self.tracker.observe(instance_id, verdict, self.clock())
            self._sync_health(instance_id)
            for ev in events:
                self._apply(instance_id, ev)
            return events

    def on_grace_expired(self, instance_id: str) -> None:
        """Grace timer callback."""
        with self._dispatch_lock(instance_id):
            for ev in self.tracker.expire(instance_id, self.clock()):
                self._sync_health(instance_id)
                self._apply(instance_id, ev)

    def check_grace_expiry(self) -> None:
        """Wall-clock sweep so a late or lost timer never delays a repair past one tick."""
        for instance_id in self.tracker.expire_due(self.clock()):
            with self._dispatch_lock(instance_id):
                self._sync_health(instance_id)
                self._apply(instance_id, HealthEvent.CONFIRMED_UNHEALTHY)

    def _sync_health(self, instance_id: str) -> None:
        state = self.tracker.state(instance_id)
        if state is not None:
            self.store.set_health(instance_id, state)

    def _apply(self, instance_id: str, event: HealthEvent) -> None:
        inst = self.store.get(instance_id)
        if inst is None:
            return

        if event == HealthEvent.BECAME_HEALTHY:
            self.monitors.cancel_grace(instance_id)
            recovered = inst.lifecycle == LifecycleState.GRACE_PERIOD
            if not self.store.try_transition(
                instance_id,
                LifecycleState.HEALTHY,
                expect=frozenset({LifecycleState.HEALTH_CHECK_PENDING, LifecycleState.GRACE_PERIOD}),
            ):
                return
            if recovered:
                db.log_event("INFO", "Instance recovered within grace period", instance_id=instance_id, domain=inst.domain)
                self._maybe_email(inst, ok=True, msg="Recovered")
            else:
                db.log_event("INFO", "Instance passed health checks", instance_id=instance_id, domain=inst.domain)
            self.registrar.register(instance_id)

        elif event == HealthEvent.ENTERED_GRACE:
            was_healthy = inst.lifecycle == LifecycleState.HEALTHY
            if not self.store.try_transition(
                instance_id,
                LifecycleState.UNHEALTHY,
                expect=frozenset({LifecycleState.HEALTHY, LifecycleState.HEALTH_CHECK_PENDING}),
            ):
                return
            if was_healthy:
                self.registrar.deregister(instance_id)
            self.store.transition(instance_id, LifecycleState.GRACE_PERIOD)
            grace = self.config.health.grace_period_s
            db.log_event(
                "WARN",
                f"Instance failing health checks, grace period of {grace:.0f}s started",
                instance_id=instance_id,
                domain=inst.domain,
            )
            if was_healthy:
                self._maybe_email(inst, ok=False, msg="Failing health checks")
            self.monitors.schedule_grace(instance_id, grace)

        elif event == HealthEvent.CONFIRMED_UNHEALTHY:
            self.monitors.cancel_grace(instance_id)
            self.repair.handle_confirmed_unhealthy(instance_id)

    def _dispatch_lock(self, instance_id: str) -> Lock:
        with self._dispatch_guard:
            return self._dispatch_locks[instance_id]

    def _forget(self, instance_id: str, domain: str) -> None:
        self.reconciler.note_removed(domain)
        self.monitors.stop(instance_id)
        self.tracker.forget(instance_id)
        self.registrar.forget(instance_id)
        with self._dispatch_guard:
            self._dispatch_locks.pop(instance_id, None)

    def _maybe_email(self, inst: Instance, ok: bool, msg: str) -> None:
        subject = f"{'RECOVERED' if ok else 'DOWN'}: {inst.id} ({inst.domain})"
        body = f"Instance: {inst.id}\nDomain: {inst.domain}\nStatus: {'UP' if ok else 'DOWN'}\nDetail: {msg}"
        send_email(subject, body)

    # --- operator surface -----------------------------------------------------

    def configure(self, **changes: Any) -> FleetConfig:
        """Apply configuration changes atomically. Raises ConfigurationError; nothing is applied then."""
        with self._config_lock:
            new = self.config.with_updates(**changes)
            self.config = new
            self.tracker.policy = new.health
            self.retrier.policy = new.backoff
            if hasattr(self.probe, "timeout_s"):
                self.probe.timeout_s = new.health.probe_timeout_s
            if hasattr(self.probe, "health_path"):
                self.probe.health_path = new.health.health_path
        applied = {k: v for k, v in changes.items() if v is not None}
        db.log_event("INFO", f"Configuration updated: {applied}")
        return new

    def drain(self, instance_id: str) -> bool:
        """Manual removal; the reconciler replaces the instance on its next tick."""
        if self.store.get(instance_id) is None:
            raise UnknownInstanceError(instance_id)
        return self.repair.drain(instance_id, reason="manual")

    def instance_status(self, instance_id: str) -> dict[str, Any]:
        inst = self.store.get(instance_id)
        if inst is None:
            raise UnknownInstanceError(instance_id)
        return self._instance_view(inst)

    def status(self, alerts: int = 20) -> dict[str, Any]:
        """Read-only view of the fleet."""
        snapshot = self.store.snapshot()
        desired = self.config.desired
        present = [i for i in snapshot if i.present]
        distribution = {d: 0 for d in desired.domains}
        for inst in present:
            distribution[inst.domain] = distribution.get(inst.domain, 0) + 1
        return {
            "capacity": desired.capacity,
            "domains": list(desired.domains),
            "present": len(present),
            "distribution": distribution,
            "instances": [self._instance_view(i) for i in snapshot],
            "backends": [i.id for i in snapshot if i.registration == Registration.REGISTERED],
            "alerts": db.latest_events(limit=alerts, level="ALERT"),
            "config": self.config.as_dict(),
        }

    def _instance_view(self, inst: Instance) -> dict[str, Any]:
        rec = self.tracker.get(inst.id)
        history = [{"ts": iso(ts), "verdict": v.value} for ts, v in list(rec.history)] if rec else []
        deadline = rec.grace_deadline if rec else None
        return {
            "id": inst.id,
            "domain": inst.domain,
            "lifecycle": inst.lifecycle.value,
            "health": inst.health.value,
            "registration": inst.registration.value,
            "created_at": iso(inst.created_at),
            "address": inst.handle.address if inst.handle else None,
            "stalled": inst.stalled,
            "grace_deadline": iso(deadline) if deadline else None,
            "history": history,
        }
