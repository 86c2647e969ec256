from __future__ import annotations

from threading import Event, Lock, Thread, Timer
from typing import Callable

from . import db


class InstanceMonitor:
    """One probing thread per instance.

    The thread sleeps on an Event between probes, so cancel() stops it at once
    (an in-flight probe finishes, its result is discarded by the caller because
    the instance is no longer in a probed state).
    """

    def __init__(self, instance_id: str, probe_once: Callable[[str], None], interval_s: Callable[[], float]):
        self.instance_id = instance_id
        self._probe_once = probe_once
        self._interval_s = interval_s
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._loop, name=f"probe-{self.instance_id}", daemon=True)
        self._thr.start()

    def cancel(self) -> None:
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._probe_once(self.instance_id)
            except Exception as e:
                db.log_event("ERROR", f"Probe cycle failed: {type(e).__name__}: {e}", instance_id=self.instance_id)
            self._stop.wait(max(0.1, self._interval_s()))


class MonitorRegistry:
    """Probing threads and grace-period timers, keyed by instance id."""

    def __init__(
        self,
        probe_once: Callable[[str], None],
        on_grace_expired: Callable[[str], None],
        interval_s: Callable[[], float],
        threaded: bool = True,
    ):
        self._probe_once = probe_once
        self._on_grace_expired = on_grace_expired
        self._interval_s = interval_s
        self._threaded = threaded
        self._lock = Lock()
        self._monitors: dict[str, InstanceMonitor] = {}
        self._timers: dict[str, Timer] = {}

    def start(self, instance_id: str) -> None:
        with self._lock:
            if instance_id in self._monitors:
                return
            mon = InstanceMonitor(instance_id, self._probe_once, self._interval_s)
            self._monitors[instance_id] = mon
        if self._threaded:
            mon.start()

    def monitored(self) -> list[str]:
        with self._lock:
            return sorted(self._monitors)

    def schedule_grace(self, instance_id: str, delay_s: float) -> None:
        self.cancel_grace(instance_id)
        t = Timer(max(0.0, delay_s), self._on_grace_expired, args=(instance_id,))
        t.daemon = True
        with self._lock:
            self._timers[instance_id] = t
        if self._threaded:
            t.start()

    def cancel_grace(self, instance_id: str) -> None:
        with self._lock:
            t = self._timers.pop(instance_id, None)
        if t is not None:
            t.cancel()

    def has_grace_timer(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._timers

    def stop(self, instance_id: str) -> None:
        """Cancel probing and any pending grace timer for the instance."""
        with self._lock:
            mon = self._monitors.pop(instance_id, None)
        if mon is not None:
            mon.cancel()
        self.cancel_grace(instance_id)

    def stop_all(self) -> None:
        for iid in self.monitored():
            self.stop(iid)
        with self._lock:
            timers = list(self._timers)
        for iid in timers:
            self.cancel_grace(iid)
