from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from threading import Lock

from .config import HealthPolicy
from .lifecycle import HealthState, Verdict


class HealthEvent(str, Enum):
    BECAME_HEALTHY = "became_healthy"
    ENTERED_GRACE = "entered_grace"
    CONFIRMED_UNHEALTHY = "confirmed_unhealthy"


@dataclass
class HealthRecord:
    """Recent verdicts of one instance plus its debounced state."""

    history: deque[tuple[float, Verdict]]
    state: HealthState = HealthState.PENDING
    pass_streak: int = 0
    fail_streak: int = 0
    grace_deadline: float | None = None
    ever_healthy: bool = False

    def verdicts(self) -> list[Verdict]:
        return [v for _, v in self.history]


class HealthTracker:
    """Turns per-instance verdict streams into debounced health state.

    PENDING/HEALTHY --fail_threshold non-passes--> GRACE
    PENDING/GRACE   --pass_threshold passes-----> HEALTHY
    GRACE           --deadline passes-----------> UNHEALTHY (emitted once)

    Deadlines are compared with the caller's wall-clock time, never with the
    order in which verdicts arrive.
    """

    def __init__(self, policy: HealthPolicy):
        self.policy = policy
        self._lock = Lock()
        self._records: dict[str, HealthRecord] = {}

    def track(self, instance_id: str) -> HealthRecord:
        with self._lock:
            rec = self._records.get(instance_id)
            if rec is None:
                rec = HealthRecord(history=deque(maxlen=self.policy.history_size))
                self._records[instance_id] = rec
            return rec

    def forget(self, instance_id: str) -> None:
        with self._lock:
            self._records.pop(instance_id, None)

    def get(self, instance_id: str) -> HealthRecord | None:
        with self._lock:
            return self._records.get(instance_id)

    def state(self, instance_id: str) -> HealthState | None:
        rec = self.get(instance_id)
        return rec.state if rec else None

    def observe(self, instance_id: str, verdict: Verdict, now: float) -> list[HealthEvent]:
        """Record a verdict and return the events it caused (possibly none).

        Verdicts for instances that are not tracked (never started, or already
        forgotten) are dropped.
        """
        with self._lock:
            rec = self._records.get(instance_id)
            if rec is None:
                return []
            rec.history.append((now, verdict))

            events = self._expire_locked(rec, now)
            if rec.state == HealthState.UNHEALTHY:
                return events

            if verdict == Verdict.PASS:
                rec.pass_streak += 1
                rec.fail_streak = 0
            else:
                rec.fail_streak += 1
                rec.pass_streak = 0

            p = self.policy
            if rec.state in (HealthState.PENDING, HealthState.GRACE) and rec.pass_streak >= p.pass_threshold:
                rec.state = HealthState.HEALTHY
                rec.ever_healthy = True
                rec.grace_deadline = None
                rec.pass_streak = 0
                events.append(HealthEvent.BECAME_HEALTHY)
            elif rec.state in (HealthState.PENDING, HealthState.HEALTHY) and rec.fail_streak >= p.fail_threshold:
                rec.state = HealthState.GRACE
                rec.grace_deadline = now + p.grace_period_s
                rec.fail_streak = 0
                events.append(HealthEvent.ENTERED_GRACE)
            return events

    def expire(self, instance_id: str, now: float) -> list[HealthEvent]:
        """Confirm the instance unhealthy if its grace deadline has passed."""
        with self._lock:
            rec = self._records.get(instance_id)
            if rec is None:
                return []
            return self._expire_locked(rec, now)

    def expire_due(self, now: float) -> list[str]:
        """Ids whose grace period ran out by `now`; each is returned once per episode."""
        with self._lock:
            due = []
            for iid, rec in self._records.items():
                if self._expire_locked(rec, now):
                    due.append(iid)
            return due

    def _expire_locked(self, rec: HealthRecord, now: float) -> list[HealthEvent]:
        if rec.state != HealthState.GRACE or rec.grace_deadline is None:
            return []
        if now < rec.grace_deadline:
            return []
        rec.state = HealthState.UNHEALTHY
        return [HealthEvent.CONFIRMED_UNHEALTHY]
