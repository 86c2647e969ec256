from fleetctl.config import HealthPolicy
from fleetctl.lifecycle import HealthState, Verdict
from fleetctl.tracker import HealthEvent, HealthTracker

P, F, U = Verdict.PASS, Verdict.FAIL, Verdict.UNREACHABLE
T0 = 1000.0


def _healthy_tracker(iid: str = "i-1") -> HealthTracker:
    t = HealthTracker(HealthPolicy())
    t.track(iid)
    t.observe(iid, P, T0)
    assert t.observe(iid, P, T0 + 15) == [HealthEvent.BECAME_HEALTHY]
    return t


def test_pending_needs_consecutive_passes():
    t = HealthTracker(HealthPolicy())
    t.track("i-1")
    assert t.observe("i-1", P, T0) == []
    assert t.state("i-1") == HealthState.PENDING
    assert t.observe("i-1", F, T0 + 15) == []
    assert t.observe("i-1", P, T0 + 30) == []
    assert t.observe("i-1", P, T0 + 45) == [HealthEvent.BECAME_HEALTHY]
    assert t.state("i-1") == HealthState.HEALTHY


def test_single_fail_then_pass_is_suppressed():
    t = _healthy_tracker()
    assert t.observe("i-1", F, T0 + 30) == []
    assert t.observe("i-1", P, T0 + 45) == []
    assert t.observe("i-1", U, T0 + 60) == []
    assert t.observe("i-1", P, T0 + 75) == []
    assert t.state("i-1") == HealthState.HEALTHY


def test_consecutive_failures_enter_grace():
    t = _healthy_tracker()
    t.observe("i-1", F, T0 + 30)
    assert t.observe("i-1", U, T0 + 45) == [HealthEvent.ENTERED_GRACE]
    rec = t.get("i-1")
    assert rec.state == HealthState.GRACE
    assert rec.grace_deadline == T0 + 45 + 600


def test_recovery_within_grace():
    t = _healthy_tracker()
    t.observe("i-1", F, T0 + 30)
    t.observe("i-1", F, T0 + 45)
    assert t.observe("i-1", P, T0 + 60) == []
    assert t.observe("i-1", F, T0 + 75) == []
    assert t.observe("i-1", P, T0 + 90) == []
    assert t.observe("i-1", P, T0 + 105) == [HealthEvent.BECAME_HEALTHY]
    assert t.get("i-1").grace_deadline is None


def test_expiry_is_emitted_once():
    t = _healthy_tracker()
    t.observe("i-1", F, T0 + 30)
    t.observe("i-1", F, T0 + 45)

    assert t.expire("i-1", T0 + 600) == []
    assert t.expire("i-1", T0 + 645) == [HealthEvent.CONFIRMED_UNHEALTHY]
    assert t.expire("i-1", T0 + 700) == []
    assert t.expire_due(T0 + 800) == []
    assert t.observe("i-1", F, T0 + 900) == []
    assert t.state("i-1") == HealthState.UNHEALTHY


def test_late_pass_does_not_rescue_expired_grace():
    t = _healthy_tracker()
    t.observe("i-1", F, T0 + 30)
    t.observe("i-1", F, T0 + 45)
    # Delivered after the deadline: wall-clock time wins over arrival order.
    assert t.observe("i-1", P, T0 + 700) == [HealthEvent.CONFIRMED_UNHEALTHY]
    assert t.observe("i-1", P, T0 + 715) == []


def test_slow_start_failure_uses_grace_period():
    t = HealthTracker(HealthPolicy())
    t.track("i-1")
    t.observe("i-1", U, T0)
    assert t.observe("i-1", U, T0 + 15) == [HealthEvent.ENTERED_GRACE]
    t.observe("i-1", P, T0 + 30)
    assert t.observe("i-1", P, T0 + 45) == [HealthEvent.BECAME_HEALTHY]
    assert t.get("i-1").ever_healthy


def test_expire_due_lists_each_instance_once():
    t = HealthTracker(HealthPolicy(grace_period_s=60))
    for iid in ("i-1", "i-2", "i-3"):
        t.track(iid)
        t.observe(iid, F, T0)
        t.observe(iid, F, T0 + 15)
    t.observe("i-3", P, T0 + 20)
    t.observe("i-3", P, T0 + 25)

    assert sorted(t.expire_due(T0 + 80)) == ["i-1", "i-2"]
    assert t.expire_due(T0 + 90) == []


def test_history_is_a_bounded_ring():
    t = HealthTracker(HealthPolicy(history_size=3))
    t.track("i-1")
    for i, v in enumerate([P, F, U, P]):
        t.observe("i-1", v, T0 + i)
    assert t.get("i-1").verdicts() == [F, U, P]


def test_untracked_and_forgotten_instances_are_ignored():
    t = HealthTracker(HealthPolicy())
    assert t.observe("i-9", F, T0) == []
    assert t.get("i-9") is None

    t.track("i-1")
    t.forget("i-1")
    assert t.observe("i-1", P, T0) == []
    assert t.get("i-1") is None


def test_thresholds_are_tunable():
    t = HealthTracker(HealthPolicy(fail_threshold=3, pass_threshold=1))
    t.track("i-1")
    assert t.observe("i-1", P, T0) == [HealthEvent.BECAME_HEALTHY]
    assert t.observe("i-1", F, T0 + 1) == []
    assert t.observe("i-1", F, T0 + 2) == []
    assert t.observe("i-1", F, T0 + 3) == [HealthEvent.ENTERED_GRACE]
    assert t.observe("i-1", P, T0 + 4) == [HealthEvent.BECAME_HEALTHY]
