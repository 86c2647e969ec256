import time
from dataclasses import replace

from conftest import JobQueue, assert_registration_invariant, healthy_handles, make_config, probe_all

from fleetctl import db
from fleetctl.controller import FleetController
from fleetctl.lifecycle import LifecycleState as L
from fleetctl.lifecycle import Verdict

P, F, U = Verdict.PASS, Verdict.FAIL, Verdict.UNREACHABLE


def test_failed_instance_is_replaced_in_least_populated_domain(make_controller, platform, probe, pool, clock, journal):
    queue = JobQueue()
    ctl = make_controller(capacity=2, spawn=queue)

    clock.advance(1)
    ctl.reconcile_once()
    queue.run_all()
    assert sorted(platform.created) == ["zone-a", "zone-b"]

    probe_all(ctl, rounds=2)
    assert len(pool.members()) == 2
    victim = next(i for i in ctl.store.present() if i.domain == "zone-a")

    # Two failures, then a lone pass that is not enough to recover, then a timeout.
    probe.script(victim.handle.id, F, F, P, U)
    for _ in range(4):
        clock.advance(15)
        probe_all(ctl)
    assert ctl.store.get(victim.id).lifecycle == L.GRACE_PERIOD
    assert victim.handle not in pool.members()

    clock.advance(600)
    actions = ctl.reconcile_once()

    # The terminating instance still occupies zone-a, so the replacement lands in zone-c.
    assert len(actions["created"]) == 1
    assert ctl.store.get(actions["created"][0]).domain == "zone-c"
    assert ctl.store.get(victim.id).lifecycle == L.TERMINATING

    queue.run_all()
    probe_all(ctl, rounds=2)

    assert journal.index(("deregister", victim.handle.id)) < journal.index(("delete", victim.handle.id))
    assert ctl.store.get(victim.id) is None
    present = ctl.store.present()
    assert sorted(i.domain for i in present) == ["zone-b", "zone-c"]
    assert all(i.lifecycle == L.HEALTHY for i in present)
    assert_registration_invariant(ctl, pool)

    status = ctl.status()
    assert status["present"] == 2
    assert status["distribution"] == {"zone-a": 0, "zone-b": 1, "zone-c": 1}
    assert any("grace period expired" in e["message"] for e in db.latest_events(level="ERROR"))


def _wait_for(predicate, timeout_s: float = 15.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def test_threaded_controller_heals_the_fleet(platform, probe, pool):
    config = replace(
        make_config(capacity=2, probe_interval_s=0.1, probe_timeout_s=0.05, grace_period_s=0.5),
        reconcile_interval_s=0.5,
    )
    ctl = FleetController(platform, probe, pool, config=config)
    ctl.start()
    try:
        assert _wait_for(lambda: len(healthy_handles(ctl)) == 2 and len(pool.members()) == 2)
        victim = ctl.store.present()[0]
        probe.defaults[victim.handle.id] = F

        assert _wait_for(lambda: ctl.store.get(victim.id) is None)
        assert victim.handle.id in platform.deleted
        assert _wait_for(lambda: len(healthy_handles(ctl)) == 2 and len(pool.members()) == 2)
        assert victim.handle not in pool.members()
    finally:
        ctl.stop()
