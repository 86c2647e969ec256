import threading

from fleetctl import db
from fleetctl.monitor import InstanceMonitor, MonitorRegistry


def test_monitor_thread_keeps_running_after_errors():
    calls = []
    done = threading.Event()

    def check_once(instance_id):
        calls.append(instance_id)
        if len(calls) >= 3:
            done.set()
        raise RuntimeError("store changed underneath")

    mon = InstanceMonitor("i-1", check_once, lambda: 0.01)
    mon.start()
    try:
        assert done.wait(5)
    finally:
        mon.cancel()

    errors = db.latest_events(level="ERROR")
    assert errors
    assert all(e["instance_id"] == "i-1" for e in errors)
    assert "Probe cycle failed: RuntimeError" in errors[0]["message"]


def test_stop_cancels_probing_and_grace_timer():
    registry = MonitorRegistry(
        probe_once=lambda _id: None,
        on_grace_expired=lambda _id: None,
        interval_s=lambda: 15.0,
        threaded=False,
    )
    registry.start("i-1")
    registry.schedule_grace("i-1", 600)
    assert registry.monitored() == ["i-1"]
    assert registry.has_grace_timer("i-1")

    registry.stop("i-1")
    assert registry.monitored() == []
    assert not registry.has_grace_timer("i-1")
