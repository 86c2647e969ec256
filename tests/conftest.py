import os as _os
import sys
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import main`, `import cli` and `import services...` work)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fleetctl import db  # noqa: E402
from fleetctl.collaborators import InstanceHandle  # noqa: E402
from fleetctl.config import BackoffPolicy, FleetConfig, FleetDesiredState, HealthPolicy  # noqa: E402
from fleetctl.controller import FleetController  # noqa: E402
from fleetctl.errors import ConflictError, TransientCollaboratorError  # noqa: E402
from fleetctl.gateway import BackendPool  # noqa: E402
from fleetctl.lifecycle import LifecycleState, Verdict  # noqa: E402

DOMAINS = ("zone-a", "zone-b", "zone-c")


@pytest.fixture(autouse=True)
def event_log(tmp_path, monkeypatch):
    """Isolated sqlite event log per test."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "fleet.db")))
    db.init_db()


class ManualClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePlatform:
    """In-memory platform. `journal` is shared with the load balancer to check call ordering."""

    def __init__(self, journal: list):
        self.journal = journal
        self.instances: dict[str, InstanceHandle] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.fail_create = 0
        self.fail_delete = 0
        self._n = 0

    def add_running(self, domain: str) -> InstanceHandle:
        self._n += 1
        h = InstanceHandle(
            id=f"h-{self._n}",
            name=f"fleet-{domain}-{self._n}",
            domain=domain,
            address=f"http://fleet-{domain}-{self._n}:80",
        )
        self.instances[h.id] = h
        return h

    def create_instance(self, domain: str) -> InstanceHandle:
        if self.fail_create:
            self.fail_create -= 1
            raise TransientCollaboratorError("create refused")
        h = self.add_running(domain)
        self.created.append(domain)
        self.journal.append(("create", h.id))
        return h

    def delete_instance(self, handle: InstanceHandle) -> None:
        self.journal.append(("delete", handle.id))
        if self.fail_delete:
            self.fail_delete -= 1
            raise TransientCollaboratorError("delete refused")
        if handle.id not in self.instances:
            raise ConflictError(f"{handle.id} already gone")
        del self.instances[handle.id]
        self.deleted.append(handle.id)

    def list_instances(self) -> list[InstanceHandle]:
        return list(self.instances.values())


class RecordingPool(BackendPool):
    def __init__(self, journal: list):
        super().__init__()
        self.journal = journal
        self.fail_register = 0

    def register(self, handle: InstanceHandle) -> None:
        self.journal.append(("register", handle.id))
        if self.fail_register:
            self.fail_register -= 1
            raise TransientCollaboratorError("lb unavailable")
        super().register(handle)

    def deregister(self, handle: InstanceHandle) -> None:
        self.journal.append(("deregister", handle.id))
        super().deregister(handle)


class ScriptedProbe:
    """Returns scripted verdicts per handle id, then the handle's default (PASS unless set)."""

    def __init__(self):
        self.scripts: dict[str, list[Verdict]] = {}
        self.defaults: dict[str, Verdict] = {}
        self.checked: list[str] = []

    def script(self, handle_id: str, *verdicts: Verdict) -> None:
        self.scripts.setdefault(handle_id, []).extend(verdicts)

    def check(self, handle: InstanceHandle) -> Verdict:
        self.checked.append(handle.id)
        queue = self.scripts.get(handle.id)
        if queue:
            return queue.pop(0)
        return self.defaults.get(handle.id, Verdict.PASS)


class JobQueue:
    """Spawn function that defers jobs until run_all()."""

    def __init__(self):
        self.jobs: list = []

    def __call__(self, fn, *args) -> None:
        self.jobs.append((fn, args))

    def run_all(self) -> int:
        n = 0
        while self.jobs:
            fn, args = self.jobs.pop(0)
            fn(*args)
            n += 1
        return n


def inline_spawn(fn, *args) -> None:
    fn(*args)


@pytest.fixture
def journal():
    return []


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def platform(journal):
    return FakePlatform(journal)


@pytest.fixture
def pool(journal):
    return RecordingPool(journal)


@pytest.fixture
def probe():
    return ScriptedProbe()


def make_config(capacity: int = 2, domains=DOMAINS, max_attempts: int = 3, **health) -> FleetConfig:
    return FleetConfig(
        desired=FleetDesiredState(capacity=capacity, domains=tuple(domains)),
        health=HealthPolicy(**health),
        backoff=BackoffPolicy(base_s=0.0, factor=2.0, max_attempts=max_attempts, call_timeout_s=5.0),
        reconcile_interval_s=15.0,
    )


@pytest.fixture
def make_controller(platform, probe, pool, clock):
    made = []

    def _make(capacity: int = 2, domains=DOMAINS, spawn=inline_spawn, max_attempts: int = 3, **health) -> FleetController:
        ctl = FleetController(
            platform,
            probe,
            pool,
            config=make_config(capacity, domains, max_attempts=max_attempts, **health),
            clock=clock,
            sleep=lambda _s: None,
            spawn=spawn,
            threaded=False,
        )
        made.append(ctl)
        return ctl

    yield _make
    for ctl in made:
        ctl.stop()


def probe_all(ctl: FleetController, rounds: int = 1) -> None:
    for _ in range(rounds):
        for iid in ctl.monitors.monitored():
            ctl.probe_instance(iid)


def settle(ctl: FleetController, clock: ManualClock, ticks: int = 30) -> None:
    """Alternate reconciler ticks and probe rounds with all probes passing by default."""
    for _ in range(ticks):
        clock.advance(1)
        ctl.reconcile_once()
        probe_all(ctl, rounds=ctl.config.health.pass_threshold)


def healthy_handles(ctl: FleetController) -> set[str]:
    return {i.handle.id for i in ctl.store.snapshot() if i.lifecycle == LifecycleState.HEALTHY}


def assert_registration_invariant(ctl: FleetController, pool: BackendPool) -> None:
    assert {h.id for h in pool.members()} == healthy_handles(ctl)
