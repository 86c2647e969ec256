import threading

import pytest

from fleetctl import db
from fleetctl.config import BackoffPolicy
from fleetctl.errors import ConflictError, ExhaustedRetriesError, TransientCollaboratorError
from fleetctl.retry import Retrier


@pytest.fixture
def sleeps():
    return []


def _retrier(sleeps, **kwargs) -> Retrier:
    policy = BackoffPolicy(**{"base_s": 5, "factor": 2, "max_attempts": 5, **kwargs})
    return Retrier(policy, sleep=sleeps.append, max_workers=4)


def test_transient_errors_are_retried_with_backoff(sleeps):
    calls = []

    def flaky(x):
        calls.append(x)
        if len(calls) < 3:
            raise TransientCollaboratorError("try again")
        return x * 2

    r = _retrier(sleeps)
    try:
        assert r.call("flaky", flaky, 21) == 42
    finally:
        r.shutdown()
    assert calls == [21, 21, 21]
    assert sleeps == [5, 10]
    warns = db.latest_events(level="WARN")
    assert len(warns) == 2


def test_exhausted_retries(sleeps):
    def always_down():
        raise TransientCollaboratorError("down")

    r = _retrier(sleeps)
    try:
        with pytest.raises(ExhaustedRetriesError) as ei:
            r.call("delete", always_down)
    finally:
        r.shutdown()
    assert ei.value.attempts == 5
    assert ei.value.operation == "delete"
    assert isinstance(ei.value.last_error, TransientCollaboratorError)
    assert sleeps == [5, 10, 20, 40]


def test_conflict_counts_as_success(sleeps):
    def already_gone():
        raise ConflictError("gone")

    r = _retrier(sleeps)
    try:
        assert r.call("delete", already_gone) is None
    finally:
        r.shutdown()
    assert sleeps == []


def test_unexpected_errors_propagate(sleeps):
    def broken():
        raise ValueError("bug")

    r = _retrier(sleeps)
    try:
        with pytest.raises(ValueError):
            r.call("op", broken)
    finally:
        r.shutdown()
    assert sleeps == []


def test_timeout_is_a_failure_not_success(sleeps):
    release = threading.Event()

    def hangs():
        release.wait(5)
        return "late"

    r = _retrier(sleeps, max_attempts=2, call_timeout_s=0.05)
    try:
        with pytest.raises(ExhaustedRetriesError) as ei:
            r.call("register", hangs)
    finally:
        release.set()
        r.shutdown()
    assert "timed out" in str(ei.value.last_error)
    assert sleeps == [5]
