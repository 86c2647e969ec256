from __future__ import annotations

from enum import Enum


class LifecycleState(str, Enum):
    """Lifecycle of one instance identity.

    Progression is monotonic; a replacement is a new identity starting at
    PROVISIONING, never a reset of an old one.
    """

    PROVISIONING = "provisioning"
    BOOTING = "booting"
    HEALTH_CHECK_PENDING = "health_check_pending"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    GRACE_PERIOD = "grace_period"
    DRAINING = "draining"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


L = LifecycleState

TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    L.PROVISIONING: frozenset({L.BOOTING, L.TERMINATING}),
    L.BOOTING: frozenset({L.HEALTH_CHECK_PENDING, L.TERMINATING}),
    L.HEALTH_CHECK_PENDING: frozenset({L.HEALTHY, L.UNHEALTHY, L.TERMINATING}),
    L.HEALTHY: frozenset({L.UNHEALTHY, L.DRAINING}),
    L.UNHEALTHY: frozenset({L.GRACE_PERIOD, L.TERMINATING}),
    L.GRACE_PERIOD: frozenset({L.HEALTHY, L.TERMINATING}),
    L.DRAINING: frozenset({L.TERMINATING}),
    L.TERMINATING: frozenset({L.TERMINATED}),
    L.TERMINATED: frozenset(),
}

# Instances in these states count as in-flight removals, not as present capacity.
REMOVAL_STATES = frozenset({L.TERMINATING, L.TERMINATED})

# States in which the instance is probed.
PROBED_STATES = frozenset({L.HEALTH_CHECK_PENDING, L.HEALTHY, L.UNHEALTHY, L.GRACE_PERIOD})


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    return target in TRANSITIONS[current]


class HealthState(str, Enum):
    """Debounced health as seen by the tracker."""

    PENDING = "pending"
    HEALTHY = "healthy"
    GRACE = "grace"
    UNHEALTHY = "unhealthy"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    UNREACHABLE = "unreachable"


class Registration(str, Enum):
    REGISTERED = "registered"
    NOT_REGISTERED = "not_registered"
