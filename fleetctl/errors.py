"""Exception taxonomy for the fleet controller."""

from __future__ import annotations


class FleetError(Exception):
    """Base class for all fleet controller errors."""


class ConfigurationError(FleetError):
    """Rejected configuration. Nothing from the offending change is applied."""


class TransientCollaboratorError(FleetError):
    """Network failure or timeout talking to a collaborator. Retried with backoff."""


class ConflictError(FleetError):
    """The collaborator already is in the requested state (e.g. delete of a deleted instance).

    Callers treat it as success.
    """


class ExhaustedRetriesError(FleetError):
    """An operation kept failing after every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: Exception | None = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error

        msg = f"{operation} failed after {attempts} attempt(s)"
        if last_error is not None:
            msg += f": {type(last_error).__name__}: {last_error}"
        super().__init__(msg)


class IllegalTransitionError(FleetError):
    def __init__(self, instance_id: str, current: object, target: object):
        self.instance_id = instance_id
        self.current = current
        self.target = target
        super().__init__(f"Illegal lifecycle transition for {instance_id}: {current} -> {target}")


class UnknownInstanceError(FleetError, KeyError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Unknown instance '{instance_id}'")

    def __str__(self) -> str:
        return self.args[0]
