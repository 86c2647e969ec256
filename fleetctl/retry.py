from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, TypeVar

from . import db
from .config import BackoffPolicy
from .errors import ConflictError, ExhaustedRetriesError, TransientCollaboratorError

T = TypeVar("T")


class Retrier:
    """Runs collaborator calls with a caller-side timeout and bounded exponential backoff.

    - TransientCollaboratorError (and timeouts) are retried.
    - ConflictError means the target state already holds; the call returns None.
    - Anything else propagates immediately.
    """

    def __init__(
        self,
        policy: BackoffPolicy,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 32,
    ):
        self.policy = policy
        self._sleep = sleep
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fleet-call")

    def call(self, operation: str, fn: Callable[..., T], *args: Any, instance_id: str | None = None) -> T | None:
        policy = self.policy
        delays = policy.delays()
        last: Exception | None = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return self._with_timeout(fn, *args, timeout_s=policy.call_timeout_s)
            except ConflictError as e:
                db.log_event("INFO", f"{operation}: already done ({e})", instance_id=instance_id)
                return None
            except TransientCollaboratorError as e:
                last = e
                db.log_event(
                    "WARN",
                    f"{operation} attempt {attempt}/{policy.max_attempts} failed: {e}",
                    instance_id=instance_id,
                )
            if attempt < policy.max_attempts:
                self._sleep(delays[attempt - 1])
        raise ExhaustedRetriesError(operation, policy.max_attempts, last)

    def _with_timeout(self, fn: Callable[..., T], *args: Any, timeout_s: float) -> T:
        fut = self._pool.submit(fn, *args)
        try:
            return fut.result(timeout=timeout_s)
        except FutureTimeout as e:
            # The call may still complete in the background; a timeout is never success.
            raise TransientCollaboratorError(f"timed out after {timeout_s}s") from e

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
