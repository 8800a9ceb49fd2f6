"""Blocking poll-with-timeout primitive.

Waits for externally driven state transitions (instance boot, instance
shutdown) by polling at a fixed interval.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import cast

from tenacity import (
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_fixed,
)
from tenacity.stop import stop_base

from oneshot.constants import POLL_INTERVAL
from oneshot.exceptions import PollTimeoutError


@dataclass(frozen=True, slots=True)
class Poller:
    """Fixed-interval poller.

    Attributes:
        interval: Seconds slept between two polls.
        timeout: Wall-clock bound in seconds. None waits forever.
        max_attempts: Upper bound on polls. None means unbounded.
        sleep: Sleep function, replaceable in tests.
    """

    interval: float = POLL_INTERVAL
    timeout: float | None = None
    max_attempts: int | None = None
    sleep: Callable[[float], None] = time.sleep

    def _stop(self) -> stop_base:
        stop: stop_base = stop_never
        if self.timeout is not None:
            stop = stop_after_delay(self.timeout)
        if self.max_attempts is not None:
            by_attempts = stop_after_attempt(self.max_attempts)
            stop = by_attempts if stop is stop_never else stop | by_attempts
        return stop

    def until[T](
        self,
        poll_fn: Callable[[], T | None],
        ready_check: Callable[[T], bool],
        *,
        terminal_check: Callable[[T], bool] | None = None,
        description: str = "resource",
    ) -> T:
        """Poll until poll_fn returns something that passes ready_check.

        A None result means "not observable yet" and is polled again.

        Args:
            poll_fn: Function returning the current state.
            ready_check: Returns True when the wait is over.
            terminal_check: Returns True if the resource reached a state
                from which it will never become ready.
            description: Description for error messages.

        Returns:
            The first result passing ready_check.

        Raises:
            PollTimeoutError: If the timeout or attempt budget is exhausted.
            RuntimeError: If the resource reaches a terminal state.
        """

        def attempt() -> T | None:
            result = poll_fn()
            if result is not None and terminal_check is not None and terminal_check(result):
                raise RuntimeError(f"{description} reached terminal state: {result}")
            return result

        retrying = Retrying(
            stop=self._stop(),
            wait=wait_fixed(self.interval),
            retry=retry_if_result(lambda r: r is None or not ready_check(r)),
            sleep=self.sleep,
        )
        try:
            result = retrying(attempt)
        except RetryError as e:
            last = e.last_attempt.result() if not e.last_attempt.failed else None
            raise PollTimeoutError(
                f"Timeout waiting for {description} (last observed: {last})"
            ) from e
        return cast("T", result)
