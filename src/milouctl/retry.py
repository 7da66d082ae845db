"""Bounded polling used by every wait loop in milouctl."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryOutcome(Generic[T]):
    """Result of :meth:`RetryPolicy.run`."""

    value: T | None
    attempts: int
    elapsed: float
    timed_out: bool = False
    interrupted: bool = False

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the check produced a value."""
        return self.value is not None and not self.timed_out and not self.interrupted


@dataclass(frozen=True)
class RetryPolicy:
    """Call a check until it returns a value, the deadline passes or attempts run out.

    ``check`` returns ``None`` to request another attempt. The deadline is
    wall-clock and armed when :meth:`run` starts, so repeated runs never share
    a budget. A :class:`KeyboardInterrupt` raised by the check or while sleeping
    ends the loop with ``interrupted=True`` instead of propagating.
    """

    interval: float
    timeout: float
    max_attempts: int | None = None
    backoff: float = 1.0
    max_interval: float | None = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def run(self, check: Callable[[], T | None]) -> RetryOutcome[T]:
        """Poll *check* under this policy."""
        started = self.clock()
        deadline = started + self.timeout
        delay = self.interval
        attempts = 0
        while True:
            attempts += 1
            try:
                value = check()
            except KeyboardInterrupt:
                LOGGER.warning("Polling interrupted during attempt %d.", attempts)
                return RetryOutcome(None, attempts, self.clock() - started, interrupted=True)
            now = self.clock()
            if value is not None:
                return RetryOutcome(value, attempts, now - started)
            if self.max_attempts is not None and attempts >= self.max_attempts:
                return RetryOutcome(None, attempts, now - started, timed_out=True)
            remaining = deadline - now
            if remaining <= 0:
                return RetryOutcome(None, attempts, now - started, timed_out=True)
            try:
                self.sleep(min(delay, remaining))
            except KeyboardInterrupt:
                LOGGER.warning("Polling interrupted after %d attempt(s).", attempts)
                return RetryOutcome(None, attempts, self.clock() - started, interrupted=True)
            delay = delay * self.backoff
            if self.max_interval is not None:
                delay = min(delay, self.max_interval)


__all__ = ["RetryOutcome", "RetryPolicy"]
