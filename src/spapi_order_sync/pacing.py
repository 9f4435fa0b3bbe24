"""
Cancellable pacing for every suspension point in a sync run.

Backoff sleeps, report poll intervals and inter-partition delays all go
through a Pacer so a single cancellation signal or deadline can stop the
run before it blocks again.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable

from spapi_order_sync.exceptions import SyncCancelled


@dataclass
class PacerStats:
    """Statistics for monitoring time spent waiting."""
    sleeps: int = 0
    total_sleep_time: float = 0.0
    longest_sleep: float = 0.0


class Pacer:
    """
    Sleeps on behalf of the sync, honoring cancellation and a deadline.

    How it works:
    - `check()` raises SyncCancelled if the cancel event is set or the
      deadline has passed
    - `sleep(seconds)` checks first, then waits on the cancel event so a
      cancellation interrupts the wait immediately
    - A sleep that would run past the deadline fails up front instead of
      waiting for nothing

    Example:
        pacer = Pacer(deadline_seconds=3600)

        pacer.sleep(2.0)  # Blocks, or raises SyncCancelled
        pacer.cancel()    # From another thread
    """

    def __init__(
        self,
        deadline_seconds: float | None = None,
        cancel_event: threading.Event | None = None,
        sleep_func: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize pacer.

        Args:
            deadline_seconds: Run time limit measured from now (None = no deadline)
            cancel_event: Shared cancellation signal (created if omitted)
            sleep_func: Replacement sleep, mainly for tests. When given, the
                        cancel event is only checked before sleeping.
            clock: Monotonic clock
        """
        self._clock = clock
        self._deadline = None if deadline_seconds is None else clock() + deadline_seconds
        self._cancel_event = cancel_event or threading.Event()
        self._sleep_func = sleep_func
        self._lock = threading.Lock()

        self.stats = PacerStats()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Signal cancellation to every sleeper sharing this pacer."""
        self._cancel_event.set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without one."""
        if self._deadline is None:
            return None
        return self._deadline - self._clock()

    def check(self) -> None:
        """Raise SyncCancelled if the run should stop."""
        if self._cancel_event.is_set():
            raise SyncCancelled("Sync cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise SyncCancelled("Sync deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, raising SyncCancelled if interrupted."""
        self.check()

        remaining = self.remaining()
        if remaining is not None and seconds > remaining:
            raise SyncCancelled(
                f"Sleeping {seconds:.1f}s would exceed the sync deadline"
            )

        with self._lock:
            self.stats.sleeps += 1
            self.stats.total_sleep_time += seconds
            self.stats.longest_sleep = max(self.stats.longest_sleep, seconds)

        if self._sleep_func is not None:
            self._sleep_func(seconds)
            return

        # Event.wait returns True when the event was set during the wait
        if self._cancel_event.wait(seconds):
            raise SyncCancelled("Sync cancelled")

    def get_stats(self) -> dict:
        """Get pacer statistics for monitoring."""
        remaining = self.remaining()
        return {
            "sleeps": self.stats.sleeps,
            "total_sleep_seconds": round(self.stats.total_sleep_time, 2),
            "longest_sleep_seconds": round(self.stats.longest_sleep, 2),
            "deadline_remaining_seconds": None if remaining is None else round(remaining, 1),
            "cancelled": self.cancelled,
        }
