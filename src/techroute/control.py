"""
Cancellation and wall-clock budget for a single optimization run.
"""

import threading
import time
from typing import Callable, Optional

from techroute.models import RunState


class CancellationToken:
    """
    Thread-safe flag a caller flips to stop a run early.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class RunControl:
    """
    Checked at construction insertions and improver iterations. Once tripped it
    stays tripped, and `stop_reason` tells which terminal state the run ends in.
    """

    def __init__(
        self,
        token: Optional[CancellationToken] = None,
        time_budget_ms: Optional[int] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.token = token or CancellationToken()
        self._clock = clock
        self.started = clock()
        self.deadline = self.started + time_budget_ms / 1000.0 if time_budget_ms else None
        self.stop_reason: Optional[RunState] = None

    def should_stop(self) -> bool:
        if self.stop_reason is not None:
            return True
        if self.token.cancelled:
            self.stop_reason = RunState.CANCELLED
        elif self.deadline is not None and self._clock() >= self.deadline:
            self.stop_reason = RunState.TIMED_OUT
        return self.stop_reason is not None

    @property
    def interrupted(self) -> bool:
        return self.stop_reason is not None

    def elapsed_ms(self) -> float:
        return (self._clock() - self.started) * 1000.0

    def remaining_ms(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, (self.deadline - self._clock()) * 1000.0)
