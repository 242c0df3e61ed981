import threading
import time
from typing import Optional

from .errors import ComputationCancelled, ComputationTimeout


class RunControl:
    """
    Deadline and cancellation hook for one computation run.
    Solvers call check() before every iteration, including from worker threads.
    """

    def __init__(
        self,
        deadline_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        if deadline_seconds is not None and deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")
        self.deadline_seconds = deadline_seconds
        self.cancel_event = cancel_event
        self._started = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started

    def check(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ComputationCancelled("Trust computation cancelled by caller")
        if self.deadline_seconds is not None and self.elapsed_seconds > self.deadline_seconds:
            raise ComputationTimeout(
                f"Trust computation exceeded its deadline of {self.deadline_seconds}s"
            )
