"""
Cooperative cancellation and deadline checks.

The core never interrupts a computation in the middle; it asks the
checkpoint at coarse boundaries (between algorithms, DTW scales and FFT
buffers) and bails out with an abstain result when told to stop.
"""

import threading
import time
from typing import Optional

CANCELLED = "cancelled"
TIMEOUT = "timeout"


class CancellationToken:
    """Thread-safe flag a caller can set to stop an in-flight ``synchronize``."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self):
        return f"CancellationToken(cancelled={self.cancelled})"


class Checkpoint:
    """Combines a cancellation token and a monotonic deadline."""

    def __init__(self, token: Optional[CancellationToken] = None, deadline: Optional[float] = None):
        self.token = token
        self.deadline = deadline

    @classmethod
    def from_options(cls, token: Optional[CancellationToken], deadline: Optional[float],
                     timeout_seconds: Optional[float]) -> "Checkpoint":
        if timeout_seconds is not None:
            budget = time.monotonic() + timeout_seconds
            deadline = budget if deadline is None else min(deadline, budget)
        return cls(token, deadline)

    def interrupted(self) -> Optional[str]:
        """Return the interruption reason, or None when work may continue."""
        if self.token is not None and self.token.cancelled:
            return CANCELLED
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return TIMEOUT
        return None

    def check(self) -> None:
        reason = self.interrupted()
        if reason is not None:
            raise Interrupted(reason)


class Interrupted(Exception):
    """Raised inside the pipeline when a checkpoint reports cancellation or timeout."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


NEVER = Checkpoint()
