"""
Cancellation checks passed down into long-running operations.

A check is any zero-argument callable that raises to abort. The archive
builder, uploads and the scheduler call it between chunks.
"""

import time
from typing import Callable, Optional

from zesty_backup.errors import CycleTimeout


class Deadline:
    """
    Raises CycleTimeout once a time budget is exhausted.

    Instances are callable so they can be handed to anything that accepts
    a ``cancellation_check``.
    """

    def __init__(self, seconds: Optional[float], label: str = 'cycle', clock: Callable[[], float] = time.monotonic):
        self.label = label
        self._clock = clock
        self.expires_at = None if seconds is None else clock() + seconds

    @property
    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self._clock() >= self.expires_at

    def __call__(self):
        if self.expired:
            raise CycleTimeout(f"{self.label} exceeded its time budget")


def command_timeout(limit: float, cancellation_check: Optional[Callable[[], None]] = None) -> float:
    """
    Cap a subprocess timeout by what is left of a Deadline.

    Raises:
        CycleTimeout: If the deadline has already passed
    """
    if cancellation_check is not None:
        cancellation_check()
    if isinstance(cancellation_check, Deadline) and cancellation_check.remaining is not None:
        return min(limit, cancellation_check.remaining)
    return limit
