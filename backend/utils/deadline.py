"""Stage deadlines for the sync pipeline."""

import time

from services.exceptions import SyncTimeoutError


class Deadline:
    """A monotonic-clock budget for one pipeline stage.

    Example:
        deadline = Deadline("reconciling", 120)
        for record in records:
            deadline.check()
            ...
    """

    def __init__(self, stage: str, seconds: float, clock=time.monotonic):
        self.stage = stage
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self) -> None:
        """Raise SyncTimeoutError if the budget is spent."""
        if self.expired:
            raise SyncTimeoutError(self.stage, self.seconds)
