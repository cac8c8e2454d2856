import time
from typing import Optional


class Deadline:
    """
    Absolute point in time a request must finish by.
    Created once per request and threaded through fetch and subprocess waits.
    """

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(self._expires_at - time.monotonic(), 0.0)

    def bound(self, timeout: Optional[float] = None) -> float:
        """Clamp a per-call timeout to the time left"""
        left = self.remaining()
        if timeout is None:
            return left
        return min(timeout, left)
