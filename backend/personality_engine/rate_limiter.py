"""
Per-identity sliding-window rate limiter with an in-flight cap.
"""
import time
import logging
import threading
from typing import Callable, Dict, List, Optional

from .config import settings

logger = logging.getLogger(__name__)

class RateLimiter:
    """
    Sliding-window limiter. Process-local; nothing is persisted.

    A request counts against the window while ``now - timestamp < window``. Stale
    timestamps are pruned lazily whenever an identity is read. Admission needs both
    fewer than ``max_requests`` requests in the window and fewer than ``max_concurrent``
    requests in flight.
    """

    def __init__(self, max_requests: Optional[int] = None, max_concurrent: Optional[int] = None,
                 window_s: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests or settings.RATE_LIMIT_MAX_REQUESTS
        self.max_concurrent = max_concurrent or settings.RATE_LIMIT_MAX_CONCURRENT
        self.window_s = window_s or settings.RATE_LIMIT_WINDOW_S
        self.clock = clock
        self._requests: Dict[str, List[float]] = {}
        self._active: Dict[str, int] = {}
        self.lock = threading.Lock()

    def _prune(self, identity: str, now: float) -> List[float]:
        stamps = [t for t in self._requests.get(identity, []) if now - t < self.window_s]
        if stamps:
            self._requests[identity] = stamps
        else:
            self._requests.pop(identity, None)
        return stamps

    def is_allowed(self, identity: str) -> bool:
        with self.lock:
            stamps = self._prune(identity, self.clock())
            if self._active.get(identity, 0) >= self.max_concurrent:
                return False
            return len(stamps) < self.max_requests

    def add_request(self, identity: str) -> None:
        with self.lock:
            now = self.clock()
            self._prune(identity, now)
            self._requests.setdefault(identity, []).append(now)
            self._active[identity] = self._active.get(identity, 0) + 1

    def remove_request(self, identity: str) -> None:
        """Mark one in-flight request finished. The window entry stays until it ages out."""
        with self.lock:
            active = self._active.get(identity, 0) - 1
            if active > 0:
                self._active[identity] = active
            else:
                self._active.pop(identity, None)

    def active(self, identity: str) -> int:
        with self.lock:
            return self._active.get(identity, 0)

    def remaining(self, identity: str) -> int:
        with self.lock:
            stamps = self._prune(identity, self.clock())
            return max(0, self.max_requests - len(stamps))

    def time_until_reset(self, identity: str) -> float:
        """Seconds until the oldest request in the window ages out; 0 when the window is empty."""
        with self.lock:
            now = self.clock()
            stamps = self._prune(identity, now)
            if not stamps:
                return 0.0
            return max(0.0, self.window_s - (now - stamps[0]))

    def clear_identity(self, identity: str) -> None:
        with self.lock:
            self._requests.pop(identity, None)
            self._active.pop(identity, None)

    def clear_all(self) -> None:
        with self.lock:
            self._requests.clear()
            self._active.clear()
        logger.info("Rate limiter state cleared")
