"""Fixed-window request rate limiting keyed by organization."""

import threading
import time
from typing import Callable, Dict, Optional, Tuple


class FixedWindowLimiter:
    """
    One-minute fixed windows per key.

    The ceiling is passed per call so a single limiter can serve every plan
    tier; an organization that changes tier mid-window is measured against
    its new ceiling immediately.
    """

    def __init__(self, time_fn: Optional[Callable[[], float]] = None, window_seconds: float = 60.0):
        self.time_fn = time_fn or time.monotonic
        self.window_seconds = window_seconds
        self.windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, limit_per_window: int) -> bool:
        if limit_per_window <= 0:
            return True
        with self._lock:
            now = self.time_fn()
            window_start, count = self.windows.get(key, (now, 0))
            if now - window_start >= self.window_seconds:
                window_start, count = now, 0
            if count >= limit_per_window:
                self.windows[key] = (window_start, count)
                return False
            self.windows[key] = (window_start, count + 1)
            return True

    def reset(self) -> None:
        with self._lock:
            self.windows.clear()


_limiter: Optional[FixedWindowLimiter] = None


def get_tier_limiter() -> FixedWindowLimiter:
    global _limiter
    if _limiter is None:
        _limiter = FixedWindowLimiter()
    return _limiter
