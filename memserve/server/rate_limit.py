# ============================================================================
# memserve/server/rate_limit.py
# Per-caller minimum interval between requests
# ============================================================================
#
# Each caller key remembers when it was last let through. A request is
# admitted only if at least `min_interval` seconds have passed since then;
# anything sooner is rejected (not queued) and does not move the timestamp.
# Keys idle for longer than `window` are purged on every check.
#
# ============================================================================

from __future__ import annotations

import threading
import time
from typing import Callable, Dict


class RateLimiter:
    """Fixed minimum-interval limiter keyed by caller identity."""

    def __init__(
        self,
        min_interval: float,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if min_interval <= 0:
            raise ValueError("Minimum request interval must be positive")
        self.min_interval = min_interval
        # A window shorter than the interval would forget callers too early.
        self.window = max(window, min_interval)
        self._clock = clock
        self._visitors: Dict[str, float] = {}
        self._lock = threading.Lock()

    def is_allowed(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            stale = [k for k, last in self._visitors.items() if now - last > self.window]
            for k in stale:
                del self._visitors[k]

            last = self._visitors.get(key)
            if last is not None and now - last < self.min_interval:
                return False

            self._visitors[key] = now
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._visitors)
