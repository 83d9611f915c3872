"""
Rate limiting for public verification scans.

Sliding window per key (the scanned subject), so a single badge cannot
flood its own ledger with scan events.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """Thread-safe sliding window limiter."""

    def __init__(self, rpm: int, window_seconds: int = 60, timer: Callable[[], float] = time.time):
        """
        Args:
            rpm: Maximum requests per window
            window_seconds: Window size in seconds (default 60)
            timer: Source of the current time in seconds
        """
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._timer = timer
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()
        self._last_sweep = timer()

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """Count this request against ``key`` if it fits in the window."""
        now = self._timer()
        window_start = now - self._window

        with self._lock:
            if now - self._last_sweep >= self._window:
                self._sweep(window_start)
                self._last_sweep = now

            q = self._hits[key]
            while q and q[0] <= window_start:
                q.popleft()

            reset_at = (q[0] + self._window) if q else (now + self._window)
            if len(q) >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, q[0] + self._window - now)
                )

            q.append(now)
            return RateLimitResult(allowed=True, remaining=self._limit - len(q), reset_at=reset_at)

    def cleanup_expired(self) -> int:
        """
        Remove expired entries from all keys, dropping keys left empty.

        Returns:
            Number of entries removed
        """
        with self._lock:
            return self._sweep(self._timer() - self._window)

    def _sweep(self, window_start: float) -> int:
        removed = 0
        empty_keys = []
        for key, q in self._hits.items():
            while q and q[0] <= window_start:
                q.popleft()
                removed += 1
            if not q:
                empty_keys.append(key)
        for key in empty_keys:
            del self._hits[key]
        return removed

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()
