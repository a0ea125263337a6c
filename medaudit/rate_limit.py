"""
Rate limiting module for medaudit.

Sliding window limiter applied to record creation, which is the only
operation that calls the signing oracle. Callers are keyed by the
unauthenticated X-Caller-Id header, so idle keys are swept once per
window to keep the table bounded by recent traffic.
"""

import time
import threading
from collections import deque
from typing import Deque, Dict, Optional
from dataclasses import dataclass


@dataclass
class RateLimitResult:
    """Outcome of one creation attempt against the limiter."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """Per-caller sliding window over the last `window_seconds`."""

    def __init__(self, rpm: int, window_seconds: int = 60):
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.RLock()
        self._last_sweep = time.time()

    def __len__(self) -> int:
        """Number of callers currently tracked."""
        with self._lock:
            return len(self._hits)

    def check(self, key: str) -> RateLimitResult:
        """
        Record a hit for `key` if it is under the limit.

        Returns:
            RateLimitResult; `retry_after` is set when the hit was refused
        """
        now = time.time()
        window_start = now - self._window

        with self._lock:
            if now - self._last_sweep >= self._window:
                self._sweep(window_start)
                self._last_sweep = now

            q = self._hits.setdefault(key, deque())
            while q and q[0] < window_start:
                q.popleft()

            reset_at = (q[0] if q else now) + self._window
            if len(q) >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, reset_at - now),
                )

            q.append(now)
            return RateLimitResult(allowed=True, remaining=self._limit - len(q), reset_at=reset_at)

    def _sweep(self, window_start: float) -> int:
        idle = [k for k, q in self._hits.items() if not q or q[-1] < window_start]
        for k in idle:
            del self._hits[k]
        return len(idle)

    def cleanup_expired(self) -> int:
        """Drop every caller with no hit inside the window. Returns the number dropped."""
        with self._lock:
            removed = self._sweep(time.time() - self._window)
            self._last_sweep = time.time()
            return removed

    def reset(self, key: Optional[str] = None) -> None:
        """Reset counters for one key, or all keys."""
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()
