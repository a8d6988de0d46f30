"""In-memory sliding-window rate limiter for public form endpoints."""
from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List, Tuple


class RateLimiter:
    """
    Counts hits per identifier inside a trailing window.

    State lives in process memory, so limits are per worker.
    """

    def __init__(self, clock: Callable[[], float] = time.time, cleanup_interval: int = 60) -> None:
        self._clock = clock
        self._hits: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = clock()

    def _cleanup(self, now: float, window_seconds: int) -> None:
        if now - self._last_cleanup < self._cleanup_interval:
            return
        cutoff = now - window_seconds
        for identifier in list(self._hits):
            self._hits[identifier] = [ts for ts in self._hits[identifier] if ts > cutoff]
            if not self._hits[identifier]:
                del self._hits[identifier]
        self._last_cleanup = now

    def is_allowed(self, identifier: str, max_requests: int, window_seconds: int) -> Tuple[bool, int, int]:
        """
        Register a hit for ``identifier`` if it fits in the window.

        Returns:
            Tuple of (is_allowed, remaining_requests, retry_after_seconds)
        """
        with self._lock:
            now = self._clock()
            self._cleanup(now, window_seconds)
            window_start = now - window_seconds
            in_window = [ts for ts in self._hits.get(identifier, []) if ts > window_start]

            if len(in_window) >= max_requests:
                retry_after = int(min(in_window) + window_seconds - now) + 1
                self._hits[identifier] = in_window
                return False, 0, max(retry_after, 1)

            in_window.append(now)
            self._hits[identifier] = in_window
            return True, max_requests - len(in_window), 0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


# Shared limiter for the contact form
contact_rate_limiter = RateLimiter()
